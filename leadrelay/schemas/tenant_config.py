"""
Tenant configuration schema - the read-mostly view of a tenant that every
engagement operation works from. Built from the Tenant row, cached as JSON.
"""
import uuid
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class VoiceConfig(BaseModel):
    assistant_id: Optional[str] = None
    phone_number_id: Optional[str] = None


class SmsConfig(BaseModel):
    from_number: Optional[str] = None
    messaging_service_sid: Optional[str] = None


class FeatureFlags(BaseModel):
    """Immutable per-operation snapshot of which channels may be used."""
    model_config = ConfigDict(frozen=True)

    call_enabled: bool = True
    sms_enabled: bool = True
    email_enabled: bool = True

    def is_enabled(self, channel: str) -> bool:
        return bool(getattr(self, f"{channel}_enabled", False))


class TenantConfig(BaseModel):
    """Complete tenant configuration resolved by the tenant registry."""
    id: uuid.UUID
    key: str
    display_name: str
    timezone: str = "Europe/London"
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    sms: SmsConfig = Field(default_factory=SmsConfig)
    calendar_id: Optional[str] = None
    booking_link: Optional[str] = None
    templates: dict[str, str] = Field(default_factory=dict)
    feature_flags: dict[str, bool] = Field(default_factory=dict)
    is_active: bool = True
