"""
Channel feature flags.

Global switches live in settings; a tenant can switch a channel off for itself
but never back on when it is globally disabled. Each operation resolves one
immutable FeatureFlags snapshot at its start and uses it throughout, so a flag
flipped mid-operation never produces a half-applied decision.
"""
import logging
from typing import Optional

from leadrelay.config import Settings, get_settings
from leadrelay.schemas.tenant_config import FeatureFlags, TenantConfig

logger = logging.getLogger(__name__)

CHANNELS = ("call", "sms", "email")


def resolve_feature_flags(
    tenant: Optional[TenantConfig] = None,
    settings: Optional[Settings] = None,
) -> FeatureFlags:
    settings = settings or get_settings()
    overrides = (tenant.feature_flags if tenant else None) or {}

    values = {}
    for channel in CHANNELS:
        flag = f"{channel}_enabled"
        globally_on = bool(getattr(settings, flag, True))
        tenant_on = overrides.get(flag, True) is not False
        values[flag] = globally_on and tenant_on

    return FeatureFlags(**values)
