"""
Channel dispatcher - the single seam between engagement logic and providers.

dispatch() performs exactly one outward communication on the requested
channel and either returns a DispatchResult or raises a DispatchError.
It never retries: retry policy belongs to the follow-up scheduler.

Anything the providers raise that is not already a DispatchError (including
timeouts) surfaces as TransientDispatchFailure, so callers only ever handle
the dispatch taxonomy.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from leadrelay.errors import DispatchError, PermanentDispatchFailure, TransientDispatchFailure
from leadrelay.models.lead import Lead
from leadrelay.schemas.tenant_config import TenantConfig
from leadrelay.services import email as email_service
from leadrelay.services import sms as sms_service
from leadrelay.services import voice as voice_service
from leadrelay.utils.logging import mask_phone, short_id
from leadrelay.utils.phone import normalize_phone
from leadrelay.utils.templates import render_template

logger = logging.getLogger(__name__)

PROVIDERS = {
    "call": voice_service.PROVIDER,
    "sms": sms_service.PROVIDER,
    "email": email_service.PROVIDER,
}

# Headroom over the provider's own HTTP timeout before the dispatcher gives up
DISPATCH_TIMEOUT_GRACE_SECONDS = 5.0


@dataclass
class DispatchResult:
    channel: str
    provider: str
    attempt_id: str  # provider call id / message sid / email message id
    detail: str = ""


class ChannelDispatcher:
    """Routes one outbound attempt to the provider module for its channel."""

    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout

    def _effective_timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        from leadrelay.config import get_settings
        return get_settings().provider_timeout_seconds + DISPATCH_TIMEOUT_GRACE_SECONDS

    async def dispatch(
        self,
        channel: str,
        tenant: TenantConfig,
        lead: Lead,
        message: Optional[str] = None,
    ) -> DispatchResult:
        if channel not in PROVIDERS:
            raise PermanentDispatchFailure(f"Unknown channel: {channel}")
        provider = PROVIDERS[channel]

        phone = normalize_phone(lead.phone)
        if not phone:
            raise PermanentDispatchFailure(
                f"Invalid phone number: {mask_phone(lead.phone)}", provider=provider,
            )

        handler = {
            "call": self._call,
            "sms": self._sms,
            "email": self._email,
        }[channel]

        try:
            attempt_id, detail = await asyncio.wait_for(
                handler(tenant, lead, phone, message),
                timeout=self._effective_timeout(),
            )
        except DispatchError:
            raise
        except asyncio.TimeoutError as e:
            raise TransientDispatchFailure("dispatch timed out", provider=provider) from e
        except Exception as e:
            logger.error(
                "Unexpected %s dispatch error for lead %s: %s", channel, short_id(lead.id), str(e),
            )
            raise TransientDispatchFailure(str(e) or type(e).__name__, provider=provider) from e

        return DispatchResult(channel=channel, provider=provider, attempt_id=attempt_id or "", detail=detail)

    async def _call(self, tenant: TenantConfig, lead: Lead, phone: str, message: Optional[str]):
        call_id = await voice_service.place_call(tenant, str(lead.id), phone, lead.name)
        return call_id, f"Call placed ({call_id})"

    async def _sms(self, tenant: TenantConfig, lead: Lead, phone: str, message: Optional[str]):
        body = message or render_template(
            "followup_sms",
            tenant.templates,
            name=lead.name or "there",
            business_name=tenant.display_name,
        )
        sid = await sms_service.send_sms(
            phone,
            body,
            from_phone=tenant.sms.from_number,
            messaging_service_sid=tenant.sms.messaging_service_sid,
        )
        return sid, body[:200]

    async def _email(self, tenant: TenantConfig, lead: Lead, phone: str, message: Optional[str]):
        if not lead.email:
            raise PermanentDispatchFailure("Lead has no email address", provider=email_service.PROVIDER)

        variables = {
            "name": lead.name or "there",
            "business_name": tenant.display_name,
            "booking_link": tenant.booking_link or "",
        }
        subject = render_template("booking_email_subject", tenant.templates, **variables)
        html = message or render_template("booking_email_html", tenant.templates, **variables)
        message_id = await email_service.send_email(
            lead.email, subject, html, from_name=tenant.display_name,
        )
        return message_id, subject


default_dispatcher = ChannelDispatcher()
