"""
Voice service - places outbound AI calls through the Vapi REST API.

One POST per dispatch, no internal retries: the follow-up scheduler owns the
retry policy. The call carries tenantKey/leadId/leadPhone metadata so the
call-ended webhook can be matched back to the lead.

Error mapping:
- timeout / connection error / 5xx / 429: transient (retried on backoff)
- 400 / 404 / 422: permanent (bad number or assistant, retrying cannot help)
- other 4xx (auth, forbidden): transient, so fixing credentials recovers the lead
"""
import logging
from typing import Any, Optional

import httpx

from leadrelay.errors import PermanentDispatchFailure, TransientDispatchFailure
from leadrelay.schemas.tenant_config import TenantConfig
from leadrelay.utils.logging import mask_phone, short_id

logger = logging.getLogger(__name__)

PROVIDER = "vapi"
PERMANENT_STATUS_CODES = {400, 404, 422}


def build_call_payload(
    tenant: TenantConfig,
    lead_id: str,
    phone: str,
    name: Optional[str] = None,
) -> dict[str, Any]:
    customer: dict[str, Any] = {"number": phone}
    if name:
        customer["name"] = name
    return {
        "assistantId": tenant.voice.assistant_id,
        "phoneNumberId": tenant.voice.phone_number_id,
        "customer": customer,
        "metadata": {
            "tenantKey": tenant.key,
            "leadId": lead_id,
            "leadPhone": phone,
        },
    }


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    message = data.get("message") if isinstance(data, dict) else None
    if isinstance(message, list):
        message = "; ".join(str(m) for m in message)
    return str(message or data)[:200]


async def place_call(
    tenant: TenantConfig,
    lead_id: str,
    phone: str,
    name: Optional[str] = None,
) -> str:
    """
    Start an outbound call. Returns the provider call id.
    Raises TransientDispatchFailure or PermanentDispatchFailure.
    """
    from leadrelay.config import get_settings
    settings = get_settings()

    if not tenant.voice.assistant_id or not tenant.voice.phone_number_id:
        raise TransientDispatchFailure(
            f"Tenant {tenant.key} has no voice assistant configured", provider=PROVIDER,
        )
    if not settings.vapi_api_key:
        raise TransientDispatchFailure("Vapi API key not configured", provider=PROVIDER)

    url = f"{settings.vapi_base_url.rstrip('/')}/call"
    payload = build_call_payload(tenant, lead_id, phone, name)

    try:
        async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
            response = await client.post(
                url,
                headers={
                    "Authorization": f"Bearer {settings.vapi_api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
    except httpx.TimeoutException as e:
        raise TransientDispatchFailure(f"timeout: {e}", provider=PROVIDER) from e
    except httpx.HTTPError as e:
        raise TransientDispatchFailure(str(e) or type(e).__name__, provider=PROVIDER) from e

    if response.status_code >= 400:
        message = _error_message(response)
        logger.warning(
            "Vapi call failed for lead %s (%s): %d %s",
            short_id(lead_id), mask_phone(phone), response.status_code, message,
        )
        if response.status_code in PERMANENT_STATUS_CODES:
            raise PermanentDispatchFailure(message, provider=PROVIDER, status_code=response.status_code)
        raise TransientDispatchFailure(message, provider=PROVIDER, status_code=response.status_code)

    try:
        call_id = response.json().get("id")
    except (ValueError, AttributeError):
        call_id = None
    if not call_id:
        raise TransientDispatchFailure("call created without an id", provider=PROVIDER)

    logger.info(
        "Call placed for lead %s (%s): %s", short_id(lead_id), mask_phone(phone), call_id,
    )
    return str(call_id)
