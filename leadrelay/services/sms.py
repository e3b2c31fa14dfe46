"""
SMS service - Twilio REST API, called from a thread pool.

Sends exactly one message per call and never retries: the follow-up scheduler
owns retry policy. Twilio errors are classified into DispatchError subclasses.

Carrier error handling:
- 21610 (unsubscribed via carrier): permanent, flagged as opt-out
- 21211 / 21612 (invalid number): permanent
- 30006 (landline or unreachable): permanent
- 30007 / 30008 / 30009 / 30010: transient
- anything else (timeouts, 5xx): transient
"""
import asyncio
import logging
from typing import Optional

from leadrelay.errors import DispatchError, PermanentDispatchFailure, TransientDispatchFailure
from leadrelay.utils.logging import mask_phone

logger = logging.getLogger(__name__)

PROVIDER = "twilio"

# Carrier error classifications
PERMANENT_ERRORS = {
    "21211",  # Invalid "To" phone number
    "21610",  # Unsubscribed recipient (carrier-level opt-out)
    "30006",  # Landline or unreachable
    "21612",  # Invalid "To" phone number for SMS
}

TRANSIENT_ERRORS = {
    "30007",  # Message filtered by carrier
    "30008",  # Unknown error
    "30009",  # Missing segment
    "30010",  # Message price exceeds max price
}

LANDLINE_ERRORS = {"30006"}
OPT_OUT_ERRORS = {"21610"}
INVALID_NUMBER_ERRORS = {"21211", "21612"}


def _get_twilio_client():
    """Get a Twilio REST client with the provider timeout."""
    from twilio.rest import Client as TwilioClient
    from twilio.http.http_client import TwilioHttpClient
    from leadrelay.config import get_settings
    settings = get_settings()
    http_client = TwilioHttpClient(timeout=settings.provider_timeout_seconds)
    return TwilioClient(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=http_client,
    )


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def classify_error(error_code: Optional[str]) -> str:
    """
    Classify a Twilio error code.
    Returns: "opt_out", "landline", "invalid", "permanent", "transient", or "unknown"
    """
    if not error_code:
        return "unknown"
    code = str(error_code)
    if code in OPT_OUT_ERRORS:
        return "opt_out"
    if code in LANDLINE_ERRORS:
        return "landline"
    if code in INVALID_NUMBER_ERRORS:
        return "invalid"
    if code in PERMANENT_ERRORS:
        return "permanent"
    if code in TRANSIENT_ERRORS:
        return "transient"
    return "unknown"


def _extract_error_code(error: Exception) -> Optional[str]:
    """Extract Twilio error code from exception."""
    # TwilioRestException has a .code attribute
    code = getattr(error, "code", None)
    if code is not None:
        return str(code)
    # Some Twilio errors embed the code in the message
    msg = str(error)
    for known_code in PERMANENT_ERRORS | TRANSIENT_ERRORS:
        if known_code in msg:
            return known_code
    return None


def to_dispatch_error(error: Exception) -> DispatchError:
    """Map a Twilio (or transport) exception onto the dispatch error taxonomy."""
    error_code = _extract_error_code(error)
    error_class = classify_error(error_code)
    message = getattr(error, "msg", None) or str(error) or type(error).__name__

    if error_class in ("opt_out", "landline", "invalid", "permanent"):
        return PermanentDispatchFailure(
            message,
            provider=PROVIDER,
            status_code=error_code,
            opt_out=error_class == "opt_out",
        )
    return TransientDispatchFailure(message, provider=PROVIDER, status_code=error_code)


async def send_sms(
    to: str,
    body: str,
    from_phone: Optional[str] = None,
    messaging_service_sid: Optional[str] = None,
) -> str:
    """
    Send one SMS via Twilio. Returns the message SID.
    Raises TransientDispatchFailure or PermanentDispatchFailure.
    """
    from leadrelay.config import get_settings
    settings = get_settings()
    masked = mask_phone(to)

    kwargs = {"to": to, "body": body}
    if messaging_service_sid or settings.twilio_messaging_service_sid:
        kwargs["messaging_service_sid"] = (
            messaging_service_sid or settings.twilio_messaging_service_sid
        )
    elif from_phone:
        kwargs["from_"] = from_phone
    else:
        raise TransientDispatchFailure(
            "Either from_phone or messaging_service_sid required", provider=PROVIDER,
        )

    try:
        client = _get_twilio_client()
        message = await _run_sync(client.messages.create, **kwargs)
    except Exception as e:
        error = to_dispatch_error(e)
        logger.warning(
            "Twilio send failed for %s: code=%s permanent=%s opt_out=%s",
            masked, error.status_code, error.permanent, error.opt_out,
        )
        raise error from e

    logger.info("SMS sent via Twilio to %s: %s", masked, message.sid)
    return message.sid
