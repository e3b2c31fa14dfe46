"""
Provider webhook endpoints.

Both routes answer 200 once the body has been read, whatever happens next:
providers retry non-2xx responses aggressively, and a payload we cannot use
gets no better on the second delivery. Failures are logged and alerted.
"""
import logging

from fastapi import APIRouter, Request, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from leadrelay.database import get_db
from leadrelay.schemas.api_responses import WebhookAck
from leadrelay.schemas.webhook_payloads import TwilioSmsPayload
from leadrelay.services.engagement import ingest_call_webhook, ingest_inbound_message
from leadrelay.utils.alerting import AlertType, send_alert
from leadrelay.utils.logging import mask_phone

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhook", tags=["webhooks"])


@router.post("/vapi/call-ended", response_model=WebhookAck)
async def vapi_call_ended_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Vapi end-of-call report (envelope or flat shape)."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Vapi webhook body is not valid JSON")
        return WebhookAck(status="unrecognized", detail="invalid JSON")

    try:
        return await ingest_call_webhook(db, payload)
    except Exception as e:
        logger.error("Vapi webhook processing failed: %s", str(e), exc_info=True)
        await send_alert(AlertType.WEBHOOK_FAILED, f"Call webhook processing failed: {str(e)[:200]}")
        return WebhookAck(status="error", detail="processing failed")


@router.post("/twilio/sms", response_model=WebhookAck)
async def twilio_sms_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Twilio inbound SMS webhook.
    Twilio sends form-encoded data, not JSON.
    """
    form_data = await request.form()
    sms = TwilioSmsPayload.model_validate(dict(form_data))
    logger.info("Inbound SMS from %s to %s", mask_phone(sms.From), mask_phone(sms.To))

    try:
        return await ingest_inbound_message(db, sms.From, sms.To, sms.Body, sms.MessageSid)
    except Exception as e:
        logger.error("Inbound SMS processing failed: %s", str(e), exc_info=True)
        await send_alert(AlertType.WEBHOOK_FAILED, f"Inbound SMS processing failed: {str(e)[:200]}")
        return WebhookAck(status="error", detail="processing failed")
