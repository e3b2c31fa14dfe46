"""
Transactional email service - SendGrid, called from a thread pool.

Used for the booking-link email once a lead has replied with an address.
One send per call, no internal retries.
"""
import asyncio
import logging
from typing import Optional

from leadrelay.errors import PermanentDispatchFailure, TransientDispatchFailure

logger = logging.getLogger(__name__)

PROVIDER = "sendgrid"


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: Optional[str] = None,
    from_name: Optional[str] = None,
) -> str:
    """
    Send one transactional email. Returns the SendGrid message id (may be empty).
    Raises TransientDispatchFailure or PermanentDispatchFailure.
    """
    from leadrelay.config import get_settings
    settings = get_settings()

    if not settings.sendgrid_api_key:
        raise TransientDispatchFailure("SendGrid not configured", provider=PROVIDER)

    from sendgrid import SendGridAPIClient
    from sendgrid.helpers.mail import Mail, Email, To, Content

    message = Mail(
        from_email=Email(settings.sendgrid_from_email, from_name or settings.sendgrid_from_name),
        to_emails=To(to_email),
        subject=subject,
    )
    contents = []
    if text_content:
        contents.append(Content("text/plain", text_content))
    contents.append(Content("text/html", html_content))
    message.content = contents

    try:
        sg = SendGridAPIClient(api_key=settings.sendgrid_api_key)
        # Offload synchronous SendGrid SDK call to thread pool
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, lambda: sg.send(message))
    except Exception as e:
        status = getattr(e, "status_code", None)
        logger.error(
            "Transactional email failed: to=%s status=%s error=%s",
            to_email[:20] + "***", status, str(e),
        )
        # 400/403 from SendGrid: malformed address or rejected sender
        if status in (400, 403):
            raise PermanentDispatchFailure(str(e), provider=PROVIDER, status_code=status) from e
        raise TransientDispatchFailure(str(e) or type(e).__name__, provider=PROVIDER, status_code=status) from e

    message_id = response.headers.get("X-Message-Id", "") if response.headers else ""
    logger.info(
        "Transactional email sent: to=%s subject=%s", to_email[:20] + "***", subject[:40],
    )
    return message_id
