"""
Message templates - defaults for every outbound text the core sends.
Tenants override any key through their `templates` config.
Templates use {variable} substitution. Every SMS carries opt-out language.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES = {
    "followup_sms": (
        "Hi {name}, this is {business_name}. We tried to reach you by phone. "
        "Reply YES for a quick call back. Reply STOP to opt out."
    ),
    "email_request_sms": (
        "Hi {name}, thanks for your interest! Reply with your email address "
        "and we'll send you a link to book a time. Reply STOP to opt out."
    ),
    "booking_email_subject": "Book your call with {business_name}",
    "booking_email_html": (
        "<p>Hi {name},</p>"
        "<p>Thanks for speaking with {business_name}. "
        "Pick a time that suits you here: <a href=\"{booking_link}\">{booking_link}</a></p>"
        "<p>If you have any questions, just reply to this email.</p>"
    ),
}


class SafeDict(dict):
    """Dict that returns '{key}' for missing keys instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(
    template_key: str,
    overrides: Optional[dict] = None,
    **kwargs,
) -> str:
    """
    Render a template with variable substitution.
    Tenant overrides win over defaults; unknown placeholders are left as-is.
    """
    text = (overrides or {}).get(template_key) or DEFAULT_TEMPLATES.get(template_key)
    if text is None:
        logger.warning("Unknown template key: %s", template_key)
        return ""

    try:
        return text.format_map(SafeDict(kwargs))
    except Exception as e:
        logger.debug("Template rendering failed for key substitution: %s", str(e))
        return text
