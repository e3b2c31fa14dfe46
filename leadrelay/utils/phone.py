"""
Phone number normalization - E.164 format using the phonenumbers library.
Handles spaces, dashes, parentheses, trunk prefixes and missing country codes.
"""
import logging
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)


def normalize_phone(phone: Optional[str], default_region: Optional[str] = None) -> Optional[str]:
    """
    Normalize a phone number to E.164 format.

    - 07700 900000     → +447700900000 (region GB)
    - +44 7700 900000  → +447700900000
    - (512) 555-1234   → +15125551234 (region US)

    Returns None if the number cannot be parsed or is not a possible number.
    """
    if not phone or not phone.strip():
        return None

    if default_region is None:
        from leadrelay.config import get_settings
        default_region = get_settings().default_phone_region

    try:
        parsed = phonenumbers.parse(phone.strip(), default_region)
    except phonenumbers.NumberParseException:
        return None

    # Accept "possible" numbers, not only officially assigned ranges, so
    # reserved drama/test ranges still route.
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
