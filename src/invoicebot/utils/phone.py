"""
Sender phone normalization for inbound WhatsApp messages.

WhatsApp delivers the sender as E.164 digits without "+". Numbers are
validated with Google's libphonenumber (via the phonenumbers package) and
always stored in that same digits-only form, so the conversation and rate
limit keys stay stable whatever formatting a payload uses.
"""

import re
from typing import Optional

import phonenumbers
from phonenumbers import NumberParseException

# Default region for numbers that arrive without a country code
DEFAULT_REGION = "CZ"

_NON_DIGITS = re.compile(r"[^0-9+]")


def strip_phone(phone: str) -> str:
    """
    Remove everything but digits and "+".

    Example:
        >>> strip_phone("+420 777-123-456")
        '+420777123456'
    """
    return _NON_DIGITS.sub("", phone or "")


def normalize_sender(phone: str, region: Optional[str] = None) -> str:
    """
    Normalize a WhatsApp sender to E.164 digits without "+".

    Numbers libphonenumber cannot parse or validate are kept as their
    stripped digits rather than rejected: the provider is the authority on
    who sent the message.

    Examples:
        >>> normalize_sender("420777123456")
        '420777123456'
        >>> normalize_sender("777 123 456")  # local Czech format
        '420777123456'
        >>> normalize_sender("")
        ''
    """
    stripped = strip_phone(phone)
    if not stripped:
        return ""

    candidate = stripped
    if not candidate.startswith("+") and len(candidate) >= 10:
        candidate = f"+{candidate}"

    try:
        parsed = phonenumbers.parse(candidate, region or DEFAULT_REGION)
    except NumberParseException:
        return stripped.lstrip("+")

    if not phonenumbers.is_valid_number(parsed):
        return stripped.lstrip("+")

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164).lstrip("+")
