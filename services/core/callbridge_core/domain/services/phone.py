"""Phone number normalization.

Canonicalizes the loosely formatted numbers the provider hands us to E.164
so that identity and conversation lookups compare like with like.

    normalize_phone("(555) 123-4567")  # "+15551234567"
    normalize_phone("15551234567")     # "+15551234567"
"""

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")

# North American numbering plan
DEFAULT_COUNTRY_CODE = "1"


class InvalidPhoneNumberError(ValueError):
    """Raised when a phone number contains no digits."""

    pass


def normalize_phone(raw: Optional[str]) -> str:
    """Normalize a phone number to E.164.

    Non-digit characters are stripped. Ten-digit numbers are treated as
    national numbers and get the default country code; eleven-digit numbers
    starting with the country code and anything longer are kept as-is.

    Args:
        raw: The phone number as received.

    Returns:
        The E.164 form, e.g. "+15551234567".

    Raises:
        InvalidPhoneNumberError: If the input contains no digits.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if not digits:
        raise InvalidPhoneNumberError(f"invalid phone number: {raw!r}")

    if len(digits) == 10:
        return f"+{DEFAULT_COUNTRY_CODE}{digits}"
    return f"+{digits}"


def try_normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Like normalize_phone, but returns None instead of raising."""
    try:
        return normalize_phone(raw)
    except InvalidPhoneNumberError:
        return None

