"""
Phone identity normalization.

Clients are recognized by phone number within a company. Numbers arrive in many
shapes ("(11) 99999-8888", "11999998888", "+55 11 99999-8888", "011 9999-8888"),
so every lookup and the (company_id, normalized_phone) uniqueness constraint go
through one canonical key: the Brazilian country code followed by the national
number, digits only.

Usage:
    from .phone_identity import normalize_phone, phones_equal

    normalize_phone("(11) 99999-8888")          # "5511999998888"
    phones_equal("5511999998888", "11999998888")  # True
"""

import re

COUNTRY_CODE = "55"
MIN_IDENTITY_DIGITS = 10

_NON_DIGITS = re.compile(r"\D", re.ASCII)


def digits_only(raw: str | None) -> str:
    if not raw:
        return ""
    return _NON_DIGITS.sub("", raw)


def normalize_phone(raw: str | None) -> str:
    """
    Canonicalize a raw phone string into the client identity key.

    Never raises. Shapes that are not recognized as Brazilian numbers are
    returned as bare digits, and empty input gives "".
    """
    digits = digits_only(raw)

    if len(digits) == 11 and digits.startswith("0"):
        # Trunk prefix from the old dialing format
        digits = digits[1:]
    elif len(digits) in (12, 13) and digits.startswith(COUNTRY_CODE):
        digits = digits[len(COUNTRY_CODE):]

    if len(digits) in (10, 11):
        return f"{COUNTRY_CODE}{digits}"
    return digits


def phones_equal(phone1: str | None, phone2: str | None) -> bool:
    """True when both numbers resolve to the same, plausibly complete, identity key."""
    normalized1 = normalize_phone(phone1)
    normalized2 = normalize_phone(phone2)
    return normalized1 == normalized2 and len(normalized1) >= MIN_IDENTITY_DIGITS


def national_number(raw: str | None) -> str:
    """Area code + subscriber number, without the country code."""
    normalized = normalize_phone(raw)
    if len(normalized) in (12, 13) and normalized.startswith(COUNTRY_CODE):
        return normalized[len(COUNTRY_CODE):]
    return normalized


def format_phone_for_display(raw: str) -> str:
    """Format as (11) 1234-5678 / (11) 91234-5678, or return the input unchanged."""
    national = national_number(raw)
    if len(national) == 10:
        return f"({national[:2]}) {national[2:6]}-{national[6:]}"
    if len(national) == 11:
        return f"({national[:2]}) {national[2:7]}-{national[7:]}"
    return raw


def is_valid_brazilian_phone(raw: str | None) -> bool:
    national = national_number(raw)
    if len(national) not in (10, 11):
        return False

    area_code = int(national[:2])
    if area_code < 11 or area_code > 99:
        return False

    # 11-digit numbers are mobiles and carry the leading 9
    if len(national) == 11 and national[2] != "9":
        return False

    return True
