"""
Matola - Phone Numbers
Malawi phone validation and normalisation.

"+265 991 234 567", "0991234567" and "265991234567" are the same subscriber;
uniqueness checks compare the normalised E.164 form.
"""

import re
from typing import Optional

from matola_models_v1 import PaymentProvider

COUNTRY_CODE = "265"

_E164_PATTERN = re.compile(r'^\+265([89])(\d)(\d{7})$')
_SEPARATORS = re.compile(r'[\s\-().]')


def clean(phone: str) -> str:
    return _SEPARATORS.sub("", phone or "")


def is_valid_phone(phone: str) -> bool:
    """E.164 Malawi mobile number: +265, then 8 or 9, then 8 more digits."""
    return bool(_E164_PATTERN.match(clean(phone)))


def normalize_phone(phone: str) -> str:
    """Normalise any accepted local or international form to +265XXXXXXXXX.

    Raises ValueError for anything that is not a Malawi mobile number.
    """
    digits = clean(phone)
    if not digits:
        raise ValueError("Phone number required")

    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("00" + COUNTRY_CODE):
        digits = digits[2 + len(COUNTRY_CODE):]
    elif digits.startswith(COUNTRY_CODE) and len(digits) == len(COUNTRY_CODE) + 9:
        digits = digits[len(COUNTRY_CODE):]
    if digits.startswith("0"):
        digits = digits[1:]

    normalized = f"+{COUNTRY_CODE}{digits}"
    if not _E164_PATTERN.match(normalized):
        raise ValueError(f"Invalid phone number format: {phone}")
    return normalized


def detect_mobile_money_provider(phone: str) -> Optional[PaymentProvider]:
    """Best-effort provider lookup by prefix (99x/98[5-9]/88[5-9] Airtel, 98[0-4]/88[0-4] TNM)."""
    try:
        local = normalize_phone(phone)[len(COUNTRY_CODE) + 1:]
    except ValueError:
        return None

    prefix, third = local[:2], int(local[2])
    if prefix == "99":
        return PaymentProvider.AIRTEL_MONEY
    if prefix in ("98", "88"):
        return PaymentProvider.TNM_MPAMBA if third <= 4 else PaymentProvider.AIRTEL_MONEY
    return None
