from __future__ import annotations

import re
import unicodedata

__all__ = ["normalize_jp_phone", "phone_last_digits"]

_NON_DIGIT_RE = re.compile(r"\D+")


def normalize_jp_phone(value: str | int | None) -> str | None:
    """Coerce a JP phone number to its 10/11 digit domestic form.

    Country codes (``+81``, ``0081``, bare ``81``) are replaced by the trunk
    ``0``; a number that lost its leading ``0`` (spreadsheet cells stored as
    numbers) gets it back. Returns None when the result is not a plausible
    domestic number.
    """
    if value is None:
        return None
    text = unicodedata.normalize("NFKC", str(value)).strip()
    if not text:
        return None
    digits = _NON_DIGIT_RE.sub("", text)
    if not digits:
        return None

    if digits.startswith("0081"):
        digits = "0" + digits[4:].lstrip("0")
    elif digits.startswith("81") and (text.startswith("+") or len(digits) in (11, 12, 13)):
        digits = "0" + digits[2:].lstrip("0")

    if not digits.startswith("0") and len(digits) in (9, 10):
        digits = "0" + digits

    if digits.startswith("00") or len(digits) not in (10, 11):
        return None
    return digits


def phone_last_digits(value: str | None, count: int = 4) -> str | None:
    normalized = normalize_jp_phone(value)
    if not normalized:
        return None
    return normalized[-count:]
