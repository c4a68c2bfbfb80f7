"""Brazilian CNPJ detection used while awaiting a customer identifier."""

from __future__ import annotations

import re
from collections.abc import Iterable

CNPJ_PATTERN = re.compile(r"(?<!\d)(\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2})(?!\d)")

_FIRST_WEIGHTS = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_SECOND_WEIGHTS = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def normalize_cnpj(value: str) -> str:
    return re.sub(r"\D", "", value)


def _check_digit(digits: str, weights: tuple[int, ...]) -> int:
    remainder = sum(int(d) * w for d, w in zip(digits, weights)) % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cnpj(value: str) -> bool:
    """Validate length and both check digits; repeated digits are rejected."""

    digits = normalize_cnpj(value)
    if len(digits) != 14 or digits == digits[0] * 14:
        return False
    first = _check_digit(digits[:12], _FIRST_WEIGHTS)
    second = _check_digit(digits[:12] + str(first), _SECOND_WEIGHTS)
    return digits[12:] == f"{first}{second}"


def format_cnpj(value: str) -> str:
    digits = normalize_cnpj(value)
    if len(digits) != 14:
        return value
    return f"{digits[:2]}.{digits[2:5]}.{digits[5:8]}/{digits[8:12]}-{digits[12:]}"


def find_cnpj(text: str | None) -> str | None:
    """Return the first valid CNPJ in ``text`` as bare digits."""

    if not text:
        return None
    for match in CNPJ_PATTERN.finditer(text):
        digits = normalize_cnpj(match.group(1))
        if is_valid_cnpj(digits):
            return digits
    return None


def scan_messages(bodies: Iterable[str | None]) -> str | None:
    """Return the first valid CNPJ across ``bodies`` (newest first by convention)."""

    for body in bodies:
        found = find_cnpj(body)
        if found:
            return found
    return None


__all__ = [
    "CNPJ_PATTERN",
    "find_cnpj",
    "format_cnpj",
    "is_valid_cnpj",
    "normalize_cnpj",
    "scan_messages",
]
