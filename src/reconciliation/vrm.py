from __future__ import annotations

import re
from typing import Any

from reconciliation.errors import InvalidRegistration

_WHITESPACE = re.compile(r"\s+")

# current (AB12CDE), prefix (A123BCD), suffix (ABC123D), dateless both ways
_UK_PATTERNS = (
    re.compile(r"^[A-Z]{2}\d{2}[A-Z]{3}$"),
    re.compile(r"^[A-Z]\d{1,3}[A-Z]{3}$"),
    re.compile(r"^[A-Z]{3}\d{1,3}[A-Z]$"),
    re.compile(r"^[A-Z]{1,3}\d{1,4}$"),
    re.compile(r"^\d{1,4}[A-Z]{1,3}$"),
)


def normalize_vrm(vrm: Any) -> str:
    if not isinstance(vrm, str):
        raise InvalidRegistration(vrm)
    cleaned = _WHITESPACE.sub("", vrm).upper()
    if not cleaned:
        raise InvalidRegistration(vrm)
    return cleaned


def is_valid_uk_vrm(vrm: Any) -> bool:
    try:
        cleaned = normalize_vrm(vrm)
    except InvalidRegistration:
        return False
    return any(p.match(cleaned) for p in _UK_PATTERNS)


def require_vrm(vrm: Any) -> str:
    """Normalize ``vrm`` and reject anything that is not a UK registration mark."""
    cleaned = normalize_vrm(vrm)
    if not any(p.match(cleaned) for p in _UK_PATTERNS):
        raise InvalidRegistration(vrm)
    return cleaned
