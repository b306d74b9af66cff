from __future__ import annotations

import re
from typing import Any, Mapping

from reconciliation.errors import InvalidPostcode

_POSTCODE = re.compile(r"^[A-Z]{1,2}\d{1,2}[A-Z]?\s*\d[A-Z]{2}$", re.IGNORECASE)
_EMBEDDED_POSTCODE = re.compile(r"\b[A-Z]{1,2}\d{1,2}[A-Z]?\s*\d[A-Z]{2}\b", re.IGNORECASE)
_UNPARISHED = re.compile(r",?\s*\(?unparished area\)?", re.IGNORECASE)


def is_valid_uk_postcode(postcode: Any) -> bool:
    return isinstance(postcode, str) and bool(_POSTCODE.match(postcode.strip()))


def normalize_postcode(postcode: Any) -> str:
    if not is_valid_uk_postcode(postcode):
        raise InvalidPostcode(f"Invalid UK postcode format: {postcode!r}")
    return re.sub(r"\s+", "", postcode).upper()


def clean_location_name(result: Mapping[str, Any]) -> str:
    """Town-level name for a postcodes.io result: parish, then ward, then district."""
    name = result.get("parish") or result.get("admin_ward") or result.get("admin_district") or "Unknown"
    name = _UNPARISHED.sub("", str(name)).strip()
    if "," in name:
        name = name.split(",")[0].strip()
    name = _EMBEDDED_POSTCODE.sub("", name).strip()
    return name or "Unknown"
