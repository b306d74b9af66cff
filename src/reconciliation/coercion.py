from __future__ import annotations

import math
import re
from typing import Any

_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def extract_number(value: Any) -> int | float | None:
    """Pull a number out of whatever an upstream payload put in a field.

    Numbers pass through untouched. Strings lose every character that is not a
    digit, ``.`` or ``-`` ("17.5 mpg" -> 17.5, "£1,250" -> 1250.0). Anything that
    cannot be read as a number comes back as ``None``; this never raises.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        cleaned = _NON_NUMERIC.sub("", value)
        try:
            parsed = float(cleaned)
        except ValueError:
            return None
        return None if math.isnan(parsed) else parsed
    return None


def extract_int(value: Any) -> int | None:
    number = extract_number(value)
    if number is None or math.isinf(number):
        return None
    return int(number)


def coerce_display_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def clean_string(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def is_present(value: Any) -> bool:
    """True for values that should count as supplied by a source."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (dict, list, tuple, set)):
        return len(value) > 0
    return True
