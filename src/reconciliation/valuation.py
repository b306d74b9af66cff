"""Valuation block helpers.

Cached records written by older code paths sometimes carry an empty
``estimated_value`` mapping next to perfectly good flat prices. These helpers
rebuild the nested mapping from the flat fields so the record can be served
without another (quota-limited) upstream valuation call.
"""
from __future__ import annotations

from typing import Any, Mapping

from reconciliation.coercion import extract_number, is_present
from reconciliation.config import CONFIDENCE_LEVELS

# estimated_value key -> flat field names (snake_case first, legacy camelCase second)
_FLAT_FIELDS: dict[str, tuple[str, str]] = {
    "private": ("private_price", "privatePrice"),
    "retail": ("dealer_price", "dealerPrice"),
    "trade": ("part_exchange_price", "partExchangePrice"),
}


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def estimated_value_of(valuation: Mapping[str, Any]) -> dict[str, Any]:
    value = _first(valuation, "estimated_value", "estimatedValue")
    return dict(value) if isinstance(value, Mapping) else {}


def estimated_from_flat(valuation: Mapping[str, Any]) -> dict[str, Any]:
    rebuilt: dict[str, Any] = {}
    for key, names in _FLAT_FIELDS.items():
        number = extract_number(_first(valuation, *names))
        if number is not None:
            rebuilt[key] = number
    return rebuilt


def needs_repair(valuation: Any) -> bool:
    if not isinstance(valuation, Mapping):
        return False
    return not is_present(estimated_value_of(valuation))


def can_repair(valuation: Any) -> bool:
    return needs_repair(valuation) and bool(estimated_from_flat(valuation))


def repair_valuation(valuation: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``valuation`` with ``estimated_value`` rebuilt when empty.

    A block that already has a non-empty estimate, or has nothing to rebuild
    from, is returned as an unchanged copy, so repairing twice is the same as
    repairing once.
    """
    repaired = dict(valuation)
    if not can_repair(valuation):
        return repaired
    repaired.pop("estimatedValue", None)
    repaired["estimated_value"] = estimated_from_flat(valuation)
    return repaired


def parse_confidence(raw: Any, estimate: Mapping[str, Any]) -> str:
    if isinstance(raw, str) and raw.lower() in CONFIDENCE_LEVELS:
        return raw.lower()
    present = sum(1 for k in ("private", "retail", "trade") if estimate.get(k) is not None)
    if present == 3:
        return "medium"
    return "low"
