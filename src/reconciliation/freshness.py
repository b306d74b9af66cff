from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Mapping

from reconciliation.valuation import can_repair, needs_repair

Decision = Literal["fresh", "repair", "refetch"]


def _fetched_at(record: Mapping[str, Any]) -> datetime | None:
    value = record.get("fetched_at")
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def evaluate_freshness(
    record: Mapping[str, Any],
    *,
    ttl_days: int = 30,
    now: datetime | None = None,
) -> Decision:
    """Decide what to do with a cached vehicle record.

    An empty ``estimated_value`` that can be rebuilt from the flat prices is
    repaired locally; one that cannot forces a refetch. Records older than
    ``ttl_days`` (when positive) are refetched, everything else is served.
    """
    valuation = record.get("valuation")
    if needs_repair(valuation):
        return "repair" if can_repair(valuation) else "refetch"

    if ttl_days > 0:
        fetched = _fetched_at(record)
        now = now or datetime.now(timezone.utc)
        if fetched is None or now - fetched > timedelta(days=ttl_days):
            return "refetch"
    return "fresh"
