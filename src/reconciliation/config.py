from __future__ import annotations

from dataclasses import dataclass

REGISTRATION = "registration"
VALUATION = "valuation"
RUNNING_COSTS = "running_costs"
HISTORY = "history"

# Sources are queried in this order and earlier sources win field conflicts.
SOURCE_ORDER: tuple[str, ...] = (REGISTRATION, VALUATION, RUNNING_COSTS, HISTORY)

CONFIDENCE_LEVELS: tuple[str, ...] = ("low", "medium", "high")


@dataclass(frozen=True)
class ReconciliationConfig:
    source_order: tuple[str, ...] = SOURCE_ORDER
    source_timeout_seconds: float = 10.0
    record_ttl_days: int = 30  # 0 keeps cached records forever
    default_mileage: int = 50_000
