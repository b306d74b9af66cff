from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Mapping, Protocol, Sequence

from reconciliation.coercion import extract_int, extract_number, is_present
from reconciliation.config import SOURCE_ORDER
from reconciliation.data_models import MotBlock, PerformanceBlock, RunningCostsBlock, VehicleRecord
from reconciliation.errors import AllSourcesUnavailable, SourceTimeout
from reconciliation.precedence import FIELD_PRECEDENCE, check_precedence_table, resolve
from reconciliation.tax import estimate_annual_tax
from reconciliation.vrm import require_vrm
from vehicle_service.logging_config import log_data
from vehicle_service.sources import SourceResult

logger = logging.getLogger(__name__)

PERFORMANCE_FIELDS = ("power_bhp", "torque_nm", "acceleration_0_60_secs", "top_speed_mph")

# provenance of values derived from other fields rather than read from a source
CALCULATED = "calculated"


class VehicleSource(Protocol):
    name: str

    async def fetch(self, vrm: str, mileage: int | None = None) -> SourceResult: ...


class VehicleLookupEngine:
    """Queries every configured source in precedence order and merges the answers.

    Sources are awaited one after another, never raced, so the field a record
    ends up with depends only on the precedence table and not on which
    provider happened to answer first.
    """

    def __init__(
        self,
        sources: Sequence[VehicleSource],
        timeout_seconds: float = 10.0,
        precedence: Mapping[str, tuple[str, ...]] = FIELD_PRECEDENCE,
        source_order: tuple[str, ...] = SOURCE_ORDER,
    ) -> None:
        problems = check_precedence_table(precedence, source_order)
        if problems:
            raise ValueError(f"Invalid precedence table: {problems}")
        by_name = {s.name: s for s in sources}
        unknown = set(by_name) - set(source_order)
        if unknown:
            raise ValueError(f"Unknown vehicle data sources: {sorted(unknown)}")
        self.sources = [by_name[name] for name in source_order if name in by_name]
        self.source_order = source_order
        self.timeout_seconds = timeout_seconds
        self.precedence = precedence
        self.failure_counts: dict[str, int] = defaultdict(int)

    async def _call(self, source: VehicleSource, vrm: str, mileage: int | None) -> SourceResult:
        try:
            return await asyncio.wait_for(source.fetch(vrm, mileage=mileage), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            exc = SourceTimeout(source.name, f"no answer within {self.timeout_seconds:g}s")
            logger.warning("%s timed out for %s", source.name, vrm)
            return SourceResult(source=source.name, error=str(exc), error_kind=exc.kind)
        except Exception as exc:
            logger.warning("%s lookup raised for %s: %s", source.name, vrm, exc)
            return SourceResult(source=source.name, error=str(exc), error_kind="unexpected")

    async def lookup_vehicle(self, vrm: str, mileage: int | None = None) -> VehicleRecord:
        key = require_vrm(vrm)
        contributions: dict[str, dict[str, Any]] = {}
        failures: dict[str, str] = {}

        for source in self.sources:
            result = await self._call(source, key, mileage)
            if result.ok and any(is_present(v) for v in result.fields.values()):
                contributions[source.name] = result.fields
            else:
                failures[source.name] = result.error_kind or "empty_response"
                self.failure_counts[f"{source.name}_{failures[source.name]}"] += 1

        for name in self.source_order:
            if name not in contributions and name not in failures:
                failures[name] = "not_configured"

        if not contributions:
            logger.error("All vehicle data sources failed for %s", key, extra=log_data(failures=failures))
            raise AllSourcesUnavailable(key, failures)

        values, field_sources = resolve(contributions, self.precedence)
        record = build_record(key, values, field_sources, mileage=mileage)
        record.sources = {name: name in contributions for name in self.source_order}
        record.quota_exceeded_sources = [n for n, kind in failures.items() if kind == "quota_exceeded"]
        record.needs_completion = bool(record.quota_exceeded_sources)

        logger.info(
            "Merged vehicle record for %s from %d/%d sources",
            key, len(contributions), len(self.source_order),
            extra=log_data(sources=record.sources, failures=failures),
        )
        return record


def build_record(
    vrm: str,
    values: Mapping[str, Any],
    field_sources: Mapping[str, str],
    mileage: int | None = None,
) -> VehicleRecord:
    field_sources = dict(field_sources)
    mot = None
    if any(k in values for k in ("mot_status", "mot_due_date", "mot_tests")):
        mot = MotBlock(
            mot_status=values.get("mot_status"),
            mot_due_date=values.get("mot_due_date"),
            tests=list(values.get("mot_tests") or []),
        )
    performance = None
    if any(k in values for k in PERFORMANCE_FIELDS):
        performance = PerformanceBlock(**{k: extract_number(values.get(k)) for k in PERFORMANCE_FIELDS})

    annual_tax = extract_number(values.get("annual_tax"))
    if annual_tax is None:
        annual_tax = estimate_annual_tax(
            values.get("year"), values.get("co2_emissions"), values.get("engine_size"), values.get("fuel_type"),
        )
        if annual_tax is not None:
            field_sources["annual_tax"] = CALCULATED

    return VehicleRecord(
        vrm=vrm,
        make=values.get("make"),
        model=values.get("model"),
        variant=values.get("variant"),
        year=extract_int(values.get("year")),
        colour=values.get("colour"),
        fuel_type=values.get("fuel_type"),
        engine_size=extract_number(values.get("engine_size")),
        transmission=values.get("transmission"),
        body_type=values.get("body_type"),
        doors=extract_int(values.get("doors")),
        seats=extract_int(values.get("seats")),
        emission_class=values.get("emission_class"),
        mileage=mileage,
        valuation=values.get("valuation"),
        running_costs=RunningCostsBlock(
            urban_mpg=extract_number(values.get("urban_mpg")),
            extra_urban_mpg=extract_number(values.get("extra_urban_mpg")),
            combined_mpg=extract_number(values.get("combined_mpg")),
            annual_tax=annual_tax,
            insurance_group=values.get("insurance_group"),
            co2_emissions=extract_number(values.get("co2_emissions")),
        ),
        performance=performance,
        history=values.get("history"),
        mot=mot,
        field_sources=field_sources,
    )
