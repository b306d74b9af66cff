from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from reconciliation.coercion import coerce_display_string, extract_int, extract_number
from reconciliation.config import SOURCE_ORDER
from reconciliation.valuation import (
    estimated_from_flat,
    estimated_value_of,
    parse_confidence,
    repair_valuation,
)

IDENTITY_FIELDS: tuple[str, ...] = (
    "make",
    "model",
    "variant",
    "year",
    "colour",
    "fuel_type",
    "engine_size",
    "transmission",
    "body_type",
    "doors",
    "seats",
    "emission_class",
)


@dataclass
class ValuationBlock:
    estimated_value: dict[str, Any] = field(default_factory=dict)
    private_price: float | None = None
    dealer_price: float | None = None
    part_exchange_price: float | None = None
    trade_price: float | None = None
    confidence: str = "medium"
    vehicle_description: str | None = None
    mileage: int | None = None

    def __post_init__(self) -> None:
        if not self.estimated_value:
            self.estimated_value = estimated_from_flat(self.flat_prices())

    def flat_prices(self) -> dict[str, Any]:
        return {
            "private_price": self.private_price,
            "dealer_price": self.dealer_price,
            "part_exchange_price": self.part_exchange_price,
        }

    def is_empty(self) -> bool:
        return not self.estimated_value

    def to_dict(self) -> dict[str, Any]:
        return {
            "estimated_value": dict(self.estimated_value) or None,
            **self.flat_prices(),
            "trade_price": self.trade_price,
            "confidence": self.confidence,
            "vehicle_description": self.vehicle_description,
            "mileage": self.mileage,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValuationBlock":
        repaired = repair_valuation(data)
        estimate = estimated_value_of(repaired)
        return cls(
            estimated_value=estimate,
            private_price=extract_number(repaired.get("private_price", repaired.get("privatePrice"))),
            dealer_price=extract_number(repaired.get("dealer_price", repaired.get("dealerPrice"))),
            part_exchange_price=extract_number(repaired.get("part_exchange_price", repaired.get("partExchangePrice"))),
            trade_price=extract_number(repaired.get("trade_price", repaired.get("tradePrice"))),
            confidence=parse_confidence(repaired.get("confidence"), estimate),
            vehicle_description=repaired.get("vehicle_description") or repaired.get("vehicleDescription"),
            mileage=extract_int(repaired.get("mileage")),
        )


@dataclass
class RunningCostsBlock:
    urban_mpg: float | None = None
    extra_urban_mpg: float | None = None
    combined_mpg: float | None = None
    annual_tax: float | None = None
    insurance_group: str | None = None
    co2_emissions: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fuel_economy": {
                "urban": self.urban_mpg,
                "extra_urban": self.extra_urban_mpg,
                "combined": self.combined_mpg,
            },
            "annual_tax": self.annual_tax,
            "insurance_group": self.insurance_group,
            "co2_emissions": self.co2_emissions,
        }

    def for_display(self) -> dict[str, Any]:
        """Same shape as ``to_dict`` with every leaf a string ("" when absent)."""
        raw = self.to_dict()
        return {
            "fuel_economy": {k: coerce_display_string(v) for k, v in raw["fuel_economy"].items()},
            "annual_tax": coerce_display_string(raw["annual_tax"]),
            "insurance_group": coerce_display_string(raw["insurance_group"]),
            "co2_emissions": coerce_display_string(raw["co2_emissions"]),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "RunningCostsBlock":
        data = data or {}
        economy = data.get("fuel_economy") or data.get("fuelEconomy") or {}
        group = data.get("insurance_group", data.get("insuranceGroup"))
        return cls(
            urban_mpg=extract_number(economy.get("urban")),
            extra_urban_mpg=extract_number(economy.get("extra_urban", economy.get("extraUrban"))),
            combined_mpg=extract_number(economy.get("combined")),
            annual_tax=extract_number(data.get("annual_tax", data.get("annualTax"))),
            insurance_group=None if group in (None, "") else str(group),
            co2_emissions=extract_number(data.get("co2_emissions", data.get("co2Emissions"))),
        )


@dataclass
class PerformanceBlock:
    power_bhp: float | None = None
    torque_nm: float | None = None
    acceleration_0_60_secs: float | None = None
    top_speed_mph: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "power_bhp": self.power_bhp,
            "torque_nm": self.torque_nm,
            "acceleration_0_60_secs": self.acceleration_0_60_secs,
            "top_speed_mph": self.top_speed_mph,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PerformanceBlock":
        return cls(**{k: extract_number(data.get(k)) for k in cls().to_dict()})


@dataclass
class HistoryBlock:
    previous_keepers: int | None = None
    v5c_certificate_count: int | None = None
    plate_change_count: int | None = None
    colour_change_count: int | None = None
    keeper_changes: list[dict[str, Any]] = field(default_factory=list)
    write_off_category: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous_keepers": self.previous_keepers,
            "v5c_certificate_count": self.v5c_certificate_count,
            "plate_change_count": self.plate_change_count,
            "colour_change_count": self.colour_change_count,
            "keeper_changes": [dict(k) for k in self.keeper_changes],
            "write_off_category": self.write_off_category,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HistoryBlock":
        return cls(
            previous_keepers=extract_int(data.get("previous_keepers")),
            v5c_certificate_count=extract_int(data.get("v5c_certificate_count")),
            plate_change_count=extract_int(data.get("plate_change_count")),
            colour_change_count=extract_int(data.get("colour_change_count")),
            keeper_changes=list(data.get("keeper_changes") or []),
            write_off_category=data.get("write_off_category"),
        )


@dataclass
class MotBlock:
    mot_status: str | None = None
    mot_due_date: str | None = None
    tests: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mot_status": self.mot_status,
            "mot_due_date": self.mot_due_date,
            "tests": [dict(t) for t in self.tests],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MotBlock":
        return cls(
            mot_status=data.get("mot_status"),
            mot_due_date=data.get("mot_due_date"),
            tests=list(data.get("tests") or []),
        )


@dataclass
class VehicleRecord:
    vrm: str
    make: str | None = None
    model: str | None = None
    variant: str | None = None
    year: int | None = None
    colour: str | None = None
    fuel_type: str | None = None
    engine_size: float | None = None
    transmission: str | None = None
    body_type: str | None = None
    doors: int | None = None
    seats: int | None = None
    emission_class: str | None = None
    mileage: int | None = None
    valuation: ValuationBlock | None = None
    running_costs: RunningCostsBlock = field(default_factory=RunningCostsBlock)
    performance: PerformanceBlock | None = None
    history: HistoryBlock | None = None
    mot: MotBlock | None = None
    sources: dict[str, bool] = field(default_factory=lambda: {name: False for name in SOURCE_ORDER})
    field_sources: dict[str, str] = field(default_factory=dict)
    needs_completion: bool = False
    quota_exceeded_sources: list[str] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"vrm": self.vrm}
        for name in IDENTITY_FIELDS:
            out[name] = getattr(self, name)
        out["mileage"] = self.mileage
        out["valuation"] = self.valuation.to_dict() if self.valuation else None
        out["running_costs"] = self.running_costs.to_dict()
        out["performance"] = self.performance.to_dict() if self.performance else None
        out["history"] = self.history.to_dict() if self.history else None
        out["mot"] = self.mot.to_dict() if self.mot else None
        out["_sources"] = dict(self.sources)
        out["_field_sources"] = dict(self.field_sources)
        out["needs_completion"] = self.needs_completion
        out["quota_exceeded_sources"] = list(self.quota_exceeded_sources)
        out["fetched_at"] = self.fetched_at.isoformat()
        return out

    def to_display_dict(self) -> dict[str, Any]:
        out = self.to_dict()
        out["running_costs"] = self.running_costs.for_display()
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VehicleRecord":
        fetched_at = data.get("fetched_at")
        if isinstance(fetched_at, str):
            fetched_at = datetime.fromisoformat(fetched_at)
        if not isinstance(fetched_at, datetime):
            fetched_at = datetime.now(timezone.utc)
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)

        sources = {name: False for name in SOURCE_ORDER}
        sources.update({k: bool(v) for k, v in (data.get("_sources") or {}).items()})
        valuation = data.get("valuation")
        history = data.get("history")
        mot = data.get("mot")
        performance = data.get("performance")
        return cls(
            vrm=data["vrm"],
            make=data.get("make"),
            model=data.get("model"),
            variant=data.get("variant"),
            year=extract_int(data.get("year")),
            colour=data.get("colour"),
            fuel_type=data.get("fuel_type"),
            engine_size=extract_number(data.get("engine_size")),
            transmission=data.get("transmission"),
            body_type=data.get("body_type"),
            doors=extract_int(data.get("doors")),
            seats=extract_int(data.get("seats")),
            emission_class=data.get("emission_class"),
            mileage=extract_int(data.get("mileage")),
            valuation=ValuationBlock.from_dict(valuation) if isinstance(valuation, Mapping) else None,
            running_costs=RunningCostsBlock.from_dict(data.get("running_costs")),
            performance=PerformanceBlock.from_dict(performance) if isinstance(performance, Mapping) else None,
            history=HistoryBlock.from_dict(history) if isinstance(history, Mapping) else None,
            mot=MotBlock.from_dict(mot) if isinstance(mot, Mapping) else None,
            sources=sources,
            field_sources=dict(data.get("_field_sources") or {}),
            needs_completion=bool(data.get("needs_completion", False)),
            quota_exceeded_sources=list(data.get("quota_exceeded_sources") or []),
            fetched_at=fetched_at,
        )
