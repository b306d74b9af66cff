from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Mapping

import httpx

from reconciliation.coercion import clean_string, extract_int, extract_number
from reconciliation.config import HISTORY, REGISTRATION, RUNNING_COSTS, VALUATION
from reconciliation.data_models import HistoryBlock, ValuationBlock
from reconciliation.errors import (
    InvalidResponseShape,
    QuotaExceeded,
    SourceError,
    SourceTimeout,
    SourceUnavailable,
)
from reconciliation.normalizer import (
    clean_model_name,
    normalize_colour,
    normalize_fuel_type,
    normalize_make,
    normalize_transmission,
    split_vehicle_description,
)
from reconciliation.validation import (
    HISTORY_SCHEMA,
    REGISTRATION_SCHEMA,
    VALUATION_SCHEMA,
    validate_and_sanitize,
)
from reconciliation.valuation import parse_confidence

logger = logging.getLogger(__name__)

_UNKNOWN_STATUSES = {"unknown", "no details held by dvla", "not available"}


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _items(value: Any) -> list[Mapping[str, Any]]:
    return [v for v in value if isinstance(v, Mapping)] if isinstance(value, list) else []


@dataclass
class SourceResult:
    source: str
    fields: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def quota_exceeded(self) -> bool:
        return self.error_kind == QuotaExceeded.kind


class ProviderClient:
    """Shared HTTP plumbing for the vehicle data providers.

    Subclasses implement ``_fetch_fields`` and raise ``SourceError`` or
    ``InvalidResponseShape``; ``fetch`` turns those into a failed
    ``SourceResult`` so one provider can never break a lookup.
    """

    name = "provider"
    quota_status_codes: tuple[int, ...] = (403,)

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._enabled = bool(api_key)

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def fetch(self, vrm: str, mileage: int | None = None) -> SourceResult:
        if not self.enabled:
            return SourceResult(source=self.name, error=f"{self.name}_not_configured", error_kind="not_configured")
        try:
            fields = await self._fetch_fields(vrm, mileage)
        except SourceError as exc:
            logger.warning("%s lookup failed for %s: %s", self.name, vrm, exc)
            return SourceResult(source=self.name, error=str(exc), error_kind=exc.kind)
        except InvalidResponseShape as exc:
            logger.warning("%s returned an unusable payload for %s: %s", self.name, vrm, exc.errors)
            return SourceResult(source=self.name, error=str(exc), error_kind="invalid_response")
        return SourceResult(source=self.name, fields=fields)

    async def _fetch_fields(self, vrm: str, mileage: int | None) -> dict[str, Any]:
        raise NotImplementedError

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise SourceTimeout(self.name, str(exc) or "request timed out") from exc
        except httpx.HTTPError as exc:
            raise SourceUnavailable(self.name, str(exc) or type(exc).__name__) from exc

        if resp.status_code in self.quota_status_codes:
            raise QuotaExceeded(self.name, f"HTTP {resp.status_code}")
        if resp.is_error:
            raise SourceUnavailable(self.name, f"HTTP {resp.status_code}", status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise InvalidResponseShape(["response body is not JSON"], source=self.name) from exc


# ── Registration (DVLA Vehicle Enquiry Service) ─────────────────────


def parse_registration(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = validate_and_sanitize(payload, REGISTRATION_SCHEMA)
    capacity = extract_number(data.get("engineCapacity"))
    return {
        "make": normalize_make(data.get("make")),
        "model": clean_model_name(data.get("model")),
        "year": extract_int(data.get("yearOfManufacture")),
        "colour": normalize_colour(data.get("colour")),
        "fuel_type": normalize_fuel_type(data.get("fuelType")),
        "engine_size": round(capacity / 1000, 1) if capacity else None,
        "co2_emissions": extract_number(data.get("co2Emissions")),
        "mot_status": _known_status(data.get("motStatus")),
        "mot_due_date": clean_string(data.get("motExpiryDate")),
    }


class RegistrationClient(ProviderClient):
    """DVLA Vehicle Enquiry Service: POST {registrationNumber}."""

    name = REGISTRATION
    quota_status_codes = (403, 429)

    async def _fetch_fields(self, vrm: str, mileage: int | None) -> dict[str, Any]:
        payload = await self._request_json(
            "POST", self.base_url,
            json={"registrationNumber": vrm},
            headers={"x-api-key": self.api_key, "Accept": "application/json"},
        )
        return parse_registration(payload)


# ── Valuation (CheckCarDetails vehiclevaluation) ────────────────────


def parse_valuation(payload: Mapping[str, Any], mileage: int | None = None) -> dict[str, Any]:
    data = validate_and_sanitize(payload, VALUATION_SCHEMA)
    prices = _mapping(data.get("ValuationList"))
    estimate = {
        k: extract_number(v)
        for k, v in _mapping(data.get("estimatedValue")).items()
        if k in ("private", "retail", "trade") and extract_number(v) is not None
    }
    trade_average = extract_number(prices.get("TradeAverage"))
    block = ValuationBlock(
        estimated_value=estimate,
        private_price=extract_number(prices.get("PrivateClean")) or estimate.get("private"),
        dealer_price=extract_number(prices.get("DealerForecourt")) or estimate.get("retail"),
        # TradeAverage stands in for a missing part-exchange price
        part_exchange_price=extract_number(prices.get("PartExchange")) or estimate.get("trade") or trade_average,
        trade_price=trade_average,
        vehicle_description=clean_string(data.get("VehicleDescription")),
        mileage=extract_int(data.get("Mileage")) or mileage,
    )
    if block.is_empty():
        raise InvalidResponseShape(["valuation contains no prices"], source=VALUATION)
    block.confidence = parse_confidence(data.get("confidence"), block.estimated_value)

    described = split_vehicle_description(block.vehicle_description)
    return {
        "valuation": block,
        "make": normalize_make(described["make"]),
        "fuel_type": normalize_fuel_type(described["fuel_type"]),
    }


class ValuationClient(ProviderClient):
    name = VALUATION

    def __init__(self, *args: Any, default_mileage: int = 50_000, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.default_mileage = default_mileage

    async def _fetch_fields(self, vrm: str, mileage: int | None) -> dict[str, Any]:
        mileage = self.default_mileage if mileage is None else mileage
        payload = await self._request_json(
            "GET", f"{self.base_url}/vehicledata/vehiclevaluation",
            params={"apikey": self.api_key, "vrm": vrm, "mileage": mileage},
        )
        return parse_valuation(payload, mileage=mileage)


# ── Running costs + MOT ─────────────────────────────────────────────


def parse_uk_vehicle_data(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise InvalidResponseShape(["ukvehicledata response is not an object"], source=RUNNING_COSTS)

    vehicle_id = _mapping(payload.get("VehicleIdentification"))
    body = _mapping(payload.get("BodyDetails"))
    performance = _mapping(payload.get("Performance"))
    economy = _mapping(performance.get("FuelEconomy"))
    statistics = _mapping(performance.get("Statistics"))
    model_data = _mapping(payload.get("ModelData"))
    gearbox = _mapping(payload.get("Transmission"))
    dvla_tech = _mapping(payload.get("DvlaTechnicalDetails"))
    emissions = _mapping(payload.get("Emissions"))
    smmt = _mapping(payload.get("SmmtDetails"))
    ved_rate = _mapping(_mapping(_mapping(payload.get("VehicleExciseDutyDetails")).get("VedRate")).get("Standard"))

    capacity = extract_number(dvla_tech.get("EngineCapacityCc") or smmt.get("EngineCapacity"))
    group = smmt.get("InsuranceGroup") or model_data.get("InsuranceGroup")
    fields = {
        "make": normalize_make(vehicle_id.get("DvlaMake") or model_data.get("Make")),
        "model": clean_model_name(vehicle_id.get("DvlaModel") or model_data.get("Model")),
        "variant": clean_string(model_data.get("Range") or model_data.get("ModelVariant") or smmt.get("Range")),
        "year": extract_int(vehicle_id.get("YearOfManufacture")),
        "colour": normalize_colour(vehicle_id.get("DvlaColour")),
        "fuel_type": normalize_fuel_type(model_data.get("FuelType") or vehicle_id.get("DvlaFuelType")),
        "transmission": normalize_transmission(gearbox.get("TransmissionType") or smmt.get("Transmission")),
        "body_type": clean_string(body.get("BodyStyle") or vehicle_id.get("DvlaBodyType") or smmt.get("BodyStyle")),
        "engine_size": round(capacity / 1000, 1) if capacity else None,
        "doors": extract_int(smmt.get("NumberOfDoors") or body.get("NumberOfDoors")),
        "seats": extract_int(
            smmt.get("NumberOfSeats") or body.get("NumberOfSeats") or dvla_tech.get("SeatCountIncludingDriver")
        ),
        "emission_class": clean_string(
            smmt.get("EmissionClass") or emissions.get("EmissionClass") or vehicle_id.get("EmissionClass")
        ),
        "power_bhp": extract_number(_mapping(performance.get("Power")).get("Bhp") or smmt.get("PowerBhp")),
        "torque_nm": extract_number(_mapping(performance.get("Torque")).get("Nm") or smmt.get("TorqueNm")),
        "acceleration_0_60_secs": extract_number(statistics.get("ZeroToSixtyMph")),
        "top_speed_mph": extract_number(statistics.get("MaxSpeedMph")),
        # SmmtDetails is the most reliable source of running costs
        "urban_mpg": extract_number(smmt.get("UrbanColdMpg") or economy.get("UrbanColdMpg")),
        "extra_urban_mpg": extract_number(smmt.get("ExtraUrbanMpg") or economy.get("ExtraUrbanMpg")),
        "combined_mpg": extract_number(smmt.get("CombinedMpg") or economy.get("CombinedMpg")),
        "co2_emissions": extract_number(smmt.get("Co2") or emissions.get("ManufacturerCo2") or vehicle_id.get("DvlaCo2")),
        "insurance_group": None if group in (None, "") else str(group),
        "annual_tax": extract_number(
            ved_rate.get("TwelveMonths") or model_data.get("AnnualTax") or model_data.get("VehicleTax")
        ),
    }
    if not any(v is not None for v in fields.values()):
        raise InvalidResponseShape(["ukvehicledata contains no vehicle fields"], source=RUNNING_COSTS)
    return fields


def _parse_test_date(value: Any) -> date | None:
    text = clean_string(value)
    if text is None:
        return None
    try:
        return date.fromisoformat(text[:10].replace(".", "-"))
    except ValueError:
        return None


def parse_mot_history(payload: Any, today: date | None = None) -> dict[str, Any]:
    """Parse the MOT history API (a list with one entry per vehicle)."""
    vehicles = payload if isinstance(payload, list) else [payload]
    vehicle = vehicles[0] if vehicles and isinstance(vehicles[0], Mapping) else None
    if vehicle is None:
        raise InvalidResponseShape(["MOT history response has no vehicle"], source=RUNNING_COSTS)

    tests: list[dict[str, Any]] = []
    for test in _items(vehicle.get("motTests")):
        completed = _parse_test_date(test.get("completedDate") or test.get("testDate"))
        if completed is None:
            continue
        expiry = _parse_test_date(test.get("expiryDate"))
        unit = str(test.get("odometerUnit") or "").lower()
        defects = _items(test.get("rfrAndComments") or test.get("defects"))
        tests.append({
            "test_date": completed.isoformat(),
            "expiry_date": expiry.isoformat() if expiry else None,
            "result": test.get("testResult") or test.get("result") or "UNKNOWN",
            "odometer_value": extract_int(test.get("odometerValue")),
            "odometer_unit": "mi" if unit == "mi" else "km",
            "advisories": [
                d.get("text") for d in defects
                if d.get("type") == "ADVISORY" and clean_string(d.get("text"))
            ],
        })
    tests.sort(key=lambda t: t["test_date"], reverse=True)

    today = today or date.today()
    due = next((t["expiry_date"] for t in tests if t["expiry_date"]), None)
    if due is None:
        status = "No results" if not tests else None
    else:
        status = "Valid" if date.fromisoformat(due) >= today else "Expired"

    capacity = extract_number(vehicle.get("engineSize"))
    return {
        "make": normalize_make(vehicle.get("make")),
        "model": clean_model_name(vehicle.get("model")),
        "colour": normalize_colour(vehicle.get("primaryColour") or vehicle.get("colour")),
        "fuel_type": normalize_fuel_type(vehicle.get("fuelType")),
        "engine_size": round(capacity / 1000, 1) if capacity else None,
        "year": extract_int(vehicle.get("manufactureYear")),
        "mot_status": status,
        "mot_due_date": due,
        "mot_tests": tests,
    }


class MotHistoryClient(ProviderClient):
    name = RUNNING_COSTS

    async def get_mot_fields(self, vrm: str) -> dict[str, Any]:
        payload = await self._request_json(
            "GET", f"{self.base_url}/mot-tests",
            params={"registration": vrm},
            headers={"x-api-key": self.api_key, "Accept": "application/json+v6"},
        )
        return parse_mot_history(payload)

    async def _fetch_fields(self, vrm: str, mileage: int | None) -> dict[str, Any]:
        return await self.get_mot_fields(vrm)


class RunningCostsClient(ProviderClient):
    """CheckCarDetails ukvehicledata, topped up with the MOT history API.

    Either half may fail on its own; the source only fails when both do. Each
    half gets its own share of ``timeout`` so a slow first call cannot use up
    the whole per-source deadline.
    """

    name = RUNNING_COSTS
    # both shares together stay inside the engine deadline
    half_share = 0.45

    def __init__(self, *args: Any, mot_client: MotHistoryClient | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.mot_client = mot_client

    async def _within_share(self, call: Awaitable[Any]) -> Any:
        budget = self.timeout * self.half_share
        try:
            return await asyncio.wait_for(call, timeout=budget)
        except asyncio.TimeoutError as exc:
            raise SourceTimeout(self.name, f"no answer within {budget:g}s") from exc

    @property
    def enabled(self) -> bool:
        return self._enabled or (self.mot_client is not None and self.mot_client.enabled)

    async def _fetch_fields(self, vrm: str, mileage: int | None) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        failures: list[SourceError | InvalidResponseShape] = []

        if self._enabled:
            try:
                payload = await self._within_share(self._request_json(
                    "GET", f"{self.base_url}/vehicledata/ukvehicledata",
                    params={"apikey": self.api_key, "vrm": vrm},
                ))
                fields.update(parse_uk_vehicle_data(payload))
            except (SourceError, InvalidResponseShape) as exc:
                failures.append(exc)

        if self.mot_client is not None and self.mot_client.enabled:
            try:
                mot_fields = await self._within_share(self.mot_client.get_mot_fields(vrm))
            except (SourceError, InvalidResponseShape) as exc:
                failures.append(exc)
            else:
                for key, value in mot_fields.items():
                    if fields.get(key) is None:
                        fields[key] = value

        if any(v is not None for v in fields.values()):
            for exc in failures:
                logger.warning("running costs partially degraded for %s: %s", vrm, exc)
            return fields
        quota = next((e for e in failures if isinstance(e, QuotaExceeded)), None)
        if quota is not None:
            raise quota
        if failures:
            raise failures[0]
        raise InvalidResponseShape(["no running cost or MOT data"], source=RUNNING_COSTS)


# ── History (CheckCarDetails carhistorycheck) ───────────────────────


def _write_off_category(history: Mapping[str, Any]) -> str | None:
    record = history.get("writeoff") or history.get("WriteOff")
    if not (history.get("writeOffRecord") or record):
        return None
    entry = record[0] if isinstance(record, list) and record else record
    if not isinstance(entry, Mapping):
        return "unknown"
    if entry.get("category"):
        return str(entry["category"]).upper()
    status = str(entry.get("status") or "").upper()
    for cat in ("A", "B", "C", "D", "S", "N"):
        if f"CAT {cat}" in status or f"CATEGORY {cat}" in status:
            return cat
    return "unknown"


def _history_model(payload: Mapping[str, Any]) -> str | None:
    registration = _mapping(payload.get("VehicleRegistration"))
    smmt = _mapping(payload.get("SmmtDetails"))
    for candidate in (registration.get("Model"), smmt.get("ModelVariant"), smmt.get("Series")):
        model = clean_model_name(candidate)
        if model:
            return model
    return None


def parse_history(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = validate_and_sanitize(payload, HISTORY_SCHEMA)
    history = _mapping(data.get("VehicleHistory"))
    registration = _mapping(data.get("VehicleRegistration"))

    keepers = None
    for key in ("NumberOfPreviousKeepers", "numberOfPreviousKeepers", "PreviousKeepers"):
        if history.get(key) is not None:
            keepers = extract_int(history[key])
            break

    changes = []
    for change in _items(history.get("KeeperChangesList")):
        changes.append({
            "date": clean_string(change.get("DateOfTransaction")),
            "previous_keepers": extract_int(change.get("NumberOfPreviousKeepers")) or 0,
            "date_of_last_keeper_change": clean_string(change.get("DateOfLastKeeperChange")),
        })

    block = HistoryBlock(
        previous_keepers=keepers,
        v5c_certificate_count=extract_int(history.get("V5CCertificateCount")) or 0,
        plate_change_count=extract_int(history.get("PlateChangeCount")) or 0,
        colour_change_count=extract_int(history.get("ColourChangeCount")) or 0,
        keeper_changes=changes,
        write_off_category=_write_off_category(history),
    )
    return {
        "history": block,
        "make": normalize_make(registration.get("Make") or _mapping(data.get("SmmtDetails")).get("Marque")),
        "model": _history_model(data),
        "year": extract_int(registration.get("YearOfManufacture")),
        "colour": normalize_colour(registration.get("Colour")),
        "fuel_type": normalize_fuel_type(registration.get("FuelType")),
    }


class HistoryClient(ProviderClient):
    name = HISTORY

    async def _fetch_fields(self, vrm: str, mileage: int | None) -> dict[str, Any]:
        payload = await self._request_json(
            "GET", f"{self.base_url}/vehicledata/carhistorycheck",
            params={"apikey": self.api_key, "vrm": vrm},
        )
        return parse_history(payload)


def _known_status(value: Any) -> str | None:
    text = clean_string(value)
    if text is None or text.lower() in _UNKNOWN_STATUSES:
        return None
    return text
