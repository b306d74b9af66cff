import asyncio

import pytest

from reconciliation.config import HISTORY, REGISTRATION, RUNNING_COSTS, SOURCE_ORDER, VALUATION
from reconciliation.data_models import HistoryBlock, ValuationBlock
from reconciliation.errors import AllSourcesUnavailable, InvalidRegistration
from vehicle_service.engine import VehicleLookupEngine
from vehicle_service.sources import SourceResult


class FakeSource:
    def __init__(self, name, fields=None, error_kind=None, delay=0.0, log=None):
        self.name = name
        self.fields = fields or {}
        self.error_kind = error_kind
        self.delay = delay
        self.log = log
        self.calls = 0

    async def fetch(self, vrm, mileage=None):
        self.calls += 1
        if self.log is not None:
            self.log.append(self.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error_kind:
            return SourceResult(source=self.name, error=f"{self.name} failed", error_kind=self.error_kind)
        return SourceResult(source=self.name, fields=dict(self.fields))


class ExplodingSource(FakeSource):
    async def fetch(self, vrm, mileage=None):
        raise RuntimeError("provider client bug")


def _all_sources(log=None, **overrides):
    defaults = {
        REGISTRATION: FakeSource(REGISTRATION, {"make": "FORD", "model": "FOCUS", "year": 2019, "colour": "Blue",
                                                "mot_status": "Valid"}, log=log),
        VALUATION: FakeSource(VALUATION, {
            "make": "Ford",
            "valuation": ValuationBlock(private_price=9000, dealer_price=11000, part_exchange_price=8000),
        }, log=log),
        RUNNING_COSTS: FakeSource(RUNNING_COSTS, {"make": "FORD", "variant": "Zetec", "combined_mpg": 55.4,
                                                  "annual_tax": 190.0, "mot_tests": [{"test_date": "2024-04-20"}]},
                                  log=log),
        HISTORY: FakeSource(HISTORY, {"history": HistoryBlock(previous_keepers=2), "model": "FOCUS ZETEC"}, log=log),
    }
    defaults.update(overrides)
    return defaults


@pytest.mark.asyncio
async def test_merge_follows_precedence():
    engine = VehicleLookupEngine(list(_all_sources().values()))
    record = await engine.lookup_vehicle("ab12 cde", mileage=42000)

    assert record.vrm == "AB12CDE"
    assert record.make == "FORD"
    assert record.field_sources["make"] == REGISTRATION
    assert record.model == "FOCUS"
    assert record.variant == "Zetec"
    assert record.valuation.estimated_value == {"private": 9000, "retail": 11000, "trade": 8000}
    assert record.running_costs.combined_mpg == 55.4
    assert record.running_costs.annual_tax == 190.0
    assert record.history.previous_keepers == 2
    assert record.mot.mot_status == "Valid"
    assert record.mot.tests == [{"test_date": "2024-04-20"}]
    assert record.mileage == 42000
    assert record.sources == {name: True for name in SOURCE_ORDER}
    assert not record.needs_completion


@pytest.mark.asyncio
async def test_body_and_performance_fields_merged():
    sources = _all_sources(**{RUNNING_COSTS: FakeSource(RUNNING_COSTS, {
        "doors": 5, "seats": 5, "emission_class": "EURO 6", "power_bhp": 123.0, "top_speed_mph": 120,
    })})
    record = await VehicleLookupEngine(list(sources.values())).lookup_vehicle("AB12CDE")
    assert (record.doors, record.seats, record.emission_class) == (5, 5, "EURO 6")
    assert record.performance.power_bhp == 123.0
    assert record.performance.torque_nm is None
    assert record.field_sources["doors"] == RUNNING_COSTS
    assert record.to_dict()["performance"]["top_speed_mph"] == 120


@pytest.mark.asyncio
async def test_missing_annual_tax_calculated_from_co2_and_year():
    sources = _all_sources(**{
        REGISTRATION: FakeSource(REGISTRATION, {"make": "FORD", "year": 2012, "co2_emissions": 139}),
        RUNNING_COSTS: FakeSource(RUNNING_COSTS, {"combined_mpg": 55.4}),
    })
    record = await VehicleLookupEngine(list(sources.values())).lookup_vehicle("AB12CDE")
    assert record.running_costs.annual_tax == 180
    assert record.field_sources["annual_tax"] == "calculated"
    assert record.performance is None


@pytest.mark.asyncio
async def test_supplied_annual_tax_is_not_recalculated():
    record = await VehicleLookupEngine(list(_all_sources().values())).lookup_vehicle("AB12CDE")
    assert record.running_costs.annual_tax == 190.0
    assert record.field_sources["annual_tax"] == RUNNING_COSTS

@pytest.mark.asyncio
async def test_sources_queried_sequentially_in_fixed_order():
    log = []
    sources = list(_all_sources(log=log).values())
    engine = VehicleLookupEngine(list(reversed(sources)))
    await engine.lookup_vehicle("AB12CDE")
    assert log == list(SOURCE_ORDER)


@pytest.mark.asyncio
async def test_registration_failure_falls_back_to_later_sources():
    sources = _all_sources(**{REGISTRATION: FakeSource(REGISTRATION, error_kind="unavailable")})
    record = await VehicleLookupEngine(list(sources.values())).lookup_vehicle("AB12CDE")
    assert record.make == "Ford"
    assert record.field_sources["make"] == VALUATION
    assert record.model == "FOCUS ZETEC"
    assert record.sources[REGISTRATION] is False


@pytest.mark.asyncio
async def test_slow_history_times_out_without_failing_lookup():
    sources = _all_sources(**{HISTORY: FakeSource(HISTORY, {"history": HistoryBlock()}, delay=1.0)})
    engine = VehicleLookupEngine(list(sources.values()), timeout_seconds=0.05)
    record = await engine.lookup_vehicle("AB12CDE")
    assert record.sources[HISTORY] is False
    assert record.sources[REGISTRATION] is True
    assert record.history is None
    assert engine.failure_counts["history_timeout"] == 1


@pytest.mark.asyncio
async def test_unexpected_exception_is_contained():
    sources = _all_sources(**{VALUATION: ExplodingSource(VALUATION)})
    record = await VehicleLookupEngine(list(sources.values())).lookup_vehicle("AB12CDE")
    assert record.sources[VALUATION] is False
    assert record.valuation is None


@pytest.mark.asyncio
async def test_all_sources_failing_raises():
    sources = [FakeSource(name, error_kind="unavailable") for name in SOURCE_ORDER]
    with pytest.raises(AllSourcesUnavailable) as exc_info:
        await VehicleLookupEngine(sources).lookup_vehicle("AB12CDE")
    assert exc_info.value.vrm == "AB12CDE"
    assert set(exc_info.value.failures) == set(SOURCE_ORDER)


@pytest.mark.asyncio
async def test_empty_successes_count_as_failures():
    sources = [FakeSource(name, fields={"make": "  "}) for name in SOURCE_ORDER]
    with pytest.raises(AllSourcesUnavailable):
        await VehicleLookupEngine(sources).lookup_vehicle("AB12CDE")


@pytest.mark.asyncio
async def test_quota_flags_record_for_completion():
    sources = _all_sources(**{VALUATION: FakeSource(VALUATION, error_kind="quota_exceeded")})
    record = await VehicleLookupEngine(list(sources.values())).lookup_vehicle("AB12CDE")
    assert record.needs_completion
    assert record.quota_exceeded_sources == [VALUATION]
    assert record.sources[VALUATION] is False


@pytest.mark.asyncio
async def test_unconfigured_source_reported_as_missing():
    sources = [_all_sources()[REGISTRATION]]
    record = await VehicleLookupEngine(sources).lookup_vehicle("AB12CDE")
    assert record.sources == {REGISTRATION: True, VALUATION: False, RUNNING_COSTS: False, HISTORY: False}


@pytest.mark.asyncio
async def test_invalid_registration_makes_no_calls():
    sources = _all_sources()
    with pytest.raises(InvalidRegistration):
        await VehicleLookupEngine(list(sources.values())).lookup_vehicle("!!!")
    assert all(s.calls == 0 for s in sources.values())


def test_unknown_source_rejected():
    with pytest.raises(ValueError):
        VehicleLookupEngine([FakeSource("scraper")])
