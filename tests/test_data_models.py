from datetime import datetime, timezone

from reconciliation.data_models import MotBlock, PerformanceBlock, RunningCostsBlock, ValuationBlock, VehicleRecord


def test_valuation_block_rebuilds_estimate_from_flat_prices():
    block = ValuationBlock(private_price=36971, dealer_price=41550, part_exchange_price=34694)
    assert block.estimated_value == {"private": 36971, "retail": 41550, "trade": 34694}
    assert not block.is_empty()


def test_valuation_block_from_legacy_camel_case():
    block = ValuationBlock.from_dict({
        "estimatedValue": {},
        "privatePrice": "36971",
        "dealerPrice": "41550",
        "partExchangePrice": "34694",
    })
    assert block.estimated_value == {"private": 36971.0, "retail": 41550.0, "trade": 34694.0}
    assert block.confidence == "medium"


def test_empty_valuation_serializes_estimate_as_none():
    block = ValuationBlock()
    assert block.is_empty()
    assert block.to_dict()["estimated_value"] is None


def test_running_costs_display_is_all_strings():
    costs = RunningCostsBlock(urban_mpg=45.0, combined_mpg=52.3, annual_tax=None, insurance_group="14E")
    shown = costs.for_display()
    assert shown["fuel_economy"] == {"urban": "45", "extra_urban": "", "combined": "52.3"}
    assert shown["annual_tax"] == ""
    assert shown["insurance_group"] == "14E"
    assert shown["co2_emissions"] == ""


def test_vehicle_record_dict_round_trip():
    fetched = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    record = VehicleRecord(
        vrm="AB12CDE",
        make="FORD",
        model="FOCUS",
        year=2019,
        valuation=ValuationBlock(private_price=9000, dealer_price=11000, part_exchange_price=8000),
        running_costs=RunningCostsBlock(combined_mpg=55.4),
        mot=MotBlock(mot_status="Valid", mot_due_date="2025-05-01"),
        field_sources={"make": "registration"},
        fetched_at=fetched,
    )
    record.sources["registration"] = True

    data = record.to_dict()
    assert data["_sources"] == {"registration": True, "valuation": False, "running_costs": False, "history": False}
    assert data["_field_sources"] == {"make": "registration"}
    assert data["fetched_at"] == fetched.isoformat()

    restored = VehicleRecord.from_dict(data)
    assert restored.make == "FORD"
    assert restored.valuation.estimated_value == {"private": 9000, "retail": 11000, "trade": 8000}
    assert restored.running_costs.combined_mpg == 55.4
    assert restored.mot.mot_status == "Valid"
    assert restored.fetched_at == fetched


def test_display_dict_uses_string_running_costs():
    record = VehicleRecord(vrm="AB12CDE", running_costs=RunningCostsBlock(annual_tax=190.0))
    shown = record.to_display_dict()
    assert shown["running_costs"]["annual_tax"] == "190"
    assert record.to_dict()["running_costs"]["annual_tax"] == 190.0


def test_body_and_performance_fields_round_trip():
    record = VehicleRecord(
        vrm="AB12CDE",
        doors=5,
        seats=5,
        emission_class="EURO 6",
        performance=PerformanceBlock(power_bhp=123.0, acceleration_0_60_secs=9.4),
    )
    data = record.to_dict()
    assert data["doors"] == 5
    assert data["performance"] == {"power_bhp": 123.0, "torque_nm": None, "acceleration_0_60_secs": 9.4,
                                   "top_speed_mph": None}

    restored = VehicleRecord.from_dict(data)
    assert restored.emission_class == "EURO 6"
    assert restored.performance.acceleration_0_60_secs == 9.4
    assert VehicleRecord.from_dict({"vrm": "AB12CDE"}).performance is None
