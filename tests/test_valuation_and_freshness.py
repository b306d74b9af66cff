from datetime import datetime, timedelta, timezone

from reconciliation.freshness import evaluate_freshness
from reconciliation.valuation import can_repair, needs_repair, parse_confidence, repair_valuation

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _broken_valuation():
    return {
        "estimated_value": {},
        "private_price": 36971,
        "dealer_price": 41550,
        "part_exchange_price": 34694,
        "confidence": "medium",
    }


def test_repair_rebuilds_estimate():
    repaired = repair_valuation(_broken_valuation())
    assert repaired["estimated_value"] == {"private": 36971, "retail": 41550, "trade": 34694}
    assert repaired["private_price"] == 36971


def test_repair_is_idempotent():
    once = repair_valuation(_broken_valuation())
    assert repair_valuation(once) == once


def test_repair_does_not_mutate_input():
    valuation = _broken_valuation()
    repair_valuation(valuation)
    assert valuation["estimated_value"] == {}


def test_repair_handles_legacy_camel_case():
    repaired = repair_valuation({"estimatedValue": {}, "privatePrice": "9,500"})
    assert repaired["estimated_value"] == {"private": 9500.0}
    assert "estimatedValue" not in repaired


def test_nothing_to_repair_from():
    valuation = {"estimated_value": {}, "private_price": None}
    assert needs_repair(valuation)
    assert not can_repair(valuation)
    assert repair_valuation(valuation) == valuation


def test_populated_estimate_left_alone():
    valuation = {"estimated_value": {"private": 1}, "private_price": 2}
    assert not needs_repair(valuation)
    assert repair_valuation(valuation) == valuation


def test_parse_confidence():
    assert parse_confidence("HIGH", {}) == "high"
    assert parse_confidence(None, {"private": 1, "retail": 2, "trade": 3}) == "medium"
    assert parse_confidence("bogus", {"private": 1}) == "low"


def test_freshness_repair_when_flat_prices_present():
    record = {"valuation": _broken_valuation(), "fetched_at": NOW.isoformat()}
    assert evaluate_freshness(record, now=NOW) == "repair"


def test_freshness_refetch_when_nothing_to_repair_from():
    record = {"valuation": {"estimated_value": None}, "fetched_at": NOW.isoformat()}
    assert evaluate_freshness(record, now=NOW) == "refetch"


def test_freshness_ttl():
    old = {"valuation": None, "fetched_at": (NOW - timedelta(days=31)).isoformat()}
    recent = {"valuation": None, "fetched_at": (NOW - timedelta(days=2)).isoformat()}
    assert evaluate_freshness(old, ttl_days=30, now=NOW) == "refetch"
    assert evaluate_freshness(recent, ttl_days=30, now=NOW) == "fresh"
    assert evaluate_freshness(old, ttl_days=0, now=NOW) == "fresh"


def test_repair_takes_priority_over_staleness():
    record = {"valuation": _broken_valuation(), "fetched_at": (NOW - timedelta(days=90)).isoformat()}
    assert evaluate_freshness(record, ttl_days=30, now=NOW) == "repair"
