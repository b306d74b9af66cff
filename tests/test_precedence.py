from reconciliation.config import HISTORY, REGISTRATION, RUNNING_COSTS, SOURCE_ORDER, VALUATION
from reconciliation.precedence import FIELD_PRECEDENCE, check_precedence_table, resolve


def test_default_table_follows_source_order():
    assert check_precedence_table(FIELD_PRECEDENCE, SOURCE_ORDER) == []


def test_out_of_order_entries_reported():
    problems = check_precedence_table({"make": (HISTORY, REGISTRATION), "model": ("scraper",)}, SOURCE_ORDER)
    assert len(problems) == 2


def test_earlier_source_wins():
    values, sources = resolve({
        REGISTRATION: {"make": "FORD"},
        VALUATION: {"make": "Ford"},
        HISTORY: {"make": "FORD MOTOR CO"},
    })
    assert values["make"] == "FORD"
    assert sources["make"] == REGISTRATION


def test_missing_value_falls_through():
    values, sources = resolve({
        REGISTRATION: {"model": "  ", "year": None},
        RUNNING_COSTS: {"model": "FOCUS", "year": 2019},
    })
    assert values["model"] == "FOCUS"
    assert values["year"] == 2019
    assert sources == {"model": RUNNING_COSTS, "year": RUNNING_COSTS}


def test_sources_outside_field_list_ignored():
    values, _ = resolve({VALUATION: {"model": "M6 Gran Coupe", "variant": "Sport"}})
    assert "model" not in values
    assert "variant" not in values


def test_unknown_fields_dropped():
    values, _ = resolve({REGISTRATION: {"make": "FORD", "wheel_count": 4}})
    assert values == {"make": "FORD"}
