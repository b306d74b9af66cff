"""Which source may supply each logical field, in the order they are trusted.

Every list is a subsequence of ``SOURCE_ORDER``: a field can be restricted to
fewer sources, but never reorders them. Fields not listed here are dropped by
``resolve``.
"""
from __future__ import annotations

from typing import Any, Mapping

from reconciliation.coercion import is_present
from reconciliation.config import HISTORY, REGISTRATION, RUNNING_COSTS, SOURCE_ORDER, VALUATION

ALL = SOURCE_ORDER

FIELD_PRECEDENCE: dict[str, tuple[str, ...]] = {
    # identity
    "make": ALL,
    "model": (REGISTRATION, RUNNING_COSTS, HISTORY),
    "variant": (RUNNING_COSTS,),
    "year": (REGISTRATION, RUNNING_COSTS, HISTORY),
    "colour": (REGISTRATION, RUNNING_COSTS, HISTORY),
    "fuel_type": ALL,
    "engine_size": (REGISTRATION, RUNNING_COSTS),
    "transmission": (RUNNING_COSTS,),
    "body_type": (RUNNING_COSTS,),
    "doors": (RUNNING_COSTS,),
    "seats": (RUNNING_COSTS,),
    "emission_class": (RUNNING_COSTS,),
    # performance
    "power_bhp": (RUNNING_COSTS,),
    "torque_nm": (RUNNING_COSTS,),
    "acceleration_0_60_secs": (RUNNING_COSTS,),
    "top_speed_mph": (RUNNING_COSTS,),
    # running costs
    "urban_mpg": (RUNNING_COSTS,),
    "extra_urban_mpg": (RUNNING_COSTS,),
    "combined_mpg": (RUNNING_COSTS,),
    "annual_tax": (RUNNING_COSTS,),
    "insurance_group": (RUNNING_COSTS,),
    "co2_emissions": (REGISTRATION, RUNNING_COSTS),
    # MOT
    "mot_status": (REGISTRATION, RUNNING_COSTS),
    "mot_due_date": (REGISTRATION, RUNNING_COSTS),
    "mot_tests": (RUNNING_COSTS,),
    # whole blocks
    "valuation": (VALUATION,),
    "history": (HISTORY,),
}


def check_precedence_table(
    table: Mapping[str, tuple[str, ...]] = FIELD_PRECEDENCE,
    order: tuple[str, ...] = SOURCE_ORDER,
) -> list[str]:
    """Return a description of every entry that breaks the fixed source order."""
    problems: list[str] = []
    for name, sources in table.items():
        unknown = [s for s in sources if s not in order]
        if unknown:
            problems.append(f"{name}: unknown sources {unknown}")
            continue
        positions = [order.index(s) for s in sources]
        if positions != sorted(positions) or len(set(positions)) != len(positions):
            problems.append(f"{name}: {list(sources)} is not in source order")
    return problems


def resolve(
    contributions: Mapping[str, Mapping[str, Any]],
    table: Mapping[str, tuple[str, ...]] = FIELD_PRECEDENCE,
) -> tuple[dict[str, Any], dict[str, str]]:
    """Pick a value for every field from the first source in its list that has one.

    ``contributions`` maps a source name to the logical fields it produced.
    Returns the chosen values and, for each of them, the source it came from.
    """
    values: dict[str, Any] = {}
    field_sources: dict[str, str] = {}
    for name, sources in table.items():
        for source in sources:
            value = (contributions.get(source) or {}).get(name)
            if is_present(value):
                values[name] = value
                field_sources[name] = source
                break
    return values, field_sources
