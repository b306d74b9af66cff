"""Estimated UK vehicle excise duty for records no provider priced.

Rates are the 2024/25 twelve-month standard rates. Cars first registered from
April 2017 pay a flat rate, March 2001 to March 2017 is banded on CO2, and
older cars are banded on engine size.
"""
from __future__ import annotations

from typing import Any

from reconciliation.coercion import extract_int, extract_number

FLAT_RATE_FROM_2017 = 190
PRE_2001_SMALL_ENGINE = 200
PRE_2001_LARGE_ENGINE = 325

# (upper CO2 bound in g/km, annual tax)
CO2_BANDS_2001_TO_2017: tuple[tuple[float, int], ...] = (
    (100, 0),
    (110, 20),
    (120, 35),
    (130, 150),
    (140, 180),
    (150, 210),
    (165, 255),
    (175, 295),
    (185, 340),
    (200, 395),
    (225, 650),
    (255, 1030),
    (float("inf"), 1385),
)


def co2_band_tax(co2: float) -> int:
    for upper, tax in CO2_BANDS_2001_TO_2017:
        if co2 <= upper:
            return tax
    return CO2_BANDS_2001_TO_2017[-1][1]


def estimate_annual_tax(
    year: Any,
    co2_emissions: Any = None,
    engine_size: Any = None,
    fuel_type: Any = None,
) -> int | None:
    """Annual tax in GBP, or ``None`` when the inputs cannot decide the band.

    ``engine_size`` is in litres. A missing year always gives ``None``.
    """
    year = extract_int(year)
    if year is None:
        return None
    if fuel_type == "Electric":
        return 0

    co2 = extract_number(co2_emissions)
    if year >= 2017:
        return 0 if co2 == 0 else FLAT_RATE_FROM_2017
    if year >= 2001:
        return None if co2 is None else co2_band_tax(co2)

    litres = extract_number(engine_size)
    if not litres:
        return None
    return PRE_2001_SMALL_ENGINE if litres <= 1.549 else PRE_2001_LARGE_ENGINE
