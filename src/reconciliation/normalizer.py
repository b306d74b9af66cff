from __future__ import annotations

import logging
import re
from typing import Any, Mapping

logger = logging.getLogger(__name__)

_ENGINE_SIZE_ONLY = re.compile(r"^\d+\.?\d*\s*(l|litre|liter)?\s*(petrol|diesel|hybrid|electric)?$", re.IGNORECASE)
_BRACKETED = re.compile(r"\[(.*?)\]")

# Marketplace spelling of makes whose casing or punctuation differs from title case.
# Anything not listed falls back to title case.
_MAKE_NAMES: dict[str, str] = {
    "ac": "AC",
    "alfa romeo": "Alfa Romeo",
    "alfa-romeo": "Alfa Romeo",
    "alfaromeo": "Alfa Romeo",
    "aston martin": "Aston Martin",
    "aston-martin": "Aston Martin",
    "astonmartin": "Aston Martin",
    "bac": "BAC",
    "bmw": "BMW",
    "byd": "BYD",
    "citroën": "Citroen",
    "cupra": "CUPRA",
    "ds": "DS AUTOMOBILES",
    "ds automobiles": "DS AUTOMOBILES",
    "ds-automobiles": "DS AUTOMOBILES",
    "e-cobra": "E-COBRA",
    "gmc": "GMC",
    "gwm": "GWM",
    "ineos": "INEOS",
    "jaecoo": "JAECOO",
    "jba": "JBA",
    "kgm": "KGM",
    "ktm": "KTM",
    "land rover": "Land Rover",
    "land-rover": "Land Rover",
    "landrover": "Land Rover",
    "ldv": "LDV",
    "levc": "LEVC",
    "maxus": "MAXUS",
    "mclaren": "McLaren",
    "mercedes": "Mercedes-Benz",
    "mercedes-benz": "Mercedes-Benz",
    "mercedes benz": "Mercedes-Benz",
    "mercedesbenz": "Mercedes-Benz",
    "mev": "MEV",
    "mg": "MG",
    "mini": "MINI",
    "moke": "MOKE",
    "omoda": "OMODA",
    "rbw": "RBW",
    "rolls-royce": "Rolls-Royce",
    "rolls royce": "Rolls-Royce",
    "rollsroyce": "Rolls-Royce",
    "ruf": "RUF",
    "seat": "SEAT",
    "škoda": "Skoda",
    "ssangyong": "SsangYong",
    "tvr": "TVR",
    "vw": "Volkswagen",
    "vrs": "VRS",
    "xpeng": "XPENG",
}


def normalize_make(make: Any) -> str | None:
    """Marketplace spelling of a make: "FORD" -> "Ford", "MERCEDES BENZ" -> "Mercedes-Benz"."""
    if not isinstance(make, str) or not make.strip():
        return None
    value = " ".join(make.split())
    known = _MAKE_NAMES.get(value.lower())
    if known is not None:
        return known
    return " ".join(word[:1].upper() + word[1:].lower() for word in value.split(" "))


def normalize_images(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of an advert payload whose photos live in a flat ``images`` list.

    The upload widget sends ``photos`` as ``{id, url, publicId}`` descriptors,
    stored adverts carry ``images`` as URL strings. Non-empty ``photos`` wins and
    is dropped from the output; an already flat payload is returned unchanged.
    Descriptors without a URL are skipped, and when none of them has one the
    existing ``images`` are kept.
    """
    normalized = dict(payload)
    photos = normalized.pop("photos", None)
    urls = [url for url in (_photo_url(p) for p in photos or []) if url]
    if photos and len(urls) < len(photos):
        logger.warning("Skipped %d of %d advert photos without a url", len(photos) - len(urls), len(photos))
    if urls:
        normalized["images"] = urls
    elif normalized.get("images") is None:
        normalized["images"] = []
    else:
        normalized["images"] = list(normalized["images"])
    return normalized


def _photo_url(photo: Any) -> str | None:
    if isinstance(photo, str):
        return photo or None
    if isinstance(photo, Mapping) and isinstance(photo.get("url"), str):
        return photo["url"] or None
    return None


def normalize_fuel_type(fuel_type: Any) -> str | None:
    if not isinstance(fuel_type, str) or not fuel_type.strip():
        return None
    value = fuel_type.strip().lower()

    if "plug-in" in value and "hybrid" in value:
        if "petrol" in value:
            return "Petrol Plug-in Hybrid"
        if "diesel" in value:
            return "Diesel Plug-in Hybrid"
        return "Plug-in Hybrid"
    if "hybrid" in value:
        if "petrol" in value or "gasoline" in value:
            return "Petrol Hybrid"
        if "diesel" in value:
            return "Diesel Hybrid"
        return "Hybrid"
    if "petrol" in value or "gasoline" in value:
        return "Petrol"
    if "diesel" in value:
        return "Diesel"
    if "electric" in value or value == "ev":
        return "Electric"
    return fuel_type.strip().capitalize()


def normalize_transmission(transmission: Any) -> str | None:
    if not isinstance(transmission, str) or not transmission.strip():
        return None
    value = transmission.strip().lower()
    if "manual" in value:
        return "Manual"
    if "semi" in value or "cvt" in value or "dsg" in value:
        return "Semi-Automatic"
    if "auto" in value:
        return "Automatic"
    return transmission.strip().capitalize()


def normalize_colour(colour: Any) -> str | None:
    # DVLA reports colours in upper case
    if not isinstance(colour, str) or not colour.strip():
        return None
    return colour.strip().capitalize()


def clean_model_name(model: Any) -> str | None:
    if not isinstance(model, str):
        return None
    value = model.strip()
    if not value or value.lower() == "unknown":
        return None
    if _ENGINE_SIZE_ONLY.match(value):
        return None
    return value


def split_vehicle_description(description: Any) -> dict[str, str | None]:
    """Best-effort make/model/fuel from a valuation description.

    "BMW M6 Gran Coupe Auto [Petrol / Automatic]" gives make "BMW", model
    "M6 Gran Coupe Auto" and fuel "Petrol".
    """
    out: dict[str, str | None] = {"make": None, "model": None, "fuel_type": None}
    if not isinstance(description, str) or not description.strip():
        return out

    bracket = _BRACKETED.search(description)
    if bracket:
        fuel = bracket.group(1).split("/")[0].strip()
        out["fuel_type"] = fuel or None

    words = _BRACKETED.sub("", description).split()
    if len(words) < 2:
        return out
    out["make"] = words[0]
    out["model"] = " ".join(words[1:6])
    return out
