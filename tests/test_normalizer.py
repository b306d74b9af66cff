import pytest

from reconciliation.errors import InvalidRegistration
from reconciliation.normalizer import (
    clean_model_name,
    normalize_fuel_type,
    normalize_images,
    normalize_make,
    normalize_transmission,
    split_vehicle_description,
)
from reconciliation.vrm import is_valid_uk_vrm, normalize_vrm, require_vrm


def test_photos_replace_images():
    payload = {"title": "Focus", "photos": [{"id": 1, "url": "https://img/a.jpg", "publicId": "a"}, "https://img/b.jpg"],
               "images": ["https://img/old.jpg"]}
    out = normalize_images(payload)
    assert out["images"] == ["https://img/a.jpg", "https://img/b.jpg"]
    assert "photos" not in out
    assert out["title"] == "Focus"
    assert "photos" in payload


def test_flat_images_kept():
    out = normalize_images({"images": ["https://img/a.jpg"]})
    assert out["images"] == ["https://img/a.jpg"]


def test_empty_photos_keep_existing_images():
    out = normalize_images({"photos": [], "images": ["https://img/a.jpg"]})
    assert out["images"] == ["https://img/a.jpg"]


def test_missing_images_become_empty_list():
    assert normalize_images({})["images"] == []


def test_normalize_images_is_idempotent():
    once = normalize_images({"photos": [{"url": "https://img/a.jpg"}]})
    assert normalize_images(once) == once


def test_photos_without_urls_keep_existing_images(caplog):
    payload = {"photos": [{"id": 1, "publicId": "a"}, {"url": ""}], "images": ["https://img/a.jpg"]}
    with caplog.at_level("WARNING"):
        out = normalize_images(payload)
    assert out["images"] == ["https://img/a.jpg"]
    assert "photos" not in out
    assert "Skipped 2 of 2 advert photos" in caplog.text


def test_photos_without_urls_and_no_images():
    assert normalize_images({"photos": [{"id": 1}]})["images"] == []


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("FORD", "Ford"),
        ("  land rover ", "Land Rover"),
        ("MERCEDES-BENZ", "Mercedes-Benz"),
        ("vw", "Volkswagen"),
        ("BMW", "BMW"),
        ("mclaren", "McLaren"),
        ("GREAT   WALL", "Great Wall"),
        ("", None),
        (None, None),
    ],
)
def test_normalize_make(raw, expected):
    assert normalize_make(raw) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("PETROL", "Petrol"),
        ("DIESEL", "Diesel"),
        ("Hybrid Electric (Petrol)", "Petrol Hybrid"),
        ("Petrol Plug-in Hybrid", "Petrol Plug-in Hybrid"),
        ("ELECTRICITY", "Electric"),
        ("", None),
    ],
)
def test_normalize_fuel_type(raw, expected):
    assert normalize_fuel_type(raw) == expected


def test_normalize_transmission():
    assert normalize_transmission("MANUAL 6 GEARS") == "Manual"
    assert normalize_transmission("Automatic") == "Automatic"
    assert normalize_transmission("CVT") == "Semi-Automatic"


def test_engine_size_is_not_a_model():
    assert clean_model_name("2.0L") is None
    assert clean_model_name("1.6 Diesel") is None
    assert clean_model_name("UNKNOWN") is None
    assert clean_model_name("FOCUS ZETEC") == "FOCUS ZETEC"


def test_split_vehicle_description():
    out = split_vehicle_description("BMW M6 Gran Coupe Auto [Petrol / Automatic]")
    assert out == {"make": "BMW", "model": "M6 Gran Coupe Auto", "fuel_type": "Petrol"}


def test_vrm_normalization():
    assert normalize_vrm(" ab12 cde ") == "AB12CDE"
    assert require_vrm("a123 bcd") == "A123BCD"
    assert is_valid_uk_vrm("ABC123D")
    assert not is_valid_uk_vrm("AB12CDEFG")


@pytest.mark.parametrize("bad", ["", "   ", None, 12345, "not a plate!"])
def test_invalid_registration_rejected(bad):
    with pytest.raises(InvalidRegistration):
        require_vrm(bad)
