from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from reconciliation.coercion import extract_number
from reconciliation.errors import InvalidResponseShape


@dataclass(frozen=True)
class ProviderSchema:
    name: str
    required: tuple[str, ...] = ()
    numeric: tuple[str, ...] = ()
    strings: tuple[str, ...] = ()
    mappings: tuple[str, ...] = ()
    any_of: tuple[str, ...] = ()
    optional_numeric: tuple[str, ...] = ()
    status_enums: tuple[str, ...] = ()


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


REGISTRATION_SCHEMA = ProviderSchema(
    name="registration",
    required=("registrationNumber", "make", "model", "colour", "fuelType", "yearOfManufacture"),
    numeric=("yearOfManufacture", "engineCapacity", "co2Emissions", "revenueWeight"),
    strings=("registrationNumber", "make", "model", "colour", "fuelType"),
    optional_numeric=("engineCapacity", "co2Emissions", "revenueWeight"),
    status_enums=("taxStatus", "motStatus"),
)

VALUATION_SCHEMA = ProviderSchema(
    name="valuation",
    any_of=("ValuationList", "estimatedValue"),
    mappings=("ValuationList", "estimatedValue"),
    strings=("VehicleDescription",),
    optional_numeric=("Mileage",),
)

HISTORY_SCHEMA = ProviderSchema(
    name="history",
    required=("VehicleHistory",),
    mappings=("VehicleHistory", "VehicleRegistration"),
)


def _is_numeric(value: Any) -> bool:
    if value is None:
        return True
    return extract_number(value) is not None


def validate(response: Any, schema: ProviderSchema = REGISTRATION_SCHEMA) -> ValidationResult:
    if not isinstance(response, Mapping):
        return ValidationResult(valid=False, errors=[f"{schema.name} response is not an object"])

    errors: list[str] = []
    for name in schema.required:
        if name not in response:
            errors.append(f"missing required field '{name}'")
    if schema.any_of and not any(response.get(name) is not None for name in schema.any_of):
        errors.append(f"expected one of {', '.join(schema.any_of)}")

    for name in schema.numeric:
        if name in response and not _is_numeric(response[name]):
            errors.append(f"field '{name}' must be numeric, got {response[name]!r}")
    for name in schema.strings:
        if name in response and response[name] is not None and not isinstance(response[name], str):
            errors.append(f"field '{name}' must be a string, got {type(response[name]).__name__}")
    for name in schema.mappings:
        if name in response and response[name] is not None and not isinstance(response[name], Mapping):
            errors.append(f"field '{name}' must be an object, got {type(response[name]).__name__}")

    return ValidationResult(valid=not errors, errors=errors)


def apply_defaults(response: Mapping[str, Any], schema: ProviderSchema = REGISTRATION_SCHEMA) -> dict[str, Any]:
    sanitized = dict(response)
    for name in schema.optional_numeric:
        sanitized.setdefault(name, None)
    for name in schema.status_enums:
        sanitized.setdefault(name, "Unknown")
    return sanitized


def validate_and_sanitize(response: Any, schema: ProviderSchema = REGISTRATION_SCHEMA) -> dict[str, Any]:
    result = validate(response, schema)
    if not result.valid:
        raise InvalidResponseShape(result.errors, source=schema.name)
    return apply_defaults(response, schema)
