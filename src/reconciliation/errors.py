from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for errors raised by the vehicle data core."""


class InvalidRegistration(ReconciliationError):
    def __init__(self, vrm: object) -> None:
        super().__init__(f"Invalid registration number: {vrm!r}")
        self.vrm = vrm


class InvalidResponseShape(ReconciliationError):
    def __init__(self, errors: list[str], source: str = "unknown") -> None:
        super().__init__(f"Malformed {source} response: {'; '.join(errors)}")
        self.errors = list(errors)
        self.source = source


class SourceError(ReconciliationError):
    """A single upstream source failed. Never escapes the merge engine."""

    kind = "source_error"

    def __init__(self, source: str, message: str = "") -> None:
        super().__init__(f"{source}: {message or self.kind}")
        self.source = source


class SourceTimeout(SourceError):
    kind = "timeout"


class SourceUnavailable(SourceError):
    kind = "unavailable"

    def __init__(self, source: str, message: str = "", status_code: int | None = None) -> None:
        super().__init__(source, message)
        self.status_code = status_code


class QuotaExceeded(SourceError):
    """HTTP 403 from a provider whose daily request cap has been reached."""

    kind = "quota_exceeded"


class AllSourcesUnavailable(ReconciliationError):
    def __init__(self, vrm: str, failures: dict[str, str]) -> None:
        detail = ", ".join(f"{k}={v}" for k, v in failures.items())
        super().__init__(f"No vehicle data source answered for {vrm} ({detail})")
        self.vrm = vrm
        self.failures = dict(failures)


class DuplicateActiveAdvert(ReconciliationError):
    def __init__(self, registration_number: str) -> None:
        super().__init__(f"An active advert already exists for {registration_number}")
        self.registration_number = registration_number


class InvalidPostcode(ReconciliationError):
    pass


class PostcodeNotFound(ReconciliationError):
    pass


class PostcodeLookupFailed(ReconciliationError):
    pass
