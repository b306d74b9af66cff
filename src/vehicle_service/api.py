from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from reconciliation.errors import (
    AllSourcesUnavailable,
    DuplicateActiveAdvert,
    InvalidPostcode,
    InvalidRegistration,
    PostcodeLookupFailed,
    PostcodeNotFound,
)
from vehicle_service.logging_config import configure_logging, correlation_id, get_correlation_id
from vehicle_service.messaging import REFRESH_REQUESTS_TOPIC
from vehicle_service.runtime import ServiceResources, service_resources
from vehicle_service.settings import ServiceSettings


# ── Request / Response Models ───────────────────────────────────────

class AdvertCreateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    registration_number: str | None = None
    advert_status: str = "draft"
    price: float | None = Field(default=None, ge=0)
    photos: list[Any] | None = None
    images: list[str] | None = None
    attach_vehicle: bool = False


class AdvertResponse(BaseModel):
    id: str
    registration_number: str | None
    advert_status: str
    images: list[str]


class AdvertStatusRequest(BaseModel):
    advert_status: str


class RefreshResponse(BaseModel):
    scheduled: bool
    vrm: str


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── Prometheus-style Metrics ────────────────────────────────────────

_prom_counters: dict[str, int] = defaultdict(int)
_prom_histograms: dict[str, list[float]] = defaultdict(list)


def _record_latency(name: str, seconds: float) -> None:
    _prom_histograms[name].append(seconds)
    _prom_counters[f"{name}_count"] += 1


def _prometheus_text(counters: dict[str, int]) -> str:
    lines: list[str] = []
    for k, v in sorted(counters.items()):
        safe = k.replace(".", "_").replace("-", "_")
        lines.append(f"# TYPE vehicle_data_{safe} counter")
        lines.append(f"vehicle_data_{safe} {v}")

    for name, vals in sorted(_prom_histograms.items()):
        if not vals:
            continue
        safe = name.replace(".", "_").replace("-", "_")
        sorted_vals = sorted(vals)
        n = len(sorted_vals)
        lines.append(f"# TYPE vehicle_data_{safe}_seconds summary")
        for q in (0.5, 0.9, 0.95, 0.99):
            idx = min(int(n * q), n - 1)
            lines.append(f'vehicle_data_{safe}_seconds{{quantile="{q}"}} {sorted_vals[idx]:.6f}')
        lines.append(f"vehicle_data_{safe}_seconds_count {n}")
        lines.append(f"vehicle_data_{safe}_seconds_sum {sum(sorted_vals):.6f}")

    return "\n".join(lines) + "\n"


def _error(status_code: int, exc: Exception, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), **extra})


# ── App Factory ─────────────────────────────────────────────────────

def create_app(
    settings: ServiceSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_event = asyncio.Event()
        async with service_resources(settings, transport=transport) as resources:
            app.state.resources = resources
            consumer_task = asyncio.create_task(resources.bus.consume_forever(
                REFRESH_REQUESTS_TOPIC, resources.vehicle_data.handle_refresh_request, stop_event,
            ))
            try:
                yield
            finally:
                stop_event.set()
                consumer_task.cancel()
                await asyncio.gather(consumer_task, return_exceptions=True)

    app = FastAPI(title="Vehicle Data Service", version="1.0.0", lifespan=lifespan)

    def res() -> ServiceResources:
        return app.state.resources

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        correlation_id.set(request.headers.get("X-Correlation-ID", ""))
        cid = get_correlation_id()
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    # ── Error mapping ───────────────────────────────────────────────

    @app.exception_handler(InvalidRegistration)
    async def invalid_registration(_: Request, exc: InvalidRegistration) -> JSONResponse:
        return _error(422, exc)

    @app.exception_handler(AllSourcesUnavailable)
    async def all_sources_unavailable(_: Request, exc: AllSourcesUnavailable) -> JSONResponse:
        _prom_counters["all_sources_unavailable"] += 1
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc, failures=exc.failures)

    @app.exception_handler(DuplicateActiveAdvert)
    async def duplicate_active_advert(_: Request, exc: DuplicateActiveAdvert) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(InvalidPostcode)
    async def invalid_postcode(_: Request, exc: InvalidPostcode) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(PostcodeNotFound)
    async def postcode_not_found(_: Request, exc: PostcodeNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(PostcodeLookupFailed)
    async def postcode_lookup_failed(_: Request, exc: PostcodeLookupFailed) -> JSONResponse:
        return _error(status.HTTP_502_BAD_GATEWAY, exc)

    # ── Vehicles ────────────────────────────────────────────────────

    @app.get("/vehicles/{vrm}")
    async def get_vehicle(vrm: str, mileage: int | None = None, force_refresh: bool = False) -> dict[str, Any]:
        t0 = time.monotonic()
        record = await res().vehicle_data.get_or_refresh(vrm, force_refresh=force_refresh, mileage=mileage)
        _record_latency("vehicle_lookup", time.monotonic() - t0)
        if record.needs_completion:
            _prom_counters["needs_completion"] += 1
        return record.to_display_dict()

    @app.post("/vehicles/{vrm}/refresh", response_model=RefreshResponse, status_code=status.HTTP_202_ACCEPTED)
    async def refresh_vehicle(vrm: str, mileage: int | None = None) -> RefreshResponse:
        event = await res().vehicle_data.request_refresh(vrm, mileage=mileage)
        return RefreshResponse(scheduled=True, vrm=event["vrm"])

    # ── Adverts ─────────────────────────────────────────────────────

    @app.post("/adverts", response_model=AdvertResponse, status_code=status.HTTP_201_CREATED)
    async def create_advert(payload: AdvertCreateRequest) -> AdvertResponse:
        body = payload.model_dump(exclude_none=True, exclude={"attach_vehicle"})
        try:
            advert = await res().adverts.create_advert(body, attach_vehicle=payload.attach_vehicle)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        _prom_counters["adverts_created"] += 1
        return AdvertResponse(**advert)

    @app.patch("/adverts/{advert_id}/status")
    async def update_advert_status(advert_id: str, req: AdvertStatusRequest) -> dict[str, Any]:
        try:
            updated = await res().adverts.update_status(advert_id, req.advert_status)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if not updated:
            raise HTTPException(status_code=404, detail="Advert not found")
        return {"id": advert_id, "advert_status": req.advert_status}

    @app.get("/adverts/{advert_id}")
    async def get_advert(advert_id: str) -> dict[str, Any]:
        advert = await res().store.get_advert(advert_id)
        if advert is None:
            raise HTTPException(status_code=404, detail="Advert not found")
        entry = dict(advert)
        for k, v in entry.items():
            if hasattr(v, "isoformat"):
                entry[k] = v.isoformat()
        return entry

    # ── Postcodes ───────────────────────────────────────────────────

    @app.get("/postcodes/{postcode}")
    async def lookup_postcode(postcode: str) -> dict[str, Any]:
        return await res().postcodes.lookup(postcode)

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        resources = res()
        checks = {
            "redis": await resources.cache.ping(),
            "postgres": await resources.store.ping(),
            "kafka": await resources.bus.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Metrics ─────────────────────────────────────────────────────

    def _all_counters() -> dict[str, int]:
        resources = res()
        counters = dict(_prom_counters)
        counters.update({f"service_{k}": v for k, v in resources.vehicle_data.stats.items()})
        counters.update({f"source_failure_{k}": v for k, v in resources.engine.failure_counts.items()})
        return counters

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        latencies = sorted(_prom_histograms.get("vehicle_lookup", []))
        return {
            "counters": _all_counters(),
            "vehicle_lookup_latency": {
                "count": len(latencies),
                "p50_ms": round(latencies[len(latencies) // 2] * 1000, 1) if latencies else 0,
                "p95_ms": round(latencies[int(len(latencies) * 0.95)] * 1000, 1) if latencies else 0,
            },
        }

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(_all_counters()), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
