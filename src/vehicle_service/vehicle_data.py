from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Protocol

from reconciliation.data_models import VehicleRecord
from reconciliation.errors import AllSourcesUnavailable
from reconciliation.freshness import evaluate_freshness
from reconciliation.valuation import repair_valuation
from reconciliation.vrm import require_vrm
from vehicle_service.engine import VehicleLookupEngine
from vehicle_service.logging_config import current_vrm, log_data
from vehicle_service.messaging import MANUAL_COMPLETION_TOPIC, REFRESH_REQUESTS_TOPIC

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    async def get_vehicle_record(self, vrm: str) -> dict[str, Any] | None: ...

    async def save_vehicle_record(self, vrm: str, record: dict[str, Any]) -> None: ...


class EventBus(Protocol):
    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None: ...


class VehicleDataService:
    """Serves vehicle records from the store, going upstream only when needed.

    Concurrent refreshes of the same registration share one upstream lookup;
    different registrations proceed independently.
    """

    def __init__(
        self,
        engine: VehicleLookupEngine,
        store: RecordStore,
        bus: EventBus | None = None,
        ttl_days: int = 30,
    ) -> None:
        self.engine = engine
        self.store = store
        self.bus = bus
        self.ttl_days = ttl_days
        self.stats: dict[str, int] = defaultdict(int)
        self._inflight: dict[str, asyncio.Future[VehicleRecord]] = {}

    async def get_or_refresh(
        self,
        vrm: str,
        force_refresh: bool = False,
        mileage: int | None = None,
    ) -> VehicleRecord:
        key = require_vrm(vrm)
        token = current_vrm.set(key)
        try:
            if not force_refresh:
                cached = await self.store.get_vehicle_record(key)
                if cached is not None:
                    decision = evaluate_freshness(cached, ttl_days=self.ttl_days)
                    if decision == "repair":
                        return await self._repair(key, cached)
                    if decision == "fresh":
                        self.stats["cache_hits"] += 1
                        return VehicleRecord.from_dict(cached)
                    logger.info("Cached record for %s is stale, refetching", key)
            return await self._refresh(key, mileage)
        finally:
            current_vrm.reset(token)

    async def _repair(self, key: str, cached: dict[str, Any]) -> VehicleRecord:
        repaired = dict(cached)
        repaired["valuation"] = repair_valuation(cached["valuation"])
        record = VehicleRecord.from_dict(repaired)
        await self.store.save_vehicle_record(key, record.to_dict())
        self.stats["repairs"] += 1
        logger.info("Rebuilt estimated value for %s from stored prices", key)
        return record

    async def _refresh(self, key: str, mileage: int | None) -> VehicleRecord:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._lookup_and_store(key, mileage))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        else:
            self.stats["coalesced"] += 1
        return await asyncio.shield(task)

    async def _lookup_and_store(self, key: str, mileage: int | None) -> VehicleRecord:
        self.stats["upstream_lookups"] += 1
        try:
            record = await self.engine.lookup_vehicle(key, mileage=mileage)
        except AllSourcesUnavailable:
            self.stats["all_sources_failed"] += 1
            raise
        await self.store.save_vehicle_record(key, record.to_dict())
        if record.needs_completion:
            await self._request_completion(record)
        return record

    async def _request_completion(self, record: VehicleRecord) -> None:
        self.stats["manual_completion_requests"] += 1
        logger.warning(
            "Quota exhausted for %s, flagged for manual completion",
            record.vrm,
            extra=log_data(quota_exceeded_sources=record.quota_exceeded_sources),
        )
        if self.bus is None:
            return
        await self.bus.publish(
            MANUAL_COMPLETION_TOPIC,
            {
                "vrm": record.vrm,
                "quota_exceeded_sources": list(record.quota_exceeded_sources),
                "sources": dict(record.sources),
                "requested_at": datetime.now(timezone.utc).isoformat(),
            },
            key=record.vrm,
        )

    async def request_refresh(self, vrm: str, mileage: int | None = None) -> dict[str, Any]:
        key = require_vrm(vrm)
        event = {"vrm": key, "mileage": mileage, "requested_at": datetime.now(timezone.utc).isoformat()}
        if self.bus is not None:
            await self.bus.publish(REFRESH_REQUESTS_TOPIC, event, key=key)
        return event

    async def handle_refresh_request(self, event: dict[str, Any]) -> None:
        vrm = event.get("vrm")
        if not vrm:
            logger.warning("Ignoring refresh request without a registration: %s", event)
            return
        try:
            await self.get_or_refresh(vrm, force_refresh=True, mileage=event.get("mileage"))
        except AllSourcesUnavailable as exc:
            logger.warning("Background refresh of %s failed: %s", vrm, exc)
