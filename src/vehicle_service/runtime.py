from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from vehicle_service.adverts import AdvertService
from vehicle_service.engine import VehicleLookupEngine
from vehicle_service.messaging import KafkaBus
from vehicle_service.postcode import PostcodeLookup
from vehicle_service.settings import ServiceSettings
from vehicle_service.sources import (
    HistoryClient,
    MotHistoryClient,
    ProviderClient,
    RegistrationClient,
    RunningCostsClient,
    ValuationClient,
)
from vehicle_service.storage import PostgresStore, RedisCache
from vehicle_service.vehicle_data import VehicleDataService

logger = logging.getLogger(__name__)


@dataclass
class ServiceResources:
    settings: ServiceSettings
    cache: RedisCache
    store: PostgresStore
    bus: KafkaBus
    engine: VehicleLookupEngine
    vehicle_data: VehicleDataService
    postcodes: PostcodeLookup
    adverts: AdvertService


def build_sources(
    settings: ServiceSettings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[ProviderClient]:
    cfg = settings.reconciliation_config()
    timeout = cfg.source_timeout_seconds
    mot = MotHistoryClient(settings.mot_api_key, settings.mot_api_base_url, timeout=timeout, transport=transport)
    return [
        RegistrationClient(settings.dvla_api_key, settings.dvla_api_url, timeout=timeout, transport=transport),
        ValuationClient(
            settings.checkcard_api_key, settings.checkcard_api_base_url,
            timeout=timeout, transport=transport, default_mileage=cfg.default_mileage,
        ),
        RunningCostsClient(
            settings.checkcard_api_key, settings.checkcard_api_base_url,
            timeout=timeout, transport=transport, mot_client=mot,
        ),
        HistoryClient(settings.checkcard_api_key, settings.checkcard_api_base_url, timeout=timeout, transport=transport),
    ]


@asynccontextmanager
async def service_resources(
    settings: ServiceSettings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[ServiceResources]:
    """Connect cache, store and bus, and close whichever were opened on exit."""
    async with AsyncExitStack() as stack:
        cache = RedisCache(settings.redis_url)
        await cache.connect()
        stack.push_async_callback(cache.close)

        store = PostgresStore(settings.postgres_dsn)
        await store.connect()
        stack.push_async_callback(store.close)

        bus = KafkaBus(settings.kafka_bootstrap_servers, settings.kafka_client_id)
        await bus.connect()
        stack.push_async_callback(bus.close)

        sources = build_sources(settings, transport=transport)
        configured = [s.name for s in sources if s.enabled]
        if not configured:
            logger.warning("No vehicle data provider has an API key; every lookup will fail")
        cfg = settings.reconciliation_config()
        engine = VehicleLookupEngine(sources, timeout_seconds=cfg.source_timeout_seconds, source_order=cfg.source_order)
        vehicle_data = VehicleDataService(engine, store, bus, ttl_days=cfg.record_ttl_days)
        yield ServiceResources(
            settings=settings,
            cache=cache,
            store=store,
            bus=bus,
            engine=engine,
            vehicle_data=vehicle_data,
            postcodes=PostcodeLookup(
                cache,
                base_url=settings.postcodes_base_url,
                ttl_seconds=settings.postcode_cache_ttl_seconds,
                transport=transport,
            ),
            adverts=AdvertService(store, vehicle_data),
        )
