from __future__ import annotations

import logging
from typing import Any, Mapping

from reconciliation.coercion import extract_number
from reconciliation.errors import AllSourcesUnavailable
from reconciliation.normalizer import normalize_images
from reconciliation.vrm import normalize_vrm
from vehicle_service.storage import PostgresStore
from vehicle_service.vehicle_data import VehicleDataService

logger = logging.getLogger(__name__)

ADVERT_STATUSES = ("draft", "active", "sold", "withdrawn")


class AdvertService:
    def __init__(self, store: PostgresStore, vehicle_data: VehicleDataService | None = None) -> None:
        self.store = store
        self.vehicle_data = vehicle_data

    async def create_advert(self, payload: Mapping[str, Any], attach_vehicle: bool = False) -> dict[str, Any]:
        """Persist an advert, flattening uploaded photos into ``images``.

        Raises ``DuplicateActiveAdvert`` when the registration already has an
        active advert.
        """
        normalized = normalize_images(payload)
        registration = normalized.get("registration_number") or normalized.get("registrationNumber")
        registration = normalize_vrm(registration) if registration else None
        status = normalized.get("advert_status", "draft")
        if status not in ADVERT_STATUSES:
            raise ValueError(f"Unknown advert status: {status}")

        if attach_vehicle and registration and self.vehicle_data is not None:
            try:
                record = await self.vehicle_data.get_or_refresh(registration)
                normalized["vehicle"] = record.to_display_dict()
            except AllSourcesUnavailable as exc:
                logger.warning("Creating advert without vehicle data: %s", exc)

        advert_id = await self.store.insert_advert({
            "registration_number": registration,
            "advert_status": status,
            "price": extract_number(normalized.get("price")),
            "images": normalized["images"],
            "payload": normalized,
        })
        logger.info("Created %s advert %s for %s", status, advert_id, registration or "unregistered vehicle")
        return {
            "id": advert_id,
            "registration_number": registration,
            "advert_status": status,
            "images": normalized["images"],
        }

    async def update_status(self, advert_id: str, status: str) -> bool:
        if status not in ADVERT_STATUSES:
            raise ValueError(f"Unknown advert status: {status}")
        return await self.store.update_advert_status(advert_id, status)
