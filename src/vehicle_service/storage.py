from __future__ import annotations

import asyncio
import copy
import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, MetaData, String, Table, and_, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from reconciliation.errors import DuplicateActiveAdvert

ACTIVE = "active"

metadata = MetaData()

vehicle_records_table = Table(
    "vehicle_records",
    metadata,
    Column("vrm", String(16), primary_key=True),
    Column("record_json", JSON, nullable=False),
    Column("needs_completion", Boolean, nullable=False, default=False),
    Column("fetched_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

adverts_table = Table(
    "adverts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("registration_number", String(16), nullable=True, index=True),
    Column("advert_status", String(32), nullable=False, default="draft"),
    Column("price", Float, nullable=True),
    Column("images_json", JSON, nullable=False, default=list),
    Column("payload_json", JSON, nullable=False, default=dict),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

_active_with_registration = and_(
    adverts_table.c.advert_status == ACTIVE,
    adverts_table.c.registration_number.isnot(None),
    adverts_table.c.registration_number != "",
)

# At most one active advert per registration; drafts and sold adverts may repeat.
Index(
    "uq_adverts_active_registration",
    adverts_table.c.registration_number,
    unique=True,
    postgresql_where=_active_with_registration,
    sqlite_where=_active_with_registration,
)


def _blocks_active(row: dict[str, Any]) -> bool:
    return row.get("advert_status") == ACTIVE and bool(row.get("registration_number"))


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "vehicle_data") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                return None
        now = asyncio.get_running_loop().time()
        if full_key in self._expiry and now > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                pass
        self._mem[full_key] = payload
        self._expiry[full_key] = asyncio.get_running_loop().time() + ttl_seconds


class PostgresStore:
    """Vehicle record and advert persistence.

    Falls back to in-process dictionaries when the database cannot be reached;
    the fallback enforces the same one-active-advert-per-registration rule as
    the partial unique index.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_records: dict[str, dict[str, Any]] = {}
        self._mem_adverts: dict[str, dict[str, Any]] = {}

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None:
            return False
        if self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Vehicle records ─────────────────────────────────────────────

    async def get_vehicle_record(self, vrm: str) -> dict[str, Any] | None:
        if self.engine is None:
            row = self._mem_records.get(vrm)
            return None if row is None else copy.deepcopy(row["record_json"])
        stmt = select(vehicle_records_table.c.record_json).where(vehicle_records_table.c.vrm == vrm)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row.record_json) if row else None

    async def save_vehicle_record(self, vrm: str, record: dict[str, Any]) -> None:
        fetched_at = record.get("fetched_at")
        if isinstance(fetched_at, str):
            fetched_at = datetime.fromisoformat(fetched_at)
        now = datetime.now(timezone.utc)
        row = {
            "vrm": vrm,
            "record_json": copy.deepcopy(record),
            "needs_completion": bool(record.get("needs_completion", False)),
            "fetched_at": fetched_at or now,
            "updated_at": now,
        }
        if self.engine is None:
            self._mem_records[vrm] = row
            return
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(vehicle_records_table)
                .where(vehicle_records_table.c.vrm == vrm)
                .values(**{k: v for k, v in row.items() if k != "vrm"})
            )
            if result.rowcount == 0:
                await conn.execute(insert(vehicle_records_table).values(**row))

    async def records_needing_completion(self, limit: int = 100) -> list[str]:
        if self.engine is None:
            return [vrm for vrm, row in self._mem_records.items() if row["needs_completion"]][:limit]
        stmt = (
            select(vehicle_records_table.c.vrm)
            .where(vehicle_records_table.c.needs_completion == True)  # noqa: E712
            .order_by(vehicle_records_table.c.updated_at.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [r.vrm for r in rows]

    # ── Adverts ─────────────────────────────────────────────────────

    def _check_active_conflict(self, candidate: dict[str, Any], ignore_id: str | None = None) -> None:
        if not _blocks_active(candidate):
            return
        for advert_id, existing in self._mem_adverts.items():
            if advert_id == ignore_id:
                continue
            if _blocks_active(existing) and existing["registration_number"] == candidate["registration_number"]:
                raise DuplicateActiveAdvert(candidate["registration_number"])

    async def insert_advert(self, record: dict[str, Any]) -> str:
        advert_id = str(uuid4())
        now = datetime.now(timezone.utc)
        row = {
            "id": advert_id,
            "registration_number": record.get("registration_number") or None,
            "advert_status": record.get("advert_status", "draft"),
            "price": record.get("price"),
            "images_json": list(record.get("images") or []),
            "payload_json": record.get("payload", {}),
            "created_at": now,
            "updated_at": now,
        }
        if self.engine is None:
            self._check_active_conflict(row)
            self._mem_adverts[advert_id] = row
            return advert_id
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(adverts_table).values(**row))
        except IntegrityError as exc:
            raise DuplicateActiveAdvert(row["registration_number"] or "") from exc
        return advert_id

    async def update_advert_status(self, advert_id: str, status: str) -> bool:
        now = datetime.now(timezone.utc)
        if self.engine is None:
            existing = self._mem_adverts.get(advert_id)
            if existing is None:
                return False
            self._check_active_conflict({**existing, "advert_status": status}, ignore_id=advert_id)
            existing["advert_status"] = status
            existing["updated_at"] = now
            return True
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    update(adverts_table)
                    .where(adverts_table.c.id == advert_id)
                    .values(advert_status=status, updated_at=now)
                )
        except IntegrityError as exc:
            advert = await self.get_advert(advert_id)
            raise DuplicateActiveAdvert((advert or {}).get("registration_number") or "") from exc
        return result.rowcount > 0

    async def get_advert(self, advert_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            row = self._mem_adverts.get(advert_id)
            return None if row is None else dict(row)
        stmt = select(adverts_table).where(adverts_table.c.id == advert_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def list_adverts(self, registration_number: str, limit: int = 50) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [r for r in self._mem_adverts.values() if r["registration_number"] == registration_number]
            return [dict(r) for r in rows[:limit]]
        stmt = (
            select(adverts_table)
            .where(adverts_table.c.registration_number == registration_number)
            .order_by(adverts_table.c.created_at.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]
