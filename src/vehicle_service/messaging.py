from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

logger = logging.getLogger(__name__)

MANUAL_COMPLETION_TOPIC = "vehicle_manual_completion"
REFRESH_REQUESTS_TOPIC = "vehicle_refresh_requests"


class KafkaBus:
    def __init__(self, bootstrap_servers: str, client_id: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(asyncio.Queue)

    async def connect(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
        except Exception:
            logger.warning("Kafka unavailable at %s, using in-process queues", self.bootstrap_servers)
            self._producer = None

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(REFRESH_REQUESTS_TOPIC)
            return partitions is not None
        except Exception:
            return False

    def pending(self, topic: str) -> int:
        return self._queues[topic].qsize()

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await self._producer.send_and_wait(topic, value=value, key=encoded_key)
                return
            except Exception as exc:
                logger.warning("Kafka publish to %s failed, queueing locally: %s", topic, exc)
        await self._queues[topic].put(value)

    async def consume_forever(
        self,
        topic: str,
        handler: Callable[[dict[str, Any]], Awaitable[None]],
        stop_event: asyncio.Event,
    ) -> None:
        if self._producer is not None:
            consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.bootstrap_servers,
                group_id=f"{self.client_id}-{topic}",
                value_deserializer=lambda v: json.loads(v.decode("utf-8")),
            )
            try:
                await asyncio.wait_for(consumer.start(), timeout=1.0)
                while not stop_event.is_set():
                    try:
                        msg = await asyncio.wait_for(consumer.getone(), timeout=0.5)
                    except asyncio.TimeoutError:
                        continue
                    await _dispatch(handler, topic, msg.value)
                return
            except Exception as exc:
                logger.warning("Kafka consumer for %s stopped: %s", topic, exc)
            finally:
                try:
                    await consumer.stop()
                except Exception as exc:
                    logger.debug("Kafka consumer stop failed: %s", exc)

        queue = self._queues[topic]
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            await _dispatch(handler, topic, event)


async def _dispatch(handler: Callable[[dict[str, Any]], Awaitable[None]], topic: str, event: dict[str, Any]) -> None:
    try:
        await handler(event)
    except Exception:
        logger.exception("Handler for %s failed on event %s", topic, event)
