"""Entity state publication.

Every batched store change is published as the entity's full state::

    {prefix}/{entity_id}/state   ← {"name": ..., "kind": ..., "attributes": {...}}

Messages are retained so that late subscribers see the current state.
The store notifies synchronously; publishing happens in background
tasks that :meth:`EntityStatePublisher.close` cancels.
"""

from __future__ import annotations

import asyncio
import json
import logging

from sprinklersync._mqtt import MqttPort
from sprinklersync._store import Entity

logger = logging.getLogger(__name__)


class EntityStatePublisher:
    """Store observer that mirrors entity state to MQTT."""

    def __init__(self, mqtt: MqttPort, topic_prefix: str) -> None:
        self._mqtt = mqtt
        self._topic_prefix = topic_prefix
        self._tasks: set[asyncio.Task[None]] = set()

    def topic(self, entity_id: str) -> str:
        return f"{self._topic_prefix}/{entity_id}/state"

    def __call__(self, entity: Entity, changed: frozenset[str]) -> None:
        payload = json.dumps(
            {
                "name": entity.name,
                "kind": entity.kind.value,
                "available": entity.alive,
                "changed": sorted(changed),
                "attributes": entity.attributes,
            },
            default=str,
        )
        task = asyncio.get_running_loop().create_task(self._publish(entity.id, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> None:
        """Wait for in-flight publications."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.flush()

    async def _publish(self, entity_id: str, payload: str) -> None:
        topic = self.topic(entity_id)
        try:
            await self._mqtt.publish(topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish state to %s", topic)
