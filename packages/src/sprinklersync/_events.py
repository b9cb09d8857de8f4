"""Push events published by the controller's own MQTT client.

Topics, relative to the configured base (``opensprinkler`` by default)::

    availability        "online" / "offline"
    system              {"state": "started"} on boot
    station/<i>         {"state": 1} on start,
                        {"state": 0, "duration": ss} on stop
    sensor1, sensor2    {"state": 0|1}
    raindelay           {"state": 0|1}
    sensor/flow         {"count": cc, "volume": vv}

The messages are terse, so some of them only tell us *that* something
changed; those request a full refresh.

:func:`decode_event` is pure.  :class:`EventBridge` owns the bounded
inbound queue that the MQTT callback fills and the controller loop
drains.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from sprinklersync._clock import ClockPort
from sprinklersync._errors import DecodeError
from sprinklersync._model import RAIN_DELAY_ID, Attr, sensor_id, station_id
from sprinklersync._reconciler import Reconciler

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PushEvent:
    """What one push message means for the engine.

    ``entity_id``/``attributes`` describe an attribute update on an existing
    entity; ``refresh`` asks for a full status poll; ``availability`` is the
    push channel's reported health, when the message carries it.
    """

    topic: str
    entity_id: str | None = None
    attributes: Mapping[str, object] = field(default_factory=dict)
    refresh: bool = False
    availability: bool | None = None


def _json_object(topic: str, payload: str) -> Mapping[str, Any]:
    try:
        data = json.loads(payload)
    except ValueError as exc:
        msg = f"{topic}: payload is not JSON: {payload!r}"
        raise DecodeError(msg) from exc
    if not isinstance(data, Mapping):
        msg = f"{topic}: expected a JSON object, got {type(data).__name__}"
        raise DecodeError(msg)
    return data


def _state(data: Mapping[str, Any]) -> bool:
    value = data.get("state")
    return str(value) == "1" or value is True


def decode_event(topic: str, payload: str, *, base: str, now: float) -> PushEvent | None:
    """Translate one push message.

    Returns ``None`` for topics outside *base* or not understood.
    Raises :class:`~sprinklersync._errors.DecodeError` for malformed
    payloads on known topics.
    """
    prefix = f"{base}/"
    if not topic.startswith(prefix):
        return None
    suffix = topic[len(prefix) :]

    match suffix.split("/"):
        case ["availability"]:
            online = payload.strip().lower() == "online"
            return PushEvent(topic=topic, availability=online, refresh=online)
        case ["system"]:
            return PushEvent(topic=topic, refresh=True)
        case ["station", index] if index.isdigit():
            data = _json_object(topic, payload)
            state = _state(data)
            attributes: dict[str, object] = {
                Attr.ZONE_STATE: state,
                Attr.SWITCH_STATE: state,
                Attr.TOGGLE_STATE: state,
            }
            ran = 0
            duration = data.get("duration")
            if isinstance(duration, (int, float)) and not isinstance(duration, bool):
                ran = int(duration)
                attributes[Attr.ZONE_DURATION] = ran
            if not state:
                attributes[Attr.ZONE_REMAINING] = 0
                attributes[Attr.ZONE_LAST_RUN] = int(now) - ran
            return PushEvent(topic=topic, entity_id=station_id(int(index)), attributes=attributes)
        case ["sensor1" | "sensor2" as name]:
            data = _json_object(topic, payload)
            return PushEvent(
                topic=topic,
                entity_id=sensor_id(int(name[-1])),
                attributes={Attr.BINARY_STATE: _state(data)},
            )
        case ["raindelay"]:
            data = _json_object(topic, payload)
            state = _state(data)
            # no end time in the message
            return PushEvent(
                topic=topic,
                entity_id=RAIN_DELAY_ID,
                attributes={
                    Attr.BINARY_STATE: state,
                    Attr.SWITCH_STATE: state,
                    Attr.TOGGLE_STATE: state,
                },
                refresh=True,
            )
        case _:
            return None


class EventBridge:
    """Bounded inbox between the MQTT callback and the controller loop.

    :meth:`submit` is registered as the MQTT message callback and only
    enqueues.  :meth:`handle` runs on the controller loop: it decodes the
    message and writes attribute updates through the reconciler.

    When the inbox is full the oldest message is dropped.

    Args:
        reconciler: Single writer of entity state.
        base: Push topic base, e.g. ``"opensprinkler"``.
        clock: Wall clock used to backdate ``last_run``.
        maxsize: Inbox capacity.
    """

    def __init__(
        self,
        *,
        reconciler: Reconciler,
        base: str,
        clock: ClockPort,
        maxsize: int = 256,
    ) -> None:
        self._reconciler = reconciler
        self._base = base.rstrip("/")
        self._clock = clock
        self.queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue(maxsize=maxsize)
        self.healthy = True
        self.dropped = 0

    @property
    def subscription(self) -> str:
        return f"{self._base}/#"

    async def submit(self, topic: str, payload: str) -> None:
        """Enqueue a message for the controller loop."""
        if not topic.startswith(f"{self._base}/"):
            return
        while True:
            try:
                self.queue.put_nowait((topic, payload))
                return
            except asyncio.QueueFull:
                dropped = self.queue.get_nowait()
                self.dropped += 1
                logger.warning("Push inbox full, dropping oldest message on %s", dropped[0])

    def handle(self, topic: str, payload: str) -> PushEvent | None:
        """Decode and apply one message; returns the event for scheduling."""
        try:
            event = decode_event(topic, payload, base=self._base, now=self._clock.time())
        except DecodeError as exc:
            logger.warning("Ignoring push message: %s", exc)
            return None

        if event is None:
            logger.info("Push message ignored: %s %s", topic, payload)
            return None

        if event.availability is not None and event.availability != self.healthy:
            logger.info(
                "Push channel %s",
                "online" if event.availability else "offline, falling back to polling",
            )
            self.healthy = event.availability

        if event.entity_id is not None and event.attributes:
            changed = self._reconciler.apply_attributes(event.entity_id, event.attributes)
            if changed:
                logger.debug("[%s] push update: %s", event.entity_id, sorted(changed))
        return event
