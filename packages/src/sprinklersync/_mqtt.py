"""MQTT client port and adapters.

The broker plays two roles for a bridge:

- it carries the controller's **push channel** (``opensprinkler/#``
  events, see :mod:`sprinklersync._events`);
- it is where the bridge publishes entity state and receives commands.

Provides :class:`MqttPort` and three implementations:

- :class:`MqttClient` — aiomqtt-based client with reconnection
- :class:`MockMqttClient` — test double that records calls
- :class:`NullMqttClient` — silent no-op adapter used when MQTT is disabled

``aiomqtt`` is imported lazily inside :meth:`MqttClient._connection_loop`
so that the mock and null adapters do not need it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from sprinklersync._settings import MqttSettings

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Async callback receiving (topic, payload) for each inbound message."""


@dataclass(frozen=True)
class WillConfig:
    """Last-Will-and-Testament configuration, independent of aiomqtt types."""

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


@runtime_checkable
class MqttPort(Protocol):
    """Port contract for MQTT publish/subscribe."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...


@runtime_checkable
class MqttMessageHandler(Protocol):
    """Adapters that can deliver inbound messages to callbacks."""

    def on_message(self, callback: MessageCallback) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Adapters with a background connection to start and stop."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


def is_connected(mqtt: MqttPort) -> bool:
    """Whether *mqtt* currently holds a broker connection.

    Adapters without an ``is_connected`` property are treated as
    disconnected, so a bridge without MQTT keeps polling.
    """
    return bool(getattr(mqtt, "is_connected", False))


@dataclass
class NullMqttClient:
    """Silent no-op MQTT adapter used when MQTT is disabled."""

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        logger.debug("NullMqttClient.publish(%s) — discarded", topic)

    async def subscribe(self, topic: str) -> None:
        logger.debug("NullMqttClient.subscribe(%s) — discarded", topic)


@dataclass
class MockMqttClient:
    """In-memory test double that records MQTT interactions.

    ``connected`` controls what :func:`is_connected` reports, which in
    turn decides whether the controller trusts the push channel.
    """

    published: list[tuple[str, str, bool, int]] = field(default_factory=list)
    subscriptions: list[str] = field(default_factory=list)
    connected: bool = True
    raise_on_publish: Exception | None = None
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        if self.raise_on_publish is not None:
            raise self.raise_on_publish
        self.published.append((topic, payload, retain, qos))

    async def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    @property
    def is_connected(self) -> bool:
        return self.connected

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    async def deliver(self, topic: str, payload: str) -> None:
        """Simulate an inbound message by invoking all callbacks."""
        for cb in self._callbacks:
            await cb(topic, payload)

    def get_messages_for(self, topic: str) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples published to *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]

    def reset(self) -> None:
        self.published.clear()
        self.subscriptions.clear()
        self._callbacks.clear()


def reconnect_delay(failures: int, base: float, cap: float) -> float:
    """Exponential reconnect delay with jitter.

    ``base * 2**(failures-1)`` capped at *cap*, then scaled by a random
    factor in ``[0.5, 1.0]`` so that several bridges restarted together
    do not hammer the broker in lockstep.
    """
    exponent = max(0, failures - 1)
    delay = min(cap, base * (2**exponent))
    return delay * random.uniform(0.5, 1.0)  # noqa: S311


@dataclass
class MqttClient:
    """Production MQTT adapter backed by *aiomqtt*.

    A background task keeps a persistent connection, restores tracked
    subscriptions after every reconnect and fans inbound messages out to
    the registered callbacks.
    """

    settings: MqttSettings
    will: WillConfig | None = None

    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _subscriptions: set[str] = field(default_factory=set, init=False, repr=False)
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish a message to the broker.

        Raises:
            RuntimeError: If the client is not connected.
        """
        if self._client is None:
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await self._client.publish(topic, payload, retain=retain, qos=qos)
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def subscribe(self, topic: str) -> None:
        """Subscribe to *topic*, tracking it for restoration on reconnect."""
        self._subscriptions.add(topic)
        if self._client is not None:
            await self._client.subscribe(topic, qos=self.settings.qos)

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    async def start(self) -> None:
        """Start the background connection loop."""
        if self._listen_task is not None and not self._listen_task.done():
            logger.debug("MqttClient.start() called while already running")
            return
        self._stopping = False
        self._listen_task = asyncio.create_task(self._connection_loop())

    async def stop(self) -> None:
        """Stop the connection loop.  Idempotent."""
        self._stopping = True
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        self._client = None
        self._connected.clear()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def _connection_loop(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        failures = 0
        while not self._stopping:
            try:
                async with self._open(aiomqtt) as client:
                    failures = 0
                    await self._serve(client)
            except asyncio.CancelledError:
                raise
            except Exception:
                failures += 1
                delay = reconnect_delay(
                    failures,
                    self.settings.reconnect_interval,
                    self.settings.reconnect_max_interval,
                )
                logger.warning(
                    "Broker %s:%d unreachable (attempt %d), retrying in %.1fs",
                    self.settings.host,
                    self.settings.port,
                    failures,
                    delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)

    def _open(self, aiomqtt: Any) -> Any:
        """Build an unconnected ``aiomqtt.Client`` from the settings."""
        secret = self.settings.password
        will = None
        if self.will is not None:
            will = aiomqtt.Will(
                topic=self.will.topic,
                payload=self.will.payload,
                qos=self.will.qos,
                retain=self.will.retain,
            )
        return aiomqtt.Client(
            hostname=self.settings.host,
            port=self.settings.port,
            username=self.settings.username,
            password=secret.get_secret_value() if secret is not None else None,
            identifier=self.settings.client_id or None,
            will=will,
        )

    async def _serve(self, client: Any) -> None:
        """Restore subscriptions, then pump messages until the session ends."""
        self._client = client
        try:
            for topic in sorted(self._subscriptions):
                await client.subscribe(topic, qos=self.settings.qos)
            self._connected.set()
            logger.info("Broker session open on %s:%d", self.settings.host, self.settings.port)
            async for message in client.messages:
                await self._dispatch(message)
        finally:
            self._connected.clear()
            self._client = None

    async def _dispatch(self, message: Any) -> None:
        topic = str(message.topic)

        if message.payload is None:
            logger.debug("Skipping message with None payload on %s", topic)
            return

        if isinstance(message.payload, (bytes, bytearray)):
            try:
                payload = message.payload.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("Skipping non UTF-8 payload on %s", topic)
                return
        else:
            payload = str(message.payload)

        for cb in self._callbacks:
            try:
                await cb(topic, payload)
            except Exception:
                logger.exception("Error in message callback for %s", topic)
