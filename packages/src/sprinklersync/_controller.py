"""Per-controller engine: scheduling loop, command surface, lifecycle.

One :class:`SprinklerController` drives one OpenSprinkler.  It owns a
single asyncio task that

- polls ``/ja`` on the configured interval (or on the failure backoff),
- drains the push-event inbox filled by the MQTT callback,
- runs forced refreshes requested by commands or push events.

Every reconciler write happens on that task or in a command coroutine
on the same event loop, so entity state has a single writer.

While the push channel is healthy (enabled in the controller's own
settings, broker connected, controller announced ``online``), periodic
polling is suspended and only forced refreshes poll.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping
from typing import Any

from sprinklersync._capabilities import CapabilityRegistry, load_capabilities
from sprinklersync._clock import ClockPort, SystemClock
from sprinklersync._dispatcher import CommandDispatcher
from sprinklersync._errors import (
    CommandError,
    ConfigError,
    ControllerStoppingError,
    EntityNotFoundError,
    UnsupportedCommandError,
)
from sprinklersync._events import EventBridge
from sprinklersync._health import AvailabilityReporter, HealthTracker
from sprinklersync._http import HttpTransport, TransportPort, close_transport
from sprinklersync._logging import controller_logger
from sprinklersync._mqtt import MqttMessageHandler, MqttPort, is_connected
from sprinklersync._poller import Poller
from sprinklersync._reconciler import Reconciler
from sprinklersync._settings import ControllerSettings
from sprinklersync._store import EntityStorePort

_TRUE_WORDS = frozenset({"1", "on", "true", "yes"})
_FALSE_WORDS = frozenset({"0", "off", "false", "no"})


def _bool_param(params: Mapping[str, Any], key: str) -> bool | None:
    value = params.get(key)
    match value:
        case None:
            return None
        case bool():
            return value
        case int():
            return value != 0
        case str() if value.strip().lower() in _TRUE_WORDS:
            return True
        case str() if value.strip().lower() in _FALSE_WORDS:
            return False
    msg = f"Parameter '{key}' must be a boolean, got {value!r}"
    raise CommandError(msg)


def _int_param(params: Mapping[str, Any], key: str) -> int | None:
    value = params.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        msg = f"Parameter '{key}' must be a number, got {value!r}"
        raise CommandError(msg)
    try:
        number = int(value)
    except (TypeError, ValueError):
        msg = f"Parameter '{key}' must be a number, got {value!r}"
        raise CommandError(msg) from None
    if number < 0:
        msg = f"Parameter '{key}' must not be negative"
        raise CommandError(msg)
    return number


class SprinklerController:
    """State-sync and command engine for one controller.

    Args:
        settings: Controller settings; ``host`` and ``password`` are
            required by :meth:`start`.
        store: Host entity store.
        transport: Request/response adapter; an :class:`HttpTransport`
            is created on :meth:`start` when omitted.
        mqtt: Broker adapter for the push channel.  ``None`` means
            polling only.
        clock: Time source.
        availability: Optional availability mirror for MQTT.
        name: Controller name used in log records; defaults to the host.
    """

    def __init__(
        self,
        settings: ControllerSettings,
        *,
        store: EntityStorePort,
        transport: TransportPort | None = None,
        mqtt: MqttPort | None = None,
        clock: ClockPort | None = None,
        availability: AvailabilityReporter | None = None,
        name: str | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._transport = transport
        self._owns_transport = transport is None
        self._mqtt = mqtt
        self._clock = clock or SystemClock()
        self._availability = availability
        self._log = controller_logger(__name__, name or settings.host)

        self._registry: CapabilityRegistry = load_capabilities()
        self._reconciler = Reconciler(store, capabilities=self._registry)
        self._health = HealthTracker(
            error_interval=settings.error_interval,
            max_backoff=settings.max_backoff,
            unavailable_after=settings.unavailable_after,
        )
        self._bridge = EventBridge(
            reconciler=self._reconciler,
            base=settings.push_topic,
            clock=self._clock,
            maxsize=settings.push_queue_size,
        )
        self._poller: Poller | None = None
        self._dispatcher: CommandDispatcher | None = None
        self._refresh = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._stopping = False

    # -- introspection ------------------------------------------------------

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def health(self) -> HealthTracker:
        return self._health

    @property
    def bridge(self) -> EventBridge:
        return self._bridge

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def push_healthy(self) -> bool:
        """Whether push events are currently standing in for polling."""
        if not self._settings.use_push or self._mqtt is None:
            return False
        snapshot = self._poller.snapshot if self._poller is not None else None
        return (
            snapshot is not None
            and snapshot.push_enabled
            and self._bridge.healthy
            and is_connected(self._mqtt)
        )

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        """Validate settings and build the network-facing components.

        Does not start the scheduling loop; :meth:`start` does both.
        """
        if self._poller is not None:
            return
        host, password = self._settings.host, self._settings.password
        if not host:
            msg = "controller.host is not configured"
            raise ConfigError(msg)
        if password is None or not password.get_secret_value():
            msg = "controller.password is not configured"
            raise ConfigError(msg)

        if self._transport is None:
            self._transport = HttpTransport(
                host=host,
                password=password.get_secret_value(),
                timeout=self._settings.timeout,
            )
        self._poller = Poller(
            transport=self._transport,
            reconciler=self._reconciler,
            health=self._health,
            settings=self._settings,
            availability=self._availability,
        )
        self._dispatcher = CommandDispatcher(
            transport=self._transport,
            reconciler=self._reconciler,
            settings=self._settings,
            clock=self._clock,
        )

    async def start(self) -> None:
        """Open the controller and start the scheduling loop.

        Raises:
            ConfigError: ``host`` or ``password`` is missing.
        """
        if self._task is not None:
            return
        await self.open()

        if self._settings.use_push and self._mqtt is not None:
            if isinstance(self._mqtt, MqttMessageHandler):
                self._mqtt.on_message(self._bridge.submit)
            await self._mqtt.subscribe(self._bridge.subscription)
            self._log.info("Listening for push events on %s", self._bridge.subscription)

        self._task = asyncio.create_task(self._run(), name=f"sprinklersync:{self._settings.host}")
        self._log.info("Controller started (%s)", self._settings.host)

    async def stop(self) -> None:
        """Stop the loop, cancel pending commands and close the transport."""
        if self._stopping:
            return
        self._stopping = True
        if self._poller is not None:
            self._poller.stopping = True
        if self._dispatcher is not None:
            await self._dispatcher.close()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._owns_transport and self._transport is not None:
            await close_transport(self._transport)
        self._log.info("Controller stopped")

    # -- refresh ------------------------------------------------------------

    def request_refresh(self) -> None:
        """Ask the loop for a full status poll as soon as possible."""
        self._refresh.set()

    async def refresh(self) -> bool:
        """Poll now, outside the loop.  Returns ``True`` on success."""
        await self.open()
        assert self._poller is not None  # noqa: S101
        return await self._poller.poll()

    # -- commands -----------------------------------------------------------

    async def set_state(
        self,
        entity_id: str,
        desired: bool | None = None,
        duration: int | None = None,
    ) -> frozenset[str]:
        """See :meth:`CommandDispatcher.set_state`."""
        return await self._commands().set_state(entity_id, desired, duration)

    async def set_enabled(self, entity_id: str, desired: bool | None = None) -> frozenset[str]:
        """See :meth:`CommandDispatcher.set_enabled`."""
        return await self._commands().set_enabled(entity_id, desired)

    async def perform(
        self,
        entity_id: str,
        action: str,
        params: Mapping[str, Any] | None = None,
    ) -> frozenset[str]:
        """Run a capability action (``irrigation_zone.run`` etc.) on an entity.

        Raises:
            EntityNotFoundError: *entity_id* is not known.
            UnsupportedCommandError: the entity does not implement *action*.
            CommandError: a parameter has the wrong type.
        """
        params = params or {}
        entity = self._store.find(entity_id)
        if entity is None:
            msg = f"Unknown entity '{entity_id}'"
            raise EntityNotFoundError(msg)
        capability = self._registry.action_capability(action)
        if capability is None or capability not in entity.capabilities:
            msg = f"'{entity_id}' does not support '{action}'"
            raise UnsupportedCommandError(msg)

        self._log.info("Action %s on %s %s", action, entity_id, dict(params))
        match action:
            case "irrigation_zone.run" | "power_switch.on":
                return await self.set_state(entity_id, True, _int_param(params, "duration"))
            case "irrigation_zone.stop" | "power_switch.off":
                return await self.set_state(entity_id, False)
            case "irrigation_zone.enable":
                return await self.set_enabled(entity_id, True)
            case "irrigation_zone.disable":
                return await self.set_enabled(entity_id, False)
            case "power_switch.set" | "irrigation_zone.set" | "toggle.toggle":
                return await self.set_state(
                    entity_id,
                    _bool_param(params, "state"),
                    _int_param(params, "duration"),
                )
            case "x_opensprinkler_raindelay.set":
                return await self.set_state(entity_id, True, _int_param(params, "hours"))
            case "sys_system.restart":
                self.request_refresh()
                return frozenset()
            case _:
                msg = f"'{action}' has no handler"
                raise UnsupportedCommandError(msg)

    def _commands(self) -> CommandDispatcher:
        if self._stopping:
            msg = "controller is stopping"
            raise ControllerStoppingError(msg)
        if self._dispatcher is None:
            msg = "controller is not started"
            raise ControllerStoppingError(msg)
        return self._dispatcher

    # -- scheduling loop ----------------------------------------------------

    async def _run(self) -> None:
        assert self._poller is not None  # noqa: S101
        due = True
        while not self._stopping:
            try:
                if due:
                    await self._poller.poll()
                delay = self._poller.next_delay(self.push_healthy)
                due = await self._wait(delay)
            except Exception:
                self._log.exception("Scheduling loop iteration failed")
                await asyncio.sleep(self._health.delay)
                due = True

    async def _wait(self, timeout: float | None) -> bool:
        """Drain push events until a poll is due.

        Returns ``True`` when the timer expired or a refresh was
        requested, ``False`` when the push channel's health changed and
        the delay needs recomputing.  Without a timeout the push channel
        is re-checked every ``interval`` seconds, so a lost broker
        connection falls back to polling.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self._stopping:
            if self._refresh.is_set():
                self._refresh.clear()
                return True
            if deadline is None:
                if not self.push_healthy:
                    return False
                remaining = self._settings.interval
            else:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return True

            get = asyncio.ensure_future(self._bridge.queue.get())
            refresh = asyncio.ensure_future(self._refresh.wait())
            try:
                await asyncio.wait(
                    {get, refresh},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                for future in (get, refresh):
                    if not future.done():
                        future.cancel()

            if get.done() and not get.cancelled():
                topic, payload = get.result()
                if await self._handle_push(topic, payload):
                    return False
        return False

    async def _handle_push(self, topic: str, payload: str) -> bool:
        event = self._bridge.handle(topic, payload)
        if event is None:
            return False
        if event.availability is False:
            assert self._poller is not None  # noqa: S101
            await self._poller.mark_unavailable()
        if event.refresh:
            self._refresh.set()
        return event.availability is not None
