"""Command dispatcher: intents → vendor commands → optimistic updates.

Two intents are supported, both toggling the current value when
``desired`` is omitted:

- :meth:`CommandDispatcher.set_state` — run/stop a zone or program,
  enable/disable the controller, start/clear a rain delay;
- :meth:`CommandDispatcher.set_enabled` — enable/disable a zone or
  program.

Zone enablement is a per-board bitmask on the wire (``cs?d0=..&d1=..``),
so changing one zone re-sends the mask of every station on every board.

On ``result == 1`` the command's attribute effects are written straight
to the entity (optimistic update).  Transport failures are retried up
to ``command_attempts`` times in total and then raise
:class:`~sprinklersync._errors.CommandFailedError`; any other result
code raises the matching :class:`~sprinklersync._errors.ProtocolError`
without retrying.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any

from sprinklersync._clock import ClockPort
from sprinklersync._decoder import STATIONS_PER_BOARD, disable_bitmask
from sprinklersync._errors import (
    CommandFailedError,
    ControllerStoppingError,
    EntityNotFoundError,
    TransportError,
    UnsupportedCommandError,
    check_result,
)
from sprinklersync._health import backoff_delay
from sprinklersync._http import TransportPort
from sprinklersync._model import IGNORED, SYSTEM_ID, Attr, Command, EntityKind, station_id
from sprinklersync._reconciler import Reconciler
from sprinklersync._settings import ControllerSettings

logger = logging.getLogger(__name__)


class Verb(enum.StrEnum):
    """Command endpoints."""

    MANUAL_STATION = "cm"
    MANUAL_PROGRAM = "mp"
    STATION_DISABLE = "cs"
    PROGRAM_CHANGE = "cp"
    CHANGE_VARIABLES = "cv"


def _flag(value: bool) -> int:
    return 1 if value else 0


def _caller_cancelling() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


class CommandDispatcher:
    """Builds, sends and reconciles controller commands.

    Args:
        transport: Request/response port to the controller.
        reconciler: Writer for optimistic attribute effects.
        settings: Defaults and retry policy.
        clock: Wall clock for rain-delay end times.
    """

    def __init__(
        self,
        *,
        transport: TransportPort,
        reconciler: Reconciler,
        settings: ControllerSettings,
        clock: ClockPort,
    ) -> None:
        self._transport = transport
        self._reconciler = reconciler
        self._store = reconciler.store
        self._settings = settings
        self._clock = clock
        self._stopping = False
        self._tasks: set[asyncio.Task[dict[str, Any]]] = set()

    @property
    def pending(self) -> int:
        """Number of commands currently being sent or waiting to retry."""
        return len(self._tasks)

    async def close(self) -> None:
        """Refuse new commands and cancel pending sends and retries."""
        self._stopping = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -- intents ------------------------------------------------------------

    async def set_state(
        self,
        entity_id: str,
        desired: bool | None = None,
        duration: int | None = None,
    ) -> frozenset[str]:
        """Turn an entity on or off; ``None`` toggles ``power_switch.state``."""
        kind, index = self._resolve(entity_id)
        if desired is None:
            desired = not bool(self._store.get_attribute(entity_id, Attr.SWITCH_STATE))

        if kind is EntityKind.PROGRAM and not desired:
            return await self._stop_program(entity_id)

        command = self.state_command(entity_id, kind, index, desired, duration)
        return await self._execute(command)

    async def set_enabled(
        self,
        entity_id: str,
        desired: bool | None = None,
    ) -> frozenset[str]:
        """Enable or disable an entity; ``None`` toggles ``irrigation_zone.enabled``."""
        kind, index = self._resolve(entity_id)
        if desired is None:
            desired = not bool(self._store.get_attribute(entity_id, Attr.ZONE_ENABLED))
        command = self.enable_command(entity_id, kind, index, desired)
        return await self._execute(command)

    # -- command construction ----------------------------------------------

    def state_command(
        self,
        entity_id: str,
        kind: EntityKind,
        index: int | None,
        desired: bool,
        duration: int | None = None,
    ) -> Command:
        """Build the on/off command for *entity_id*."""
        match kind:
            case EntityKind.ZONE | EntityKind.PROGRAM:
                timeout = (duration or self._settings.default_zone_duration) if desired else 0
                if kind is EntityKind.ZONE:
                    verb, key = Verb.MANUAL_STATION, "sid"
                else:
                    verb, key = Verb.MANUAL_PROGRAM, "pid"
                return Command(
                    verb=verb,
                    params={key: index, "en": _flag(desired), "t": timeout, "uwt": 0},
                    entity_id=entity_id,
                    effects={
                        Attr.ZONE_STATE: desired,
                        Attr.SWITCH_STATE: desired,
                        Attr.TOGGLE_STATE: desired,
                        Attr.ZONE_DURATION: duration if duration is not None else IGNORED,
                        Attr.ZONE_REMAINING: timeout,
                    },
                )
            case EntityKind.CONTROLLER:
                return Command(
                    verb=Verb.CHANGE_VARIABLES,
                    params={"en": _flag(desired)},
                    entity_id=entity_id,
                    effects={
                        Attr.STRING_VALUE: "Enabled" if desired else "Disabled",
                        Attr.SWITCH_STATE: desired,
                        Attr.TOGGLE_STATE: desired,
                    },
                )
            case EntityKind.RAIN_DELAY:
                if not desired or duration == 0:
                    hours = 0
                else:
                    hours = duration or self._settings.default_raindelay_hours
                end = int(self._clock.time()) + 3600 * hours if hours > 0 else 0
                return Command(
                    verb=Verb.CHANGE_VARIABLES,
                    params={"rd": hours},
                    entity_id=entity_id,
                    effects={
                        Attr.BINARY_STATE: hours > 0,
                        Attr.SWITCH_STATE: hours > 0,
                        Attr.TOGGLE_STATE: hours > 0,
                        Attr.STRING_VALUE: end,
                    },
                )
            case EntityKind.SENSOR | EntityKind.WATER_LEVEL:
                msg = f"'{entity_id}' ({kind}) cannot be switched"
                raise UnsupportedCommandError(msg)

    def enable_command(
        self,
        entity_id: str,
        kind: EntityKind,
        index: int | None,
        desired: bool,
    ) -> Command:
        """Build the enable/disable command for *entity_id*."""
        match kind:
            case EntityKind.ZONE:
                assert index is not None  # noqa: S101
                masks = self.station_masks(index, desired)
                return Command(
                    verb=Verb.STATION_DISABLE,
                    params={f"d{board}": mask for board, mask in enumerate(masks)},
                    entity_id=entity_id,
                    effects={Attr.ZONE_ENABLED: desired},
                )
            case EntityKind.PROGRAM:
                return Command(
                    verb=Verb.PROGRAM_CHANGE,
                    params={"pid": index, "en": _flag(desired)},
                    entity_id=entity_id,
                    effects={Attr.ZONE_ENABLED: desired},
                )
            case (
                EntityKind.CONTROLLER
                | EntityKind.RAIN_DELAY
                | EntityKind.SENSOR
                | EntityKind.WATER_LEVEL
            ):
                msg = f"'{entity_id}' ({kind}) cannot be enabled or disabled"
                raise UnsupportedCommandError(msg)

    def station_masks(self, target: int, desired: bool) -> list[int]:
        """Disable bitmasks for all boards with station *target* set to *desired*."""
        raw_boards = self._store.get_attribute(SYSTEM_ID, Attr.BOARDS)
        boards = raw_boards if isinstance(raw_boards, int) and raw_boards > 0 else 1
        boards = max(boards, target // STATIONS_PER_BOARD + 1)

        states: list[bool | None] = []
        for index in range(boards * STATIONS_PER_BOARD):
            if index == target:
                states.append(desired)
            else:
                value = self._store.get_attribute(station_id(index), Attr.ZONE_ENABLED)
                states.append(value if isinstance(value, bool) else None)
        return disable_bitmask(states, boards)

    # -- internals ------------------------------------------------------------

    def _resolve(self, entity_id: str) -> tuple[EntityKind, int | None]:
        entity = self._store.find(entity_id)
        if entity is None:
            msg = f"Unknown entity '{entity_id}'"
            raise EntityNotFoundError(msg)
        index = self._store.get_attribute(entity_id, Attr.ID)
        if entity.kind in (EntityKind.ZONE, EntityKind.PROGRAM) and not isinstance(index, int):
            msg = f"'{entity_id}' has no controller index yet"
            raise UnsupportedCommandError(msg)
        return entity.kind, index if isinstance(index, int) else None

    async def _stop_program(self, entity_id: str) -> frozenset[str]:
        """Stop every station the program drives, then mark it off."""
        data = self._store.get_attribute(entity_id, Attr.PROGRAM_DATA) or []
        failures: list[Exception] = []
        for index, value in enumerate(data):
            if not isinstance(value, (int, float)) or value <= 0:
                continue
            target = station_id(index)
            if self._store.find(target) is None:
                continue
            logger.debug("[%s] stopping %s", entity_id, target)
            try:
                await self.set_state(target, False)
            except (CommandFailedError, ControllerStoppingError):
                raise
            except Exception as exc:
                logger.warning("[%s] could not stop %s: %s", entity_id, target, exc)
                failures.append(exc)
        if failures:
            raise failures[0]
        return self._reconciler.apply_attributes(
            entity_id,
            {
                Attr.ZONE_STATE: False,
                Attr.SWITCH_STATE: False,
                Attr.TOGGLE_STATE: False,
                Attr.ZONE_REMAINING: 0,
            },
        )

    async def _execute(self, command: Command) -> frozenset[str]:
        if self._stopping:
            msg = f"Not sending '{command.verb}': controller is stopping"
            raise ControllerStoppingError(msg)

        logger.info("Sending %s %s for %s", command.verb, dict(command.params), command.entity_id)
        task = asyncio.create_task(self._send(command))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        try:
            response = await task
        except asyncio.CancelledError:
            if task.cancelled() and self._stopping and not _caller_cancelling():
                msg = f"'{command.verb}' for {command.entity_id} cancelled by shutdown"
                raise ControllerStoppingError(msg) from None
            raise

        check_result(response, verb=command.verb)
        if self._stopping:
            logger.debug("Discarding result of %s: stopping", command.verb)
            return frozenset()
        return self._reconciler.apply_attributes(command.entity_id, command.effects)

    async def _send(self, command: Command) -> dict[str, Any]:
        attempt = 0
        while True:
            attempt += 1
            if self._stopping:
                msg = f"Not sending '{command.verb}': controller is stopping"
                raise ControllerStoppingError(msg)
            try:
                return await self._transport.fetch(command.verb, command.params)
            except TransportError as exc:
                if attempt >= self._settings.command_attempts:
                    msg = (
                        f"'{command.verb}' for {command.entity_id} failed "
                        f"after {attempt} attempt(s): {exc}"
                    )
                    raise CommandFailedError(msg) from exc
                delay = backoff_delay(
                    attempt,
                    self._settings.error_interval,
                    self._settings.command_retry_cap,
                )
                logger.warning(
                    "'%s' attempt %d failed (%s), retrying in %.1fs",
                    command.verb,
                    attempt,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
