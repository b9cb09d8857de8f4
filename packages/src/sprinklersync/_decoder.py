"""Status decoder: ``/ja`` payload → entity updates.

:func:`decode_status` is a pure function.  It performs no I/O, does not
log and never raises on a missing optional field: a missing field simply
leaves the corresponding attribute out of the update.  A section whose
shape is plainly wrong (a program entry that is not a list, say) is
reported in :attr:`StatusSnapshot.errors` and the remaining entities are
still decoded.

Relevant payload fields::

    stations.snames[i]       station display names
    stations.stn_dis[b]      per-board disable bitmask (bit i%8 of board i//8)
    status.sn[i]             station running bits (also a bare list, or settings.sn)
    settings.ps[i]           [program id, remaining s, start epoch]
    settings.rd / rdst       rain delay active / end epoch
    settings.sn1|2, sn1t|2t, sn1o|2o   sensor value, type code, option
    settings.en, options.den controller enabled / disable-enable option
    settings.lrun            [station index, program index, duration, end time]
    settings.mqtt.en         controller publishes push events
    programs.pd[p]           [flag, days0, days1, starts, data, name]
    options.hwv, hwt, fwv, wl
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

from sprinklersync._errors import DecodeError
from sprinklersync._model import (
    CONTROLLER_CAPABILITIES,
    IGNORED,
    RAIN_DELAY_CAPABILITIES,
    RAIN_DELAY_ID,
    SENSOR_CAPABILITIES,
    SWITCH_CAPABILITIES,
    SYSTEM_ID,
    WATER_LEVEL_CAPABILITIES,
    WATER_LEVEL_ID,
    Attr,
    EntityKind,
    EntityUpdate,
    LastRun,
    program_id,
    sensor_id,
    station_id,
)

STATIONS_PER_BOARD: Final = 8

SENSOR_KINDS: Final[Mapping[int, str]] = {
    0: "none",
    1: "rain",
    2: "flow",
    3: "soil",
    240: "program_switch",
}

_SENSOR_NAMES: Final[Mapping[str, str]] = {
    "rain": "Rain Sensor",
    "flow": "Flow Sensor",
    "soil": "Soil Sensor",
    "program_switch": "Program Switch",
}

HARDWARE_VERSIONS: Final[Mapping[int, str]] = {
    64: "OSPi",
    128: "OSBo",
    192: "Linux",
    255: "Demo",
}

HARDWARE_TYPES: Final[Mapping[int, str]] = {
    172: "AC",
    220: "DC",
    26: "Latching",
}


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    """Everything one status payload says about the controller."""

    updates: tuple[EntityUpdate, ...]
    last_run: LastRun | None = None
    push_enabled: bool = False
    boards: int = 1
    errors: tuple[DecodeError, ...] = ()


# ---------------------------------------------------------------------------
# Field-level helpers
# ---------------------------------------------------------------------------


def station_disabled(stn_dis: Sequence[int], index: int) -> bool:
    """Whether station *index* is disabled according to *stn_dis*.

    Station ``i`` is disabled iff bit ``i % 8`` of board ``i // 8`` is set.
    Boards missing from *stn_dis* count as all-enabled.
    """
    board, bit = divmod(index, STATIONS_PER_BOARD)
    if board >= len(stn_dis):
        return False
    return bool((int(stn_dis[board]) >> bit) & 1)


def disable_bitmask(enabled: Sequence[bool | None], boards: int) -> list[int]:
    """Pack per-station enabled flags into per-board disable bitmasks.

    ``enabled[i]`` is the desired state of station ``i``; ``None`` (a
    station never observed) counts as enabled.  The result always has
    exactly *boards* entries.
    """
    masks = [0] * boards
    for index, state in enumerate(enabled[: boards * STATIONS_PER_BOARD]):
        if state is False:
            board, bit = divmod(index, STATIONS_PER_BOARD)
            masks[board] |= 1 << bit
    return masks


def program_flags(flag: int) -> tuple[bool, bool]:
    """Split a packed program flag into ``(enabled, weather_adjusted)``."""
    return bool(flag & 1), bool((flag >> 1) & 1)


def sensor_kind(code: object) -> str:
    """Sensor kind name for a ``sn{n}t`` type code."""
    if not isinstance(code, int):
        return "unknown"
    return SENSOR_KINDS.get(code, "unknown")


def hardware_version(hwv: object, hwt: object = None) -> str | None:
    """Human-readable hardware version.

    Named platforms come from :data:`HARDWARE_VERSIONS`; other codes are
    rendered as ``"<major>.<minor>"`` with ``major = (code // 10) % 10``
    and ``minor = code % 10``, followed by the hardware type when *hwt*
    is a known code.  Strings are passed through unchanged.

    >>> hardware_version(26)
    '2.6'
    >>> hardware_version(23, 172)
    '2.3 - AC'
    """
    if isinstance(hwv, str):
        return hwv
    if not isinstance(hwv, int) or isinstance(hwv, bool):
        return None
    if hwv in HARDWARE_VERSIONS:
        return HARDWARE_VERSIONS[hwv]
    version = f"{(hwv // 10) % 10}.{hwv % 10}"
    if isinstance(hwt, int) and hwt in HARDWARE_TYPES:
        version = f"{version} - {HARDWARE_TYPES[hwt]}"
    return version


def firmware_version(fwv: object) -> str | None:
    """Render a packed firmware number (``219`` → ``"2.1.9"``)."""
    if isinstance(fwv, str):
        return fwv
    if not isinstance(fwv, int) or isinstance(fwv, bool) or fwv < 0:
        return None
    return ".".join(str(fwv))


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else {}


def _list(value: object) -> list[Any]:
    return list(value) if isinstance(value, Sequence) and not isinstance(value, str) else []


def _station_bits(payload: Mapping[str, Any]) -> list[Any]:
    status = payload.get("status")
    if isinstance(status, Mapping):
        return _list(status.get("sn"))
    if status is not None:
        return _list(status)
    return _list(_section(payload, "settings").get("sn"))


def _running_programs(ps: list[Any]) -> set[int]:
    """1-based ids of the programs that currently own a station."""
    running: set[int] = set()
    for entry in ps:
        values = _list(entry)
        pid = _int(values[0]) if values else None
        if pid is not None and pid > 0:
            running.add(pid)
    return running


def _int(value: object) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


# ---------------------------------------------------------------------------
# Per-entity decoders
# ---------------------------------------------------------------------------


def _decode_station(
    index: int,
    name: object,
    bits: list[Any],
    ps: list[Any],
    stn_dis: list[Any] | None,
) -> EntityUpdate:
    attributes: dict[str, object] = {
        Attr.ID: index,
        Attr.TYPE: EntityKind.ZONE.value,
    }

    if index < len(bits):
        running = _int(bits[index])
        if running is None:
            msg = f"station {index}: running bit is not a number"
            raise DecodeError(msg, entity_id=station_id(index))
        state = running > 0
        attributes[Attr.ZONE_STATE] = state
        attributes[Attr.SWITCH_STATE] = state
        attributes[Attr.TOGGLE_STATE] = state

    if index < len(ps):
        entry = _list(ps[index])
        if len(entry) < 3:  # noqa: PLR2004
            msg = f"station {index}: program status is not a [pid, rem, start] triplet"
            raise DecodeError(msg, entity_id=station_id(index))
        pid, remaining, start = (_int(v) for v in entry[:3])
        if pid is not None:
            attributes[Attr.SCHEDULED] = pid > 0
        if remaining is not None:
            attributes[Attr.ZONE_REMAINING] = remaining
        attributes[Attr.ZONE_LAST_RUN] = start if start else IGNORED

    if stn_dis is not None:
        board = index // STATIONS_PER_BOARD
        mask = _int(stn_dis[board]) if board < len(stn_dis) else 0
        if mask is None:
            msg = f"station {index}: disable mask for board {board} is not a number"
            raise DecodeError(msg, entity_id=station_id(index))
        attributes[Attr.ZONE_ENABLED] = not station_disabled([mask], index % STATIONS_PER_BOARD)

    return EntityUpdate(
        id=station_id(index),
        kind=EntityKind.ZONE,
        name=name if isinstance(name, str) and name else f"Station #{index + 1}",
        capabilities=SWITCH_CAPABILITIES,
        primary_attribute=Attr.ZONE_STATE,
        attributes=attributes,
    )


def _decode_program(index: int, pd: object, running: bool) -> EntityUpdate:
    entry = _list(pd)
    flag = _int(entry[0]) if entry else None
    if flag is None:
        msg = f"program {index}: missing or non-numeric flag"
        raise DecodeError(msg, entity_id=program_id(index))

    enabled, weather = program_flags(flag)
    attributes: dict[str, object] = {
        Attr.ID: index,
        Attr.TYPE: EntityKind.PROGRAM.value,
        Attr.ZONE_ENABLED: enabled,
        Attr.ZONE_STATE: running,
        Attr.SWITCH_STATE: running,
        Attr.TOGGLE_STATE: running,
        Attr.PROGRAM_FLAG: flag,
        Attr.WEATHER: weather,
    }
    if len(entry) > 4:  # noqa: PLR2004
        attributes[Attr.PROGRAM_DATA] = _list(entry[4])

    name = entry[5] if len(entry) > 5 else None  # noqa: PLR2004
    return EntityUpdate(
        id=program_id(index),
        kind=EntityKind.PROGRAM,
        name=name if isinstance(name, str) and name else f"Program #{index + 1}",
        capabilities=SWITCH_CAPABILITIES,
        primary_attribute=Attr.ZONE_STATE,
        attributes=attributes,
    )


def _decode_rain_delay(settings: Mapping[str, Any]) -> EntityUpdate:
    attributes: dict[str, object] = {Attr.TYPE: EntityKind.RAIN_DELAY.value}
    if "rd" in settings:
        active = settings.get("rd") == 1
        attributes[Attr.BINARY_STATE] = active
        attributes[Attr.SWITCH_STATE] = active
        attributes[Attr.TOGGLE_STATE] = active
    if "rdst" in settings or "rd" in settings:
        attributes[Attr.STRING_VALUE] = settings.get("rdst") or 0
    return EntityUpdate(
        id=RAIN_DELAY_ID,
        kind=EntityKind.RAIN_DELAY,
        name="Rain Delay",
        capabilities=RAIN_DELAY_CAPABILITIES,
        primary_attribute=Attr.BINARY_STATE,
        attributes=attributes,
    )


def _decode_sensor(number: int, settings: Mapping[str, Any]) -> EntityUpdate | None:
    code = settings.get(f"sn{number}t")
    if not isinstance(code, int) or code <= 0:
        return None

    kind = sensor_kind(code)
    attributes: dict[str, object] = {
        Attr.TYPE: EntityKind.SENSOR.value,
        Attr.SENSOR_KIND: kind,
    }
    option = settings.get(f"sn{number}o")
    if option is not None:
        attributes[Attr.BINARY_STATE] = (settings.get(f"sn{number}") or 0) == option

    return EntityUpdate(
        id=sensor_id(number),
        kind=EntityKind.SENSOR,
        name=_SENSOR_NAMES.get(kind, f"Sensor {number}"),
        capabilities=SENSOR_CAPABILITIES,
        primary_attribute=Attr.BINARY_STATE,
        attributes=attributes,
    )


def _decode_water_level(options: Mapping[str, Any]) -> EntityUpdate:
    return EntityUpdate(
        id=WATER_LEVEL_ID,
        kind=EntityKind.WATER_LEVEL,
        name="Water Level",
        capabilities=WATER_LEVEL_CAPABILITIES,
        primary_attribute=Attr.STRING_VALUE,
        attributes={
            Attr.TYPE: EntityKind.WATER_LEVEL.value,
            Attr.STRING_VALUE: options.get("wl") or 0,
            Attr.STRING_UNITS: "%",
        },
    )


def _decode_controller(
    settings: Mapping[str, Any],
    options: Mapping[str, Any],
    boards: int,
) -> EntityUpdate:
    attributes: dict[str, object] = {
        Attr.TYPE: EntityKind.CONTROLLER.value,
        Attr.BOARDS: boards,
    }

    en, den = settings.get("en"), options.get("den")
    if en is not None or den is not None:
        enabled = en == 1 or den == 0
        attributes[Attr.SWITCH_STATE] = enabled
        attributes[Attr.TOGGLE_STATE] = enabled
        attributes[Attr.STRING_VALUE] = "Enabled" if enabled else "Disabled"

    if (hw := hardware_version(options.get("hwv"), options.get("hwt"))) is not None:
        attributes[Attr.HARDWARE_VERSION] = hw
    if (fw := firmware_version(options.get("fwv"))) is not None:
        attributes[Attr.FIRMWARE_VERSION] = fw

    optional = {
        "curr": Attr.CURRENT,
        "uwt": Attr.WEATHER_ADJUSTMENT_MODE,
        "RSSI": Attr.RSSI,
        "lupt": Attr.LAST_BOOT,
        "lrbtc": Attr.LAST_BOOT_REASON,
        "lrun": Attr.LAST_RUN_RECORD,
    }
    for key, attr in optional.items():
        if key in settings:
            attributes[attr] = settings[key]

    return EntityUpdate(
        id=SYSTEM_ID,
        kind=EntityKind.CONTROLLER,
        name="OpenSprinkler",
        capabilities=CONTROLLER_CAPABILITIES,
        primary_attribute=Attr.STRING_VALUE,
        attributes=attributes,
    )


def decode_last_run(lrun: object) -> LastRun | None:
    """Build the last-run fan-out from ``settings.lrun``.

    Returns ``None`` unless the record is complete and both
    ``duration > 0`` and ``end_time > 0``.
    """
    values = [v for v in (_int(raw) for raw in _list(lrun)[:4]) if v is not None]
    if len(values) < 4:  # noqa: PLR2004
        return None
    station, program, duration, end_time = values
    if duration <= 0 or end_time <= 0:
        return None
    return LastRun(
        station_index=station,
        program_index=program,
        duration=duration,
        end_time=end_time,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def decode_status(payload: Mapping[str, Any]) -> StatusSnapshot:
    """Decode a full ``/ja`` status payload.

    Identical payloads always produce identical snapshots.
    """
    stations = _section(payload, "stations")
    settings = _section(payload, "settings")
    options = _section(payload, "options")
    programs = _section(payload, "programs")

    updates: list[EntityUpdate] = []
    errors: list[DecodeError] = []

    names = _list(stations.get("snames"))
    bits = _station_bits(payload)
    ps = _list(settings.get("ps"))
    stn_dis = _list(stations.get("stn_dis")) if "stn_dis" in stations else None

    for index, name in enumerate(names):
        try:
            updates.append(_decode_station(index, name, bits, ps, stn_dis))
        except DecodeError as exc:
            errors.append(exc)

    running_programs = _running_programs(ps)
    for index, pd in enumerate(_list(programs.get("pd"))):
        try:
            updates.append(_decode_program(index, pd, (index + 1) in running_programs))
        except DecodeError as exc:
            errors.append(exc)

    if settings:
        updates.append(_decode_rain_delay(settings))
        for number in (1, 2):
            if (sensor := _decode_sensor(number, settings)) is not None:
                updates.append(sensor)

    if "wl" in options:
        updates.append(_decode_water_level(options))

    boards = _int(settings.get("nbrd")) or 1
    updates.append(_decode_controller(settings, options, boards))

    mqtt = settings.get("mqtt")
    push_enabled = isinstance(mqtt, Mapping) and mqtt.get("en") == 1

    return StatusSnapshot(
        updates=tuple(updates),
        last_run=decode_last_run(settings.get("lrun")),
        push_enabled=push_enabled,
        boards=boards,
        errors=tuple(errors),
    )
