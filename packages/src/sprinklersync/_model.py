"""Entity model shared by the decoder, reconciler, dispatcher and bridge.

Attributes are addressed as ``<capability>.<attribute>``.  Vendor-specific
attributes live under the ``x_opensprinkler`` capability.

Entity ids are stable and derived from the controller's 0-based indices::

    os_station_{i+1}    os_program_{p+1}    os_sensor{n}
    os_raindelay        os_waterlevel       system
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Final

NS: Final = "x_opensprinkler"
"""Vendor namespace capability."""

SYSTEM_ID: Final = "system"
RAIN_DELAY_ID: Final = "os_raindelay"
WATER_LEVEL_ID: Final = "os_waterlevel"


class _Ignored:
    """Type of :data:`IGNORED`."""

    _instance: _Ignored | None = None

    def __new__(cls) -> _Ignored:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "IGNORED"

    def __reduce__(self) -> str:
        return "IGNORED"


IGNORED: Final = _Ignored()
"""Marker meaning "leave this attribute alone in this cycle".

Distinct from ``None``, which is a value and clears the attribute.
"""


class EntityKind(enum.StrEnum):
    """Closed set of entity kinds the engine knows how to decode and drive."""

    ZONE = "zone"
    PROGRAM = "program"
    CONTROLLER = "controller"
    RAIN_DELAY = "raindelay"
    SENSOR = "sensor"
    WATER_LEVEL = "waterlevel"


class Attr:
    """Attribute names used across the engine."""

    ZONE_STATE = "irrigation_zone.state"
    ZONE_ENABLED = "irrigation_zone.enabled"
    ZONE_REMAINING = "irrigation_zone.remaining"
    ZONE_LAST_RUN = "irrigation_zone.last_run"
    ZONE_DURATION = "irrigation_zone.duration"
    SWITCH_STATE = "power_switch.state"
    TOGGLE_STATE = "toggle.state"
    BINARY_STATE = "binary_sensor.state"
    STRING_VALUE = "string_sensor.value"
    STRING_UNITS = "string_sensor.units"

    TYPE = f"{NS}.type"
    ID = f"{NS}.id"
    SCHEDULED = f"{NS}.scheduled"
    PROGRAM_FLAG = f"{NS}.program_flag"
    PROGRAM_DATA = f"{NS}.program_data"
    WEATHER = f"{NS}.weather"
    SENSOR_KIND = f"{NS}.sensor_kind"
    AVAILABLE = f"{NS}.available"
    BOARDS = f"{NS}.boards"
    LAST_RUN_RECORD = f"{NS}.last_run"
    HARDWARE_VERSION = f"{NS}.hardware_version"
    FIRMWARE_VERSION = f"{NS}.firmware_version"
    CURRENT = f"{NS}.current"
    WEATHER_ADJUSTMENT_MODE = f"{NS}.weather_adjustment_mode"
    RSSI = f"{NS}.rssi"
    LAST_BOOT = f"{NS}.last_boot"
    LAST_BOOT_REASON = f"{NS}.last_boot_reason"


SWITCH_CAPABILITIES: Final = ("irrigation_zone", "power_switch", "toggle", NS)
RAIN_DELAY_CAPABILITIES: Final = (
    "binary_sensor",
    "power_switch",
    "toggle",
    "string_sensor",
    f"{NS}_raindelay",
    NS,
)
SENSOR_CAPABILITIES: Final = ("binary_sensor", NS)
WATER_LEVEL_CAPABILITIES: Final = ("string_sensor", NS)
CONTROLLER_CAPABILITIES: Final = (
    "power_switch",
    "toggle",
    "string_sensor",
    "sys_system",
    NS,
)


def station_id(index: int) -> str:
    """Entity id of the station at 0-based *index*."""
    return f"os_station_{index + 1}"


def program_id(index: int) -> str:
    """Entity id of the program at 0-based *index*."""
    return f"os_program_{index + 1}"


def sensor_id(number: int) -> str:
    """Entity id of sensor *number* (1 or 2)."""
    return f"os_sensor{number}"


@dataclass(frozen=True, slots=True)
class EntityUpdate:
    """Attribute update for one entity, as produced by the decoders.

    ``name`` is ``None`` when the source does not know the display name
    (push events); the reconciler then keeps the current name, or uses a
    fallback when it has to create the entity.
    """

    id: str
    kind: EntityKind
    attributes: Mapping[str, object]
    name: str | None = None
    capabilities: tuple[str, ...] = ()
    primary_attribute: str | None = None


@dataclass(frozen=True, slots=True)
class LastRun:
    """The controller's last-run record, fanned out to two entities.

    Only built when ``duration > 0 and end_time > 0``.
    """

    station_index: int
    program_index: int
    duration: int
    end_time: int

    @property
    def started(self) -> int:
        """Epoch seconds the run started at."""
        return self.end_time - self.duration

    @property
    def attributes(self) -> dict[str, object]:
        return {Attr.ZONE_LAST_RUN: self.started, Attr.ZONE_DURATION: self.duration}


@dataclass(frozen=True, slots=True)
class Command:
    """A vendor command plus the attribute effects it has on success."""

    verb: str
    params: Mapping[str, object]
    entity_id: str
    effects: Mapping[str, object] = field(default_factory=dict)
