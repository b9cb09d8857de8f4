"""sprinklersync.

State synchronisation and command dispatch for OpenSprinkler irrigation
controllers, with an optional MQTT bridge.
"""

from importlib.metadata import PackageNotFoundError, version

from sprinklersync._app import App
from sprinklersync._capabilities import Capability, CapabilityRegistry, load_capabilities
from sprinklersync._clock import ClockPort, SystemClock
from sprinklersync._controller import SprinklerController
from sprinklersync._decoder import StatusSnapshot, decode_status
from sprinklersync._dispatcher import CommandDispatcher
from sprinklersync._errors import (
    CommandError,
    CommandFailedError,
    ConfigError,
    ControllerStoppingError,
    DecodeError,
    EntityNotFoundError,
    ErrorPayload,
    ErrorPublisher,
    ProtocolError,
    SprinklerError,
    TransportError,
    UnsupportedCommandError,
    build_error_payload,
)
from sprinklersync._events import EventBridge, PushEvent, decode_event
from sprinklersync._health import AvailabilityReporter, HealthTracker, backoff_delay
from sprinklersync._http import HttpTransport, TransportPort
from sprinklersync._logging import JsonFormatter, configure_logging
from sprinklersync._model import IGNORED, Attr, EntityKind, EntityUpdate, LastRun
from sprinklersync._mqtt import (
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
    WillConfig,
)
from sprinklersync._poller import Poller
from sprinklersync._reconciler import Reconciler
from sprinklersync._settings import ControllerSettings, LoggingSettings, MqttSettings, Settings
from sprinklersync._store import Entity, EntityStorePort, MemoryEntityStore

try:
    __version__ = version("sprinklersync")
except PackageNotFoundError:
    # Editable installs without metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # App
    "App",
    "SprinklerController",
    # Engine
    "CommandDispatcher",
    "EventBridge",
    "Poller",
    "PushEvent",
    "Reconciler",
    "StatusSnapshot",
    "decode_event",
    "decode_status",
    # Model
    "IGNORED",
    "Attr",
    "Capability",
    "CapabilityRegistry",
    "Entity",
    "EntityKind",
    "EntityStorePort",
    "EntityUpdate",
    "LastRun",
    "MemoryEntityStore",
    "load_capabilities",
    # Clock
    "ClockPort",
    "SystemClock",
    # Transport
    "HttpTransport",
    "TransportPort",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttLifecycle",
    "MqttMessageHandler",
    "MqttPort",
    "NullMqttClient",
    "WillConfig",
    # Errors
    "CommandError",
    "CommandFailedError",
    "ConfigError",
    "ControllerStoppingError",
    "DecodeError",
    "EntityNotFoundError",
    "ErrorPayload",
    "ErrorPublisher",
    "ProtocolError",
    "SprinklerError",
    "TransportError",
    "UnsupportedCommandError",
    "build_error_payload",
    # Health
    "AvailabilityReporter",
    "HealthTracker",
    "backoff_delay",
    # Settings
    "ControllerSettings",
    "LoggingSettings",
    "MqttSettings",
    "Settings",
]
