"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables (prefixed
``SPRINKLERSYNC_``) and/or ``.env`` files.  Nested models use ``__`` as
the delimiter in env var names, e.g.
``SPRINKLERSYNC_CONTROLLER__HOST=192.168.1.20``.

The schema covers three concerns:

* **Controller** — the OpenSprinkler endpoint, polling cadence, command
  defaults and the push-channel topic.
* **MQTT** — broker connection for the push channel and the bridge's
  own state/command topics.
* **Logging** — level, format, optional file sink, rotation.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings — nested via composition)
# -------------------------------------------------------------------


class ControllerSettings(BaseModel):
    """OpenSprinkler controller connection and engine tuning.

    Environment variables::

        SPRINKLERSYNC_CONTROLLER__HOST=192.168.1.20
        SPRINKLERSYNC_CONTROLLER__PASSWORD=a6d82bced638de3def1e9bbb4983225c
        SPRINKLERSYNC_CONTROLLER__INTERVAL=10

    ``host`` and ``password`` are optional at the model level so that
    ``--version`` and friends work without a configured controller;
    :meth:`~sprinklersync.SprinklerController.start` rejects a missing
    value with :class:`~sprinklersync.ConfigError`.
    """

    host: str | None = Field(
        default=None,
        description="Controller host name or address, optionally with port.",
    )
    password: SecretStr | None = Field(
        default=None,
        description="Value sent as the ``pw`` query parameter.",
    )
    interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds between status polls while the push channel is idle.",
    )
    timeout: Annotated[float, Field(gt=0)] = Field(
        default=15.0,
        description="Per-request timeout in seconds.",
    )
    error_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Base retry delay after a failed request.",
    )
    max_backoff: Annotated[float, Field(gt=0)] = Field(
        default=120.0,
        description="Upper bound for the poll retry delay.",
    )
    unavailable_after: Annotated[int, Field(ge=1)] = Field(
        default=3,
        description="Consecutive poll failures before the controller is unavailable.",
    )
    command_attempts: Annotated[int, Field(ge=1)] = Field(
        default=3,
        description="Total send attempts per command on transport failure.",
    )
    command_retry_cap: Annotated[float, Field(gt=0)] = Field(
        default=2.0,
        description="Upper bound for the delay between command attempts.",
    )
    default_zone_duration: Annotated[int, Field(gt=0)] = Field(
        default=60,
        description="Run time in seconds when a zone or program is started without one.",
    )
    default_raindelay_hours: Annotated[int, Field(gt=0)] = Field(
        default=1,
        description="Rain-delay length in hours when none is given.",
    )
    use_push: bool = Field(
        default=True,
        description=(
            "Follow the controller's MQTT events when it publishes them and "
            "suspend periodic polling while the push channel is healthy."
        ),
    )
    push_topic: str = Field(
        default="opensprinkler",
        description="Topic root the controller publishes its events under.",
    )
    push_queue_size: Annotated[int, Field(ge=1)] = Field(
        default=256,
        description="Capacity of the inbound push-event queue.",
    )


class MqttSettings(BaseModel):
    """MQTT broker connection and topic configuration.

    Environment variables (with ``__`` nesting)::

        SPRINKLERSYNC_MQTT__ENABLED=true
        SPRINKLERSYNC_MQTT__HOST=broker.local
        SPRINKLERSYNC_MQTT__TOPIC_PREFIX=garden
    """

    enabled: bool = Field(
        default=False,
        description="Connect to a broker for push events and state publication.",
    )
    host: str = Field(
        default="localhost",
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, the app generates "
            "'{name}-{hex8}' at startup."
        ),
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS used for subscriptions.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description=(
            "Initial seconds to wait before reconnecting after connection "
            "loss.  Doubles on each consecutive failure up to "
            "``reconnect_max_interval``."
        ),
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Upper bound (seconds) for the reconnect backoff.",
    )
    topic_prefix: str = Field(
        default="",
        description=(
            "Root prefix for the bridge's own topics. "
            "When empty, falls back to the app name."
        ),
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (``max_file_size_mb`` per generation, ``backup_count`` generations).

    ``format`` selects ``"json"`` (NDJSON lines for log aggregators) or
    ``"text"`` (human-readable lines for terminals).
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for a sprinklersync bridge.

    Example ``.env``::

        SPRINKLERSYNC_CONTROLLER__HOST=192.168.1.20
        SPRINKLERSYNC_CONTROLLER__PASSWORD=secret
        SPRINKLERSYNC_MQTT__ENABLED=true
        SPRINKLERSYNC_MQTT__HOST=broker.local
        SPRINKLERSYNC_LOGGING__LEVEL=DEBUG
        SPRINKLERSYNC_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="SPRINKLERSYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    controller: ControllerSettings = Field(
        default_factory=ControllerSettings,
        description="OpenSprinkler controller settings.",
    )
    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
