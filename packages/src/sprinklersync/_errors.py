"""Error taxonomy and structured error publication.

Every failure the engine can report derives from :class:`SprinklerError`.
The families map onto how the engine reacts to them:

- :class:`ConfigError` — missing host/credential; rejects ``start()``.
- :class:`TransportError` — network failure or timeout; retried with
  backoff by the poller and the command dispatcher.
- :class:`ProtocolError` — the controller answered with a non-success
  ``result`` code.  Each documented code has its own subclass.
- :class:`DecodeError` — unexpected payload shape; degrades only the
  affected entity.
- :class:`CommandError` — an intent could not be carried out.

Command failures coming in over MQTT are additionally published as
structured JSON on ``{prefix}/error``::

    {
        "error_type": "not_permitted",
        "message": "Controller refused the request (result 48)",
        "entity": "os_station_3",
        "timestamp": "2026-02-14T12:34:56+00:00",
        "details": {"result": 48}
    }

Publication is fire-and-forget: failures are logged, never propagated.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from sprinklersync._mqtt import MqttPort

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class SprinklerError(Exception):
    """Base class for all sprinklersync errors."""


class ConfigError(SprinklerError):
    """Required configuration is missing or invalid."""


class TransportError(SprinklerError):
    """The controller could not be reached (network failure, timeout)."""


class DecodeError(SprinklerError):
    """A payload did not have the expected shape.

    Args:
        message: Human-readable description.
        entity_id: Entity whose section failed to decode, when known.
    """

    def __init__(self, message: str, *, entity_id: str | None = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id


class ProtocolError(SprinklerError):
    """The controller answered with a non-success ``result`` code."""

    code: int | None = None
    description = "Unexpected result"

    def __init__(self, result: int | None = None, *, verb: str | None = None) -> None:
        self.result = result if result is not None else self.code
        self.verb = verb
        where = f" to '{verb}'" if verb else ""
        super().__init__(f"{self.description}{where} (result {self.result})")


class UnauthorizedError(ProtocolError):
    code = 2
    description = "Unauthorized, missing or incorrect password"


class MismatchError(ProtocolError):
    code = 3
    description = "Mismatch"


class DataMissingError(ProtocolError):
    code = 16
    description = "Required parameters missing"


class OutOfRangeError(ProtocolError):
    code = 17
    description = "Value out of range"


class DataFormatError(ProtocolError):
    code = 18
    description = "Data format error"


class RfCodeError(ProtocolError):
    code = 19
    description = "RF code error"


class PageNotFoundError(ProtocolError):
    code = 32
    description = "Page not found"


class NotPermittedError(ProtocolError):
    code = 48
    description = "Controller refused the request"


class CommandError(SprinklerError):
    """An intent could not be turned into a successful command."""


class EntityNotFoundError(CommandError):
    """The intent targets an entity that has not been observed yet."""


class UnsupportedCommandError(CommandError):
    """The entity kind does not support the requested intent."""


class CommandFailedError(CommandError):
    """The command was abandoned after exhausting its retry budget."""


class ControllerStoppingError(CommandError):
    """The controller is shutting down and accepts no new work."""


RESULT_SUCCESS = 1

_PROTOCOL_ERRORS: dict[int, type[ProtocolError]] = {
    cls.code: cls
    for cls in (
        UnauthorizedError,
        MismatchError,
        DataMissingError,
        OutOfRangeError,
        DataFormatError,
        RfCodeError,
        PageNotFoundError,
        NotPermittedError,
    )
    if cls.code is not None
}


def protocol_error(result: int, *, verb: str | None = None) -> ProtocolError:
    """Build the :class:`ProtocolError` subclass matching *result*.

    Codes outside the documented table produce a plain
    :class:`ProtocolError` carrying the raw code.
    """
    cls = _PROTOCOL_ERRORS.get(result, ProtocolError)
    return cls(result, verb=verb)


def check_result(response: Mapping[str, Any], *, verb: str | None = None) -> None:
    """Raise the matching :class:`ProtocolError` unless *response* succeeded.

    Responses without a ``result`` key (the status endpoint) are
    considered successful.
    """
    if "result" not in response:
        return
    result = response["result"]
    if result == RESULT_SUCCESS:
        return
    if not isinstance(result, int) or isinstance(result, bool):
        msg = f"Unexpected result value {result!r}"
        raise DecodeError(msg)
    raise protocol_error(result, verb=verb)


DEFAULT_ERROR_TYPES: dict[type[Exception], str] = {
    ConfigError: "config_error",
    TransportError: "transport_error",
    DecodeError: "decode_error",
    ProtocolError: "protocol_error",
    UnauthorizedError: "unauthorized",
    MismatchError: "mismatch",
    DataMissingError: "data_missing",
    OutOfRangeError: "out_of_range",
    DataFormatError: "data_format",
    RfCodeError: "rf_code",
    PageNotFoundError: "page_not_found",
    NotPermittedError: "not_permitted",
    CommandError: "command_error",
    EntityNotFoundError: "entity_not_found",
    UnsupportedCommandError: "unsupported_command",
    CommandFailedError: "command_failed",
    ControllerStoppingError: "stopping",
}

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload."""

    error_type: str
    message: str
    entity: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self))


def build_error_payload(
    error: Exception,
    *,
    error_type_map: Mapping[type[Exception], str] | None = None,
    entity: str | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    Looks up the exact class of the exception; subclasses are not matched.
    Protocol errors carry their raw ``result`` code in ``details``.

    Args:
        error: The exception to convert.
        error_type_map: Mapping from exception types to machine-readable
            ``error_type`` strings.  Defaults to :data:`DEFAULT_ERROR_TYPES`;
            unmapped types fall back to ``"error"``.
        entity: Optional entity id to include in the payload.
        clock: Optional callable returning a :class:`~datetime.datetime`.
            Defaults to ``datetime.now(UTC)``.
    """
    resolved_map = DEFAULT_ERROR_TYPES if error_type_map is None else error_type_map
    error_type = resolved_map.get(type(error), "error")
    now = clock() if clock is not None else datetime.now(UTC)
    details: dict[str, object] = {}
    if isinstance(error, ProtocolError):
        details["result"] = error.result
        if error.verb is not None:
            details["verb"] = error.verb
    return ErrorPayload(
        error_type=error_type,
        message=str(error),
        entity=entity,
        timestamp=now.isoformat(),
        details=details,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class ErrorPublisher:
    """Publishes structured error payloads to ``{topic_prefix}/error``.

    Errors during publication are logged but never propagated; the
    bridge must not crash because an error *report* failed.
    """

    mqtt: MqttPort
    topic_prefix: str
    error_type_map: Mapping[type[Exception], str] = field(
        default_factory=lambda: dict(DEFAULT_ERROR_TYPES),
    )
    clock: Callable[[], datetime] | None = field(default=None, repr=False)

    async def publish(self, error: Exception, *, entity: str | None = None) -> None:
        """Build an error payload and publish it, never raising."""
        try:
            payload = build_error_payload(
                error,
                error_type_map=self.error_type_map,
                entity=entity,
                clock=self.clock,
            )
            payload_json = payload.to_json()
        except Exception:
            logger.exception(
                "Failed to build error payload for %r (entity=%s)",
                error,
                entity,
            )
            return

        topic = f"{self.topic_prefix}/error"
        logger.warning(
            "Publishing error: %s (type=%s, entity=%s)",
            payload.message,
            payload.error_type,
            entity,
        )
        try:
            await self.mqtt.publish(topic, payload_json, retain=False, qos=1)
        except Exception:
            logger.exception("Failed to publish error to %s", topic)
