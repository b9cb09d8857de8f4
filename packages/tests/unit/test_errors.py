"""Tests for sprinklersync._errors — taxonomy and structured error publication.

Test Techniques Used:
    - Decision Table: result codes to ProtocolError subclasses
    - Specification-based Testing: ErrorPayload construction and serialisation
    - State-based Testing: ErrorPublisher publication to the error topic
    - Clock Injection: Deterministic timestamps via injected clock callable
    - Exception Safety: publication failures are swallowed and logged
"""

from __future__ import annotations

import json
import logging
from dataclasses import FrozenInstanceError
from datetime import UTC, datetime

import pytest

from sprinklersync._errors import (
    DEFAULT_ERROR_TYPES,
    CommandError,
    CommandFailedError,
    DataFormatError,
    DataMissingError,
    DecodeError,
    ErrorPayload,
    ErrorPublisher,
    MismatchError,
    NotPermittedError,
    OutOfRangeError,
    PageNotFoundError,
    ProtocolError,
    RfCodeError,
    SprinklerError,
    TransportError,
    UnauthorizedError,
    build_error_payload,
    check_result,
    protocol_error,
)
from sprinklersync._mqtt import MockMqttClient

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FIXED_DT = datetime(2026, 2, 14, 12, 0, 0, tzinfo=UTC)
FIXED_ISO = FIXED_DT.isoformat()


def _fixed_clock() -> datetime:
    """Return a deterministic datetime for testing."""
    return FIXED_DT


# ---------------------------------------------------------------------------
# Result codes
# ---------------------------------------------------------------------------


class TestProtocolError:
    """Result-code mapping.

    Technique: Decision Table — every documented code has its own class.
    """

    @pytest.mark.parametrize(
        ("code", "cls"),
        [
            (2, UnauthorizedError),
            (3, MismatchError),
            (16, DataMissingError),
            (17, OutOfRangeError),
            (18, DataFormatError),
            (19, RfCodeError),
            (32, PageNotFoundError),
            (48, NotPermittedError),
        ],
    )
    def test_documented_codes(self, code: int, cls: type[ProtocolError]) -> None:
        error = protocol_error(code, verb="cv")
        assert type(error) is cls
        assert error.result == code
        assert error.verb == "cv"

    def test_unknown_code_keeps_raw_value(self) -> None:
        error = protocol_error(99)
        assert type(error) is ProtocolError
        assert error.result == 99
        assert "99" in str(error)

    def test_message_names_verb(self) -> None:
        assert "'cm'" in str(NotPermittedError(verb="cm"))

    def test_everything_is_a_sprinkler_error(self) -> None:
        for cls in (TransportError, DecodeError, ProtocolError, CommandFailedError):
            assert issubclass(cls, SprinklerError)

    def test_decode_error_carries_entity(self) -> None:
        assert DecodeError("bad", entity_id="os_program_2").entity_id == "os_program_2"


class TestCheckResult:
    """Technique: Equivalence Partitioning — success, absent, failure, junk."""

    def test_success(self) -> None:
        check_result({"result": 1})

    def test_status_payload_without_result(self) -> None:
        check_result({"settings": {}})

    def test_failure_raises_mapped_error(self) -> None:
        with pytest.raises(UnauthorizedError) as exc_info:
            check_result({"result": 2}, verb="cm")
        assert exc_info.value.verb == "cm"

    @pytest.mark.parametrize("result", ["1", None, 2.5])
    def test_non_integer_result(self, result: object) -> None:
        with pytest.raises(DecodeError):
            check_result({"result": result})


# ---------------------------------------------------------------------------
# ErrorPayload / build_error_payload
# ---------------------------------------------------------------------------


class TestErrorPayload:
    """Technique: Specification-based Testing — value object behaviour."""

    def test_to_json_round_trips_fields(self) -> None:
        payload = ErrorPayload(
            error_type="not_permitted",
            message="refused",
            entity="os_station_3",
            timestamp=FIXED_ISO,
            details={"result": 48},
        )
        assert json.loads(payload.to_json()) == {
            "error_type": "not_permitted",
            "message": "refused",
            "entity": "os_station_3",
            "timestamp": FIXED_ISO,
            "details": {"result": 48},
        }

    def test_frozen_immutable(self) -> None:
        payload = ErrorPayload(error_type="x", message="m", entity=None, timestamp=FIXED_ISO)
        with pytest.raises(FrozenInstanceError):
            payload.message = "changed"  # type: ignore[misc]


class TestBuildErrorPayload:
    """Technique: Decision Table — exact-class lookup with fallback."""

    def test_default_map(self) -> None:
        payload = build_error_payload(TransportError("down"), clock=_fixed_clock)
        assert payload.error_type == "transport_error"
        assert payload.timestamp == FIXED_ISO

    def test_subclasses_are_not_matched(self) -> None:
        class _Custom(CommandError):
            pass

        assert build_error_payload(_Custom("x")).error_type == "error"

    def test_protocol_details(self) -> None:
        payload = build_error_payload(NotPermittedError(verb="cv"), entity="system")
        assert payload.error_type == "not_permitted"
        assert payload.entity == "system"
        assert payload.details == {"result": 48, "verb": "cv"}

    def test_custom_map(self) -> None:
        payload = build_error_payload(
            ValueError("bad"),
            error_type_map={ValueError: "invalid"},
        )
        assert payload.error_type == "invalid"

    def test_every_default_type_is_a_sprinkler_error(self) -> None:
        assert all(issubclass(cls, SprinklerError) for cls in DEFAULT_ERROR_TYPES)


# ---------------------------------------------------------------------------
# ErrorPublisher
# ---------------------------------------------------------------------------


class TestErrorPublisher:
    """Technique: State-based Testing — topic, QoS and safety."""

    async def test_publishes_to_error_topic(self, mock_mqtt: MockMqttClient) -> None:
        publisher = ErrorPublisher(mqtt=mock_mqtt, topic_prefix="garden", clock=_fixed_clock)
        await publisher.publish(CommandFailedError("gave up"), entity="os_station_1")

        [(payload, retain, qos)] = mock_mqtt.get_messages_for("garden/error")
        assert retain is False
        assert qos == 1
        body = json.loads(payload)
        assert body["error_type"] == "command_failed"
        assert body["entity"] == "os_station_1"
        assert body["timestamp"] == FIXED_ISO

    async def test_swallows_publish_failure(
        self,
        mock_mqtt: MockMqttClient,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        mock_mqtt.raise_on_publish = ConnectionError("broker down")
        publisher = ErrorPublisher(mqtt=mock_mqtt, topic_prefix="garden")
        with caplog.at_level(logging.ERROR, logger="sprinklersync._errors"):
            await publisher.publish(TransportError("down"))
        assert any("Failed to publish error" in r.message for r in caplog.records)

    async def test_swallows_payload_build_failure(
        self,
        mock_mqtt: MockMqttClient,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        def _broken_clock() -> datetime:
            msg = "clock exploded"
            raise RuntimeError(msg)

        publisher = ErrorPublisher(mqtt=mock_mqtt, topic_prefix="garden", clock=_broken_clock)
        with caplog.at_level(logging.ERROR, logger="sprinklersync._errors"):
            await publisher.publish(TransportError("down"))
        assert mock_mqtt.published == []
        assert any("Failed to build error payload" in r.message for r in caplog.records)
