"""Tests for sprinklersync._poller — status cycles and availability.

Test Techniques Used:
    - State-based Testing: store contents and health after poll()
    - Fault Injection: scripted transport, result-code and shape failures
    - State Transition Testing: available → unavailable → available
    - Message Recording: availability mirrored to MockMqttClient
"""

from __future__ import annotations

import logging

import pytest

from sprinklersync._health import AvailabilityReporter, HealthTracker
from sprinklersync._model import SYSTEM_ID, Attr
from sprinklersync._mqtt import MockMqttClient
from sprinklersync._poller import Poller
from sprinklersync._reconciler import Reconciler
from sprinklersync._store import MemoryEntityStore
from sprinklersync.testing import MockTransport, make_controller_settings
from tests.fixtures.payloads import status_payload

AVAILABILITY_TOPIC = "sprinklersync/availability"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def transport() -> MockTransport:
    return MockTransport(status=status_payload())


@pytest.fixture
def health() -> HealthTracker:
    return HealthTracker(error_interval=5.0, max_backoff=120.0, unavailable_after=3)


@pytest.fixture
def poller(
    transport: MockTransport,
    reconciler: Reconciler,
    health: HealthTracker,
    mock_mqtt: MockMqttClient,
) -> Poller:
    return Poller(
        transport=transport,
        reconciler=reconciler,
        health=health,
        settings=make_controller_settings(interval=7.0),
        availability=AvailabilityReporter(mock_mqtt, "sprinklersync"),
    )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestPollSuccess:
    """Technique: State-based Testing — a good payload populates the store."""

    async def test_reconciles_snapshot(
        self,
        poller: Poller,
        transport: MockTransport,
        entity_store: MemoryEntityStore,
    ) -> None:
        assert await poller.poll() is True

        assert transport.calls == [("ja", {})]
        assert entity_store.get_attribute("os_station_2", Attr.ZONE_STATE) is True
        assert poller.snapshot is not None
        assert poller.snapshot.push_enabled is True

    async def test_applies_last_run_after_snapshot(
        self,
        poller: Poller,
        entity_store: MemoryEntityStore,
    ) -> None:
        await poller.poll()
        # lrun = [1, 0, 600, 1_699_999_000]
        assert entity_store.get_attribute("os_station_2", Attr.ZONE_LAST_RUN) == 1_699_998_400
        assert entity_store.get_attribute("os_program_1", Attr.ZONE_DURATION) == 600

    async def test_marks_available_once(
        self,
        poller: Poller,
        mock_mqtt: MockMqttClient,
        entity_store: MemoryEntityStore,
    ) -> None:
        await poller.poll()
        await poller.poll()

        assert entity_store.get_attribute(SYSTEM_ID, Attr.AVAILABLE) is True
        assert mock_mqtt.get_messages_for(AVAILABILITY_TOPIC) == [("online", True, 1)]

    async def test_undecodable_entity_is_logged(
        self,
        poller: Poller,
        transport: MockTransport,
        entity_store: MemoryEntityStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        transport.status = status_payload(programs={"pd": ["garbage"]})

        with caplog.at_level(logging.WARNING, logger="sprinklersync._poller"):
            assert await poller.poll() is True
        assert "os_program_1" in caplog.text
        assert "os_station_1" in entity_store


class TestPollGuards:
    """Technique: Decision Table — single-flight and stopping guards."""

    async def test_single_flight(self, poller: Poller, transport: MockTransport) -> None:
        poller.in_flight = True
        assert await poller.poll() is False
        assert transport.calls == []

    async def test_stopping(self, poller: Poller, transport: MockTransport) -> None:
        poller.stopping = True
        assert await poller.poll() is False
        assert transport.calls == []

    async def test_in_flight_is_cleared_after_failure(
        self,
        poller: Poller,
        transport: MockTransport,
    ) -> None:
        transport.fail("ja")
        await poller.poll()
        assert poller.in_flight is False


class TestPollFailures:
    """Technique: State Transition Testing — failure threshold and recovery."""

    @pytest.mark.parametrize(
        "response",
        [{"result": 2}, {"result": "nope"}],
        ids=["protocol-error", "bad-result"],
    )
    async def test_bad_responses_count_as_failures(
        self,
        poller: Poller,
        transport: MockTransport,
        health: HealthTracker,
        response: dict[str, object],
    ) -> None:
        transport.queue("ja", response)
        assert await poller.poll() is False
        assert health.failures == 1

    async def test_unexpected_error_counts_as_failure(
        self,
        poller: Poller,
        transport: MockTransport,
        health: HealthTracker,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        transport.queue("ja", RuntimeError("socket exploded"))

        with caplog.at_level(logging.ERROR, logger="sprinklersync._poller"):
            assert await poller.poll() is False

        assert health.failures == 1
        assert poller.in_flight is False
        assert any("Unexpected error" in r.message for r in caplog.records)

    async def test_two_failures_keep_controller_available(
        self,
        poller: Poller,
        transport: MockTransport,
        health: HealthTracker,
        mock_mqtt: MockMqttClient,
    ) -> None:
        await poller.poll()
        transport.fail("ja", times=2)
        await poller.poll()
        await poller.poll()

        assert health.available is True
        assert mock_mqtt.get_messages_for(AVAILABILITY_TOPIC) == [("online", True, 1)]

    async def test_third_failure_marks_unavailable(
        self,
        poller: Poller,
        transport: MockTransport,
        health: HealthTracker,
        mock_mqtt: MockMqttClient,
        entity_store: MemoryEntityStore,
    ) -> None:
        await poller.poll()
        transport.fail("ja", times=4)
        for _ in range(3):
            await poller.poll()

        assert health.available is False
        assert entity_store.get_attribute(SYSTEM_ID, Attr.AVAILABLE) is False
        assert mock_mqtt.get_messages_for(AVAILABILITY_TOPIC)[-1] == ("offline", True, 1)

        await poller.poll()
        offline = [m for m in mock_mqtt.get_messages_for(AVAILABILITY_TOPIC) if m[0] == "offline"]
        assert len(offline) == 1
        assert health.failures == 4
        assert poller.next_delay(push_healthy=True) == 5.0

    async def test_success_recovers(
        self,
        poller: Poller,
        transport: MockTransport,
        health: HealthTracker,
        mock_mqtt: MockMqttClient,
        entity_store: MemoryEntityStore,
    ) -> None:
        await poller.poll()
        transport.fail("ja", times=3)
        for _ in range(3):
            await poller.poll()

        assert await poller.poll() is True
        assert health.failures == 0
        assert entity_store.get_attribute(SYSTEM_ID, Attr.AVAILABLE) is True
        payloads = [m[0] for m in mock_mqtt.get_messages_for(AVAILABILITY_TOPIC)]
        assert payloads == ["online", "offline", "online"]

    async def test_failures_before_first_success(
        self,
        poller: Poller,
        transport: MockTransport,
        entity_store: MemoryEntityStore,
    ) -> None:
        transport.fail("ja", times=3)
        for _ in range(3):
            await poller.poll()
        assert entity_store.get_attribute(SYSTEM_ID, Attr.AVAILABLE) is False


class TestNextDelay:
    """Technique: Decision Table — failures, push health, interval."""

    def test_interval_without_push(self, poller: Poller) -> None:
        assert poller.next_delay(push_healthy=False) == 7.0

    def test_wait_for_refresh_with_healthy_push(self, poller: Poller) -> None:
        assert poller.next_delay(push_healthy=True) is None

    def test_backoff_takes_precedence(self, poller: Poller, health: HealthTracker) -> None:
        for _ in range(14):
            health.record_failure()
        assert poller.next_delay(push_healthy=True) == 10.0


class TestMarkUnavailable:
    """Technique: State-based Testing — forced unavailability."""

    async def test_forces_offline(
        self,
        poller: Poller,
        health: HealthTracker,
        mock_mqtt: MockMqttClient,
        entity_store: MemoryEntityStore,
    ) -> None:
        await poller.poll()
        await poller.mark_unavailable()

        assert health.available is False
        assert entity_store.get_attribute(SYSTEM_ID, Attr.AVAILABLE) is False
        assert mock_mqtt.get_messages_for(AVAILABILITY_TOPIC)[-1] == ("offline", True, 1)
