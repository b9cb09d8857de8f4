"""Tests for sprinklersync._events — push message decoding and the inbox.

Test Techniques Used:
    - Equivalence Partitioning: one case per push topic
    - Error Guessing: malformed payloads on known topics
    - State-based Testing: EventBridge writes through the reconciler
    - Boundary Value Analysis: full inbox drops the oldest message
"""

from __future__ import annotations

import logging

import pytest

from sprinklersync._decoder import decode_status
from sprinklersync._errors import DecodeError
from sprinklersync._events import EventBridge, PushEvent, decode_event
from sprinklersync._model import RAIN_DELAY_ID, Attr
from sprinklersync._reconciler import Reconciler
from sprinklersync._store import MemoryEntityStore
from sprinklersync.testing import FakeClock
from tests.fixtures.payloads import status_payload

NOW = 1_700_000_000.0


def _decode(topic: str, payload: str) -> PushEvent | None:
    return decode_event(topic, payload, base="opensprinkler", now=NOW)


# ---------------------------------------------------------------------------
# decode_event
# ---------------------------------------------------------------------------


class TestDecodeAvailability:
    """Technique: Equivalence Partitioning — online / offline / other."""

    def test_online_requests_refresh(self) -> None:
        event = _decode("opensprinkler/availability", "online")
        assert event == PushEvent(
            topic="opensprinkler/availability",
            availability=True,
            refresh=True,
        )

    def test_offline(self) -> None:
        event = _decode("opensprinkler/availability", "offline")
        assert event is not None
        assert event.availability is False
        assert event.refresh is False

    def test_system_boot_requests_refresh(self) -> None:
        event = _decode("opensprinkler/system", '{"state":"started"}')
        assert event is not None
        assert event.refresh is True
        assert event.entity_id is None


class TestDecodeStation:
    """Technique: Equivalence Partitioning — start and stop messages."""

    def test_start(self) -> None:
        event = _decode("opensprinkler/station/2", '{"state":1}')
        assert event is not None
        assert event.entity_id == "os_station_3"
        assert event.attributes == {
            Attr.ZONE_STATE: True,
            Attr.SWITCH_STATE: True,
            Attr.TOGGLE_STATE: True,
        }
        assert event.refresh is False

    def test_stop_backdates_last_run(self) -> None:
        event = _decode("opensprinkler/station/0", '{"state":0,"duration":90}')
        assert event is not None
        assert event.attributes == {
            Attr.ZONE_STATE: False,
            Attr.SWITCH_STATE: False,
            Attr.TOGGLE_STATE: False,
            Attr.ZONE_DURATION: 90,
            Attr.ZONE_REMAINING: 0,
            Attr.ZONE_LAST_RUN: 1_699_999_910,
        }

    def test_stop_without_duration(self) -> None:
        event = _decode("opensprinkler/station/0", '{"state":0}')
        assert event is not None
        assert Attr.ZONE_DURATION not in event.attributes
        assert event.attributes[Attr.ZONE_LAST_RUN] == int(NOW)

    def test_string_state(self) -> None:
        event = _decode("opensprinkler/station/0", '{"state":"1"}')
        assert event is not None
        assert event.attributes[Attr.ZONE_STATE] is True

    def test_non_numeric_index_is_ignored(self) -> None:
        assert _decode("opensprinkler/station/main", '{"state":1}') is None


class TestDecodeSensorsAndRainDelay:
    """Technique: Equivalence Partitioning — binary sensor topics."""

    @pytest.mark.parametrize(("name", "entity_id"), [("sensor1", "os_sensor1"), ("sensor2", "os_sensor2")])
    def test_sensor(self, name: str, entity_id: str) -> None:
        event = _decode(f"opensprinkler/{name}", '{"state":1}')
        assert event is not None
        assert event.entity_id == entity_id
        assert event.attributes == {Attr.BINARY_STATE: True}

    def test_raindelay_requests_refresh(self) -> None:
        event = _decode("opensprinkler/raindelay", '{"state":1}')
        assert event is not None
        assert event.entity_id == RAIN_DELAY_ID
        assert event.attributes[Attr.BINARY_STATE] is True
        assert event.attributes[Attr.SWITCH_STATE] is True
        assert event.refresh is True


class TestDecodeIgnored:
    """Technique: Error Guessing — topics and payloads that are not used."""

    def test_flow_sensor_is_ignored(self) -> None:
        assert _decode("opensprinkler/sensor/flow", '{"count":3,"volume":1.2}') is None

    def test_foreign_topic(self) -> None:
        assert _decode("zigbee/station/1", '{"state":1}') is None

    def test_base_must_match_whole_segment(self) -> None:
        assert _decode("opensprinklers/station/1", '{"state":1}') is None

    @pytest.mark.parametrize("payload", ["not json", "[1, 2]", '"on"'])
    def test_malformed_payload(self, payload: str) -> None:
        with pytest.raises(DecodeError):
            _decode("opensprinkler/station/1", payload)


# ---------------------------------------------------------------------------
# EventBridge
# ---------------------------------------------------------------------------


@pytest.fixture
def seeded(reconciler: Reconciler) -> Reconciler:
    reconciler.apply_all(decode_status(status_payload()).updates)
    return reconciler


@pytest.fixture
def bridge(seeded: Reconciler, fake_clock: FakeClock) -> EventBridge:
    return EventBridge(reconciler=seeded, base="opensprinkler/", clock=fake_clock, maxsize=3)


class TestEventBridgeSubmit:
    """Technique: Boundary Value Analysis — bounded inbox."""

    def test_subscription(self, bridge: EventBridge) -> None:
        assert bridge.subscription == "opensprinkler/#"

    async def test_foreign_topics_are_not_queued(self, bridge: EventBridge) -> None:
        await bridge.submit("sprinklersync/os_station_1/set", "ON")
        assert bridge.queue.empty()

    async def test_full_inbox_drops_oldest(self, bridge: EventBridge) -> None:
        for index in range(4):
            await bridge.submit(f"opensprinkler/station/{index}", '{"state":1}')

        assert bridge.dropped == 1
        topics = [bridge.queue.get_nowait()[0] for _ in range(bridge.queue.qsize())]
        assert topics == [
            "opensprinkler/station/1",
            "opensprinkler/station/2",
            "opensprinkler/station/3",
        ]


class TestEventBridgeHandle:
    """Technique: State-based Testing — push updates reach the store."""

    def test_station_start_updates_store(
        self,
        bridge: EventBridge,
        entity_store: MemoryEntityStore,
    ) -> None:
        event = bridge.handle("opensprinkler/station/0", '{"state":1}')
        assert event is not None
        assert entity_store.get_attribute("os_station_1", Attr.ZONE_STATE) is True

    def test_stop_uses_clock(
        self,
        bridge: EventBridge,
        entity_store: MemoryEntityStore,
        fake_clock: FakeClock,
    ) -> None:
        bridge.handle("opensprinkler/station/1", '{"state":0,"duration":30}')
        expected = int(fake_clock.time()) - 30
        assert entity_store.get_attribute("os_station_2", Attr.ZONE_LAST_RUN) == expected

    def test_unknown_station_is_not_created(
        self,
        bridge: EventBridge,
        entity_store: MemoryEntityStore,
    ) -> None:
        bridge.handle("opensprinkler/station/7", '{"state":1}')
        assert "os_station_8" not in entity_store

    def test_offline_marks_channel_unhealthy(self, bridge: EventBridge) -> None:
        bridge.handle("opensprinkler/availability", "offline")
        assert bridge.healthy is False
        bridge.handle("opensprinkler/availability", "online")
        assert bridge.healthy is True

    def test_malformed_payload_is_logged(
        self,
        bridge: EventBridge,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="sprinklersync._events"):
            assert bridge.handle("opensprinkler/sensor1", "garbage") is None
        assert "Ignoring push message" in caplog.text

    def test_ignored_topic_returns_none(self, bridge: EventBridge) -> None:
        assert bridge.handle("opensprinkler/sensor/flow", '{"count":1}') is None
