"""Unit tests for sprinklersync._store — in-memory entity store.

Test Techniques Used:
    - State-based Testing: entity creation and mutation
    - Protocol Conformance: MemoryEntityStore satisfies EntityStorePort
    - Observer Verification: one notification per batch
    - Exception Safety: failing observers are logged, not raised
"""

from __future__ import annotations

import logging

import pytest

from sprinklersync._model import EntityKind
from sprinklersync._store import Entity, EntityStorePort, MemoryEntityStore


@pytest.fixture
def store(entity_store: MemoryEntityStore) -> MemoryEntityStore:
    entity_store.create("os_station_1", kind=EntityKind.ZONE, name="Front lawn")
    return entity_store


class TestCreate:
    """Technique: State-based Testing — creation and lookup."""

    def test_conforms_to_port(self, entity_store: MemoryEntityStore) -> None:
        assert isinstance(entity_store, EntityStorePort)

    def test_created_entity_is_findable(self, store: MemoryEntityStore) -> None:
        entity = store.find("os_station_1")
        assert entity is not None
        assert entity.kind is EntityKind.ZONE
        assert entity.name == "Front lawn"
        assert "os_station_1" in store
        assert len(store) == 1

    def test_duplicate_rejected(self, store: MemoryEntityStore) -> None:
        with pytest.raises(ValueError, match="already exists"):
            store.create("os_station_1", kind=EntityKind.ZONE, name="again")

    def test_find_missing(self, store: MemoryEntityStore) -> None:
        assert store.find("os_station_9") is None
        assert store.get_attribute("os_station_9", "power_switch.state") is None


class TestMutation:
    """Technique: State-based Testing — names, kinds, capabilities."""

    def test_rename_and_rekind(self, store: MemoryEntityStore) -> None:
        store.set_name("os_station_1", "Back lawn")
        store.set_kind("os_station_1", EntityKind.SENSOR)
        entity = store.find("os_station_1")
        assert entity is not None
        assert (entity.name, entity.kind) == ("Back lawn", EntityKind.SENSOR)

    def test_add_capabilities_is_idempotent(self, store: MemoryEntityStore) -> None:
        store.add_capabilities("os_station_1", ["irrigation_zone", "power_switch"])
        store.add_capabilities("os_station_1", ["power_switch"])
        entity = store.find("os_station_1")
        assert entity is not None
        assert entity.capabilities == {"irrigation_zone", "power_switch"}

    def test_unknown_capability_rejected(self, store: MemoryEntityStore) -> None:
        with pytest.raises(KeyError):
            store.add_capabilities("os_station_1", ["dimmer"])

    def test_store_without_registry_accepts_anything(self) -> None:
        store = MemoryEntityStore()
        store.create("x", kind=EntityKind.SENSOR, name="x")
        store.add_capabilities("x", ["dimmer"])
        assert store.find("x").capabilities == {"dimmer"}  # type: ignore[union-attr]

    def test_missing_entity_raises_lookup_error(self, entity_store: MemoryEntityStore) -> None:
        with pytest.raises(LookupError):
            entity_store.set_name("nope", "x")

    def test_primary_attribute_and_alive(self, store: MemoryEntityStore) -> None:
        entity = store.find("os_station_1")
        assert entity is not None
        entity.alive = False
        store.set_primary_attribute("os_station_1", "power_switch.state")
        store.mark_alive("os_station_1")
        assert entity.primary_attribute == "power_switch.state"
        assert entity.alive is True


class TestBatchNotification:
    """Technique: Observer Verification — one call per batch."""

    def test_one_notification_per_batch(self, store: MemoryEntityStore) -> None:
        calls: list[tuple[str, frozenset[str]]] = []
        store.subscribe(lambda entity, changed: calls.append((entity.id, changed)))

        store.set_attributes(
            "os_station_1",
            {"power_switch.state": True, "irrigation_zone.remaining": 30},
        )

        assert calls == [
            ("os_station_1", frozenset({"power_switch.state", "irrigation_zone.remaining"})),
        ]
        assert store.get_attribute("os_station_1", "irrigation_zone.remaining") == 30

    def test_empty_batch_is_silent(self, store: MemoryEntityStore) -> None:
        calls: list[Entity] = []
        store.subscribe(lambda entity, _changed: calls.append(entity))
        store.set_attributes("os_station_1", {})
        assert calls == []

    def test_failing_observer_is_logged(
        self,
        store: MemoryEntityStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        seen: list[str] = []

        def broken(_entity: Entity, _changed: frozenset[str]) -> None:
            msg = "observer down"
            raise RuntimeError(msg)

        store.subscribe(broken)
        store.subscribe(lambda entity, _changed: seen.append(entity.id))

        with caplog.at_level(logging.ERROR, logger="sprinklersync._store"):
            store.set_attributes("os_station_1", {"power_switch.state": False})

        assert seen == ["os_station_1"]
        assert any("observer failed" in r.message for r in caplog.records)


class TestToDict:
    """Technique: Specification-based Testing — JSON-friendly dump."""

    def test_shape(self, store: MemoryEntityStore) -> None:
        store.add_capabilities("os_station_1", ["power_switch", "irrigation_zone"])
        store.set_attributes("os_station_1", {"power_switch.state": True})

        assert store.to_dict() == {
            "os_station_1": {
                "id": "os_station_1",
                "kind": "zone",
                "name": "Front lawn",
                "capabilities": ["irrigation_zone", "power_switch"],
                "primary_attribute": None,
                "alive": True,
                "attributes": {"power_switch.state": True},
            },
        }
