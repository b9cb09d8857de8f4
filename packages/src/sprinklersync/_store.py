"""Entity store port and in-memory adapter.

The engine never keeps entities itself; it talks to an
:class:`EntityStorePort`.  A host framework can supply its own adapter;
:class:`MemoryEntityStore` is the one the standalone bridge uses.

``set_attributes`` receives one update's worth of changes and must
notify observers **once** for the whole batch, so that nobody sees an
entity half-way through an update.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from sprinklersync._capabilities import CapabilityRegistry
from sprinklersync._model import EntityKind

logger = logging.getLogger(__name__)

ChangeObserver = Callable[["Entity", frozenset[str]], None]
"""Called with the entity and the names of the attributes that changed."""


@dataclass
class Entity:
    """A single entity as held by :class:`MemoryEntityStore`."""

    id: str
    kind: EntityKind
    name: str
    capabilities: set[str] = field(default_factory=set)
    attributes: dict[str, Any] = field(default_factory=dict)
    primary_attribute: str | None = None
    alive: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "capabilities": sorted(self.capabilities),
            "primary_attribute": self.primary_attribute,
            "alive": self.alive,
            "attributes": dict(self.attributes),
        }


@runtime_checkable
class EntityStorePort(Protocol):
    """Operations the engine performs on the host's entity store."""

    def find(self, entity_id: str) -> Entity | None: ...

    def create(self, entity_id: str, *, kind: EntityKind, name: str) -> Entity: ...

    def set_name(self, entity_id: str, name: str) -> None: ...

    def set_kind(self, entity_id: str, kind: EntityKind) -> None: ...

    def add_capabilities(self, entity_id: str, capabilities: Iterable[str]) -> None: ...

    def get_attribute(self, entity_id: str, attribute: str) -> Any: ...

    def set_attributes(self, entity_id: str, batch: Mapping[str, Any]) -> None: ...

    def set_primary_attribute(self, entity_id: str, attribute: str) -> None: ...

    def mark_alive(self, entity_id: str) -> None: ...


class MemoryEntityStore:
    """Dict-backed entity store with batched change notifications.

    Args:
        capabilities: Optional registry used to reject unknown capability
            names in :meth:`add_capabilities`.
    """

    def __init__(self, capabilities: CapabilityRegistry | None = None) -> None:
        self._entities: dict[str, Entity] = {}
        self._observers: list[ChangeObserver] = []
        self._capabilities = capabilities

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def __iter__(self) -> Iterator[Entity]:
        return iter(list(self._entities.values()))

    def subscribe(self, observer: ChangeObserver) -> None:
        """Register an observer for batched attribute changes."""
        self._observers.append(observer)

    def find(self, entity_id: str) -> Entity | None:
        return self._entities.get(entity_id)

    def create(self, entity_id: str, *, kind: EntityKind, name: str) -> Entity:
        if entity_id in self._entities:
            msg = f"Entity '{entity_id}' already exists"
            raise ValueError(msg)
        entity = Entity(id=entity_id, kind=kind, name=name)
        self._entities[entity_id] = entity
        logger.info("Created entity %s (%s)", entity_id, name)
        return entity

    def set_name(self, entity_id: str, name: str) -> None:
        self._require(entity_id).name = name

    def set_kind(self, entity_id: str, kind: EntityKind) -> None:
        self._require(entity_id).kind = kind

    def add_capabilities(self, entity_id: str, capabilities: Iterable[str]) -> None:
        entity = self._require(entity_id)
        for capability in capabilities:
            if capability in entity.capabilities:
                continue
            if self._capabilities is not None and capability not in self._capabilities:
                msg = f"Unknown capability '{capability}'"
                raise KeyError(msg)
            logger.debug("[%s] adding capability %s", entity_id, capability)
            entity.capabilities.add(capability)

    def get_attribute(self, entity_id: str, attribute: str) -> Any:
        entity = self._entities.get(entity_id)
        if entity is None:
            return None
        return entity.attributes.get(attribute)

    def set_attributes(self, entity_id: str, batch: Mapping[str, Any]) -> None:
        if not batch:
            return
        entity = self._require(entity_id)
        entity.attributes.update(batch)
        changed = frozenset(batch)
        for observer in list(self._observers):
            try:
                observer(entity, changed)
            except Exception:
                logger.exception("Entity observer failed for %s", entity_id)

    def set_primary_attribute(self, entity_id: str, attribute: str) -> None:
        self._require(entity_id).primary_attribute = attribute

    def mark_alive(self, entity_id: str) -> None:
        self._require(entity_id).alive = True

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """JSON-friendly dump of every entity, keyed by id."""
        return {entity_id: e.to_dict() for entity_id, e in self._entities.items()}

    def _require(self, entity_id: str) -> Entity:
        try:
            return self._entities[entity_id]
        except KeyError:
            msg = f"No entity '{entity_id}'"
            raise LookupError(msg) from None
