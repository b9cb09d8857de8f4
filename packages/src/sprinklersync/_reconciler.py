"""Entity reconciler: apply attribute updates with change detection.

Every write to the entity store goes through :class:`Reconciler`.  For
each update it

1. creates the entity if absent, otherwise refreshes name and kind;
2. attaches missing capabilities (additive only, never removes);
3. diffs the incoming attributes against the stored ones, skipping the
   :data:`~sprinklersync._model.IGNORED` sentinel and values that are
   structurally equal to what is stored;
4. writes the changed attributes as **one** batch, so observers get a
   single notification per update;
5. sets the primary attribute.

All methods are synchronous.  The controller calls them from the event
loop only, which makes the reconciler the single writer of entity state.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sprinklersync._capabilities import CapabilityRegistry
from sprinklersync._model import (
    CONTROLLER_CAPABILITIES,
    IGNORED,
    SYSTEM_ID,
    Attr,
    EntityKind,
    EntityUpdate,
    LastRun,
    program_id,
    station_id,
)
from sprinklersync._store import EntityStorePort

logger = logging.getLogger(__name__)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=repr)


def differs(stored: Any, new: Any) -> bool:
    """Whether *new* is structurally different from *stored*.

    Deep equality, except that values of different JSON types count as
    different even when Python says they are equal (``1`` vs ``True``).
    """
    if stored is new:
        return False
    if stored != new:
        return True
    return _canonical(stored) != _canonical(new)


class Reconciler:
    """Applies :class:`~sprinklersync._model.EntityUpdate` objects to a store.

    Args:
        store: The entity store port.
        capabilities: Optional capability registry.  When given, attributes
            of capabilities the entity does not carry are skipped with a
            warning instead of being written.
    """

    def __init__(
        self,
        store: EntityStorePort,
        *,
        capabilities: CapabilityRegistry | None = None,
    ) -> None:
        self._store = store
        self._capabilities = capabilities

    @property
    def store(self) -> EntityStorePort:
        return self._store

    def apply(self, update: EntityUpdate, *, mark_alive: bool = False) -> frozenset[str]:
        """Apply one update and return the names of the changed attributes."""
        entity = self._store.find(update.id)
        if entity is None:
            name = update.name or update.id
            logger.info("Creating new entity for %s", name)
            self._store.create(update.id, kind=update.kind, name=name)
        else:
            if update.name is not None and entity.name != update.name:
                self._store.set_name(update.id, update.name)
            if entity.kind is not update.kind:
                self._store.set_kind(update.id, update.kind)

        if update.capabilities:
            self._store.add_capabilities(update.id, update.capabilities)

        changed = self._write(update.id, update.attributes)

        if update.primary_attribute is not None:
            self._store.set_primary_attribute(update.id, update.primary_attribute)
        if mark_alive:
            self._store.mark_alive(update.id)
        return changed

    def apply_all(
        self,
        updates: Iterable[EntityUpdate],
        *,
        mark_alive: bool = False,
    ) -> dict[str, frozenset[str]]:
        """Apply several updates, isolating failures per entity.

        A failing update is logged and skipped; the others still apply.
        Returns the changed attribute names per entity id.
        """
        results: dict[str, frozenset[str]] = {}
        for update in updates:
            try:
                results[update.id] = self.apply(update, mark_alive=mark_alive)
            except Exception:
                logger.exception("Failed to apply update for %s", update.id)
        return results

    def apply_attributes(
        self,
        entity_id: str,
        attributes: Mapping[str, object],
    ) -> frozenset[str]:
        """Write *attributes* to an existing entity.

        Unknown entities are left alone (an empty set is returned).
        """
        if self._store.find(entity_id) is None:
            logger.debug("Skipping attributes for unknown entity %s", entity_id)
            return frozenset()
        return self._write(entity_id, attributes)

    def apply_last_run(self, last_run: LastRun) -> dict[str, frozenset[str]]:
        """Fan the last-run record out to its station and program.

        Both writes are computed before either is applied, so observers
        never see one entity updated without the other.  Entities that do
        not exist (manual runs have no program entity) are skipped.
        """
        attributes = last_run.attributes
        targets = [
            entity_id
            for entity_id in (
                station_id(last_run.station_index),
                program_id(last_run.program_index),
            )
            if self._store.find(entity_id) is not None
        ]
        pending = {entity_id: self._diff(entity_id, attributes) for entity_id in targets}
        for entity_id, batch in pending.items():
            if batch:
                self._store.set_attributes(entity_id, batch)
        return {entity_id: frozenset(batch) for entity_id, batch in pending.items()}

    def set_availability(self, available: bool) -> frozenset[str]:
        """Record controller availability on the system entity."""
        if self._store.find(SYSTEM_ID) is None:
            self._store.create(SYSTEM_ID, kind=EntityKind.CONTROLLER, name="OpenSprinkler")
            self._store.add_capabilities(SYSTEM_ID, CONTROLLER_CAPABILITIES)
        return self._write(SYSTEM_ID, {Attr.AVAILABLE: available})

    # -- internals ----------------------------------------------------------

    def _diff(self, entity_id: str, attributes: Mapping[str, object]) -> dict[str, object]:
        entity = self._store.find(entity_id)
        carried = entity.capabilities if entity is not None else set()
        batch: dict[str, object] = {}
        for name, value in attributes.items():
            if value is IGNORED:
                continue
            if self._capabilities is not None:
                capability = name.partition(".")[0]
                if capability not in carried:
                    logger.warning(
                        "[%s] skipping %s: capability %s not attached",
                        entity_id,
                        name,
                        capability,
                    )
                    continue
            stored = self._store.get_attribute(entity_id, name)
            if differs(stored, value):
                logger.debug("[%s] %s: %r => %r", entity_id, name, stored, value)
                batch[name] = value
        return batch

    def _write(self, entity_id: str, attributes: Mapping[str, object]) -> frozenset[str]:
        batch = self._diff(entity_id, attributes)
        if batch:
            self._store.set_attributes(entity_id, batch)
        return frozenset(batch)
