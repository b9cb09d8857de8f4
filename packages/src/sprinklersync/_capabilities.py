"""Capability implementation data.

Capabilities (``irrigation_zone``, ``power_switch``, ...) declare which
attributes an entity exposes and which actions it accepts.  The
definitions ship as ``data/capabilities.json`` and are loaded once per
process, on first use, then shared read-only by every controller.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from importlib import resources
from types import MappingProxyType

logger = logging.getLogger(__name__)

_RESOURCE = "capabilities.json"

_lock = threading.Lock()
_registry: CapabilityRegistry | None = None


@dataclass(frozen=True, slots=True)
class Capability:
    """One capability definition."""

    name: str
    attributes: frozenset[str]
    actions: frozenset[str]


class CapabilityRegistry:
    """Immutable view over the capability definitions."""

    def __init__(self, capabilities: Mapping[str, Capability]) -> None:
        self._capabilities = MappingProxyType(dict(capabilities))

    @classmethod
    def from_dict(cls, raw: Mapping[str, Mapping[str, list[str]]]) -> CapabilityRegistry:
        return cls(
            {
                name: Capability(
                    name=name,
                    attributes=frozenset(body.get("attributes", ())),
                    actions=frozenset(body.get("actions", ())),
                )
                for name, body in raw.items()
            },
        )

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def knows_attribute(self, attribute: str) -> bool:
        """Whether ``<capability>.<name>`` is a declared attribute."""
        capability, _, name = attribute.partition(".")
        definition = self._capabilities.get(capability)
        return definition is not None and name in definition.attributes

    def action_capability(self, action: str) -> str | None:
        """Return the capability owning ``<capability>.<action>``, if declared."""
        capability, _, name = action.partition(".")
        definition = self._capabilities.get(capability)
        if definition is None or name not in definition.actions:
            return None
        return capability


def load_capabilities() -> CapabilityRegistry:
    """Return the process-wide registry, loading it on first call.

    Loading happens at most once, under a lock; later calls return the
    same instance without locking.
    """
    global _registry  # noqa: PLW0603
    if _registry is not None:
        return _registry
    with _lock:
        if _registry is None:
            text = (
                resources.files("sprinklersync.data")
                .joinpath(_RESOURCE)
                .read_text(encoding="utf-8")
            )
            _registry = CapabilityRegistry.from_dict(json.loads(text))
            logger.debug("Loaded %d capability definitions", len(_registry))
    return _registry
