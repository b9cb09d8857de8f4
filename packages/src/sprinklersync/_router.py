"""MQTT command topic routing.

Extracts entity ids from ``{prefix}/{entity_id}/set`` topics, parses
the payload into a capability action and hands it to the controller.

Topic convention::

    {prefix}/{entity_id}/set     → command topic (subscribed, routed here)
    {prefix}/{entity_id}/state   → state topic (published, not routed)
    {prefix}/error               → structured command errors

Payloads are either the plain words ``ON``, ``OFF`` and ``TOGGLE``, or
a JSON object naming the action plus its parameters::

    {"action": "irrigation_zone.run", "duration": 300}
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from sprinklersync._errors import CommandError, ErrorPublisher, SprinklerError

logger = logging.getLogger(__name__)

ActionHandler = Callable[[str, str, Mapping[str, Any]], Awaitable[object]]
"""``(entity_id, action, params)`` coroutine, e.g. ``SprinklerController.perform``."""

_WORD_ACTIONS = {
    "ON": "power_switch.on",
    "OFF": "power_switch.off",
    "TOGGLE": "toggle.toggle",
}


def parse_command(payload: str) -> tuple[str, dict[str, Any]]:
    """Turn a command payload into ``(action, params)``.

    Raises:
        CommandError: The payload is neither a known word nor a JSON
            object with a string ``action``.
    """
    word = payload.strip().upper()
    if word in _WORD_ACTIONS:
        return _WORD_ACTIONS[word], {}

    try:
        data = json.loads(payload)
    except ValueError:
        msg = f"Unrecognised command payload: {payload!r}"
        raise CommandError(msg) from None
    if not isinstance(data, dict) or not isinstance(data.get("action"), str):
        msg = "Command payload must be a JSON object with an 'action' string"
        raise CommandError(msg)
    params = dict(data)
    action = params.pop("action")
    return action, params


class CommandRouter:
    """Routes ``{prefix}/{entity_id}/set`` messages to an action handler.

    Errors raised by the handler are logged and, when an
    :class:`~sprinklersync._errors.ErrorPublisher` is given, published
    to ``{prefix}/error``.  They never propagate back into the MQTT
    client's dispatch loop.
    """

    def __init__(
        self,
        *,
        topic_prefix: str,
        handler: ActionHandler,
        errors: ErrorPublisher | None = None,
    ) -> None:
        self._topic_prefix = topic_prefix
        self._handler = handler
        self._errors = errors

    @property
    def subscription(self) -> str:
        """Wildcard topic covering every entity's command topic."""
        return f"{self._topic_prefix}/+/set"

    async def route(self, topic: str, payload: str) -> None:
        """Route an inbound MQTT message.  Non-command topics are ignored."""
        entity_id = self._extract_entity(topic)
        if entity_id is None:
            return

        try:
            action, params = parse_command(payload)
            logger.info("Command %s for %s", action, entity_id)
            await self._handler(entity_id, action, params)
        except SprinklerError as exc:
            logger.warning("Command on %s failed: %s", topic, exc)
            if self._errors is not None:
                await self._errors.publish(exc, entity=entity_id)
        except Exception as exc:
            logger.exception("Unexpected error handling %s", topic)
            if self._errors is not None:
                await self._errors.publish(exc, entity=entity_id)

    def _extract_entity(self, topic: str) -> str | None:
        """Return the entity id if *topic* is ``{prefix}/{entity_id}/set``."""
        prefix = self._topic_prefix + "/"
        suffix = "/set"
        if not (topic.startswith(prefix) and topic.endswith(suffix)):
            return None
        middle = topic[len(prefix) : -len(suffix)]
        if "/" in middle or not middle:
            return None
        return middle
