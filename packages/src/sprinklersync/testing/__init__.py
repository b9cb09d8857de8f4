"""Public test-support utilities for sprinklersync.

Re-exports test doubles and factories so that test suites can import
everything from a single ``sprinklersync.testing`` namespace.

Provided symbols:

- :class:`MockTransport` — scripted controller that records commands.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`NullMqttClient` — silent no-op MQTT adapter.
- :class:`FakeClock` — deterministic clock for timing tests.
- :func:`make_settings` — ``Settings`` without ``.env`` files.
- :func:`make_controller_settings` — configured ``ControllerSettings``.
"""

from sprinklersync._mqtt import MockMqttClient, NullMqttClient
from sprinklersync.testing._clock import FakeClock
from sprinklersync.testing._settings import make_controller_settings, make_settings
from sprinklersync.testing._transport import MockTransport

__all__ = [
    "FakeClock",
    "MockMqttClient",
    "MockTransport",
    "NullMqttClient",
    "make_controller_settings",
    "make_settings",
]
