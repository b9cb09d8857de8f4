"""Clock port and system adapter.

The engine needs two notions of time:

- **monotonic** (:meth:`ClockPort.now`) for measuring elapsed durations,
  immune to NTP adjustments;
- **wall clock** (:meth:`ClockPort.time`) for epoch timestamps that are
  written into entity attributes (``last_run``, rain-delay end time)
  and compared with the controller's own epoch values.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Source of monotonic and wall-clock time.

    Tests inject a deterministic fake clock for reproducible timestamps.
    """

    def now(self) -> float:
        """Return monotonic time in seconds from an arbitrary epoch."""
        ...

    def time(self) -> float:
        """Return the current Unix time in seconds."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()`` and ``time.time()``."""

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()

    def time(self) -> float:
        """Return the current Unix time in seconds."""
        return time.time()
