"""Failure tracking, backoff and availability reporting.

:class:`HealthTracker` is the shared failure counter consulted by the
poller.  Its retry delay follows::

    delay(n) = min(max_backoff, error_interval * max(1, n - 12))

so the delay stays at ``error_interval`` for the first twelve
consecutive failures and then grows linearly.  After
``unavailable_after`` consecutive failures (3 by default) the controller
is considered unavailable; polling continues regardless.

:class:`AvailabilityReporter` mirrors availability to MQTT::

    {prefix}/availability   ← "online" / "offline" (retained, QoS 1)

Publication is fire-and-forget: failures are logged, never propagated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sprinklersync._mqtt import MqttPort, WillConfig

logger = logging.getLogger(__name__)

GRACE_FAILURES = 12
"""Consecutive failures retried at the base interval before backing off."""


def backoff_delay(failures: int, error_interval: float, max_backoff: float = 120.0) -> float:
    """Delay before the next attempt after *failures* consecutive failures.

    Non-decreasing in *failures*; constant for ``failures <= 12``.
    """
    return min(max_backoff, error_interval * max(1, failures - GRACE_FAILURES))


@dataclass
class HealthTracker:
    """Consecutive-failure counter and availability state.

    Parameters
    ----------
    error_interval:
        Base retry delay in seconds.
    max_backoff:
        Upper bound for the retry delay in seconds.
    unavailable_after:
        Consecutive failures after which the controller is unavailable.
    """

    error_interval: float = 5.0
    max_backoff: float = 120.0
    unavailable_after: int = 3
    failures: int = field(default=0, init=False)
    available: bool = field(default=True, init=False)

    def record_success(self) -> bool:
        """Reset the failure counter.

        Returns ``True`` when this success made the controller available
        again.
        """
        recovered = not self.available
        if self.failures:
            logger.info("Controller recovered after %d failure(s)", self.failures)
        self.failures = 0
        self.available = True
        return recovered

    def record_failure(self) -> float:
        """Count a failure and return the delay before the next attempt."""
        self.failures += 1
        if self.available and self.failures >= self.unavailable_after:
            self.available = False
            logger.warning(
                "Controller unavailable after %d consecutive failures",
                self.failures,
            )
        return self.delay

    def mark_unavailable(self) -> bool:
        """Force the unavailable state; returns ``True`` if it changed."""
        changed = self.available
        self.available = False
        return changed

    @property
    def delay(self) -> float:
        """Retry delay for the current failure count."""
        return backoff_delay(self.failures, self.error_interval, self.max_backoff)


def build_will_config(topic_prefix: str) -> WillConfig:
    """LWT that marks the bridge ``offline`` if it disconnects unexpectedly."""
    return WillConfig(
        topic=f"{topic_prefix}/availability",
        payload="offline",
        qos=1,
        retain=True,
    )


@dataclass
class AvailabilityReporter:
    """Publishes controller availability to ``{topic_prefix}/availability``."""

    mqtt: MqttPort
    topic_prefix: str

    @property
    def topic(self) -> str:
        return f"{self.topic_prefix}/availability"

    async def publish(self, available: bool) -> None:
        payload = "online" if available else "offline"
        try:
            await self.mqtt.publish(self.topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish availability to %s", self.topic)
