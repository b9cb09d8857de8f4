"""Status poller: one ``/ja`` round-trip per cycle, single-flight.

A cycle fetches the status payload, checks its result code, decodes it
and hands the snapshot to the reconciler.  Failures of any of those
steps count towards the shared :class:`~sprinklersync._health.HealthTracker`
and never escape :meth:`Poller.poll`.

Scheduling is left to the caller: :meth:`Poller.next_delay` says how
long to wait, or ``None`` when the push channel is carrying the updates
and only forced refreshes should poll.
"""

from __future__ import annotations

import logging

from sprinklersync._decoder import StatusSnapshot, decode_status
from sprinklersync._errors import DecodeError, ProtocolError, TransportError, check_result
from sprinklersync._health import AvailabilityReporter, HealthTracker
from sprinklersync._http import STATUS_VERB, TransportPort
from sprinklersync._reconciler import Reconciler
from sprinklersync._settings import ControllerSettings

logger = logging.getLogger(__name__)


class Poller:
    """Fetches, decodes and reconciles controller status.

    Args:
        transport: Request/response port to the controller.
        reconciler: Single writer of entity state.
        health: Shared failure counter.
        settings: Poll interval.
        availability: Optional MQTT availability mirror.
    """

    def __init__(
        self,
        *,
        transport: TransportPort,
        reconciler: Reconciler,
        health: HealthTracker,
        settings: ControllerSettings,
        availability: AvailabilityReporter | None = None,
    ) -> None:
        self._transport = transport
        self._reconciler = reconciler
        self._health = health
        self._settings = settings
        self._availability = availability
        self.in_flight = False
        self.stopping = False
        self.snapshot: StatusSnapshot | None = None

    @property
    def health(self) -> HealthTracker:
        return self._health

    async def poll(self) -> bool:
        """Run one poll cycle.  Returns ``True`` if state was reconciled."""
        if self.stopping:
            return False
        if self.in_flight:
            logger.debug("Poll already in flight, skipping")
            return False

        self.in_flight = True
        try:
            try:
                payload = await self._transport.fetch(STATUS_VERB)
                check_result(payload, verb=STATUS_VERB)
                snapshot = decode_status(payload)
            except (TransportError, ProtocolError, DecodeError) as exc:
                if self.stopping:
                    return False
                await self._on_failure(exc)
                return False
            except Exception as exc:
                if self.stopping:
                    return False
                logger.exception("Unexpected error while polling status")
                await self._on_failure(exc)
                return False

            if self.stopping:
                logger.debug("Discarding poll result: stopping")
                return False
            await self._on_success(snapshot)
            return True
        finally:
            self.in_flight = False

    def next_delay(self, push_healthy: bool) -> float | None:
        """Seconds until the next poll, or ``None`` to wait for a refresh."""
        if self._health.failures:
            return self._health.delay
        if push_healthy:
            return None
        return self._settings.interval

    async def mark_unavailable(self) -> None:
        """Force the controller unavailable until the next successful poll."""
        self._health.mark_unavailable()
        await self._set_available(False)

    async def _on_success(self, snapshot: StatusSnapshot) -> None:
        self._health.record_success()
        self.snapshot = snapshot
        for error in snapshot.errors:
            logger.warning("Skipping undecodable entity %s: %s", error.entity_id, error)

        self._reconciler.apply_all(snapshot.updates, mark_alive=True)
        if snapshot.last_run is not None:
            self._reconciler.apply_last_run(snapshot.last_run)
        await self._set_available(True)

    async def _on_failure(self, exc: Exception) -> None:
        delay = self._health.record_failure()
        logger.warning(
            "Status poll failed (%d consecutive): %s; retrying in %.1fs",
            self._health.failures,
            exc,
            delay,
        )
        if not self._health.available:
            await self._set_available(False)

    async def _set_available(self, available: bool) -> None:
        changed = self._reconciler.set_availability(available)
        if changed and self._availability is not None:
            await self._availability.publish(available)
