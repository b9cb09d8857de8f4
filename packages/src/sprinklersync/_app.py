"""Application orchestrator for the sprinklersync bridge.

:class:`App` is the composition root.  It bootstraps settings and
logging, builds the adapters (HTTP transport, MQTT client, entity
store), wires the controller to the bridge's MQTT surface and runs the
lifecycle until SIGINT/SIGTERM.

Typical usage::

    from sprinklersync import App

    App().run()

or, with CLI parsing::

    App().cli()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import uuid
from typing import Any

from sprinklersync._capabilities import load_capabilities
from sprinklersync._clock import ClockPort, SystemClock
from sprinklersync._controller import SprinklerController
from sprinklersync._errors import ErrorPublisher
from sprinklersync._health import AvailabilityReporter, build_will_config
from sprinklersync._http import TransportPort
from sprinklersync._logging import configure_logging
from sprinklersync._mqtt import (
    MqttClient,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
)
from sprinklersync._publish import EntityStatePublisher
from sprinklersync._router import CommandRouter
from sprinklersync._settings import Settings
from sprinklersync._store import MemoryEntityStore

logger = logging.getLogger(__name__)


class App:
    """Central composition root and lifecycle orchestrator."""

    def __init__(
        self,
        name: str = "sprinklersync",
        version: str = "0.0.0",
        *,
        description: str = "OpenSprinkler state sync and command bridge",
        settings_class: type[Settings] = Settings,
    ) -> None:
        """Initialise the application.

        Args:
            name: Application name (default MQTT topic prefix and client ID).
            version: Application version string.
            description: Short description for CLI help text.
            settings_class: Settings subclass to instantiate at startup.
        """
        self._name = name
        self._version = version
        self._description = description
        self._settings_class = settings_class

    # --- Entrypoints -------------------------------------------------------

    def run(
        self,
        *,
        mqtt: MqttPort | None = None,
        settings: Settings | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
        transport: TransportPort | None = None,
    ) -> None:
        """Start the bridge (blocking).

        All parameters are optional overrides for programmatic or test
        use; production code calls ``run()`` with no arguments.
        """
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    mqtt=mqtt,
                    settings=settings,
                    shutdown_event=shutdown_event,
                    clock=clock,
                    transport=transport,
                ),
            )

    def cli(self) -> None:
        """Start the bridge with command-line parsing."""
        from sprinklersync._cli import build_cli

        cli = build_cli(self)
        cli(standalone_mode=True)

    # --- Lifecycle ---------------------------------------------------------

    async def _run_async(
        self,
        *,
        mqtt: MqttPort | None = None,
        settings: Settings | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
        transport: TransportPort | None = None,
    ) -> None:
        """Async orchestration.

        1. Bootstrap settings, logging, store and MQTT.
        2. Build the controller and wire the command router.
        3. Start, then block until shutdown.
        4. Tear down: controller, publishers, availability, MQTT.

        Raises:
            ConfigError: The controller is not configured.
        """
        # --- Phase 1: Bootstrap ---
        resolved_settings = settings if settings is not None else self._settings_class()
        prefix = resolved_settings.mqtt.topic_prefix or self._name
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )
        resolved_clock = clock if clock is not None else SystemClock()

        store = MemoryEntityStore(load_capabilities())
        mqtt = self._create_mqtt(mqtt, resolved_settings, prefix)
        availability = AvailabilityReporter(mqtt=mqtt, topic_prefix=prefix)
        errors = ErrorPublisher(mqtt=mqtt, topic_prefix=prefix)
        publisher = EntityStatePublisher(mqtt, prefix)
        store.subscribe(publisher)

        # --- Phase 2: Controller and routing ---
        controller = SprinklerController(
            resolved_settings.controller,
            store=store,
            transport=transport,
            mqtt=None if isinstance(mqtt, NullMqttClient) else mqtt,
            clock=resolved_clock,
            availability=availability,
        )
        router = CommandRouter(
            topic_prefix=prefix,
            handler=controller.perform,
            errors=errors,
        )

        if isinstance(mqtt, MqttLifecycle):
            await mqtt.start()
        await mqtt.subscribe(router.subscription)
        if isinstance(mqtt, MqttMessageHandler):
            mqtt.on_message(router.route)

        shutdown_event = self._install_signal_handlers(shutdown_event)

        # --- Phase 3: Run ---
        try:
            await controller.start()
            await shutdown_event.wait()
        finally:
            # --- Phase 4: Tear down ---
            await controller.stop()
            await publisher.close()
            await availability.publish(False)
            if isinstance(mqtt, MqttLifecycle):
                await mqtt.stop()
            logger.info("Shutdown complete")

    async def _poll_once(
        self,
        settings: Settings,
        *,
        transport: TransportPort | None = None,
    ) -> tuple[bool, dict[str, dict[str, Any]]]:
        """Poll the controller once.

        Returns whether the poll succeeded and the resulting entities.
        """
        configure_logging(settings.logging, service=self._name, version=self._version)
        store = MemoryEntityStore(load_capabilities())
        controller = SprinklerController(
            settings.controller,
            store=store,
            transport=transport,
        )
        try:
            ok = await controller.refresh()
        finally:
            await controller.stop()
        return ok, store.to_dict()

    # --- _run_async helpers ------------------------------------------------

    def _create_mqtt(
        self,
        mqtt: MqttPort | None,
        resolved_settings: Settings,
        prefix: str,
    ) -> MqttPort:
        """Create the MQTT client, or return the injected one.

        Without ``mqtt.enabled`` a :class:`NullMqttClient` is used and the
        controller runs in polling-only mode.
        """
        if mqtt is not None:
            return mqtt
        mqtt_settings = resolved_settings.mqtt
        if not mqtt_settings.enabled:
            logger.info("MQTT disabled, running in polling-only mode")
            return NullMqttClient()
        if not mqtt_settings.client_id:
            generated_id = f"{self._name}-{uuid.uuid4().hex[:8]}"
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": generated_id},
            )
        return MqttClient(settings=mqtt_settings, will=build_will_config(prefix))

    @staticmethod
    def _install_signal_handlers(shutdown_event: asyncio.Event | None) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers.  Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event
