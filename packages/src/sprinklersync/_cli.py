"""``sprinklersync`` command line.

Two modes share one set of options:

* the default runs the bridge until SIGINT/SIGTERM;
* ``--once`` polls the controller a single time and prints every entity
  as JSON, which is handy for checking credentials and payload decoding.

Process exit status::

    0   clean shutdown, or a successful ``--once`` poll
    1   bad configuration (validation failure, missing host or password)
    3   anything else, including a failed ``--once`` poll
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from typing import TYPE_CHECKING, Annotated, get_args

import typer
from pydantic import ValidationError

from sprinklersync._errors import ConfigError
from sprinklersync._settings import LoggingSettings

if TYPE_CHECKING:
    from sprinklersync._app import App
    from sprinklersync._settings import Settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

LOG_LEVELS: tuple[str, ...] = get_args(LoggingSettings.model_fields["level"].annotation)
LOG_FORMATS: tuple[str, ...] = get_args(LoggingSettings.model_fields["format"].annotation)


def _choice(value: str | None, allowed: tuple[str, ...], option: str) -> str | None:
    """Normalise *value* to the case used in *allowed*, or reject it."""
    if value is None:
        return None
    for candidate in allowed:
        if candidate.lower() == value.lower():
            return candidate
    raise typer.BadParameter(
        f"'{value}' is not one of: {', '.join(allowed)}",
        param_hint=f"'{option}'",
    )


def _load_settings(app: App, env_file: str, level: str | None, fmt: str | None) -> Settings:
    try:
        settings: Settings = app._settings_class(_env_file=env_file)  # type: ignore[call-arg]
    except ValidationError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc

    overrides = {key: value for key, value in (("level", level), ("format", fmt)) if value}
    if overrides:
        settings.logging = settings.logging.model_copy(update=overrides)
    return settings


def _poll_and_print(app: App, settings: Settings) -> int:
    ok, entities = asyncio.run(app._poll_once(settings))
    typer.echo(json.dumps(entities, indent=2, sort_keys=True))
    return EXIT_OK if ok else EXIT_RUNTIME_ERROR


def _serve(app: App, settings: Settings) -> int:
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(app._run_async(settings=settings))
    return EXIT_OK


def build_cli(app: App) -> typer.Typer:
    """Wrap *app* in a Typer command."""
    cli = typer.Typer(help=f"{app._name} v{app._version}: {app._description}")

    @cli.callback(invoke_without_command=True)
    def main(
        show_version: Annotated[
            bool,
            typer.Option("--version", is_eager=True, help="Print the version and exit."),
        ] = False,
        once: Annotated[
            bool,
            typer.Option("--once", help="Poll the controller once, print its entities as JSON."),
        ] = False,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help=f"One of {', '.join(LOG_LEVELS)}."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help=f"One of {', '.join(LOG_FORMATS)}."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Dotenv file with SPRINKLERSYNC_* settings."),
        ] = ".env",
    ) -> None:
        if show_version:
            typer.echo(f"{app._name} v{app._version}")
            raise typer.Exit()

        level = _choice(log_level, LOG_LEVELS, "--log-level")
        fmt = _choice(log_format, LOG_FORMATS, "--log-format")
        settings = _load_settings(app, env_file, level, fmt)

        try:
            status = _poll_and_print(app, settings) if once else _serve(app, settings)
        except ConfigError as exc:
            logger.error("Invalid configuration: %s", exc)
            status = EXIT_CONFIG_ERROR
        except Exception as exc:
            logger.error("Bridge failed: %s", exc)
            status = EXIT_RUNTIME_ERROR
        if status != EXIT_OK:
            sys.exit(status)

    return cli
