#!/usr/bin/env python3
"""Codexa Runner - CLI entry point."""

import asyncio
from pathlib import Path

import click
import uvicorn

from . import __version__
from .config import load_config
from .ports import PortError, PortProber, validate_port
from .sentry import configure_logging, init_sentry


@click.group()
@click.version_option(version=__version__, prog_name="codexa-runner")
def cli() -> None:
    """Codexa Runner - workspace session server.

    Serves a workspace's terminal, files, and ports to the editor over
    Socket.IO.
    """
    pass


@cli.command()
@click.option("--host", default=None, help="Interface to bind (overrides config)")
@click.option("--port", type=int, default=None, help="Port to listen on (overrides config)")
@click.option(
    "--workspace-dir",
    default=None,
    help="Workspace root; may contain {workspace_id} (overrides config)",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file",
)
def serve(
    host: str | None,
    port: int | None,
    workspace_dir: str | None,
    config_file: Path | None,
) -> None:
    """Run the session server.

    Configuration is loaded from (in priority order):
    1. Command line arguments
    2. Environment variables (RUNNER_*)
    3. Config file (~/.config/codexa/runner.toml or --config)
    """
    config = load_config(config_file)

    overrides = {
        key: value
        for key, value in {"host": host, "port": port, "workspace_dir": workspace_dir}.items()
        if value is not None
    }
    if overrides:
        config = config.model_copy(update=overrides)

    sentry_enabled = init_sentry(config)
    logger = configure_logging(
        "codexa-runner",
        log_level=config.log_level,
        json_format=not config.is_development(),
    )
    logger.info(
        "Codexa runner configured",
        version=__version__,
        host=config.host,
        port=config.port,
        workspace_dir=config.workspace_dir,
        sentry=sentry_enabled,
    )

    from .app import create_app

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=config.log_level.lower(),
    )


@cli.command("check-port")
@click.argument("port")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file",
)
def check_port(port: str, config_file: Path | None) -> None:
    """Probe PORT and report whether a service is listening on it."""
    config = load_config(config_file)

    try:
        port_number = validate_port(port)
    except PortError as e:
        raise click.BadParameter(str(e), param_hint="PORT") from e

    prober = PortProber(
        allowed_ports=config.allowed_ports,
        probe_host=config.port_probe_host,
        probe_timeout=config.port_probe_timeout,
    )
    result = asyncio.run(prober.check_port(port_number))

    if result.available:
        click.echo(f"Port {port_number}: no service listening")
    else:
        click.echo(f"Port {port_number}: service listening")

    if prober.is_allowed(port_number):
        click.echo("Exposable: yes")
    else:
        supported = ", ".join(str(p) for p in prober.allowed_ports)
        click.echo(f"Exposable: no (supported ports: {supported})")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
