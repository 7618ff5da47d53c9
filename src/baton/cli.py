from __future__ import annotations

from pathlib import Path

import anyio
import typer

from . import __version__
from .config import ConfigError, display_path, resolve_config_path
from .errors import RestartError
from .logging import get_logger, setup_logging
from .runtime import read_pid_file, send_restart, serve
from .settings import BatonSettings, load_settings
from .shutdown import ForcedTermination

logger = get_logger(__name__)

ConfigOption = typer.Option(
    None, "--config", "-c", help="Path to baton.toml (default: ~/.baton/baton.toml)."
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _load(config: Path | None, **overrides: object) -> BatonSettings:
    try:
        settings, _ = load_settings(config, **overrides)
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    return settings


def serve_command(
    config: Path | None = ConfigOption,
    addr: str | None = typer.Option(None, "--addr", help="Bind address, e.g. :8000."),
    root: Path | None = typer.Option(None, "--root", help="Static site directory."),
    debug: bool = typer.Option(False, "--debug", help="Log at debug level."),
) -> None:
    """Serve until stopped; SIGHUP restarts without dropping the listener."""
    settings = _load(
        config, addr=addr, root=root, log_level="debug" if debug else None
    )
    setup_logging(level=settings.log_level, fmt=settings.log_format)
    try:
        result = anyio.run(serve, settings, backend="asyncio")
    except (OSError, RestartError) as exc:
        logger.error("runtime.startup_failed", error=str(exc), addr=settings.addr)
        raise typer.Exit(code=1) from None
    if isinstance(result, ForcedTermination):
        logger.warning("runtime.exit.forced", remaining=result.remaining)


def restart_command(
    config: Path | None = ConfigOption,
    pid: int | None = typer.Option(None, "--pid", help="Process to restart."),
) -> None:
    """Ask a running server to restart itself."""
    if pid is None:
        settings = _load(config)
        if settings.pid_file is None:
            typer.echo("error: no --pid given and no pid_file configured", err=True)
            raise typer.Exit(code=1)
        try:
            pid = read_pid_file(settings.pid_file)
        except (OSError, ValueError) as exc:
            typer.echo(
                f"error: cannot read pid file {display_path(settings.pid_file)}: {exc}",
                err=True,
            )
            raise typer.Exit(code=1) from None
    try:
        send_restart(pid)
    except ProcessLookupError:
        typer.echo(f"error: no process with pid {pid}", err=True)
        raise typer.Exit(code=1) from None
    typer.echo(f"restart requested for pid {pid}")


def config_path_command(config: Path | None = ConfigOption) -> None:
    """Print the config file baton would read."""
    typer.echo(display_path(resolve_config_path(config)))


def create_app() -> typer.Typer:
    app = typer.Typer(
        add_completion=False,
        no_args_is_help=True,
        help="HTTP server that restarts by handing its listener to a new process.",
    )

    @app.callback()
    def main(
        version: bool = typer.Option(
            False,
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show the version and exit.",
        ),
    ) -> None:
        pass

    app.command(name="serve")(serve_command)
    app.command(name="restart")(restart_command)
    app.command(name="config-path")(config_path_command)
    return app


def main() -> None:
    create_app()()
