"""
CamRelay CLI entry point.

Usage:
    camrelay [OPTIONS] COMMAND [ARGS]...

Commands:
    serve     Run the relay (HTTP server + SSH tunnel)
    init      Write an example configuration document
    sources   List configured cameras
    check     Check ffmpeg and camera reachability
    version   Show version information
"""

import asyncio
import os
from typing import Annotated

import typer
from rich.table import Table

from camrelay.cli.output import console, print_error, print_success, print_warning
from camrelay.config import settings
from camrelay.exceptions import CamRelayError, ConfigError
from camrelay.gateway.probe import check_ffmpeg, probe_sources
from camrelay.models.enums import LogLevel
from camrelay.models.sources import CameraConfig, default_config, load_config, save_config
from camrelay.utils.logger import configure_logging, format_traceback, get_logger

logger = get_logger(__name__)

app = typer.Typer(
    name="camrelay",
    help="Publish local RTSP cameras as browser streams through an SSH reverse tunnel",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

ConfigOption = Annotated[
    str,
    typer.Option("--config", "-c", help="Configuration document path", envvar="CAMRELAY_CONFIG"),
]


def _load_or_exit(path: str) -> CameraConfig:
    try:
        return load_config(path)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(1)


# =============================================================================
# Commands
# =============================================================================


@app.command("serve")
def serve(
    config_path: ConfigOption = settings.CONFIG_FILE,
    log_level: Annotated[
        LogLevel, typer.Option("--log-level", "-l", help="Logging verbosity")
    ] = LogLevel.INFO,
    log_file: Annotated[
        str, typer.Option("--log-file", help="Also log to this file (rotated)")
    ] = "",
    max_streams: Annotated[
        int,
        typer.Option("--max-streams", help="Concurrent stream limit (0 = unlimited)", min=0),
    ] = 0,
    strict_host_key: Annotated[
        bool,
        typer.Option("--strict-host-key", help="Verify the VPS host key against known_hosts"),
    ] = False,
    allow_unreachable: Annotated[
        bool,
        typer.Option("--allow-unreachable", help="Start even if no camera answers"),
    ] = False,
):
    """Run the relay: local HTTP server, transcoders and SSH tunnel."""
    if not os.path.exists(config_path):
        save_config(default_config(), config_path)
        print_warning(f"Config file not found, created default: {config_path}")
        console.print(f"Please edit [bold]{config_path}[/bold] with your actual configuration and restart")
        raise typer.Exit(0)

    camera_config = _load_or_exit(config_path)

    settings.CONFIG_FILE = config_path
    settings.LOG_LEVEL = log_level
    settings.LOG_FILE = log_file
    settings.MAX_CONCURRENT_STREAMS = max_streams
    settings.STRICT_HOST_KEY_CHECKING = strict_host_key
    settings.REQUIRE_REACHABLE_SOURCES = not allow_unreachable

    # Must be called before uvicorn starts
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    try:
        asyncio.run(_serve(camera_config))
    except KeyboardInterrupt:
        pass
    except CamRelayError as e:
        logger.debug(format_traceback(e))
        print_error(str(e))
        raise typer.Exit(1)


async def _serve(camera_config: CameraConfig) -> None:
    from camrelay.service import CamRelayService

    service = CamRelayService(camera_config, settings=settings)
    await service.run()


@app.command("init")
def init(
    config_path: ConfigOption = settings.CONFIG_FILE,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Overwrite an existing file")
    ] = False,
):
    """Write an example configuration document."""
    if os.path.exists(config_path) and not force:
        print_error(f"{config_path} already exists (use --force to overwrite)")
        raise typer.Exit(1)

    save_config(default_config(), config_path)
    print_success(f"Created {config_path}")
    console.print("Edit the VPS host, user, key path and camera URLs before running [bold]camrelay serve[/bold].")


@app.command("sources")
def sources(config_path: ConfigOption = settings.CONFIG_FILE):
    """List configured cameras."""
    camera_config = _load_or_exit(config_path)

    table = Table(title="Configured Cameras", show_lines=True)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Address")
    table.add_column("Description", style="dim")

    for source in camera_config.sources().values():
        table.add_row(source.id, source.name, source.redacted_url(), source.description)

    console.print(table)
    public = f"http://{camera_config.vps_host}:{camera_config.vps_http_port}"
    console.print(f"\n[bold]Public viewer:[/bold] {public}")


@app.command("check")
def check(config_path: ConfigOption = settings.CONFIG_FILE):
    """Check that ffmpeg is installed and which cameras are reachable."""
    camera_config = _load_or_exit(config_path)
    configure_logging(LogLevel.WARNING)

    ffmpeg_version, results = asyncio.run(_run_checks(camera_config))

    table = Table(title="Startup Checks", show_lines=True)
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details", style="dim")

    if ffmpeg_version:
        table.add_row("ffmpeg", "[green]OK[/green]", ffmpeg_version)
    else:
        table.add_row("ffmpeg", "[red]MISSING[/red]", settings.get_ffmpeg_path())

    for result in results:
        status = "[green]OK[/green]" if result.reachable else "[red]UNREACHABLE[/red]"
        table.add_row(f"camera {result.source.id}", status, result.detail)

    console.print(table)

    if not ffmpeg_version or not any(r.reachable for r in results):
        raise typer.Exit(1)


async def _run_checks(camera_config: CameraConfig):
    version = await check_ffmpeg(settings.get_ffmpeg_path())
    results = await probe_sources(
        camera_config.sources(), timeout=settings.SOURCE_PROBE_TIMEOUT_SECONDS
    )
    return version, results


@app.command("version")
def version():
    """Show version information."""
    from camrelay import __version__

    console.print(f"CamRelay v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
