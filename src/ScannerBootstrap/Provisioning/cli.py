"""Typer CLI for engine and JRE resolution, plugin resources, and unpacking.

Global options come before the subcommand and override ``SCANNER_*``
environment variables:

    scanner-bootstrap --host https://scanner.example.org resolve-engine
    scanner-bootstrap resolve-jre --os linux --arch x64
    scanner-bootstrap -vv install-resources csharp:9.12:analyzers.zip
    scanner-bootstrap unpack bundle.tar.gz ./out

Exit codes: ``0`` success, ``1`` nothing resolved or server failure, ``2``
invalid input or unsafe archive.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import httpx
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from . import __version__
from .archive_cache import ArchiveCache
from .cache import FileCache
from .errors import ArchiveFormatError, ConfigError, ServerError, UnsafeArchiveEntryError
from .logging_config import setup_logging
from .models import Plugin
from .plugin_resources import PluginResourceInstaller
from .resolver import EngineResolver, JreResolver
from .server import HttpServerClient, OfflineServerClient
from .settings import ProvisioningSettings, get_settings
from .telemetry import Telemetry
from .unpacking import unpack_file

__all__ = ["app", "CliContext", "get_context", "main"]

_console = Console()

app = typer.Typer(
    name="scanner-bootstrap",
    help="Provision the analysis engine and plugin resources for scanner builds",
    no_args_is_help=True,
    add_completion=False,
)


class CliContext:
    """Settings and shared resources for one CLI invocation."""

    def __init__(self, settings: ProvisioningSettings, verbosity: int = 0, offline: bool = False):
        self.settings = settings
        self.verbosity = verbosity
        self.offline = offline
        self.console = _console
        self.telemetry = Telemetry()
        level = settings.level_int()
        if verbosity >= 2:
            level = logging.DEBUG
        elif verbosity == 1:
            level = min(level, logging.INFO)
        self.logger = setup_logging(level)

    async def open_server(self, *, offline: bool = False):
        """Return the server client, or an offline stand-in when no request may be sent."""

        if self.offline or offline:
            return OfflineServerClient()
        return await HttpServerClient.open(self.settings, logger=self.logger)

    def flush_telemetry(self) -> None:
        if self.settings.telemetry_path is not None:
            self.telemetry.write_json(self.settings.telemetry_path)


_context: Optional[CliContext] = None


def get_context() -> CliContext:
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"scanner-bootstrap {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    host: Optional[str] = typer.Option(None, "--host", help="Server base URL"),
    user_home: Optional[Path] = typer.Option(
        None, "--user-home", help="User home holding the artifact cache"
    ),
    token: Optional[str] = typer.Option(None, "--token", help="Server bearer token"),
    telemetry_path: Optional[Path] = typer.Option(
        None, "--telemetry", help="Write telemetry pairs to this JSON file"
    ),
    offline: bool = typer.Option(False, "--offline", help="Never contact the server"),
    verbosity: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Increase verbosity (-v INFO, -vv DEBUG)"
    ),
    version: bool = typer.Option(
        False, "--version", "-V", callback=_version_callback, is_eager=True, help="Show version"
    ),
) -> None:
    """Scanner bootstrapper artifact provisioning."""

    global _context
    try:
        settings = get_settings(
            host_url=host, user_home=user_home, token=token, telemetry_path=telemetry_path
        )
    except ValidationError as exc:
        _console.print(f"[red]Invalid settings:[/red] {escape(str(exc))}")
        raise typer.Exit(2)
    _context = CliContext(settings, verbosity=verbosity, offline=offline)


def _run_resolution(ctx: CliContext, run, what: str) -> None:
    try:
        path = asyncio.run(run())
    except (ServerError, httpx.HTTPError) as exc:
        ctx.console.print(f"[red]Server request failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1)
    except ConfigError as exc:
        ctx.console.print(f"[red]Invalid {what} metadata:[/red] {escape(str(exc))}")
        raise typer.Exit(2)
    finally:
        ctx.flush_telemetry()

    if path is None:
        ctx.console.print(f"[yellow]No {what} could be resolved[/yellow]")
        raise typer.Exit(1)
    typer.echo(path)


@app.command("resolve-engine")
def resolve_engine(
    engine_jar: Optional[str] = typer.Option(
        None, "--engine-jar", help="Use this local engine JAR instead of provisioning"
    ),
) -> None:
    """Resolve the analysis engine JAR and print its local path."""

    ctx = get_context()
    settings = ctx.settings
    override = engine_jar or settings.engine_jar_path

    async def _run() -> Optional[str]:
        # A local override is returned without contacting the server.
        async with await ctx.open_server(offline=bool(override)) as server:
            resolver = EngineResolver(
                server,
                FileCache(logger=ctx.logger),
                cache_root=settings.cache_root,
                telemetry=ctx.telemetry,
                logger=ctx.logger,
            )
            return await resolver.resolve(override)

    _run_resolution(ctx, _run, "analysis engine")


@app.command("resolve-jre")
def resolve_jre(
    java_exe: Optional[str] = typer.Option(
        None, "--java-exe", help="Use this local Java executable instead of provisioning"
    ),
    os_name: Optional[str] = typer.Option(None, "--os", help="Target operating system"),
    arch: Optional[str] = typer.Option(None, "--arch", help="Target CPU architecture"),
    skip: bool = typer.Option(False, "--skip-provisioning", help="Never download a JRE"),
) -> None:
    """Resolve a Java executable, provisioning a JRE, and print its local path."""

    ctx = get_context()
    settings = ctx.settings
    override = java_exe or settings.java_exe_path
    skip = skip or settings.skip_jre_provisioning

    async def _run() -> Optional[str]:
        async with await ctx.open_server(offline=bool(override) or skip) as server:
            file_cache = FileCache(logger=ctx.logger)
            resolver = JreResolver(
                server,
                ArchiveCache(file_cache, logger=ctx.logger),
                cache_root=settings.cache_root,
                telemetry=ctx.telemetry,
                logger=ctx.logger,
            )
            return await resolver.resolve(
                override,
                os_name=os_name or settings.os_name,
                arch=arch or settings.arch,
                skip_provisioning=skip,
            )

    _run_resolution(ctx, _run, "Java runtime")


def _parse_plugin(value: str) -> Plugin:
    parts = value.split(":")
    if len(parts) != 3:
        raise typer.BadParameter(f"expected KEY:VERSION:RESOURCE, got '{value}'")
    try:
        return Plugin(key=parts[0], version=parts[1], resource_name=parts[2])
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command("install-resources")
def install_resources(
    plugins: List[str] = typer.Argument(..., help="Plugins as KEY:VERSION:RESOURCE"),
) -> None:
    """Install embedded plugin resources and print the installed files."""

    ctx = get_context()
    parsed = [_parse_plugin(value) for value in plugins]

    async def _run() -> List[Path]:
        async with await ctx.open_server() as server:
            installer = PluginResourceInstaller(
                server,
                ctx.settings.cache_root,
                logger=ctx.logger,
                telemetry=ctx.telemetry,
            )
            return await installer.install(parsed)

    try:
        files = asyncio.run(_run())
    except (ServerError, httpx.HTTPError) as exc:
        ctx.console.print(f"[red]Server request failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1)
    except UnsafeArchiveEntryError as exc:
        ctx.console.print(f"[red]Unsafe archive:[/red] {escape(str(exc))}")
        raise typer.Exit(2)
    finally:
        ctx.flush_telemetry()

    for path in files:
        typer.echo(str(path))


@app.command("unpack")
def unpack(
    archive: Path = typer.Argument(..., exists=True, dir_okay=False, help="Archive to extract"),
    destination: Path = typer.Argument(..., help="Destination directory"),
) -> None:
    """Extract a zip or tar.gz archive, refusing entries that escape DESTINATION."""

    ctx = get_context()
    try:
        files = unpack_file(archive, destination, logger=ctx.logger)
    except UnsafeArchiveEntryError as exc:
        ctx.console.print(f"[red]Unsafe archive:[/red] {escape(str(exc))}")
        raise typer.Exit(2)
    except (ArchiveFormatError, ConfigError) as exc:
        ctx.console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(2)
    ctx.console.print(f"[green]Extracted {len(files)} files into {destination}[/green]")
