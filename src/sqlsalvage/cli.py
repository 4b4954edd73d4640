# src/sqlsalvage/cli.py
"""CLI for the sqlsalvage recovery service.

Usage:
    sqlsalvage serve                               # Start with defaults
    sqlsalvage serve --preset=exhaustive           # Use a preset
    sqlsalvage serve --config=salvage.yaml --port=5050
    sqlsalvage recover broken.db                   # Recover offline
    sqlsalvage recover broken.zip --manual         # Table-by-table only
    sqlsalvage materialize recovery.sql -o out.db  # Replay a recovered script
    sqlsalvage probe                               # What can sqlite3 do?
    sqlsalvage presets                             # List presets
"""

from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path
from typing import Annotated, Any

import pydantic
import typer
import yaml

from sqlsalvage.config import SalvageConfig, list_presets, load_config
from sqlsalvage.contracts import (
    InvalidOptionsError,
    RecoveryMode,
    RecoveryOptions,
    RecoveryOutcome,
    RecoveryStats,
    SalvageError,
)
from sqlsalvage.core.capability import probe_capabilities
from sqlsalvage.core.logging import configure_logging
from sqlsalvage.core.materializer import DatabaseMaterializer
from sqlsalvage.core.process import ProcessRunner
from sqlsalvage.core.stats import StatsCollector

app = typer.Typer(
    name="sqlsalvage",
    help="sqlsalvage: recover readable content from corrupted SQLite databases.",
    no_args_is_help=True,
)

PresetOption = Annotated[
    str | None,
    typer.Option("--preset", "-p", help="Preset configuration to use. Use 'sqlsalvage presets' to list available."),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to YAML configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
]


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from sqlsalvage import __version__

        typer.echo(f"sqlsalvage {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-V", callback=_version_callback, is_eager=True, help="Show version and exit."),
    ] = None,
) -> None:
    """sqlsalvage: recover readable content from corrupted SQLite databases."""


def _load(preset: str | None, config_file: Path | None, cli_overrides: dict[str, Any] | None = None) -> SalvageConfig:
    try:
        return load_config(preset=preset, config_file=config_file, cli_overrides=cli_overrides)
    except FileNotFoundError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e
    except (pydantic.ValidationError, yaml.YAMLError, ValueError) as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e


@app.command()
def serve(
    preset: PresetOption = None,
    config_file: ConfigOption = None,
    host: Annotated[
        str | None,
        typer.Option("--host", "-h", help="Host address to bind to."),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", "-P", help="Port to listen on.", min=1, max=65535),
    ] = None,
    artifact_dir: Annotated[
        Path | None,
        typer.Option("--artifact-dir", "-d", help="Directory for uploads and recovered artifacts."),
    ] = None,
    sqlite3_binary: Annotated[
        str | None,
        typer.Option("--sqlite3", help="sqlite3 executable to orchestrate."),
    ] = None,
    allow_external_bind: Annotated[
        bool,
        typer.Option("--allow-external-bind", help="Permit binding to all interfaces."),
    ] = False,
    json_logs: Annotated[
        bool,
        typer.Option("--json-logs", help="Emit JSON log lines."),
    ] = False,
) -> None:
    """Start the recovery HTTP service.

    Configuration precedence (highest to lowest):
    1. Command-line flags
    2. Environment (PORT, SQLSALVAGE_ARTIFACT_DIR, SQLSALVAGE_SQLITE3)
    3. Config file (--config)
    4. Preset (--preset)
    5. Built-in defaults
    """
    cli_overrides: dict[str, Any] = {}
    server: dict[str, Any] = {}
    if host is not None:
        server["host"] = host
    if port is not None:
        server["port"] = port
    if server:
        cli_overrides["server"] = server
    if artifact_dir is not None:
        cli_overrides["storage"] = {"artifact_dir": artifact_dir}
    if sqlite3_binary is not None:
        cli_overrides["tool"] = {"binary": sqlite3_binary}
    if allow_external_bind:
        cli_overrides["allow_external_bind"] = True
    if json_logs:
        cli_overrides["logging"] = {"json_output": True}

    config = _load(preset, config_file, cli_overrides)
    configure_logging(json_output=config.logging.json_output, level=config.logging.level)

    typer.secho(f"Starting sqlsalvage on {config.server.host}:{config.server.port}", fg=typer.colors.GREEN)
    if preset:
        typer.echo(f"  Preset: {preset}")
    if config_file:
        typer.echo(f"  Config: {config_file}")
    typer.echo(f"  Artifacts: {config.storage.artifact_dir}")
    typer.echo(f"  sqlite3: {config.tool.binary}")
    typer.echo()

    import uvicorn

    from sqlsalvage.server import create_app

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
        log_config=None,
    )


async def _recover(config: SalvageConfig, source: Path, mode: RecoveryMode, options: RecoveryOptions) -> RecoveryOutcome:
    from sqlsalvage.engine.service import RecoveryService, Submission

    service = RecoveryService.from_config(config)
    timestamp = service.artifacts.timestamp()
    # Sessions delete their input; work on a copy.
    staged = service.artifacts.upload_path(source.name, timestamp)
    await asyncio.to_thread(shutil.copyfile, source, staged)

    session = service.sessions.create(mode, options)

    async def echo_progress() -> None:
        async with service.channel.subscribe(session.session_id) as subscription:
            ready.set()
            async for event in subscription:
                line = f"[{event.progress:3d}%] {event.phase.value:<10} {event.message}"
                if event.detail:
                    line += f" ({event.detail})"
                typer.echo(line, err=True)

    ready = asyncio.Event()
    printer = asyncio.create_task(echo_progress())
    await ready.wait()
    try:
        return await service.run(session, Submission(path=staged, original_name=source.name, timestamp=timestamp))
    finally:
        await asyncio.wait({printer}, timeout=1.0)
        printer.cancel()
        await asyncio.gather(printer, return_exceptions=True)


@app.command()
def recover(
    source: Annotated[
        Path,
        typer.Argument(help="Corrupted database or ZIP archive.", exists=True, dir_okay=False, resolve_path=True),
    ],
    preset: PresetOption = None,
    config_file: ConfigOption = None,
    manual: Annotated[
        bool,
        typer.Option("--manual", help="Skip straight to table-by-table recovery."),
    ] = False,
    ignore_freelist: Annotated[
        bool,
        typer.Option("--ignore-freelist", help="Pass --ignore-freelist to .recover."),
    ] = False,
    no_rowids: Annotated[
        bool,
        typer.Option("--no-rowids", help="Pass --no-rowids to .recover."),
    ] = False,
    lost_and_found: Annotated[
        str,
        typer.Option("--lost-and-found", help="Table for orphaned rows."),
    ] = "lost_and_found",
    artifact_dir: Annotated[
        Path | None,
        typer.Option("--artifact-dir", "-d", help="Where to write the recovered script and database."),
    ] = None,
    sqlite3_binary: Annotated[
        str | None,
        typer.Option("--sqlite3", help="sqlite3 executable to orchestrate."),
    ] = None,
) -> None:
    """Recover a database offline and print where the artifacts went."""
    overrides: dict[str, Any] = {}
    if artifact_dir is not None:
        overrides["storage"] = {"artifact_dir": artifact_dir}
    if sqlite3_binary is not None:
        overrides["tool"] = {"binary": sqlite3_binary}
    config = _load(preset, config_file, overrides)
    configure_logging(json_output=config.logging.json_output, level="WARNING")

    try:
        options = RecoveryOptions(
            ignore_freelist=ignore_freelist,
            no_rowids=no_rowids,
            lost_and_found_table=lost_and_found,
        )
    except InvalidOptionsError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(2) from e

    mode = RecoveryMode.TABLE_BY_TABLE if manual else RecoveryMode.STANDARD
    try:
        outcome = asyncio.run(_recover(config, source, mode, options))
    except SalvageError as e:
        typer.secho(f"Recovery failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e

    root = config.storage.artifact_dir
    typer.secho(f"Recovered with strategy '{outcome.strategy.strategy.value}'", fg=typer.colors.GREEN)
    typer.echo(f"  SQL script: {root / outcome.sql_file}")
    typer.echo(f"  Database:   {root / outcome.db_file}")
    for key, value in outcome.stats.to_dict().items():
        typer.echo(f"  {key}: {value}")
    partial = outcome.strategy.partial_failure
    if partial is not None:
        typer.secho(
            f"  {partial.tables_failed} table(s) failed: {', '.join(partial.failed_tables)}",
            fg=typer.colors.YELLOW,
        )


async def _materialize(config: SalvageConfig, script: Path, output: Path) -> RecoveryStats:
    runner = ProcessRunner(config.tool.binary, kill_grace_sec=config.tool.kill_grace_sec)
    materializer = DatabaseMaterializer(
        runner,
        chunk_size=config.watchdog.chunk_size,
        progress_interval_sec=config.watchdog.progress_interval_sec,
    )
    await materializer.materialize(script, output)
    return await StatsCollector().collect(output, script)


@app.command()
def materialize(
    script: Annotated[
        Path,
        typer.Argument(help="Recovered SQL script to replay.", exists=True, dir_okay=False, resolve_path=True),
    ],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Database to create (replaced if present). Defaults to SCRIPT with .db."),
    ] = None,
    preset: PresetOption = None,
    config_file: ConfigOption = None,
    sqlite3_binary: Annotated[
        str | None,
        typer.Option("--sqlite3", help="sqlite3 executable to orchestrate."),
    ] = None,
) -> None:
    """Replay a SQL script into a fresh database and print its stats."""
    overrides = {"tool": {"binary": sqlite3_binary}} if sqlite3_binary else None
    config = _load(preset, config_file, overrides)
    configure_logging(json_output=config.logging.json_output, level="WARNING")
    target = (output or script.with_suffix(".db")).resolve()
    if target == script:
        typer.secho("Error: output would overwrite the script", fg=typer.colors.RED, err=True)
        raise typer.Exit(2)

    try:
        stats = asyncio.run(_materialize(config, script, target))
    except SalvageError as e:
        target.unlink(missing_ok=True)
        typer.secho(f"Materialization failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e

    typer.echo(
        json.dumps(
            {
                "dbFile": str(target),
                "tableCount": stats.table_count,
                "totalRowCount": stats.total_row_count,
                "uncountedTables": list(stats.uncounted_tables),
            },
            indent=2,
        )
    )


@app.command()
def probe(
    preset: PresetOption = None,
    config_file: ConfigOption = None,
    sqlite3_binary: Annotated[
        str | None,
        typer.Option("--sqlite3", help="sqlite3 executable to probe."),
    ] = None,
) -> None:
    """Report the sqlite3 version and whether it supports .recover."""
    overrides = {"tool": {"binary": sqlite3_binary}} if sqlite3_binary else None
    config = _load(preset, config_file, overrides)
    runner = ProcessRunner(config.tool.binary, kill_grace_sec=config.tool.kill_grace_sec)
    capabilities = asyncio.run(probe_capabilities(runner, timeout=config.tool.probe_timeout_sec))
    typer.echo(json.dumps(capabilities.to_dict(), indent=2))
    if not capabilities.available:
        raise typer.Exit(1)


@app.command()
def presets() -> None:
    """List available preset configurations."""
    available = list_presets()
    if not available:
        typer.echo("No presets found.")
        return

    typer.secho("Available presets:", fg=typer.colors.GREEN)
    for name in available:
        typer.echo(f"  - {name}")

    typer.echo()
    typer.echo("Use with: sqlsalvage serve --preset=<name>")


@app.command()
def show_config(
    preset: PresetOption = None,
    config_file: ConfigOption = None,
    output_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: json or yaml."),
    ] = "yaml",
) -> None:
    """Show the effective configuration."""
    config = _load(preset, config_file)
    config_dict = config.model_dump(mode="json")
    if output_format == "json":
        typer.echo(json.dumps(config_dict, indent=2))
    else:
        typer.echo(yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=False))


def main() -> None:
    """Entry point for sqlsalvage CLI."""
    app()


if __name__ == "__main__":
    main()
