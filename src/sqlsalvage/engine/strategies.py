# src/sqlsalvage/engine/strategies.py
"""The five recovery strategies, in decreasing order of ambition.

Each strategy writes its SQL script to ``ctx.sql_path`` and returns a
StrategyResult. Timeouts, stalls and nonzero exits become failed results so
the chain can fall through; only SpawnError escapes, because a missing tool
makes every later strategy pointless too.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from sqlsalvage.config import ToolConfig, WatchdogConfig
from sqlsalvage.contracts import (
    ProcessTimeoutError,
    ProgressEvent,
    ProgressPhase,
    RecoveryOptions,
    StallError,
    StrategyName,
    StrategyResult,
    format_file_size,
)
from sqlsalvage.core.logging import get_logger
from sqlsalvage.core.process import ProcessRunner, truncate_stderr
from sqlsalvage.core.progress import SessionProgress
from sqlsalvage.core.watchdog import StreamingWatchdog, StreamProgress

logger = get_logger(__name__)

USER_TABLES_SQL = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"

NO_DATA_SCRIPT = "-- No recoverable data found\n"

TABLE_BY_TABLE_HEADER = (
    "-- Table-by-Table Recovery\n-- Some tables may be skipped due to corruption\nPRAGMA foreign_keys=OFF;\n\n"
)

SCHEMA_HEADER = "-- Schema Recovery\nPRAGMA foreign_keys=OFF;\nBEGIN TRANSACTION;\n\n"
SCHEMA_FOOTER = (
    "\n\n-- Note: Data extraction may have failed due to corruption\n-- Schema recovered successfully\nCOMMIT;\n"
)

TABLE_LIST_HEADER = (
    "-- Basic Recovery Attempt\n"
    "-- Database appears to be severely corrupted\n"
    "PRAGMA foreign_keys=OFF;\n"
    "BEGIN TRANSACTION;\n\n"
)


@dataclass(frozen=True, slots=True)
class StrategyContext:
    """What every strategy gets to work with."""

    input_path: Path
    sql_path: Path
    options: RecoveryOptions
    progress: SessionProgress | None = None

    @property
    def input_size(self) -> int:
        try:
            return self.input_path.stat().st_size
        except OSError:
            return 0

    def report(self, progress: int, message: str, detail: str | None = None) -> None:
        if self.progress is not None:
            self.progress.publish(ProgressEvent.update(ProgressPhase.RECOVERY, progress, message, detail))


@runtime_checkable
class RecoveryStrategy(Protocol):
    """One step of the fallback chain."""

    name: StrategyName

    async def attempt(self, ctx: StrategyContext) -> StrategyResult:
        """Write a script to ctx.sql_path.

        Raises:
            SpawnError: The tool could not be started.
        """
        ...


def quote_dot_argument(name: str) -> str:
    """Double-quote a table name for a dot-command argument."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def dump_percent(bytes_written: int, input_size: int) -> int:
    """Dump progress estimate: output is assumed to be ~1.5x the input."""
    if input_size <= 0:
        return 30
    return min(65, round(30 + bytes_written / (input_size * 1.5) * 35))


class RecoverStrategy:
    """``.recover`` with the caller's options, captured in memory."""

    name = StrategyName.RECOVER

    def __init__(self, runner: ProcessRunner, tool: ToolConfig) -> None:
        self._runner = runner
        self._tool = tool

    async def attempt(self, ctx: StrategyContext) -> StrategyResult:
        command = ctx.options.recover_command()
        ctx.report(25, "Starting database recovery", "Running SQLite recovery command...")
        logger.info("Executing recovery command", command=command)
        try:
            result = await self._runner.run([str(ctx.input_path), command], timeout=self._tool.primary_timeout_sec)
        except ProcessTimeoutError as e:
            return StrategyResult.failure(self.name, str(e))

        if not result.ok:
            detail = truncate_stderr(result.stderr.strip()) or f"exit code {result.exit_code}"
            logger.info("Standard .recover failed, trying alternative approach", exit_code=result.exit_code)
            return StrategyResult.failure(self.name, detail)

        try:
            if result.stdout:
                ctx.sql_path.write_text(result.stdout, encoding="utf-8")
            else:
                logger.info("Recovery produced no output; database might be empty or severely corrupted")
                ctx.sql_path.write_text(NO_DATA_SCRIPT, encoding="utf-8")
        except OSError as e:
            return StrategyResult.failure(self.name, f"Failed to write recovery file: {e}")
        return StrategyResult.ok(self.name)


class DumpStrategy:
    """``.dump`` streamed to disk under the watchdog."""

    name = StrategyName.DUMP

    def __init__(self, watchdog: StreamingWatchdog) -> None:
        self._watchdog = watchdog

    async def attempt(self, ctx: StrategyContext) -> StrategyResult:
        input_size = ctx.input_size
        ctx.report(30, "Dumping database", f"Streaming .dump output for {format_file_size(input_size)} input")

        def on_progress(snapshot: StreamProgress) -> None:
            ctx.report(
                dump_percent(snapshot.bytes_written, input_size),
                "Dumping database",
                f"Written {format_file_size(snapshot.bytes_written)} in {snapshot.elapsed_sec:.0f}s",
            )

        outcome = await self._watchdog.run([str(ctx.input_path), ".dump"], ctx.sql_path, on_progress=on_progress)
        if outcome.completed:
            return StrategyResult.ok(self.name)

        try:
            outcome.raise_if_killed()
        except StallError as e:
            if outcome.has_partial_output:
                logger.warning("Discarding partial .dump output", bytes_written=e.bytes_written)
            return StrategyResult.failure(self.name, f".dump stopped: {e}", partial_bytes=e.bytes_written)

        detail = f".dump ended {outcome.state.value} after {outcome.elapsed_sec:.1f}s with {outcome.bytes_written} bytes"
        if outcome.stderr:
            detail = f"{detail}: {outcome.stderr}"
        return StrategyResult.failure(self.name, detail, partial_bytes=outcome.bytes_written)


class TableByTableStrategy:
    """Dump every user table separately; one bad table never stops the rest."""

    name = StrategyName.TABLE_BY_TABLE

    def __init__(self, runner: ProcessRunner, tool: ToolConfig) -> None:
        self._runner = runner
        self._tool = tool

    async def list_tables(self, input_path: Path) -> list[str]:
        try:
            rows = await self._runner.query_json(
                str(input_path),
                USER_TABLES_SQL,
                timeout=self._tool.query_timeout_sec,
            )
        except ProcessTimeoutError as e:
            logger.warning("Table enumeration timed out", error=str(e))
            return []
        return [str(row["name"]) for row in rows if row.get("name")]

    async def dump_table(self, input_path: Path, table: str) -> tuple[str | None, str | None]:
        """Return (sql, None) on success or (None, reason) on failure."""
        # sqlite3 silently creates a missing file and dumps it as empty.
        if not input_path.is_file():
            return None, "input file missing"
        try:
            result = await self._runner.run(
                [str(input_path), f".dump {quote_dot_argument(table)}"],
                timeout=self._tool.table_timeout_sec,
            )
        except ProcessTimeoutError:
            return None, "timeout"
        if result.ok and result.stdout:
            return result.stdout, None
        reason = result.stderr.strip() or "dump failed"
        return None, " ".join(truncate_stderr(reason).split())

    async def attempt(self, ctx: StrategyContext) -> StrategyResult:
        tables = await self.list_tables(ctx.input_path)
        if not tables:
            logger.info("No tables found in database")
            return StrategyResult.failure(self.name, "No tables found")

        total = len(tables)
        logger.info("Starting table-by-table recovery", tables=total)
        recovered = 0
        failed: list[str] = []
        try:
            ctx.sql_path.write_text(TABLE_BY_TABLE_HEADER, encoding="utf-8")
            for index, table in enumerate(tables):
                ctx.report(
                    35 + round(index / total * 30),
                    "Recovering tables individually",
                    f"Table {index + 1}/{total}: {table}",
                )
                sql, reason = await self.dump_table(ctx.input_path, table)
                with ctx.sql_path.open("a", encoding="utf-8") as out:
                    if sql is not None:
                        out.write(f"\n-- Table: {table}\n{sql}\n")
                        recovered += 1
                        logger.debug("Recovered table", table=table)
                    else:
                        out.write(f"\n-- Table: {table} (FAILED - {reason})\n")
                        failed.append(table)
                        logger.warning("Failed to recover table", table=table, reason=reason)

            footer = f"\n-- Recovery Summary:\n-- Successfully recovered: {recovered}/{total} tables\n"
            if failed:
                footer += f"-- Failed tables: {', '.join(failed)}\n"
            with ctx.sql_path.open("a", encoding="utf-8") as out:
                out.write(footer)
        except OSError as e:
            return StrategyResult.failure(self.name, f"Failed to write recovery file: {e}")

        logger.info("Table-by-table recovery complete", recovered=recovered, total=total, failed=len(failed))
        if recovered == 0:
            return StrategyResult.failure(self.name, "All tables failed to recover")
        return StrategyResult.ok(
            self.name,
            tables_recovered=recovered,
            tables_failed=len(failed),
            failed_tables=tuple(failed),
        )


class SchemaOnlyStrategy:
    """Table and index definitions without data."""

    name = StrategyName.SCHEMA_ONLY

    def __init__(self, runner: ProcessRunner, tool: ToolConfig) -> None:
        self._runner = runner
        self._tool = tool

    async def attempt(self, ctx: StrategyContext) -> StrategyResult:
        ctx.report(66, "Extracting schema", "Data could not be recovered; trying table definitions only")
        try:
            result = await self._runner.run([str(ctx.input_path), ".schema"], timeout=self._tool.schema_timeout_sec)
        except ProcessTimeoutError as e:
            return StrategyResult.failure(self.name, str(e))
        if not result.ok or not result.stdout:
            return StrategyResult.failure(self.name, result.stderr.strip() or ".schema produced no output")
        try:
            ctx.sql_path.write_text(SCHEMA_HEADER + result.stdout + SCHEMA_FOOTER, encoding="utf-8")
        except OSError as e:
            return StrategyResult.failure(self.name, f"Failed to write recovery file: {e}")
        return StrategyResult.ok(self.name)


class TableListStrategy:
    """Last resort: a parseable script that only names the tables."""

    name = StrategyName.TABLE_LIST

    def __init__(self, runner: ProcessRunner, tool: ToolConfig) -> None:
        self._runner = runner
        self._tool = tool

    async def attempt(self, ctx: StrategyContext) -> StrategyResult:
        ctx.report(68, "Listing tables", "Database is severely corrupted; writing a basic report")
        output = ""
        try:
            result = await self._runner.run([str(ctx.input_path), ".tables"], timeout=self._tool.schema_timeout_sec)
            if result.ok:
                output = result.stdout.strip()
        except ProcessTimeoutError as e:
            logger.warning(".tables timed out", error=str(e))

        script = TABLE_LIST_HEADER
        if output:
            listed = "\n".join(f"-- {line.rstrip()}" for line in output.splitlines())
            script += f"-- Tables found:\n{listed}\n\n"
            script += "-- Note: Table structures and data could not be recovered\n"
            script += "-- due to severe database corruption\n"
        else:
            script += "-- No tables could be identified\n"
            script += "-- Database is severely corrupted or not a valid SQLite file\n"
        script += "COMMIT;\n"
        try:
            ctx.sql_path.write_text(script, encoding="utf-8")
        except OSError as e:
            return StrategyResult.failure(self.name, f"Failed to write recovery file: {e}")
        return StrategyResult.ok(self.name)


def default_strategies(
    runner: ProcessRunner,
    tool: ToolConfig,
    watchdog_config: WatchdogConfig,
) -> list[RecoveryStrategy]:
    """The full chain in fallback order."""
    watchdog = StreamingWatchdog(runner, watchdog_config)
    return [
        RecoverStrategy(runner, tool),
        DumpStrategy(watchdog),
        TableByTableStrategy(runner, tool),
        SchemaOnlyStrategy(runner, tool),
        TableListStrategy(runner, tool),
    ]
