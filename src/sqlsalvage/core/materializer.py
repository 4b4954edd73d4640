# src/sqlsalvage/core/materializer.py
"""Replays a recovered SQL script into a fresh database file.

The script is streamed into the stdin of ``sqlite3 TARGET`` chunk by chunk;
scripts in the hundreds of megabytes are never loaded whole. Progress is the
share of script bytes consumed, mapped onto the 70-95% band of the session.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from pathlib import Path

from sqlsalvage.contracts import MaterializationError, ProgressEvent, ProgressPhase, SpawnError
from sqlsalvage.core.clock import DEFAULT_CLOCK, Clock
from sqlsalvage.core.logging import get_logger
from sqlsalvage.core.process import ProcessRunner, truncate_stderr
from sqlsalvage.core.progress import SessionProgress

logger = get_logger(__name__)

MIB = 1024 * 1024
PROGRESS_START = 70
PROGRESS_END = 95


@dataclass(frozen=True, slots=True)
class MaterializeResult:
    db_path: Path
    script_bytes: int
    elapsed_sec: float


def materialize_percent(consumed: int, total: int) -> int:
    """Map script bytes consumed onto the session's database phase band."""
    if total <= 0:
        return 80
    share = min(1.0, consumed / total)
    return min(PROGRESS_END, PROGRESS_START + round(share * (PROGRESS_END - PROGRESS_START)))


class DatabaseMaterializer:
    """Turns SQL scripts into database files, one process per target."""

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        chunk_size: int = 64 * 1024,
        progress_interval_sec: float = 5.0,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        self._runner = runner
        self._chunk_size = chunk_size
        self._progress_interval_sec = progress_interval_sec
        self._clock = clock
        self._active: set[Path] = set()

    async def materialize(
        self,
        sql_path: Path,
        db_path: Path,
        *,
        progress: SessionProgress | None = None,
    ) -> MaterializeResult:
        """Build ``db_path`` from ``sql_path``.

        Any file already at ``db_path`` is removed first so stale and fresh
        rows never mix.

        Raises:
            MaterializationError: Spawn failure, nonzero exit, or a target
                that is already being materialized.
        """
        target = db_path.resolve()
        if target in self._active:
            raise MaterializationError(f"{db_path.name} is already being materialized")
        self._active.add(target)
        try:
            return await self._materialize(sql_path, db_path, progress)
        finally:
            self._active.discard(target)

    async def _materialize(
        self,
        sql_path: Path,
        db_path: Path,
        progress: SessionProgress | None,
    ) -> MaterializeResult:
        try:
            total = sql_path.stat().st_size
        except OSError as e:
            raise MaterializationError(f"SQL script not readable: {e}") from e

        db_path.unlink(missing_ok=True)
        logger.info("Materializing database", sql_path=str(sql_path), db_path=str(db_path), sql_bytes=total)

        start = self._clock.monotonic()
        try:
            handle = await self._runner.spawn([str(db_path)], stdin_pipe=True)
        except SpawnError as e:
            raise MaterializationError(f"Failed to create database: {e}") from e

        stderr_chunks: list[bytes] = []
        drain = asyncio.create_task(self._drain(handle.process.stderr, stderr_chunks))
        stdout_drain = asyncio.create_task(self._drain(handle.process.stdout, None))
        consumed = 0
        try:
            consumed = await self._feed(handle.process.stdin, sql_path, total, progress)
            exit_code = await handle.process.wait()
        finally:
            await self._runner.release(handle)
            await asyncio.gather(drain, stdout_drain, return_exceptions=True)

        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
        elapsed = self._clock.monotonic() - start
        if exit_code != 0:
            logger.error(
                "Database creation failed",
                exit_code=exit_code,
                stderr=truncate_stderr(stderr_text),
            )
            raise MaterializationError(truncate_stderr(stderr_text) or f"Database creation failed (exit code {exit_code})")
        if stderr_text:
            logger.info("sqlite3 reported messages during import", stderr=truncate_stderr(stderr_text))

        logger.info("Database created", db_path=str(db_path), sql_bytes=consumed, elapsed_sec=round(elapsed, 1))
        return MaterializeResult(db_path=db_path, script_bytes=consumed, elapsed_sec=elapsed)

    async def _feed(
        self,
        stdin: asyncio.StreamWriter | None,
        sql_path: Path,
        total: int,
        progress: SessionProgress | None,
    ) -> int:
        if stdin is None:
            raise MaterializationError("stdin is not piped")
        consumed = 0
        last_report = self._clock.monotonic()
        try:
            with sql_path.open("rb") as source:
                while chunk := source.read(self._chunk_size):
                    stdin.write(chunk)
                    await stdin.drain()
                    consumed += len(chunk)
                    now = self._clock.monotonic()
                    if progress is not None and now - last_report >= self._progress_interval_sec:
                        last_report = now
                        progress.publish(
                            ProgressEvent.update(
                                ProgressPhase.DATABASE,
                                materialize_percent(consumed, total),
                                "Creating recovered database",
                                f"Processing {consumed // MIB} MB of {total // MIB} MB...",
                            )
                        )
        except (BrokenPipeError, ConnectionResetError):
            # sqlite3 exited early; its exit status tells the story.
            logger.warning("sqlite3 closed its input early", consumed=consumed, total=total)
        finally:
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                stdin.close()
                await stdin.wait_closed()
        return consumed

    @staticmethod
    async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes] | None) -> None:
        if stream is None:
            return
        while chunk := await stream.read(4096):
            if sink is not None:
                sink.append(chunk)
