# src/sqlsalvage/core/process.py
"""Spawning and supervising external processes.

ProcessHandle owns exactly one child process and its kill switch.
ProcessRunner runs bounded invocations whose output fits in memory; callers
expecting large output use the streaming watchdog instead.

Every spawned handle is tracked in a ProcessRegistry while alive so the
abort control can terminate in-flight work without knowing which session
owns it.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from collections.abc import Sequence
from pathlib import PurePath
from typing import Any

import psutil

from sqlsalvage.contracts import ProcessResult, ProcessTimeoutError, SpawnError
from sqlsalvage.core.clock import DEFAULT_CLOCK, Clock
from sqlsalvage.core.logging import get_logger

logger = get_logger(__name__)

STDERR_TRUNCATE_CHARS = 2000


class ProcessHandle:
    """One spawned child process.

    Exclusively owned by whichever strategy spawned it. terminate() is
    idempotent and safe to call from cleanup paths.
    """

    def __init__(self, program: str, args: Sequence[str], process: asyncio.subprocess.Process) -> None:
        self.program = program
        self.args = tuple(args)
        self.process = process

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    async def terminate(self, grace_sec: float) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        if not self.running:
            return
        try:
            self.process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace_sec)
        except TimeoutError:
            logger.warning("Process ignored SIGTERM, killing", program=self.program, pid=self.pid)
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            await self.process.wait()

    async def kill(self) -> None:
        """Immediate SIGKILL."""
        if not self.running:
            return
        with contextlib.suppress(ProcessLookupError):
            self.process.kill()
        await self.process.wait()

    def __repr__(self) -> str:
        return f"ProcessHandle(program={self.program!r}, pid={self.pid}, returncode={self.returncode})"


class ProcessRegistry:
    """Live process handles, for the abort control.

    Accessed only from the event loop thread.
    """

    def __init__(self) -> None:
        self._handles: set[ProcessHandle] = set()

    def add(self, handle: ProcessHandle) -> None:
        self._handles.add(handle)

    def discard(self, handle: ProcessHandle) -> None:
        self._handles.discard(handle)

    def __len__(self) -> int:
        return len(self._handles)

    def live(self) -> list[ProcessHandle]:
        return [h for h in self._handles if h.running]

    async def terminate_all(self, grace_sec: float) -> int:
        """Terminate every live handle; returns how many were running."""
        handles = self.live()
        if handles:
            await asyncio.gather(*(h.terminate(grace_sec) for h in handles))
        self._handles.clear()
        return len(handles)


async def spawn(
    program: str,
    args: Sequence[str],
    *,
    registry: ProcessRegistry | None = None,
    stdin_pipe: bool = False,
) -> ProcessHandle:
    """Start a child process with piped stdout/stderr.

    Raises:
        SpawnError: If the program is missing or not executable.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdin=asyncio.subprocess.PIPE if stdin_pipe else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise SpawnError(program, e.strerror or str(e)) from e

    handle = ProcessHandle(program, args, process)
    if registry is not None:
        registry.add(handle)
    logger.debug("Spawned process", program=program, pid=handle.pid, args=list(args))
    return handle


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def truncate_stderr(text: str) -> str:
    if len(text) > STDERR_TRUNCATE_CHARS:
        return text[:STDERR_TRUNCATE_CHARS] + "... (truncated)"
    return text


class ProcessRunner:
    """Runs bounded invocations of one program and captures their output.

    Args:
        program: Executable name or path.
        kill_grace_sec: Grace period between SIGTERM and SIGKILL on timeout.
        registry: Where live handles are tracked for the abort control.
        clock: Time source for elapsed-time reporting.
    """

    def __init__(
        self,
        program: str,
        *,
        kill_grace_sec: float = 1.0,
        registry: ProcessRegistry | None = None,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        self.program = program
        self.kill_grace_sec = kill_grace_sec
        self.registry = registry if registry is not None else ProcessRegistry()
        self._clock = clock

    async def spawn(self, args: Sequence[str], *, stdin_pipe: bool = False) -> ProcessHandle:
        return await spawn(self.program, args, registry=self.registry, stdin_pipe=stdin_pipe)

    async def release(self, handle: ProcessHandle) -> None:
        """Make sure the handle is dead and forget it."""
        try:
            if handle.running:
                await handle.terminate(self.kill_grace_sec)
        finally:
            self.registry.discard(handle)

    async def run(self, args: Sequence[str], *, timeout: float | None = None) -> ProcessResult:
        """Run to completion and capture stdout/stderr in memory.

        A nonzero exit status is returned, not raised: strategies decide
        what a failure means.

        Raises:
            SpawnError: The program could not be started.
            ProcessTimeoutError: The timeout elapsed; the child was terminated.
        """
        start = self._clock.monotonic()
        handle = await self.spawn(args)
        try:
            async with asyncio.timeout(timeout):
                stdout, stderr = await handle.process.communicate()
        except TimeoutError as e:
            logger.warning(
                "Process timed out",
                program=self.program,
                pid=handle.pid,
                timeout_sec=timeout,
            )
            raise ProcessTimeoutError(self.program, timeout or 0.0) from e
        finally:
            await self.release(handle)

        elapsed = self._clock.monotonic() - start
        result = ProcessResult(
            exit_code=handle.returncode if handle.returncode is not None else -1,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            elapsed_sec=elapsed,
        )
        if not result.ok:
            logger.debug(
                "Process exited nonzero",
                program=self.program,
                exit_code=result.exit_code,
                stderr=truncate_stderr(result.stderr.strip()),
            )
        return result

    async def query_json(self, database: str, sql: str, *, timeout: float | None = None) -> list[dict[str, Any]]:
        """Run a query through ``sqlite3 -json`` and parse the rows.

        Failed queries and unparseable output yield an empty list; a damaged
        database often answers metadata queries with garbage.
        """
        result = await self.run([database, "-json", sql], timeout=timeout)
        if not result.ok or not result.stdout.strip():
            if result.stderr.strip():
                logger.info("Query failed", sql=sql, stderr=truncate_stderr(result.stderr.strip()))
            return []
        try:
            rows = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("Query returned unparseable JSON", sql=sql)
            return []
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]


def terminate_by_name(program: str, *, grace_sec: float = 1.0, exclude: frozenset[int] = frozenset()) -> int:
    """Terminate every process on this host whose name matches ``program``.

    Best effort: processes that vanish or deny access are skipped. Blocking;
    call through ``asyncio.to_thread`` from the event loop.

    Returns:
        Number of processes signalled.
    """
    target = PurePath(program).name
    own_pid = os.getpid()
    victims: list[psutil.Process] = []
    for proc in psutil.process_iter(attrs=["pid", "name"]):
        try:
            if proc.info["pid"] == own_pid or proc.info["pid"] in exclude:
                continue
            name = proc.info["name"] or ""
            if name == target or PurePath(name).stem == PurePath(target).stem:
                proc.terminate()
                victims.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    if victims:
        _, alive = psutil.wait_procs(victims, timeout=grace_sec)
        for proc in alive:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                proc.kill()
        logger.warning("Force-stopped processes by name", program=target, count=len(victims))
    return len(victims)
