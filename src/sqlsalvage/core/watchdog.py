# src/sqlsalvage/core/watchdog.py
"""Streaming watchdog for child processes that may hang on corrupted input.

The child's stdout is piped straight into a destination file, chunk by chunk,
so output of any size never sits in memory. Three independent guards decide
when "still working" has turned into "hung on corruption":

    no output   zero bytes after no_output_sec              -> KILLED_NO_OUTPUT
    stall       < stall_min_bytes growth for stall_window   -> KILLED_STALLED
    ceiling     no significant_bytes jump for ceiling_sec   -> KILLED_TIMEOUT

The ceiling is a backstop for slow-but-nonzero throughput that keeps
resetting the stall guard. Progress reports run on their own cadence, in a
separate task, so they neither delay kill checks nor flood observers.

State machine (transitions outside this table raise):

    STARTING  -> STREAMING | FAILED | KILLED_NO_OUTPUT | CANCELLED
    STREAMING -> COMPLETED | FAILED | KILLED_STALLED | KILLED_TIMEOUT | CANCELLED
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from sqlsalvage.config import WatchdogConfig
from sqlsalvage.contracts import StreamOutcome, WatchdogState
from sqlsalvage.core.clock import DEFAULT_CLOCK, Clock
from sqlsalvage.core.logging import get_logger
from sqlsalvage.core.process import ProcessHandle, ProcessRunner, truncate_stderr

logger = get_logger(__name__)

MIB = 1024 * 1024
STDERR_KEEP_BYTES = 64 * 1024

_TRANSITIONS: dict[WatchdogState, frozenset[WatchdogState]] = {
    WatchdogState.STARTING: frozenset(
        {
            WatchdogState.STREAMING,
            WatchdogState.FAILED,
            WatchdogState.KILLED_NO_OUTPUT,
            WatchdogState.CANCELLED,
        }
    ),
    WatchdogState.STREAMING: frozenset(
        {
            WatchdogState.COMPLETED,
            WatchdogState.FAILED,
            WatchdogState.KILLED_STALLED,
            WatchdogState.KILLED_TIMEOUT,
            WatchdogState.CANCELLED,
        }
    ),
}


class IllegalTransitionError(RuntimeError):
    """A watchdog state change that the state machine does not allow."""


@dataclass(frozen=True, slots=True)
class StreamProgress:
    """Snapshot handed to progress callbacks."""

    state: WatchdogState
    bytes_written: int
    elapsed_sec: float


ProgressCallback = Callable[[StreamProgress], None]


class StreamTracker:
    """Byte-arrival bookkeeping and kill guards for one stream.

    Pure bookkeeping over an injectable clock: no I/O, no tasks.
    """

    def __init__(self, config: WatchdogConfig, clock: Clock = DEFAULT_CLOCK) -> None:
        self._config = config
        self._clock = clock
        now = clock.monotonic()
        self.started_at = now
        self.state = WatchdogState.STARTING
        self.bytes_written = 0
        self.last_byte_at: float | None = None
        self._stall_baseline_bytes = 0
        self._stall_baseline_at = now
        self._significant_bytes = 0
        self._significant_at = now
        self._reported_quanta = 0

    @property
    def elapsed_sec(self) -> float:
        return self._clock.monotonic() - self.started_at

    @property
    def seconds_without_progress(self) -> float:
        """Time since growth last reached stall_min_bytes."""
        return self._clock.monotonic() - self._stall_baseline_at

    @property
    def seconds_without_significant_jump(self) -> float:
        return self._clock.monotonic() - self._significant_at

    def transition(self, new_state: WatchdogState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise IllegalTransitionError(f"Illegal watchdog transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def record(self, nbytes: int) -> bool:
        """Account for a chunk written to the destination.

        Returns True when this chunk crossed a progress-quantum boundary.
        """
        if nbytes <= 0:
            return False
        now = self._clock.monotonic()
        self.bytes_written += nbytes
        self.last_byte_at = now
        if self.state == WatchdogState.STARTING:
            self.transition(WatchdogState.STREAMING)

        if self.bytes_written - self._stall_baseline_bytes >= self._config.stall_min_bytes:
            self._stall_baseline_bytes = self.bytes_written
            self._stall_baseline_at = now
        if self.bytes_written - self._significant_bytes >= self._config.significant_bytes:
            self._significant_bytes = self.bytes_written
            self._significant_at = now

        quanta = self.bytes_written // self._config.progress_quantum_bytes
        if quanta > self._reported_quanta:
            self._reported_quanta = quanta
            return True
        return False

    def evaluate(self) -> WatchdogState | None:
        """Return the kill state whose guard has tripped, or None to keep going."""
        if self.state.is_terminal:
            return None
        if self.bytes_written == 0:
            if self.elapsed_sec >= self._config.no_output_sec:
                return WatchdogState.KILLED_NO_OUTPUT
            return None
        if self.seconds_without_progress >= self._config.stall_window_sec:
            return WatchdogState.KILLED_STALLED
        if self.seconds_without_significant_jump >= self._config.ceiling_sec:
            return WatchdogState.KILLED_TIMEOUT
        return None

    def finish(self, exit_code: int | None) -> WatchdogState:
        """Settle the terminal state of a process that exited on its own."""
        if exit_code == 0 and self.bytes_written > 0:
            self.transition(WatchdogState.COMPLETED)
        else:
            self.transition(WatchdogState.FAILED)
        return self.state

    def snapshot(self) -> StreamProgress:
        return StreamProgress(state=self.state, bytes_written=self.bytes_written, elapsed_sec=self.elapsed_sec)


class StreamingWatchdog:
    """Runs one process with stdout streamed to a file under the three guards.

    Args:
        runner: Spawns the process and owns the kill grace period.
        config: Guard thresholds and cadences.
        clock: Time source shared with the tracker.
    """

    def __init__(self, runner: ProcessRunner, config: WatchdogConfig, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._runner = runner
        self._config = config
        self._clock = clock

    async def run(
        self,
        args: Sequence[str],
        destination: Path,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> StreamOutcome:
        """Run the process, streaming stdout into ``destination``.

        The destination is truncated first and always flushed and closed,
        whatever the outcome. Kill outcomes are returned, not raised, with the
        byte count so the caller can judge partial output.

        Raises:
            SpawnError: The program could not be started.
            asyncio.CancelledError: The caller was cancelled; the child is
                terminated before this propagates.
        """
        tracker = StreamTracker(self._config, self._clock)
        stderr_tail = bytearray()
        quantum_crossed = asyncio.Event()
        write_error: OSError | None = None
        exit_code: int | None = None

        handle = await self._runner.spawn(args)
        logger.info(
            "Streaming process started",
            program=handle.program,
            pid=handle.pid,
            destination=str(destination),
        )

        with destination.open("wb") as sink:
            pump = asyncio.create_task(self._pump(handle, sink, tracker, quantum_crossed))
            drain = asyncio.create_task(self._drain_stderr(handle, stderr_tail))
            monitor = asyncio.create_task(self._monitor(tracker))
            reporter = asyncio.create_task(self._report(tracker, quantum_crossed, on_progress))
            finished = asyncio.create_task(self._wait_exit(handle, pump))
            try:
                done, _ = await asyncio.wait({finished, monitor}, return_when=asyncio.FIRST_COMPLETED)
                if finished in done:
                    try:
                        exit_code = finished.result()
                        tracker.finish(exit_code)
                    except OSError as e:
                        write_error = e
                        await self._runner.release(handle)
                        exit_code = handle.returncode
                        tracker.transition(WatchdogState.FAILED)
                else:
                    verdict = monitor.result()
                    tracker.transition(verdict)
                    logger.warning(
                        "Watchdog killing process",
                        program=handle.program,
                        pid=handle.pid,
                        state=verdict.value,
                        bytes_written=tracker.bytes_written,
                        elapsed_sec=round(tracker.elapsed_sec, 1),
                        seconds_without_progress=round(tracker.seconds_without_progress, 1),
                    )
                    await self._runner.release(handle)
                    exit_code = handle.returncode
            except asyncio.CancelledError:
                if not tracker.state.is_terminal:
                    tracker.transition(WatchdogState.CANCELLED)
                raise
            finally:
                await self._runner.release(handle)
                for task in (pump, drain, monitor, reporter, finished):
                    task.cancel()
                await asyncio.gather(pump, drain, monitor, reporter, finished, return_exceptions=True)
                with contextlib.suppress(OSError):
                    sink.flush()

        stderr_text = stderr_tail.decode("utf-8", errors="replace")
        if write_error is not None:
            stderr_text = f"Failed to write output file: {write_error}\n{stderr_text}"

        outcome = StreamOutcome(
            state=tracker.state,
            exit_code=exit_code,
            bytes_written=tracker.bytes_written,
            elapsed_sec=tracker.elapsed_sec,
            stderr=truncate_stderr(stderr_text.strip()),
        )
        logger.info(
            "Streaming process finished",
            state=outcome.state.value,
            exit_code=exit_code,
            bytes_written=outcome.bytes_written,
            elapsed_sec=round(outcome.elapsed_sec, 1),
        )
        return outcome

    async def _pump(
        self,
        handle: ProcessHandle,
        sink: BinaryIO,
        tracker: StreamTracker,
        quantum_crossed: asyncio.Event,
    ) -> None:
        stdout = handle.process.stdout
        if stdout is None:
            raise RuntimeError("stdout is not piped")
        while True:
            chunk = await stdout.read(self._config.chunk_size)
            if not chunk:
                return
            sink.write(chunk)
            if tracker.record(len(chunk)):
                quantum_crossed.set()

    async def _drain_stderr(self, handle: ProcessHandle, tail: bytearray) -> None:
        stderr = handle.process.stderr
        if stderr is None:
            return
        while True:
            chunk = await stderr.read(4096)
            if not chunk:
                return
            tail.extend(chunk)
            if len(tail) > STDERR_KEEP_BYTES:
                del tail[: len(tail) - STDERR_KEEP_BYTES]

    async def _wait_exit(self, handle: ProcessHandle, pump: asyncio.Task[None]) -> int:
        await pump
        return await handle.process.wait()

    async def _monitor(self, tracker: StreamTracker) -> WatchdogState:
        while True:
            await asyncio.sleep(self._config.check_interval_sec)
            verdict = tracker.evaluate()
            if verdict is not None:
                return verdict

    async def _report(
        self,
        tracker: StreamTracker,
        quantum_crossed: asyncio.Event,
        on_progress: ProgressCallback | None,
    ) -> None:
        while True:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(quantum_crossed.wait(), timeout=self._config.progress_interval_sec)
            quantum_crossed.clear()
            snapshot = tracker.snapshot()
            logger.info(
                "Streaming heartbeat",
                mb_written=round(snapshot.bytes_written / MIB, 1),
                elapsed_sec=round(snapshot.elapsed_sec, 1),
                seconds_without_progress=round(tracker.seconds_without_progress, 1),
            )
            if snapshot.bytes_written > 0 and tracker.seconds_without_progress > self._config.stall_window_sec / 2:
                logger.warning(
                    "Stream growth is slow, process may be stuck on corrupted data",
                    seconds_without_progress=round(tracker.seconds_without_progress, 1),
                )
            if on_progress is not None:
                on_progress(snapshot)
