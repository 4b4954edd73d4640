# src/sqlsalvage/engine/service.py
"""RecoveryService: one end-to-end recovery session.

    upload -> (archive extraction) -> strategy chain -> materialize -> stats

The whole pipeline runs under an outer ceiling. Whatever happens, the
session gets a terminal progress event and a finished state, and the input
file is deleted exactly once. A session that does not succeed leaves no
script or database behind, except the script of a failed materialization.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from sqlsalvage.config import SalvageConfig
from sqlsalvage.contracts import (
    MaterializationError,
    ProgressEvent,
    ProgressPhase,
    RecoveryMode,
    RecoveryOutcome,
    SalvageError,
    SessionState,
    SessionTimeoutError,
    format_file_size,
)
from sqlsalvage.core.archive import extract_candidate
from sqlsalvage.core.artifacts import ArtifactStore, OwnedInput, owned_input
from sqlsalvage.core.capability import CapabilityCache
from sqlsalvage.core.clock import DEFAULT_CLOCK, Clock
from sqlsalvage.core.logging import get_logger, session_context
from sqlsalvage.core.materializer import DatabaseMaterializer
from sqlsalvage.core.process import ProcessRunner, terminate_by_name
from sqlsalvage.core.progress import ProgressChannel, SessionProgress
from sqlsalvage.core.sessions import RecoverySession, SessionStore
from sqlsalvage.core.stats import StatsCollector
from sqlsalvage.engine.chain import RecoveryChain
from sqlsalvage.engine.strategies import RecoveryStrategy, StrategyContext, default_strategies

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PhasePlan:
    """Progress percentages announced at each phase boundary."""

    extraction_start: int
    extraction_done: int
    recovery_start: int
    database_start: int
    stats_start: int = 95


_PHASES: dict[RecoveryMode, PhasePlan] = {
    RecoveryMode.STANDARD: PhasePlan(extraction_start=15, extraction_done=20, recovery_start=25, database_start=70),
    RecoveryMode.TABLE_BY_TABLE: PhasePlan(extraction_start=5, extraction_done=10, recovery_start=15, database_start=75),
}


@dataclass(frozen=True, slots=True)
class Submission:
    """An uploaded file waiting for recovery."""

    path: Path
    original_name: str
    timestamp: int

    @property
    def is_archive(self) -> bool:
        return self.original_name.lower().endswith(".zip")

    @property
    def base_name(self) -> str:
        return Path(self.original_name).stem or "database"


class RecoveryService:
    """Runs recovery sessions against one sqlite3 tool.

    Args:
        config: Service configuration.
        runner: Process runner for the sqlite3 binary.
        channel: Progress fan-out.
        sessions: Session registry.
        artifacts: Artifact directory.
        capabilities: Cached capability probe.
        strategies: Override the default strategy chain (tests).
        clock: Time source for the materializer.
    """

    def __init__(
        self,
        config: SalvageConfig,
        *,
        runner: ProcessRunner,
        channel: ProgressChannel,
        sessions: SessionStore,
        artifacts: ArtifactStore,
        capabilities: CapabilityCache,
        strategies: list[RecoveryStrategy] | None = None,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        self.config = config
        self.runner = runner
        self.channel = channel
        self.sessions = sessions
        self.artifacts = artifacts
        self.capabilities = capabilities
        self._strategies = (
            strategies if strategies is not None else default_strategies(runner, config.tool, config.watchdog)
        )
        self.materializer = DatabaseMaterializer(
            runner,
            chunk_size=config.watchdog.chunk_size,
            progress_interval_sec=config.watchdog.progress_interval_sec,
            clock=clock,
        )
        self.stats = StatsCollector()

    @classmethod
    def from_config(cls, config: SalvageConfig, *, clock: Clock = DEFAULT_CLOCK) -> RecoveryService:
        runner = ProcessRunner(config.tool.binary, kill_grace_sec=config.tool.kill_grace_sec, clock=clock)
        return cls(
            config,
            runner=runner,
            channel=ProgressChannel(),
            sessions=SessionStore(ttl_sec=config.sessions.session_ttl_sec, clock=clock),
            artifacts=ArtifactStore(config.storage.artifact_dir),
            capabilities=CapabilityCache(runner, timeout=config.tool.probe_timeout_sec),
            clock=clock,
        )

    def ceiling_for(self, mode: RecoveryMode) -> float:
        if mode == RecoveryMode.TABLE_BY_TABLE:
            return self.config.sessions.table_by_table_ceiling_sec
        return self.config.sessions.standard_ceiling_sec

    def submit(self, session: RecoverySession, submission: Submission) -> asyncio.Task[RecoveryOutcome]:
        """Start the session as its own task so it can be cancelled by id."""
        task = asyncio.create_task(self.run(session, submission), name=f"recovery-{session.session_id}")
        session.task = task
        return task

    async def run(self, session: RecoverySession, submission: Submission) -> RecoveryOutcome:
        """Run one session to completion.

        Raises:
            SessionTimeoutError: The outer ceiling elapsed.
            SalvageError: Any fatal failure (spawn, exhaustion,
                materialization, archive).
            asyncio.CancelledError: The session was cancelled.
        """
        progress = SessionProgress(self.channel, session.session_id, listener=session.observe)
        ceiling = self.ceiling_for(session.mode)
        session.state = SessionState.RUNNING
        self.artifacts.cleanup_stale(self.config.storage.retention_sec)

        with (
            session_context(session.session_id, mode=session.mode.value),
            owned_input(submission.path, self.artifacts) as owned,
        ):
            progress.publish(
                ProgressEvent.update(
                    ProgressPhase.UPLOAD,
                    10,
                    "File uploaded successfully",
                    f"Received {format_file_size(_size(submission.path))}",
                )
            )
            try:
                async with asyncio.timeout(ceiling) as deadline:
                    outcome = await self._pipeline(session, submission, owned, progress)
            except TimeoutError as e:
                if deadline.expired():
                    error = SessionTimeoutError(session.session_id, ceiling)
                    logger.error("Recovery session timed out", ceiling_sec=ceiling)
                    self._fail(session, progress, SessionState.TIMED_OUT, str(error))
                    raise error from e
                self._fail(session, progress, SessionState.FAILED, str(e) or "Recovery failed")
                raise
            except asyncio.CancelledError:
                logger.warning("Recovery session cancelled")
                self._fail(session, progress, SessionState.CANCELLED, "Recovery cancelled")
                raise
            except SalvageError as e:
                logger.error("Recovery failed", error=str(e), error_type=type(e).__name__)
                self._fail(session, progress, SessionState.FAILED, str(e))
                raise
            except Exception as e:
                logger.exception("Unexpected recovery error")
                self._fail(session, progress, SessionState.FAILED, str(e) or "Recovery failed")
                raise

        progress.publish(ProgressEvent.complete("Recovery complete!", f"Strategy: {outcome.strategy.strategy.value}"))
        self.sessions.finish(session.session_id, SessionState.SUCCEEDED, outcome=outcome)
        return outcome

    async def _pipeline(
        self,
        session: RecoverySession,
        submission: Submission,
        owned: OwnedInput,
        progress: SessionProgress,
    ) -> RecoveryOutcome:
        phases = _PHASES[session.mode]
        base_name = submission.base_name

        if submission.is_archive:
            progress.publish(
                ProgressEvent.update(
                    ProgressPhase.EXTRACTION,
                    phases.extraction_start,
                    "Extracting ZIP archive",
                    "Reading ZIP file contents...",
                )
            )
            candidate = await asyncio.to_thread(
                extract_candidate,
                owned.path,
                self.artifacts.root,
                self.artifacts.extracted_prefix(submission.timestamp),
            )
            owned.replace(candidate.path)
            base_name = candidate.base_name
            progress.publish(
                ProgressEvent.update(
                    ProgressPhase.EXTRACTION,
                    phases.extraction_done,
                    "ZIP extraction complete",
                    f"Extracted {format_file_size(_size(candidate.path))}",
                )
            )

        paths = self.artifacts.paths_for(base_name, submission.timestamp, session.mode)
        if session.mode == RecoveryMode.TABLE_BY_TABLE:
            message, detail = "Starting manual table-by-table recovery", "This may take a while for large databases..."
        else:
            message, detail = "Starting database recovery", "Running SQLite recovery command..."
        progress.publish(ProgressEvent.update(ProgressPhase.RECOVERY, phases.recovery_start, message, detail))

        with self.artifacts.session_outputs(paths):
            chain = RecoveryChain(self._strategies, await self.capabilities.get())
            ctx = StrategyContext(
                input_path=owned.path,
                sql_path=paths.sql_path,
                options=session.options,
                progress=progress,
            )
            chained = await chain.run(ctx, session.mode)

            progress.publish(
                ProgressEvent.update(
                    ProgressPhase.DATABASE,
                    phases.database_start,
                    "Creating recovered database",
                    "Importing SQL into new database...",
                )
            )
            try:
                await self.materializer.materialize(paths.sql_path, paths.db_path, progress=progress)
            except MaterializationError as e:
                raise MaterializationError(str(e), sql_file=paths.sql_path.name) from e

            progress.publish(
                ProgressEvent.update(
                    ProgressPhase.STATS,
                    phases.stats_start,
                    "Calculating statistics",
                    "Analyzing recovered data...",
                )
            )
            stats = await self.stats.collect(paths.db_path, paths.sql_path)

            return RecoveryOutcome(
                session_id=session.session_id,
                sql_file=paths.sql_path.name,
                db_file=paths.db_path.name,
                strategy=chained.result,
                stats=stats,
                attempts=chained.attempts,
            )

    def _fail(self, session: RecoverySession, progress: SessionProgress, state: SessionState, detail: str) -> None:
        progress.publish(ProgressEvent.failed("Recovery failed", detail))
        self.sessions.finish(session.session_id, state, error_detail=detail)

    async def force_stop(self) -> dict[str, int]:
        """Cancel running sessions and terminate their children.

        With ``force_stop_system_wide`` set, any other process named like the
        tool binary is terminated too.
        """
        cancelled = 0
        for session in self.sessions.running():
            if session.task is not None and not session.task.done():
                session.task.cancel()
                cancelled += 1
        grace = self.config.tool.kill_grace_sec
        registered = await self.runner.registry.terminate_all(grace)
        system = 0
        if self.config.tool.force_stop_system_wide:
            system = await asyncio.to_thread(terminate_by_name, self.config.tool.binary, grace_sec=grace)
        logger.warning("Force stop", sessions=cancelled, registered=registered, system=system)
        return {"sessions": cancelled, "processes": registered, "system": system}


def _size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0
