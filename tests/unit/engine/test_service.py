# tests/unit/engine/test_service.py
"""End-to-end session tests for RecoveryService against the fake sqlite3 shell."""

from __future__ import annotations

import asyncio
import os
import shutil
import sqlite3
import time
import zipfile
from pathlib import Path

import pytest

from sqlsalvage.config import SalvageConfig
from sqlsalvage.contracts import (
    EventType,
    MaterializationError,
    NotFoundError,
    ProgressEvent,
    RecoveryExhaustedError,
    RecoveryMode,
    RecoveryOptions,
    SessionState,
    SessionTimeoutError,
    SpawnError,
    StrategyName,
)
from sqlsalvage.core.stats import collect_stats
from sqlsalvage.engine.service import RecoveryService, Submission
from tests.fixtures.fake_sqlite import LIMITED_HELP, FakeScenario, read_invocations, write_fake_sqlite
from tests.fixtures.salvage_config import make_config


class Rig:
    """A service wired to a fake tool, plus helpers to stage uploads and watch progress."""

    def __init__(self, tmp_path: Path, scenario: FakeScenario | None = None, **sections: dict) -> None:
        scenario = scenario or FakeScenario()
        self.log_path = tmp_path / "calls.jsonl"
        scenario.log_path = str(self.log_path)
        self.tool = write_fake_sqlite(tmp_path, scenario)
        self.artifact_dir = tmp_path / "artifacts"
        self.config: SalvageConfig = make_config(self.artifact_dir, str(self.tool), **sections)
        self.service = RecoveryService.from_config(self.config)
        self.source = tmp_path / "source.db"
        self.source.write_bytes(b"SQLite format 3\x00" + b"\x00" * 4080)

    def stage(self, source: Path | None = None, name: str = "phone.db") -> Submission:
        source = source or self.source
        timestamp = self.service.artifacts.timestamp()
        staged = self.service.artifacts.upload_path(name, timestamp)
        shutil.copyfile(source, staged)
        return Submission(path=staged, original_name=name, timestamp=timestamp)

    def strategy_calls(self) -> list[list[str]]:
        """Invocations made against an uploaded or extracted input."""
        root = str(self.artifact_dir)
        return [args for args in read_invocations(self.log_path) if args and args[0].startswith(root) and len(args) > 1]


async def run_and_collect(
    service: RecoveryService,
    mode: RecoveryMode,
    submission: Submission,
    options: RecoveryOptions | None = None,
) -> tuple[asyncio.Task, list[ProgressEvent]]:
    session = service.sessions.create(mode, options)
    events: list[ProgressEvent] = []
    async with service.channel.subscribe(session.session_id) as subscription:
        task = service.submit(session, submission)
        async for event in subscription:
            events.append(event)
    await asyncio.wait({task})
    return task, events


class TestStandardMode:
    @pytest.mark.asyncio
    async def test_healthy_input_recovers_at_first_strategy(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path)
        submission = rig.stage()

        task, events = await run_and_collect(rig.service, RecoveryMode.STANDARD, submission)

        outcome = task.result()
        assert outcome.strategy.strategy == StrategyName.RECOVER
        assert outcome.sql_file.startswith("recovery_") and outcome.sql_file.endswith("_phone.sql")
        assert outcome.db_file.startswith("recovered_") and outcome.db_file.endswith("_phone.db")
        assert outcome.stats.table_count == 2
        assert outcome.stats.total_row_count == 4
        assert (rig.artifact_dir / outcome.db_file).exists()
        assert not submission.path.exists()

        percents = [e.progress for e in events]
        assert percents == sorted(percents)
        assert percents[0] == 10
        assert events[-1].type == EventType.COMPLETE
        assert rig.service.sessions.get(outcome.session_id).state == SessionState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_one_damaged_table_of_many(self, tmp_path: Path) -> None:
        """.recover fails, .dump hangs, and only one table is unreadable."""
        tables = [f"table_{i:02d}" for i in range(12)]
        rig = Rig(tmp_path, FakeScenario(tables=tables, bad_tables=["table_07"], recover="fail", dump="hang"))

        task, events = await run_and_collect(rig.service, RecoveryMode.STANDARD, rig.stage())

        outcome = task.result()
        assert outcome.strategy.strategy == StrategyName.TABLE_BY_TABLE
        assert [a.strategy for a in outcome.attempts] == [
            StrategyName.RECOVER,
            StrategyName.DUMP,
            StrategyName.TABLE_BY_TABLE,
        ]
        data = outcome.to_dict()
        assert data["tablesRecovered"] == 11
        assert data["tablesFailed"] == 1
        assert data["totalTables"] == 12
        assert data["failedTables"] == ["table_07"]
        assert outcome.stats.table_count == 11
        script = (rig.artifact_dir / outcome.sql_file).read_text()
        assert "-- Table: table_07 (FAILED - " in script
        assert events[-1].type == EventType.COMPLETE

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_one_damaged_table_among_hundreds(self, tmp_path: Path) -> None:
        tables = [f"t{i:03d}" for i in range(163)]
        rig = Rig(tmp_path, FakeScenario(tables=tables, bad_tables=["t100"], recover="fail", dump="fail"))

        task, _ = await run_and_collect(rig.service, RecoveryMode.STANDARD, rig.stage())

        data = task.result().to_dict()
        assert data["tablesRecovered"] == 162
        assert data["totalTables"] == 163

    @pytest.mark.asyncio
    async def test_limited_build_skips_recover(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path, FakeScenario(help_text=LIMITED_HELP))

        task, _ = await run_and_collect(rig.service, RecoveryMode.STANDARD, rig.stage())

        assert task.result().strategy.strategy == StrategyName.DUMP
        assert not any(args[1].startswith(".recover") for args in rig.strategy_calls())

    @pytest.mark.asyncio
    async def test_options_reach_recover(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path)
        options = RecoveryOptions(no_rowids=True)

        task, _ = await run_and_collect(rig.service, RecoveryMode.STANDARD, rig.stage(), options)

        assert task.result().strategy.strategy == StrategyName.RECOVER
        assert any(args[1] == ".recover --no-rowids" for args in rig.strategy_calls())

    @pytest.mark.asyncio
    async def test_everything_fails(self, tmp_path: Path) -> None:
        rig = Rig(
            tmp_path,
            FakeScenario(tables=[], recover="fail", dump="fail", schema="fail", tables_cmd="fail", materialize="fail"),
        )
        submission = rig.stage()

        task, events = await run_and_collect(rig.service, RecoveryMode.STANDARD, submission)

        # The table-list strategy always succeeds; its script then fails to import.
        error = task.exception()
        assert isinstance(error, MaterializationError)
        assert error.sql_file is not None and error.sql_file.startswith("recovery_")
        assert (rig.artifact_dir / error.sql_file).exists()
        assert not list(rig.artifact_dir.glob("recovered_*"))
        assert events[-1].type == EventType.ERROR
        assert not submission.path.exists()


class TestManualMode:
    @pytest.mark.asyncio
    async def test_table_by_table_only(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path)

        task, events = await run_and_collect(rig.service, RecoveryMode.TABLE_BY_TABLE, rig.stage())

        outcome = task.result()
        assert outcome.strategy.strategy == StrategyName.TABLE_BY_TABLE
        assert outcome.sql_file.startswith("manual_recovery_")
        assert outcome.db_file.startswith("manual_recovered_")
        commands = [args[1] for args in rig.strategy_calls()]
        assert not any(c.startswith(".recover") or c == ".dump" for c in commands)
        assert events[0].progress == 10
        assert events[1].progress == 15

    @pytest.mark.asyncio
    async def test_failure_is_exhaustion(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path, FakeScenario(tables=["a"], bad_tables=["a"]))

        task, events = await run_and_collect(rig.service, RecoveryMode.TABLE_BY_TABLE, rig.stage())

        assert isinstance(task.exception(), RecoveryExhaustedError)
        assert events[-1].type == EventType.ERROR


class TestArchives:
    @pytest.mark.asyncio
    async def test_zip_upload_is_extracted(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path)
        archive = tmp_path / "backup.zip"
        with zipfile.ZipFile(archive, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.write(rig.source, "data/contacts.sqlite")
            zf.writestr("readme.txt", "hello")
        submission = rig.stage(archive, "backup.zip")

        task, events = await run_and_collect(rig.service, RecoveryMode.STANDARD, submission)

        outcome = task.result()
        assert outcome.sql_file.endswith("_contacts.sql")
        assert [e.progress for e in events[:3]] == [10, 15, 20]
        assert not submission.path.exists()
        assert not list(rig.artifact_dir.glob("extracted_*"))

    @pytest.mark.asyncio
    async def test_zip_without_candidate_fails_before_any_strategy(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path)
        archive = tmp_path / "empty.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("nothing.txt", "")
        submission = rig.stage(archive, "empty.zip")

        task, events = await run_and_collect(rig.service, RecoveryMode.STANDARD, submission)

        assert isinstance(task.exception(), NotFoundError)
        assert rig.strategy_calls() == []
        assert events[-1].type == EventType.ERROR
        assert not submission.path.exists()

    @pytest.mark.asyncio
    async def test_second_session_leaves_running_input_alone(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path, FakeScenario(recover="hang"))
        archive = tmp_path / "backup.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.write(rig.source, "contacts.db")
        first = rig.service.sessions.create(RecoveryMode.STANDARD)
        first_task = rig.service.submit(first, rig.stage(archive, "backup.zip"))
        while not rig.service.runner.registry.live():
            await asyncio.sleep(0.02)
        (extracted,) = rig.artifact_dir.glob("extracted_*")
        aged = time.time() - rig.config.storage.retention_sec - 100
        os.utime(extracted, (aged, aged))

        second = rig.service.sessions.create(RecoveryMode.STANDARD)
        second_task = rig.service.submit(second, rig.stage(name="other.db"))
        while len(rig.service.runner.registry.live()) < 2:
            await asyncio.sleep(0.02)

        assert extracted.exists()
        for task in (first_task, second_task):
            task.cancel()
        await asyncio.wait({first_task, second_task})
        assert not extracted.exists()


class TestAbort:
    @pytest.mark.asyncio
    async def test_outer_ceiling(self, tmp_path: Path) -> None:
        rig = Rig(
            tmp_path,
            FakeScenario(recover="fail", dump="trickle"),
            sessions={"standard_ceiling_sec": 0.5},
        )
        session = rig.service.sessions.create(RecoveryMode.STANDARD)
        submission = rig.stage()

        with pytest.raises(SessionTimeoutError):
            await rig.service.run(session, submission)

        assert session.state == SessionState.TIMED_OUT
        assert session.last_event is not None and session.last_event.type == EventType.ERROR
        assert len(rig.service.runner.registry) == 0
        assert not submission.path.exists()
        # The half-written .dump script goes too.
        assert list(rig.artifact_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancel_by_session_id(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path, FakeScenario(recover="fail", dump="trickle"))
        session = rig.service.sessions.create(RecoveryMode.STANDARD)
        submission = rig.stage()
        task = rig.service.submit(session, submission)
        while not list(rig.artifact_dir.glob("recovery_*.sql")):
            await asyncio.sleep(0.02)

        assert rig.service.sessions.cancel(session.session_id)
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.state == SessionState.CANCELLED
        assert session.last_event is not None and session.last_event.type == EventType.ERROR
        assert len(rig.service.runner.registry) == 0
        assert not submission.path.exists()
        assert list(rig.artifact_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_force_stop(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path, FakeScenario(recover="hang"))
        session = rig.service.sessions.create(RecoveryMode.STANDARD)
        task = rig.service.submit(session, rig.stage())
        while not rig.service.runner.registry.live():
            await asyncio.sleep(0.02)

        stopped = await rig.service.force_stop()

        assert stopped["sessions"] == 1
        assert stopped["system"] == 0
        await asyncio.wait({task})
        assert task.cancelled()
        assert session.state == SessionState.CANCELLED

    @pytest.mark.asyncio
    async def test_missing_tool(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path)
        config = make_config(rig.artifact_dir, str(tmp_path / "no-sqlite3"))
        service = RecoveryService.from_config(config)
        session = service.sessions.create(RecoveryMode.STANDARD)

        with pytest.raises(SpawnError):
            await service.run(session, rig.stage())

        assert session.state == SessionState.FAILED


class TestArtifacts:
    @pytest.mark.asyncio
    async def test_materialized_database_is_readable(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path)
        task, _ = await run_and_collect(rig.service, RecoveryMode.STANDARD, rig.stage())
        connection = sqlite3.connect(rig.artifact_dir / task.result().db_file)
        try:
            names = [row[0] for row in connection.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")]
        finally:
            connection.close()
        assert names == ["customers", "orders"]

    @pytest.mark.asyncio
    async def test_rematerialized_script_has_same_stats(self, tmp_path: Path) -> None:
        rig = Rig(tmp_path)
        task, _ = await run_and_collect(rig.service, RecoveryMode.STANDARD, rig.stage())
        outcome = task.result()
        sql_path = rig.artifact_dir / outcome.sql_file
        db_path = rig.artifact_dir / outcome.db_file

        db_path.unlink()
        await rig.service.materializer.materialize(sql_path, db_path)
        again = collect_stats(db_path, sql_path)

        assert (again.table_count, again.total_row_count) == (outcome.stats.table_count, outcome.stats.total_row_count)
        assert again.total_row_count == 4
