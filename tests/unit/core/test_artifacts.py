# tests/unit/core/test_artifacts.py
"""Tests for the artifact directory: naming, access control, cleanup, status."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from sqlsalvage.contracts import (
    ActivityState,
    ArtifactAccessError,
    MaterializationError,
    NotFoundError,
    RecoveryMode,
)
from sqlsalvage.core.artifacts import ArtifactStore, OwnedInput, content_type, owned_input

NOW = 1_700_000_000.0


def touch(path: Path, age_sec: float, size: int = 10) -> Path:
    path.write_bytes(b"x" * size)
    mtime = NOW - age_sec
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts", wall_clock=lambda: NOW)


class TestNaming:
    def test_creates_root(self, tmp_path: Path) -> None:
        root = tmp_path / "nested" / "artifacts"
        ArtifactStore(root)
        assert root.is_dir()

    def test_timestamp_is_milliseconds(self, store: ArtifactStore) -> None:
        assert store.timestamp() == int(NOW * 1000)

    def test_upload_path_is_sanitized(self, store: ArtifactStore) -> None:
        path = store.upload_path("../my phone.db", 123)
        assert path == store.root / "corrupt_123_my_phone.db"

    def test_standard_and_manual_paths(self, store: ArtifactStore) -> None:
        standard = store.paths_for("app", 5, RecoveryMode.STANDARD)
        manual = store.paths_for("app", 5, RecoveryMode.TABLE_BY_TABLE)
        assert standard.sql_path.name == "recovery_5_app.sql"
        assert standard.db_path.name == "recovered_5_app.db"
        assert manual.sql_path.name == "manual_recovery_5_app.sql"
        assert manual.db_path.name == "manual_recovered_5_app.db"

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("recovery_1_x.sql", "text/sql"),
            ("recovered_1_x.db", "application/x-sqlite3"),
            ("a.SQLITE3", "application/x-sqlite3"),
            ("blob.bin", "application/octet-stream"),
        ],
    )
    def test_content_type(self, name: str, expected: str) -> None:
        assert content_type(name) == expected


class TestResolve:
    def test_existing_artifact(self, store: ArtifactStore) -> None:
        path = touch(store.root / "recovery_1_x.sql", 0)
        assert store.resolve("recovery_1_x.sql") == path.resolve()

    def test_missing_artifact(self, store: ArtifactStore) -> None:
        with pytest.raises(NotFoundError):
            store.resolve("recovery_9_nothing.sql")

    @pytest.mark.parametrize(
        "name",
        ["", ".", "..", "../secret.db", "..\\secret.db", "a/b.sql", "/etc/passwd", "x\x00.sql"],
    )
    def test_traversal_rejected(self, store: ArtifactStore, name: str) -> None:
        with pytest.raises(ArtifactAccessError):
            store.resolve(name)

    def test_rejected_before_filesystem(self, store: ArtifactStore, tmp_path: Path) -> None:
        """A real file outside the root is still refused, not 'not found'."""
        (tmp_path / "outside.db").write_bytes(b"x")
        with pytest.raises(ArtifactAccessError):
            store.resolve("../outside.db")

    def test_symlink_escaping_root_rejected(self, store: ArtifactStore, tmp_path: Path) -> None:
        target = tmp_path / "outside.db"
        target.write_bytes(b"x")
        (store.root / "recovered_1_link.db").symlink_to(target)
        with pytest.raises(ArtifactAccessError):
            store.resolve("recovered_1_link.db")


class TestCleanup:
    def test_only_stale_prefixed_files_removed(self, store: ArtifactStore) -> None:
        stale = [
            touch(store.root / "recovery_1_a.sql", 600),
            touch(store.root / "manual_recovered_1_a.db", 600),
            touch(store.root / "extracted_1_a.db", 600),
        ]
        fresh = touch(store.root / "recovery_2_b.sql", 10)
        unrelated = touch(store.root / "notes.txt", 6000)

        deleted = store.cleanup_stale(300)

        assert deleted == 3
        assert not any(p.exists() for p in stale)
        assert fresh.exists()
        assert unrelated.exists()

    def test_claimed_files_survive_however_old(self, store: ArtifactStore) -> None:
        extracted = touch(store.root / "extracted_1_big.db", 400)
        with owned_input(store.upload_path("big.zip", 1), store) as owned:
            owned.replace(extracted)
            assert store.cleanup_stale(300) == 0
            assert extracted.exists()
        assert not store.is_live(extracted)

    def test_claims_are_counted(self, store: ArtifactStore) -> None:
        path = touch(store.root / "recovery_1_a.sql", 600)
        store.claim(path)
        store.claim(path)
        store.unclaim(path)
        assert store.cleanup_stale(300) == 0
        store.unclaim(path)
        assert store.cleanup_stale(300) == 1


class TestSessionOutputs:
    def test_success_keeps_both(self, store: ArtifactStore) -> None:
        paths = store.paths_for("a", 1, RecoveryMode.STANDARD)
        with store.session_outputs(paths):
            paths.sql_path.write_text("-- sql")
            paths.db_path.write_bytes(b"db")
            assert store.is_live(paths.sql_path)
        assert paths.sql_path.exists()
        assert paths.db_path.exists()
        assert not store.is_live(paths.sql_path)

    @pytest.mark.parametrize("error", [RuntimeError("boom"), asyncio.CancelledError(), TimeoutError()])
    def test_abort_removes_both(self, store: ArtifactStore, error: BaseException) -> None:
        paths = store.paths_for("a", 1, RecoveryMode.TABLE_BY_TABLE)
        with pytest.raises(type(error)), store.session_outputs(paths):
            paths.sql_path.write_text("-- partial")
            paths.db_path.write_bytes(b"half")
            raise error
        assert list(store.root.iterdir()) == []

    def test_materialization_failure_keeps_script(self, store: ArtifactStore) -> None:
        paths = store.paths_for("a", 1, RecoveryMode.STANDARD)
        with pytest.raises(MaterializationError), store.session_outputs(paths):
            paths.sql_path.write_text("-- bad sql")
            paths.db_path.write_bytes(b"half")
            raise MaterializationError("import failed", sql_file=paths.sql_path.name)
        assert paths.sql_path.exists()
        assert not paths.db_path.exists()


class TestLatestActivity:
    def test_no_scripts(self, store: ArtifactStore) -> None:
        report = store.latest_activity(120)
        assert report.state == ActivityState.IDLE
        assert report.to_dict() == {"isActive": False, "isStuck": False, "message": "No recovery files found"}

    def test_active_script(self, store: ArtifactStore) -> None:
        touch(store.root / "recovery_1_old.sql", 500)
        touch(store.root / "manual_recovery_2_new.sql", 30, size=3 * 1024 * 1024)
        report = store.latest_activity(120)
        data = report.to_dict()
        assert report.is_active
        assert data["fileName"] == "manual_recovery_2_new.sql"
        assert data["fileSize"] == "3 MB"
        assert data["idleSeconds"] == 30
        assert data["isStuck"] is False

    def test_stalled_script(self, store: ArtifactStore) -> None:
        touch(store.root / "recovery_1_a.sql", 121)
        report = store.latest_activity(120)
        assert report.is_stuck
        assert not report.is_active

    def test_databases_are_not_scripts(self, store: ArtifactStore) -> None:
        touch(store.root / "recovered_1_a.db", 1)
        assert store.latest_activity(120).state == ActivityState.IDLE


class TestScheduledDelete:
    @pytest.mark.asyncio
    async def test_file_deleted_after_delay(self, store: ArtifactStore) -> None:
        path = touch(store.root / "recovered_1_a.db", 0)
        await store.schedule_delete(path, 0.05)
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_missing_file_is_not_an_error(self, store: ArtifactStore) -> None:
        await store.schedule_delete(store.root / "already_gone.db", 0)

    @pytest.mark.asyncio
    async def test_drain_cancels_pending(self, store: ArtifactStore) -> None:
        path = touch(store.root / "recovered_1_a.db", 0)
        task = store.schedule_delete(path, 60)
        await store.drain_pending_deletes()
        assert task.cancelled()
        assert path.exists()


class TestOwnedInput:
    def test_deleted_on_normal_exit(self, tmp_path: Path) -> None:
        path = touch(tmp_path / "corrupt_1_a.db", 0)
        with owned_input(path):
            assert path.exists()
        assert not path.exists()

    def test_deleted_on_error(self, tmp_path: Path) -> None:
        path = touch(tmp_path / "corrupt_1_a.db", 0)
        with pytest.raises(RuntimeError), owned_input(path):
            raise RuntimeError("boom")
        assert not path.exists()

    def test_replace_deletes_previous_immediately(self, tmp_path: Path) -> None:
        upload = touch(tmp_path / "corrupt_1_a.zip", 0)
        extracted = touch(tmp_path / "extracted_1_a.db", 0)
        with owned_input(upload) as owned:
            owned.replace(extracted)
            assert not upload.exists()
            assert extracted.exists()
            assert owned.path == extracted
        assert not extracted.exists()

    def test_each_path_deleted_at_most_once(self, tmp_path: Path) -> None:
        """A file recreated at a released path is left alone."""
        path = touch(tmp_path / "corrupt_1_a.db", 0)
        owned = OwnedInput(path)
        owned.release()
        path.write_bytes(b"new upload with the same name")
        owned.release()
        assert path.exists()
