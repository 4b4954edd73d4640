# src/sqlsalvage/core/artifacts.py
"""The artifact directory: uploads, recovered scripts and databases.

Artifact identifiers handed to clients are bare file names. Every lookup
goes through :meth:`ArtifactStore.resolve`, which refuses anything that could
point outside the directory before the filesystem is consulted.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlsalvage.contracts import ActivityState, ArtifactAccessError, MaterializationError, NotFoundError, RecoveryMode
from sqlsalvage.core.archive import sanitize_name
from sqlsalvage.core.logging import get_logger

logger = get_logger(__name__)

MIB = 1024 * 1024

UPLOAD_PREFIX = "corrupt_"
EXTRACTED_PREFIX = "extracted_"
ARTIFACT_PREFIXES = ("recovery_", "recovered_", "manual_recovery_", "manual_recovered_", EXTRACTED_PREFIX)
SCRIPT_PREFIXES = ("recovery_", "manual_recovery_")

_CONTENT_TYPES = {
    ".sql": "text/sql",
    ".db": "application/x-sqlite3",
    ".sqlite": "application/x-sqlite3",
    ".sqlite3": "application/x-sqlite3",
}


def content_type(name: str) -> str:
    return _CONTENT_TYPES.get(Path(name).suffix.lower(), "application/octet-stream")


@dataclass(frozen=True, slots=True)
class ArtifactPaths:
    """Output locations for one session."""

    sql_path: Path
    db_path: Path


@dataclass(frozen=True, slots=True)
class ActivityReport:
    """What the status probe tells the client about the newest script."""

    state: ActivityState
    file_name: str | None = None
    size_bytes: int = 0
    last_modified: datetime | None = None
    idle_seconds: int = 0

    @property
    def is_active(self) -> bool:
        return self.state == ActivityState.ACTIVE

    @property
    def is_stuck(self) -> bool:
        return self.state == ActivityState.STALLED

    def to_dict(self) -> dict[str, Any]:
        if self.file_name is None:
            return {"isActive": False, "isStuck": False, "message": "No recovery files found"}
        return {
            "isActive": self.is_active,
            "isStuck": self.is_stuck,
            "fileName": self.file_name,
            "fileSize": f"{round(self.size_bytes / MIB)} MB",
            "lastModified": self.last_modified.isoformat() if self.last_modified else None,
            "idleSeconds": self.idle_seconds,
        }


class ArtifactStore:
    """Owns the artifact directory.

    Args:
        root: Directory for uploads and artifacts; created if missing.
        wall_clock: Epoch-seconds source for timestamps and ages.
    """

    def __init__(self, root: Path, *, wall_clock: Callable[[], float] = time.time) -> None:
        self.root = root
        self._wall_clock = wall_clock
        self.root.mkdir(parents=True, exist_ok=True)
        self._resolved_root = self.root.resolve()
        self._pending_deletes: set[asyncio.Task[None]] = set()
        # Names held by running sessions; cleanup_stale never touches these.
        self._live: dict[str, int] = {}

    def timestamp(self) -> int:
        """Millisecond timestamp used in artifact names."""
        return int(self._wall_clock() * 1000)

    def upload_path(self, original_name: str, timestamp: int) -> Path:
        return self.root / f"{UPLOAD_PREFIX}{timestamp}_{sanitize_name(original_name) or 'upload'}"

    def extracted_prefix(self, timestamp: int) -> str:
        return f"{EXTRACTED_PREFIX}{timestamp}_"

    def paths_for(self, base_name: str, timestamp: int, mode: RecoveryMode) -> ArtifactPaths:
        base = sanitize_name(base_name) or "database"
        prefix = "manual_" if mode == RecoveryMode.TABLE_BY_TABLE else ""
        return ArtifactPaths(
            sql_path=self.root / f"{prefix}recovery_{timestamp}_{base}.sql",
            db_path=self.root / f"{prefix}recovered_{timestamp}_{base}.db",
        )

    def resolve(self, name: str) -> Path:
        """Map an artifact identifier to its path.

        Raises:
            ArtifactAccessError: The identifier is empty, absolute, contains
                a separator or ``..``, or resolves outside the directory.
            NotFoundError: No such artifact.
        """
        if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
            raise ArtifactAccessError(f"Access denied: {name!r}")
        if Path(name).is_absolute() or ".." in Path(name).parts:
            raise ArtifactAccessError(f"Access denied: {name!r}")
        candidate = (self.root / name).resolve()
        if candidate.parent != self._resolved_root:
            raise ArtifactAccessError(f"Access denied: {name!r}")
        if not candidate.is_file():
            raise NotFoundError(f"File not found: {name}")
        return candidate

    def claim(self, path: Path) -> None:
        """Mark ``path`` as in use by a running session."""
        self._live[path.name] = self._live.get(path.name, 0) + 1

    def unclaim(self, path: Path) -> None:
        count = self._live.get(path.name, 0)
        if count <= 1:
            self._live.pop(path.name, None)
        else:
            self._live[path.name] = count - 1

    def is_live(self, path: Path) -> bool:
        return path.name in self._live

    @contextlib.contextmanager
    def session_outputs(self, paths: ArtifactPaths) -> Iterator[ArtifactPaths]:
        """Hold a session's script and database until the block exits.

        On any exception both files are removed, except that a
        MaterializationError leaves the script behind for inspection.
        """
        self.claim(paths.sql_path)
        self.claim(paths.db_path)
        try:
            yield paths
        except BaseException as e:
            keep_script = isinstance(e, MaterializationError)
            doomed = [paths.db_path] if keep_script else [paths.sql_path, paths.db_path]
            for path in doomed:
                try:
                    path.unlink(missing_ok=True)
                except OSError as unlink_error:
                    logger.warning("Could not remove session artifact", file=path.name, error=str(unlink_error))
            raise
        finally:
            self.unclaim(paths.sql_path)
            self.unclaim(paths.db_path)

    def cleanup_stale(self, max_age_sec: float) -> int:
        """Delete artifact-prefixed files not modified for ``max_age_sec``.

        Files claimed by a running session are skipped however old they are.
        Failures are logged and skipped; returns the number deleted.
        """
        cutoff = self._wall_clock() - max_age_sec
        deleted = 0
        try:
            entries = list(self.root.iterdir())
        except OSError as e:
            logger.error("Could not list artifact directory", root=str(self.root), error=str(e))
            return 0
        for path in entries:
            if not path.name.startswith(ARTIFACT_PREFIXES) or self.is_live(path):
                continue
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    deleted += 1
                    logger.debug("Deleted stale artifact", file=path.name)
            except OSError as e:
                logger.warning("Could not process artifact during cleanup", file=path.name, error=str(e))
        logger.info("Artifact cleanup complete", deleted=deleted)
        return deleted

    def latest_activity(self, stuck_after_sec: float) -> ActivityReport:
        """Report on the most recently modified recovery script."""
        newest: tuple[float, int, Path] | None = None
        for path in self.root.iterdir():
            if not (path.name.startswith(SCRIPT_PREFIXES) and path.suffix == ".sql"):
                continue
            try:
                st = path.stat()
            except OSError:
                continue
            if newest is None or st.st_mtime > newest[0]:
                newest = (st.st_mtime, st.st_size, path)
        if newest is None:
            return ActivityReport(state=ActivityState.IDLE)

        mtime, size, path = newest
        idle = round(self._wall_clock() - mtime)
        return ActivityReport(
            state=ActivityState.ACTIVE if idle <= stuck_after_sec else ActivityState.STALLED,
            file_name=path.name,
            size_bytes=size,
            last_modified=datetime.fromtimestamp(mtime, tz=UTC),
            idle_seconds=idle,
        )

    def schedule_delete(self, path: Path, delay_sec: float) -> asyncio.Task[None]:
        """Remove ``path`` after ``delay_sec`` on the running loop."""
        task = asyncio.create_task(self._delete_later(path, delay_sec))
        self._pending_deletes.add(task)
        task.add_done_callback(self._pending_deletes.discard)
        return task

    async def _delete_later(self, path: Path, delay_sec: float) -> None:
        await asyncio.sleep(delay_sec)
        try:
            path.unlink(missing_ok=True)
            logger.debug("Deleted downloaded artifact", file=path.name)
        except OSError as e:
            logger.error("File cleanup error", file=path.name, error=str(e))

    async def drain_pending_deletes(self) -> None:
        tasks = list(self._pending_deletes)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class OwnedInput:
    """The session's current input file, deleted exactly once.

    An extracted archive candidate replaces the upload as the input; the
    upload is deleted at the moment of replacement, the substitute at exit.
    With a ``store``, the current input stays claimed until it is deleted.
    """

    def __init__(self, path: Path, store: ArtifactStore | None = None) -> None:
        self.path = path
        self._store = store
        self._released: set[Path] = set()
        if store is not None:
            store.claim(path)

    def _delete(self, path: Path) -> None:
        if path in self._released:
            return
        self._released.add(path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not delete input file", file=path.name, error=str(e))
        finally:
            if self._store is not None:
                self._store.unclaim(path)

    def replace(self, new_path: Path) -> None:
        old = self.path
        if old == new_path:
            return
        if self._store is not None:
            self._store.claim(new_path)
        self.path = new_path
        self._delete(old)

    def release(self) -> None:
        self._delete(self.path)


@contextlib.contextmanager
def owned_input(path: Path, store: ArtifactStore | None = None) -> Iterator[OwnedInput]:
    """Yield an :class:`OwnedInput` whose file is removed on every exit path."""
    owned = OwnedInput(path, store)
    try:
        yield owned
    finally:
        owned.release()
