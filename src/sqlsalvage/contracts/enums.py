# src/sqlsalvage/contracts/enums.py
"""Status codes, phases, and kinds used across subsystem boundaries."""

from enum import StrEnum


class EventType(StrEnum):
    """Frame type carried by every progress event."""

    CONNECTED = "connected"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressPhase(StrEnum):
    """Coarse phase of a recovery session, as shown to observers."""

    CONNECTED = "connected"
    UPLOAD = "upload"
    EXTRACTION = "extraction"
    RECOVERY = "recovery"
    DATABASE = "database"
    STATS = "stats"
    COMPLETE = "complete"
    ERROR = "error"


class WatchdogState(StrEnum):
    """Lifecycle of one streamed child process.

    STARTING -> STREAMING on the first byte; every other state is terminal.
    """

    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED_NO_OUTPUT = "killed_no_output"
    KILLED_STALLED = "killed_stalled"
    KILLED_TIMEOUT = "killed_timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (WatchdogState.STARTING, WatchdogState.STREAMING)

    @property
    def is_killed(self) -> bool:
        return self in (
            WatchdogState.KILLED_NO_OUTPUT,
            WatchdogState.KILLED_STALLED,
            WatchdogState.KILLED_TIMEOUT,
        )


class StrategyName(StrEnum):
    """Recovery strategies, in fallback order."""

    RECOVER = "recover"
    DUMP = "dump"
    TABLE_BY_TABLE = "table_by_table"
    SCHEMA_ONLY = "schema_only"
    TABLE_LIST = "table_list"


class RecoveryMode(StrEnum):
    """Which entry point of the strategy chain a session uses.

    STANDARD runs the full chain. TABLE_BY_TABLE starts directly at the
    per-table strategy and is given the longer outer ceiling.
    """

    STANDARD = "standard"
    TABLE_BY_TABLE = "table_by_table"


class SessionState(StrEnum):
    """Status of a recovery session in the session store."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_finished(self) -> bool:
        return self not in (SessionState.PENDING, SessionState.RUNNING)


class ActivityState(StrEnum):
    """Answer of the status probe, derived from artifact modification times."""

    ACTIVE = "active"
    STALLED = "stalled"
    IDLE = "idle"
