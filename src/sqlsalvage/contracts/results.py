# src/sqlsalvage/contracts/results.py
"""Operation outcomes.

These types answer: "What did a process, a strategy, or a session produce?"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlsalvage.contracts.enums import StrategyName, WatchdogState
from sqlsalvage.contracts.errors import StallError


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Captured outcome of a bounded, in-memory process invocation."""

    exit_code: int
    stdout: str
    stderr: str
    elapsed_sec: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


_KILLED = frozenset({WatchdogState.KILLED_NO_OUTPUT, WatchdogState.KILLED_STALLED, WatchdogState.KILLED_TIMEOUT})


@dataclass(frozen=True, slots=True)
class StreamOutcome:
    """Final report of a watchdog-supervised streaming process.

    Killed outcomes keep their byte count so callers can decide whether the
    partial output is salvageable.
    """

    state: WatchdogState
    exit_code: int | None
    bytes_written: int
    elapsed_sec: float
    stderr: str = ""

    @property
    def completed(self) -> bool:
        return self.state == WatchdogState.COMPLETED

    @property
    def has_partial_output(self) -> bool:
        return self.state in (WatchdogState.KILLED_STALLED, WatchdogState.KILLED_TIMEOUT) and self.bytes_written > 0

    @property
    def killed(self) -> bool:
        return self.state in _KILLED

    def raise_if_killed(self) -> None:
        """Raise StallError if the watchdog killed the process."""
        if self.killed:
            raise StallError(self.state, self.bytes_written, self.elapsed_sec)


@dataclass(frozen=True, slots=True)
class PartialFailure:
    """Some tables were recovered and some were not.

    Not raised: a partial result is an overall success that reports how many
    tables were lost.
    """

    tables_recovered: int
    tables_failed: int
    failed_tables: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class StrategyResult:
    """Outcome of one strategy in the chain; drives the chain's branching."""

    strategy: StrategyName
    success: bool
    error_detail: str | None = None
    tables_recovered: int | None = None
    tables_failed: int | None = None
    failed_tables: tuple[str, ...] = ()
    partial_bytes: int = 0

    @classmethod
    def ok(
        cls,
        strategy: StrategyName,
        *,
        tables_recovered: int | None = None,
        tables_failed: int | None = None,
        failed_tables: tuple[str, ...] = (),
    ) -> StrategyResult:
        return cls(
            strategy=strategy,
            success=True,
            tables_recovered=tables_recovered,
            tables_failed=tables_failed,
            failed_tables=failed_tables,
        )

    @classmethod
    def failure(cls, strategy: StrategyName, error_detail: str, *, partial_bytes: int = 0) -> StrategyResult:
        return cls(strategy=strategy, success=False, error_detail=error_detail, partial_bytes=partial_bytes)

    @property
    def partial_failure(self) -> PartialFailure | None:
        if not self.success or not self.tables_failed:
            return None
        return PartialFailure(
            tables_recovered=self.tables_recovered or 0,
            tables_failed=self.tables_failed,
            failed_tables=self.failed_tables,
        )


def format_file_size(size: int) -> str:
    """Human-readable size using binary units (``1.5 MB``, ``0 Bytes``)."""
    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB", "TB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


@dataclass(frozen=True, slots=True)
class RecoveryStats:
    """Summary of a materialized database."""

    table_count: int
    total_row_count: int
    size_bytes: int
    sql_size_bytes: int = 0
    uncounted_tables: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tablesRecovered": self.table_count,
            "recordsRecovered": self.total_row_count,
            "dataSize": format_file_size(self.size_bytes),
            "sqlSize": format_file_size(self.sql_size_bytes),
        }


@dataclass(frozen=True, slots=True)
class RecoveryOutcome:
    """Everything a successful session hands back to its caller."""

    session_id: str
    sql_file: str
    db_file: str
    strategy: StrategyResult
    stats: RecoveryStats
    attempts: tuple[StrategyResult, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": True,
            "sessionId": self.session_id,
            "sqlFile": self.sql_file,
            "dbFile": self.db_file,
            "strategy": self.strategy.strategy.value,
            "stats": self.stats.to_dict(),
        }
        partial = self.strategy.partial_failure
        if partial is not None:
            data["tablesFailed"] = partial.tables_failed
            data["failedTables"] = list(partial.failed_tables)
        if self.strategy.tables_recovered is not None:
            data["tablesRecovered"] = self.strategy.tables_recovered
            data["totalTables"] = self.strategy.tables_recovered + (self.strategy.tables_failed or 0)
        return data
