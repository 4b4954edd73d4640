"""Shared contracts for cross-boundary data types.

Enums, events, options, results and the error taxonomy used by core,
engine and the HTTP surface. This package has no outbound dependencies to
core or engine.
"""

from sqlsalvage.contracts.enums import (
    ActivityState,
    EventType,
    ProgressPhase,
    RecoveryMode,
    SessionState,
    StrategyName,
    WatchdogState,
)
from sqlsalvage.contracts.errors import (
    ArchiveError,
    ArtifactAccessError,
    InvalidOptionsError,
    MaterializationError,
    NotFoundError,
    ProcessTimeoutError,
    RecoveryExhaustedError,
    SalvageError,
    SessionTimeoutError,
    SpawnError,
    StallError,
)
from sqlsalvage.contracts.events import ProgressEvent
from sqlsalvage.contracts.options import DEFAULT_LOST_AND_FOUND, RecoveryOptions
from sqlsalvage.contracts.results import (
    PartialFailure,
    ProcessResult,
    RecoveryOutcome,
    RecoveryStats,
    StrategyResult,
    StreamOutcome,
    format_file_size,
)

__all__ = [
    "DEFAULT_LOST_AND_FOUND",
    "ActivityState",
    "ArchiveError",
    "ArtifactAccessError",
    "EventType",
    "InvalidOptionsError",
    "MaterializationError",
    "NotFoundError",
    "PartialFailure",
    "ProcessResult",
    "ProcessTimeoutError",
    "ProgressEvent",
    "ProgressPhase",
    "RecoveryExhaustedError",
    "RecoveryMode",
    "RecoveryOptions",
    "RecoveryOutcome",
    "RecoveryStats",
    "SalvageError",
    "SessionState",
    "SessionTimeoutError",
    "SpawnError",
    "StallError",
    "StrategyName",
    "StrategyResult",
    "StreamOutcome",
    "WatchdogState",
    "format_file_size",
]
