# src/sqlsalvage/contracts/errors.py
"""Exception taxonomy for recovery sessions.

Fatal errors (SpawnError, MaterializationError) end a session immediately.
Recoverable errors (ProcessTimeoutError, StallError) are caught inside the
strategy chain and turned into the next fallback attempt; they only reach a
client when every strategy has been exhausted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sqlsalvage.contracts.enums import WatchdogState
    from sqlsalvage.contracts.results import StrategyResult


class SalvageError(Exception):
    """Base class for every error raised by sqlsalvage."""


class SpawnError(SalvageError):
    """The recovery tool could not be started (missing or not executable)."""

    def __init__(self, program: str, reason: str) -> None:
        self.program = program
        self.reason = reason
        super().__init__(f"Failed to execute {program}: {reason}. Make sure {program} is installed and in PATH.")


class ProcessTimeoutError(SalvageError):
    """A bounded process invocation ran past its timeout and was killed."""

    def __init__(self, program: str, timeout_sec: float) -> None:
        self.program = program
        self.timeout_sec = timeout_sec
        super().__init__(f"{program} did not finish within {timeout_sec:g}s")


class StallError(SalvageError):
    """A streamed process was killed by the watchdog.

    Carries enough detail for the caller to judge whether the partial output
    is worth anything.
    """

    def __init__(self, state: WatchdogState, bytes_written: int, elapsed_sec: float) -> None:
        self.state = state
        self.bytes_written = bytes_written
        self.elapsed_sec = elapsed_sec
        super().__init__(f"Process {state.value} after {elapsed_sec:.1f}s with {bytes_written} bytes written")


class MaterializationError(SalvageError):
    """A recovered SQL script could not be replayed into a database.

    ``sql_file`` names the script artifact when it is still available for
    manual inspection.
    """

    def __init__(self, message: str, *, sql_file: str | None = None) -> None:
        self.sql_file = sql_file
        super().__init__(message)


class NotFoundError(SalvageError):
    """A requested artifact, session, or archive candidate does not exist."""


class ArtifactAccessError(SalvageError):
    """An artifact identifier resolves outside the artifact directory."""


class ArchiveError(SalvageError):
    """An uploaded archive could not be read or its candidate extracted."""


class InvalidOptionsError(SalvageError):
    """Recovery options or the uploaded file were rejected before recovery."""


class SessionTimeoutError(SalvageError):
    """A whole session ran past its outer ceiling and was aborted."""

    def __init__(self, session_id: str, ceiling_sec: float) -> None:
        self.session_id = session_id
        self.ceiling_sec = ceiling_sec
        super().__init__(f"Recovery session {session_id} exceeded {ceiling_sec:g}s and was aborted")


class RecoveryExhaustedError(SalvageError):
    """Every strategy in the chain reported failure."""

    def __init__(self, results: list[StrategyResult]) -> None:
        self.results = results
        last = results[-1].error_detail if results else None
        super().__init__(last or "All recovery strategies failed")
