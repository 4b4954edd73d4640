# src/sqlsalvage/contracts/events.py
"""Progress events pushed to live observers of a recovery session.

Events are fire-and-forget: an observer only sees events published while it
is subscribed. Each event serializes to one server-sent-events frame.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from sqlsalvage.contracts.enums import EventType, ProgressPhase


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """A single phase/percentage/message update.

    Attributes:
        type: Frame type (connected, progress, complete, error).
        phase: Coarse recovery phase.
        progress: Overall percentage, 0..100.
        message: Short human-readable status line.
        detail: Optional longer explanation (sizes, table names, errors).
    """

    type: EventType
    phase: ProgressPhase
    progress: int
    message: str
    detail: str | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.progress <= 100:
            raise ValueError(f"progress must be within 0..100, got {self.progress}")

    @classmethod
    def connected(cls) -> ProgressEvent:
        """The synthetic event that opens every progress stream."""
        return cls(
            type=EventType.CONNECTED,
            phase=ProgressPhase.CONNECTED,
            progress=0,
            message="Progress stream connected",
        )

    @classmethod
    def update(
        cls,
        phase: ProgressPhase,
        progress: int,
        message: str,
        detail: str | None = None,
    ) -> ProgressEvent:
        return cls(
            type=EventType.PROGRESS,
            phase=phase,
            progress=max(0, min(100, progress)),
            message=message,
            detail=detail,
        )

    @classmethod
    def complete(cls, message: str, detail: str | None = None) -> ProgressEvent:
        return cls(
            type=EventType.COMPLETE,
            phase=ProgressPhase.COMPLETE,
            progress=100,
            message=message,
            detail=detail,
        )

    @classmethod
    def failed(cls, message: str, detail: str | None = None, progress: int = 100) -> ProgressEvent:
        return cls(
            type=EventType.ERROR,
            phase=ProgressPhase.ERROR,
            progress=max(0, min(100, progress)),
            message=message,
            detail=detail,
        )

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.COMPLETE, EventType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "phase": self.phase.value,
            "progress": self.progress,
            "message": self.message,
        }
        if self.detail is not None:
            data["detail"] = self.detail
        return data

    def to_frame(self) -> str:
        """Render as a server-sent-events data frame."""
        return f"data: {json.dumps(self.to_dict())}\n\n"
