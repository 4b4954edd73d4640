# src/sqlsalvage/contracts/options.py
"""Caller-supplied options for the primary recovery strategy."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlsalvage.contracts.errors import InvalidOptionsError

DEFAULT_LOST_AND_FOUND = "lost_and_found"

# The table name is spliced into a dot-command argument list.
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUE_VALUES


@dataclass(frozen=True, slots=True)
class RecoveryOptions:
    """Flags for ``.recover``. Ignored by every fallback strategy."""

    ignore_freelist: bool = False
    no_rowids: bool = False
    lost_and_found_table: str = DEFAULT_LOST_AND_FOUND

    def __post_init__(self) -> None:
        if not _IDENTIFIER.match(self.lost_and_found_table):
            raise InvalidOptionsError(f"Invalid lost-and-found table name: {self.lost_and_found_table!r}")

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> RecoveryOptions:
        """Build options from submitted form fields (``"true"``/``"false"`` strings)."""
        table = form.get("lostFoundTable")
        table = str(table).strip() if table else DEFAULT_LOST_AND_FOUND
        return cls(
            ignore_freelist=_as_bool(form.get("ignoreFreelist")),
            no_rowids=_as_bool(form.get("noRowids")),
            lost_and_found_table=table or DEFAULT_LOST_AND_FOUND,
        )

    def recover_command(self) -> str:
        """The ``.recover`` dot-command with this run's flags."""
        parts = [".recover"]
        if self.ignore_freelist:
            parts.append("--ignore-freelist")
        if self.no_rowids:
            parts.append("--no-rowids")
        if self.lost_and_found_table != DEFAULT_LOST_AND_FOUND:
            parts.append(f"--lost-and-found {self.lost_and_found_table}")
        return " ".join(parts)
