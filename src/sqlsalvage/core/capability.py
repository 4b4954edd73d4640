# src/sqlsalvage/core/capability.py
"""One-time capability probe of the sqlite3 shell.

Restricted builds (for example the shell bundled with Android platform-tools,
or anything older than 3.29) lack ``.recover``. The probe runs once at
startup and its answer is reused by every session, so the strategy chain
never rediscovers a missing capability per request.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from sqlsalvage.contracts import ProcessTimeoutError, SpawnError
from sqlsalvage.core.logging import get_logger
from sqlsalvage.core.process import ProcessRunner

logger = get_logger(__name__)

# A full build's .help output runs to several kilobytes.
_MIN_FULL_HELP_CHARS = 1000


@dataclass(frozen=True, slots=True)
class ToolCapabilities:
    """What the installed sqlite3 shell can do."""

    available: bool
    version: str | None = None
    has_recover: bool = False
    limited: bool = False
    error: str | None = None

    @classmethod
    def unavailable(cls, error: str) -> ToolCapabilities:
        return cls(available=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "version": self.version,
            "hasRecover": self.has_recover,
            "limited": self.limited,
            "error": self.error,
        }


def parse_help(help_text: str, version_text: str = "") -> tuple[bool, bool]:
    """Return (has_recover, limited) from ``.help`` and ``--version`` output."""
    has_recover = ".recover" in help_text.lower()
    limited = not has_recover and (
        "platform-tools" in help_text or "platform-tools" in version_text or len(help_text) < _MIN_FULL_HELP_CHARS
    )
    return has_recover, limited


async def probe_capabilities(runner: ProcessRunner, *, timeout: float = 10.0) -> ToolCapabilities:
    """Ask the shell for its version and whether it knows ``.recover``."""
    try:
        version = await runner.run(["--version"], timeout=timeout)
    except SpawnError as e:
        logger.error("sqlite3 is not available", program=runner.program, error=str(e))
        return ToolCapabilities.unavailable(str(e))
    except ProcessTimeoutError as e:
        return ToolCapabilities.unavailable(str(e))

    if not version.ok or not version.stdout.strip():
        return ToolCapabilities.unavailable(f"{runner.program} --version failed: {version.stderr.strip() or 'no output'}")

    version_text = version.stdout.strip()
    version_number = version_text.split()[0]

    try:
        help_result = await runner.run([":memory:", ".help"], timeout=timeout)
        help_text = help_result.stdout + help_result.stderr
    except (SpawnError, ProcessTimeoutError) as e:
        logger.warning("Capability probe could not list dot-commands", error=str(e))
        help_text = ""

    has_recover, limited = parse_help(help_text, version_text)
    capabilities = ToolCapabilities(
        available=True,
        version=version_number,
        has_recover=has_recover,
        limited=limited,
    )
    if has_recover:
        logger.info("sqlite3 supports .recover", version=version_number)
    elif limited:
        logger.warning(
            "Limited sqlite3 build detected, .recover unavailable; recovery starts at .dump",
            version=version_number,
        )
    else:
        logger.warning(
            "sqlite3 is too old for .recover (3.29+ required); using fallback strategies",
            version=version_number,
        )
    return capabilities


class CapabilityCache:
    """Holds the probe result for the lifetime of the application."""

    def __init__(self, runner: ProcessRunner, *, timeout: float = 10.0) -> None:
        self._runner = runner
        self._timeout = timeout
        self._lock = asyncio.Lock()
        self._value: ToolCapabilities | None = None

    @property
    def value(self) -> ToolCapabilities | None:
        return self._value

    async def get(self) -> ToolCapabilities:
        if self._value is not None:
            return self._value
        async with self._lock:
            if self._value is None:
                self._value = await probe_capabilities(self._runner, timeout=self._timeout)
        return self._value

    def set(self, value: ToolCapabilities) -> None:
        self._value = value
