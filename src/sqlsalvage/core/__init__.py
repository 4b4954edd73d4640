# src/sqlsalvage/core/__init__.py
"""Core infrastructure: processes, watchdog, progress, materializer, stats, storage."""

from sqlsalvage.core.archive import ExtractedCandidate, extract_candidate
from sqlsalvage.core.artifacts import ArtifactStore, owned_input
from sqlsalvage.core.capability import CapabilityCache, ToolCapabilities, probe_capabilities
from sqlsalvage.core.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from sqlsalvage.core.materializer import DatabaseMaterializer, MaterializeResult
from sqlsalvage.core.process import ProcessHandle, ProcessRegistry, ProcessRunner
from sqlsalvage.core.progress import ProgressChannel, SessionProgress, Subscription
from sqlsalvage.core.sessions import RecoverySession, SessionStore
from sqlsalvage.core.stats import StatsCollector, collect_stats
from sqlsalvage.core.watchdog import StreamingWatchdog, StreamTracker

__all__ = [
    "DEFAULT_CLOCK",
    "ArtifactStore",
    "CapabilityCache",
    "Clock",
    "DatabaseMaterializer",
    "ExtractedCandidate",
    "MaterializeResult",
    "MockClock",
    "ProcessHandle",
    "ProcessRegistry",
    "ProcessRunner",
    "ProgressChannel",
    "RecoverySession",
    "SessionProgress",
    "SessionStore",
    "StatsCollector",
    "StreamTracker",
    "StreamingWatchdog",
    "Subscription",
    "SystemClock",
    "ToolCapabilities",
    "collect_stats",
    "extract_candidate",
    "owned_input",
    "probe_capabilities",
]
