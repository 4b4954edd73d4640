# src/sqlsalvage/core/stats.py
"""Summary statistics for a materialized database.

Opened with the in-process sqlite3 module rather than the external shell so
the check does not depend on the tool that produced the file. The work is
blocking, so it runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

from sqlsalvage.contracts import RecoveryStats
from sqlsalvage.core.logging import get_logger

logger = get_logger(__name__)

_TABLES_SQL = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _file_size(path: Path | None) -> int:
    if path is None:
        return 0
    try:
        return path.stat().st_size
    except OSError:
        return 0


def collect_stats(db_path: Path, sql_path: Path | None = None) -> RecoveryStats:
    """Count tables and rows in ``db_path``.

    A table whose count fails contributes zero rows and is listed in
    ``uncounted_tables``. A database that cannot be opened at all yields
    zero tables.
    """
    size_bytes = _file_size(db_path)
    sql_size_bytes = _file_size(sql_path)
    tables: list[str] = []
    total_rows = 0
    uncounted: list[str] = []

    try:
        connection = sqlite3.connect(f"{db_path.resolve().as_uri()}?mode=ro", uri=True)
    except sqlite3.Error as e:
        logger.warning("Could not open recovered database for stats", db_path=str(db_path), error=str(e))
        return RecoveryStats(0, 0, size_bytes, sql_size_bytes)

    try:
        try:
            tables = [row[0] for row in connection.execute(_TABLES_SQL)]
        except sqlite3.Error as e:
            logger.warning("Could not list tables of recovered database", db_path=str(db_path), error=str(e))
            tables = []
        for table in tables:
            try:
                (count,) = connection.execute(f"SELECT COUNT(*) FROM {_quote_identifier(table)}").fetchone()
            except sqlite3.Error as e:
                logger.warning("Could not count rows", table=table, error=str(e))
                uncounted.append(table)
                continue
            total_rows += int(count)
    finally:
        connection.close()

    return RecoveryStats(
        table_count=len(tables),
        total_row_count=total_rows,
        size_bytes=size_bytes,
        sql_size_bytes=sql_size_bytes,
        uncounted_tables=tuple(uncounted),
    )


class StatsCollector:
    """Async front for :func:`collect_stats`."""

    async def collect(self, db_path: Path, sql_path: Path | None = None) -> RecoveryStats:
        stats = await asyncio.to_thread(collect_stats, db_path, sql_path)
        logger.info(
            "Collected database stats",
            tables=stats.table_count,
            rows=stats.total_row_count,
            size_bytes=stats.size_bytes,
            uncounted=len(stats.uncounted_tables),
        )
        return stats
