# tests/fixtures/__init__.py
"""Test helpers: a scriptable fake sqlite3 shell, sample databases and short-timer configs."""

from tests.fixtures.databases import make_database
from tests.fixtures.fake_sqlite import FakeScenario, read_invocations, write_fake_sqlite
from tests.fixtures.salvage_config import make_config

__all__ = [
    "FakeScenario",
    "make_config",
    "make_database",
    "read_invocations",
    "write_fake_sqlite",
]
