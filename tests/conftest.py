# tests/conftest.py
"""Shared test fixtures.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/

Timing:
    Watchdog and session thresholds are shrunk to fractions of a second by
    ``fast_config``; the production defaults (20s, 120s, 180s) are covered
    with MockClock in the tracker tests instead of real waits.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest
from hypothesis import Phase, Verbosity, settings

from sqlsalvage.config import SalvageConfig
from sqlsalvage.core.logging import configure_logging
from tests.fixtures.databases import make_database
from tests.fixtures.fake_sqlite import FakeScenario, write_fake_sqlite
from tests.fixtures.salvage_config import make_config

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))

configure_logging(level="DEBUG")


@pytest.fixture
def artifact_dir(tmp_path: Path) -> Path:
    path = tmp_path / "artifacts"
    path.mkdir()
    return path


@pytest.fixture
def fake_tool(tmp_path: Path) -> Path:
    """Default fake sqlite3: every strategy works."""
    return write_fake_sqlite(tmp_path, FakeScenario())


@pytest.fixture
def fast_config(artifact_dir: Path, fake_tool: Path) -> SalvageConfig:
    return make_config(artifact_dir, str(fake_tool))


@pytest.fixture
def sqlite3_binary() -> str:
    """Path of a real sqlite3 shell; skips the test when none is installed."""
    binary = shutil.which("sqlite3")
    if binary is None:
        pytest.skip("sqlite3 shell not installed")
    return binary


@pytest.fixture
def sample_db(tmp_path: Path) -> Path:
    return make_database(tmp_path / "sample.db", {"customers": 5, "orders": 12, "notes": 0})
