# tests/unit/test_cli.py
"""Tests for the sqlsalvage command line."""

from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from sqlsalvage import __version__
from sqlsalvage.cli import app
from tests.fixtures.fake_sqlite import FakeScenario, write_fake_sqlite

runner = CliRunner()


class TestCLIBasics:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"sqlsalvage {__version__}" in result.stdout

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("serve", "recover", "materialize", "probe", "presets", "show-config"):
            assert command in result.stdout

    def test_presets(self) -> None:
        result = runner.invoke(app, ["presets"])
        assert result.exit_code == 0
        for name in ("default", "exhaustive", "quick"):
            assert f"- {name}" in result.stdout


class TestShowConfig:
    def test_json_defaults(self) -> None:
        result = runner.invoke(app, ["show-config", "--format", "json"], env={"PORT": ""})
        assert result.exit_code == 0
        config = json.loads(result.stdout)
        assert config["server"]["port"] == 5000
        assert config["watchdog"]["no_output_sec"] == 20

    def test_environment_overrides_preset(self) -> None:
        result = runner.invoke(app, ["show-config", "--preset", "quick", "--format", "json"], env={"PORT": "6123"})
        assert result.exit_code == 0
        assert json.loads(result.stdout)["server"]["port"] == 6123

    def test_unknown_preset(self) -> None:
        result = runner.invoke(app, ["show-config", "--preset", "nope"])
        assert result.exit_code == 1
        assert "Available presets" in result.output

    def test_invalid_config_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "salvage.yaml"
        config_file.write_text("watchdog:\n  no_output_sec: -1\n")
        result = runner.invoke(app, ["show-config", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestProbe:
    def test_probe_fake_tool(self, fake_tool: Path) -> None:
        result = runner.invoke(app, ["probe", "--sqlite3", str(fake_tool)])
        assert result.exit_code == 0
        report = json.loads(result.stdout)
        assert report["available"] is True
        assert report["hasRecover"] is True

    def test_probe_missing_tool(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["probe", "--sqlite3", str(tmp_path / "missing")])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["available"] is False


class TestRecover:
    def _source(self, tmp_path: Path) -> Path:
        source = tmp_path / "phone.db"
        source.write_bytes(b"SQLite format 3\x00" + b"\x00" * 4080)
        return source

    def test_recover_offline(self, tmp_path: Path, fake_tool: Path) -> None:
        source = self._source(tmp_path)
        out = tmp_path / "out"

        result = runner.invoke(
            app,
            ["recover", str(source), "--sqlite3", str(fake_tool), "--artifact-dir", str(out), "--ignore-freelist"],
        )

        assert result.exit_code == 0, result.output
        assert "Recovered with strategy 'recover'" in result.stdout
        assert len(list(out.glob("recovery_*_phone.sql"))) == 1
        assert len(list(out.glob("recovered_*_phone.db"))) == 1
        # The source is copied in, never consumed.
        assert source.exists()

    def test_manual_mode(self, tmp_path: Path, fake_tool: Path) -> None:
        result = runner.invoke(
            app,
            ["recover", str(self._source(tmp_path)), "--manual", "--sqlite3", str(fake_tool), "-d", str(tmp_path / "o")],
        )
        assert result.exit_code == 0, result.output
        assert "Recovered with strategy 'table_by_table'" in result.stdout

    def test_partial_failure_reported(self, tmp_path: Path) -> None:
        tool = write_fake_sqlite(tmp_path, FakeScenario(tables=["a", "b"], bad_tables=["b"], recover="fail", dump="fail"))
        result = runner.invoke(
            app, ["recover", str(self._source(tmp_path)), "--sqlite3", str(tool), "-d", str(tmp_path / "o")]
        )
        assert result.exit_code == 0, result.output
        assert "1 table(s) failed: b" in result.output

    def test_failure_exit_code(self, tmp_path: Path) -> None:
        tool = write_fake_sqlite(tmp_path, FakeScenario(materialize="fail"))
        result = runner.invoke(
            app, ["recover", str(self._source(tmp_path)), "--sqlite3", str(tool), "-d", str(tmp_path / "o")]
        )
        assert result.exit_code == 1
        assert "Recovery failed" in result.output

    def test_unsafe_lost_and_found_name(self, tmp_path: Path, fake_tool: Path) -> None:
        result = runner.invoke(
            app,
            ["recover", str(self._source(tmp_path)), "--sqlite3", str(fake_tool), "--lost-and-found", "x;y"],
        )
        assert result.exit_code == 2


class TestMaterialize:
    SCRIPT = (
        "PRAGMA foreign_keys=OFF;\nBEGIN TRANSACTION;\n"
        "CREATE TABLE customers(id INTEGER PRIMARY KEY, name TEXT);\n"
        "INSERT INTO customers VALUES(1,'ada');\nINSERT INTO customers VALUES(2,'grace');\n"
        "CREATE TABLE orders(id INTEGER);\nINSERT INTO orders VALUES(7);\n"
        "COMMIT;\n"
    )

    def _script(self, tmp_path: Path) -> Path:
        script = tmp_path / "manual_recovery_1_phone.sql"
        script.write_text(self.SCRIPT)
        return script

    def test_replays_script_and_prints_stats(self, tmp_path: Path, fake_tool: Path) -> None:
        target = tmp_path / "rebuilt.db"
        result = runner.invoke(
            app, ["materialize", str(self._script(tmp_path)), "-o", str(target), "--sqlite3", str(fake_tool)]
        )
        assert result.exit_code == 0, result.output
        body = json.loads(result.stdout)
        assert body["tableCount"] == 2
        assert body["totalRowCount"] == 3
        assert body["uncountedTables"] == []
        assert Path(body["dbFile"]) == target.resolve()

    def test_default_output_and_rerun_are_stable(self, tmp_path: Path, fake_tool: Path) -> None:
        script = self._script(tmp_path)
        args = ["materialize", str(script), "--sqlite3", str(fake_tool)]

        first = runner.invoke(app, args)
        (tmp_path / "manual_recovery_1_phone.db").unlink()
        second = runner.invoke(app, args)

        assert first.exit_code == 0 and second.exit_code == 0, second.output
        assert json.loads(first.stdout) == json.loads(second.stdout)
        assert (tmp_path / "manual_recovery_1_phone.db").exists()

    def test_failure_exit_code(self, tmp_path: Path) -> None:
        tool = write_fake_sqlite(tmp_path, FakeScenario(materialize="fail"))
        target = tmp_path / "rebuilt.db"
        result = runner.invoke(app, ["materialize", str(self._script(tmp_path)), "-o", str(target), "--sqlite3", str(tool)])
        assert result.exit_code == 1
        assert "Materialization failed" in result.output
        assert not target.exists()

    def test_refuses_to_overwrite_script(self, tmp_path: Path, fake_tool: Path) -> None:
        script = self._script(tmp_path)
        result = runner.invoke(app, ["materialize", str(script), "-o", str(script), "--sqlite3", str(fake_tool)])
        assert result.exit_code == 2
        assert script.read_text() == self.SCRIPT
