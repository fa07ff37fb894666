"""Tests for the karma-server command line."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from karma_server.__main__ import app

runner: CliRunner = CliRunner()


@pytest.fixture
def exiting_karma(tmp_path: Path) -> Path:
    script = tmp_path / "exiting_karma.py"
    script.write_text(
        textwrap.dedent(
            """
            import sys
            print("[VS Server]: Started - port: 40123", flush=True)
            print("Executed 1 of 1 SUCCESS", flush=True)
            sys.exit(0)
            """
        )
    )
    return script


class TestCommand:
    def test_prints_launch_command(self, config_file: Path, start_script: Path) -> None:
        result = runner.invoke(
            app,
            ["command", str(config_file), "--start-script", str(start_script)],
            catch_exceptions=False,
        )
        assert result.exit_code == 0, result.output
        assert "--karma" in result.output
        assert "karma.conf.js" in result.output
        assert "NODE_PATH" in result.output

    def test_missing_config_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["command", str(tmp_path / "karma.conf.js")])
        assert result.exit_code == 1
        assert "does not exist" in result.output

    def test_missing_start_script(self, config_file: Path, tmp_path: Path) -> None:
        result = runner.invoke(
            app,
            ["command", str(config_file), "--start-script", str(tmp_path / "Start.js")],
        )
        assert result.exit_code == 1
        assert "Could not find start script" in result.output


class TestStart:
    def test_runs_until_exit(self, config_file: Path, exiting_karma: Path) -> None:
        result = runner.invoke(
            app,
            [
                "start",
                str(config_file),
                "--node",
                sys.executable,
                "--start-script",
                str(exiting_karma),
                "--timeout-ms",
                "30000",
            ],
            catch_exceptions=False,
        )
        assert result.exit_code == 0, result.output
        assert "listening on port 40123" in result.output
        assert "[karma] | Executed 1 of 1 SUCCESS" in result.output
        assert "Karma server exited with code 0" in result.output

    def test_raw_output(self, config_file: Path, exiting_karma: Path) -> None:
        result = runner.invoke(
            app,
            [
                "start",
                str(config_file),
                "--node",
                sys.executable,
                "--start-script",
                str(exiting_karma),
                "--raw",
            ],
            catch_exceptions=False,
        )
        assert result.exit_code == 0, result.output
        assert "\nExecuted 1 of 1 SUCCESS\n" in result.output

    def test_configuration_error(self, config_file: Path, tmp_path: Path) -> None:
        result = runner.invoke(
            app,
            ["start", str(config_file), "--start-script", str(tmp_path / "Start.js")],
        )
        assert result.exit_code == 1
        assert "Could not find start script" in result.output


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "karma-server" in result.output
