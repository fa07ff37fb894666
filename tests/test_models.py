"""Tests for settings and launch models."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

import karma_server
from karma_server.models import LaunchOptions, ServerEvent, ServerSettings


class TestServerSettings:
    def test_defaults(self) -> None:
        settings = ServerSettings()
        assert settings.node_executable == "node"
        assert settings.start_timeout_ms is None
        assert settings.start_timeout is None
        assert settings.encoding == "utf-8"

    def test_timeout_in_seconds(self) -> None:
        assert ServerSettings(start_timeout_ms=1500).start_timeout == 1.5

    @pytest.mark.parametrize("timeout_ms", [0, -10])
    def test_timeout_must_be_positive(self, timeout_ms: int) -> None:
        with pytest.raises(ValidationError):
            ServerSettings(start_timeout_ms=timeout_ms)

    def test_default_start_script_in_package_lib(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("KARMA_SERVER_LIB_DIR", raising=False)
        expected = Path(karma_server.__file__).parent / "lib" / "Start.js"
        assert ServerSettings().resolve_start_script() == expected

    def test_explicit_start_script_wins(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("KARMA_SERVER_LIB_DIR", str(tmp_path / "elsewhere"))
        script = tmp_path / "Start.js"
        assert ServerSettings(start_script=script).resolve_start_script() == script


class TestLaunchOptions:
    def test_command_line_quotes_spaces(self, tmp_path: Path) -> None:
        options = LaunchOptions(
            executable="node",
            args=["/opt/karma adapter/Start.js", "--karma", "karma.conf.js"],
            cwd=tmp_path,
        )
        assert options.command_line == 'node "/opt/karma adapter/Start.js" --karma karma.conf.js'

    def test_frozen(self, tmp_path: Path) -> None:
        options = LaunchOptions(executable="node", cwd=tmp_path)
        with pytest.raises(ValidationError):
            options.executable = "nodejs"


class TestServerEvent:
    def test_kind_is_validated(self) -> None:
        with pytest.raises(ValidationError):
            ServerEvent(kind="restarted")  # type: ignore[arg-type]
