"""Centralized Pydantic models, enums, and type aliases for karma-server."""

from __future__ import annotations

import os
import subprocess
from enum import Enum
from pathlib import Path
from typing import ClassVar, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

from karma_server.constants import (
    DEFAULT_ENCODING,
    DEFAULT_NODE_EXECUTABLE,
    LIB_DIR_ENV_VAR,
    START_SCRIPT_NAME,
)


# === Type Aliases ===

Environment: TypeAlias = dict[str, str]

ServerEventKind = Literal["started", "output", "error", "stopped"]


# === Enums ===


class ServerState(str, Enum):
    """Lifecycle state of a supervised Karma server."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"


class LogChannel(str, Enum):
    """Log channel for routing output to the console."""

    SUPERVISOR = "karma-server"
    KARMA = "karma"


# === Launch & Settings ===


def default_lib_directory() -> Path:
    """Directory holding the Karma start script.

    `KARMA_SERVER_LIB_DIR` wins over the `lib/` directory shipped with the package.
    """
    override = os.environ.get(LIB_DIR_ENV_VAR)
    if override:
        return Path(override)
    return Path(__file__).parent / "lib"


class LaunchOptions(BaseModel):
    """Everything needed to spawn the child process."""

    executable: str
    args: list[str] = Field(default_factory=list)
    cwd: Path
    env: Environment = Field(default_factory=dict)
    encoding: str = DEFAULT_ENCODING

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @property
    def command_line(self) -> str:
        return subprocess.list2cmdline([self.executable, *self.args])


class ServerSettings(BaseModel):
    """Launch configuration for the supervisor."""

    node_executable: str = DEFAULT_NODE_EXECUTABLE
    start_script: Path | None = None
    start_timeout_ms: int | None = Field(default=None, gt=0)
    encoding: str = DEFAULT_ENCODING
    extra_env: Environment = Field(default_factory=dict)

    def resolve_start_script(self) -> Path:
        if self.start_script is not None:
            return self.start_script
        return default_lib_directory() / START_SCRIPT_NAME

    @property
    def start_timeout(self) -> float | None:
        """Start timeout in seconds, or None for no timeout."""
        if self.start_timeout_ms is None:
            return None
        return self.start_timeout_ms / 1000


# === Logging ===


class LogEntry(BaseModel):
    """A single buffered log record."""

    timestamp: str
    level: str
    channel: LogChannel
    component: str
    content: str


# === Events ===


class ServerEvent(BaseModel):
    """A lifecycle event of one server run, as pushed to event streams."""

    kind: ServerEventKind
    port: int | None = None
    line: str | None = None
    exit_code: int | None = None
    failure: str | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)
