"""Centralized logging for karma-server (buffering, routing, and CLI formatting)."""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import ClassVar, TypeAlias

from pydantic import BaseModel, ConfigDict
from rich.text import Text
from typing_extensions import override

from karma_server.models import LogChannel, LogEntry
from karma_server.utils import console

LogBuffer: TypeAlias = deque[LogEntry]


class LogComponent(str, Enum):
    """Where a log originated (used for fine-grained filtering)."""

    SUPERVISOR = "supervisor"
    RUNNER = "runner"
    PROCESS_CONTROL = "process_control"
    KARMA = "karma"
    CLI = "cli"


_COMPONENT_DEFAULT_CHANNEL: dict[LogComponent, LogChannel] = {
    LogComponent.SUPERVISOR: LogChannel.SUPERVISOR,
    LogComponent.RUNNER: LogChannel.SUPERVISOR,
    LogComponent.PROCESS_CONTROL: LogChannel.SUPERVISOR,
    LogComponent.CLI: LogChannel.SUPERVISOR,
    LogComponent.KARMA: LogChannel.KARMA,
}


class _LogState(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    buffer: LogBuffer | None = None
    configured: bool = False


_STATE = _LogState()


def _now_timestamp(created: float | None = None) -> str:
    t = time.localtime(created if created is not None else time.time())
    return time.strftime("%Y-%m-%d %H:%M:%S", t)


def _make_entry(
    record: logging.LogRecord,
    *,
    channel: LogChannel,
    component: LogComponent,
    content: str,
) -> LogEntry:
    return LogEntry(
        timestamp=_now_timestamp(record.created),
        level=record.levelname,
        channel=channel,
        component=component.value,
        content=content,
    )


class _BufferedLogHandler(logging.Handler):
    buffer_component: LogComponent
    buffer_channel: LogChannel

    def __init__(self, *, channel: LogChannel, component: LogComponent):
        super().__init__()
        self.buffer_channel = channel
        self.buffer_component = component

    @override
    def emit(self, record: logging.LogRecord) -> None:
        if _STATE.buffer is None:
            return
        try:
            _STATE.buffer.append(
                _make_entry(
                    record,
                    channel=self.buffer_channel,
                    component=self.buffer_component,
                    content=self.format(record),
                )
            )
        except Exception:
            self.handleError(record)


class _ConsoleLogHandler(logging.Handler):
    """Print records with `[karma-server]`/`[karma]` prefixes."""

    console_component: LogComponent
    console_channel: LogChannel

    def __init__(
        self, *, channel: LogChannel, component: LogComponent, raw_output: bool
    ):
        super().__init__()
        self.console_channel = channel
        self.console_component = component
        self.raw_output: bool = raw_output

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            print_log_entry(
                _make_entry(
                    record,
                    channel=self.console_channel,
                    component=self.console_component,
                    content=self.format(record),
                ),
                raw_output=self.raw_output,
            )
        except Exception:
            self.handleError(record)


def configure_logging(
    *,
    buffer: LogBuffer | None = None,
    to_console: bool = True,
    raw_output: bool = False,
    verbose: bool = False,
) -> None:
    """Configure all component loggers to write to the buffer and/or the console."""
    _STATE.buffer = buffer

    for component in LogComponent:
        channel = _COMPONENT_DEFAULT_CHANNEL.get(component, LogChannel.SUPERVISOR)
        logger = logging.getLogger(f"karma_server.{component.value}")
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)
        logger.handlers.clear()
        if buffer is not None:
            handler = _BufferedLogHandler(channel=channel, component=component)
            handler.setFormatter(logging.Formatter("%(message)s"))
            logger.addHandler(handler)
        if to_console:
            # Raw output only applies to the child process's own lines.
            console_handler = _ConsoleLogHandler(
                channel=channel,
                component=component,
                raw_output=raw_output and component == LogComponent.KARMA,
            )
            console_handler.setFormatter(logging.Formatter("%(message)s"))
            logger.addHandler(console_handler)
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
        logger.propagate = False

    _STATE.configured = True


def get_logger(component: LogComponent) -> logging.Logger:
    """Get a logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"karma_server.{component.value}")
    if not _STATE.configured:
        # Avoid "No handlers could be found" warnings in contexts that don't configure logging.
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
    return logger


def print_log_entry(entry: LogEntry, *, raw_output: bool = False) -> None:
    """Print a single log entry with `[karma-server]`/`[karma]` prefixes."""
    if raw_output:
        console.print(entry.content, markup=False, highlight=False)
        return

    prefix_style = "bright_blue" if entry.channel == LogChannel.SUPERVISOR else "yellow"
    if entry.level in ("ERROR", "CRITICAL"):
        content_style = "red"
    elif entry.level == "WARNING":
        content_style = "yellow"
    else:
        content_style = ""

    ts = Text(entry.timestamp, style="dim")
    sep = Text(" | ")
    prefix = Text(f"[{entry.channel.value}]", style=prefix_style)
    content = Text(entry.content, style=content_style)
    console.print(ts + sep + prefix + sep + content)
