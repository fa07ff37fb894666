"""Launch a Karma test server and discover the port it binds."""

from karma_server.errors import (
    ConfigurationError,
    InvalidOperationError,
    KarmaServerError,
    ProcessFailure,
    ServerStoppedError,
    StartTimeoutError,
)
from karma_server.models import LaunchOptions, ServerEvent, ServerSettings, ServerState
from karma_server.runner import ProcessHandle, ProcessRunner, SubprocessRunner
from karma_server.supervisor import ServerSupervisor

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "InvalidOperationError",
    "KarmaServerError",
    "LaunchOptions",
    "ProcessFailure",
    "ProcessHandle",
    "ProcessRunner",
    "ServerEvent",
    "ServerSettings",
    "ServerState",
    "ServerStoppedError",
    "ServerSupervisor",
    "StartTimeoutError",
    "SubprocessRunner",
]
