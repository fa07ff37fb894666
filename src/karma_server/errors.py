"""Exception types raised by karma-server."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from karma_server.models import ServerState


class KarmaServerError(Exception):
    """Base class for all karma-server errors."""


class ConfigurationError(KarmaServerError, ValueError):
    """The launch configuration is missing or invalid. Raised before spawning."""


class InvalidOperationError(KarmaServerError, RuntimeError):
    """An operation is not allowed in the supervisor's current state."""

    def __init__(self, message: str, state: ServerState) -> None:
        super().__init__(message)
        self.state: ServerState = state


class ProcessFailure(KarmaServerError):
    """The child process run raised instead of exiting normally.

    Never raised into caller code: delivered through the `stopped` event.
    """


class StartTimeoutError(KarmaServerError, TimeoutError):
    """The start line did not appear within the start timeout."""


class ServerStoppedError(KarmaServerError):
    """The server exited before printing its start line."""

    def __init__(self, message: str, exit_code: int | None) -> None:
        super().__init__(message)
        self.exit_code: int | None = exit_code
