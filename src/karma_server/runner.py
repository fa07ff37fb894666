"""Process execution seam used by the supervisor.

`ProcessRunner` spawns the child described by `LaunchOptions` and hands back a
`ProcessHandle` exposing its output line by line. `SubprocessRunner` is the
asyncio implementation used outside of tests.
"""

from __future__ import annotations

import asyncio
import functools
import os
import subprocess
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from karma_server.logging import LogComponent, get_logger
from karma_server.models import LaunchOptions
from karma_server.process_control import (
    TrackedProcess,
    stop_tracked_process,
    track_process,
)
from karma_server.utils import strip_line_ending

logger = get_logger(LogComponent.RUNNER)

# Karma prints long stack traces and JSON blobs on a single line.
STREAM_LIMIT = 1024 * 1024


@runtime_checkable
class ProcessHandle(Protocol):
    """A live child process."""

    @property
    def pid(self) -> int | None: ...

    @property
    def stdout(self) -> AsyncIterator[str]: ...

    @property
    def stderr(self) -> AsyncIterator[str]: ...

    def request_cancel(self) -> None:
        """Ask the process to terminate. Called on the event loop; must not block or raise."""
        ...

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        ...


@runtime_checkable
class ProcessRunner(Protocol):
    """Spawns child processes."""

    async def spawn(self, options: LaunchOptions) -> ProcessHandle: ...


async def _iter_lines(
    stream: asyncio.StreamReader | None, encoding: str
) -> AsyncIterator[str]:
    if stream is None:
        return
    async for raw in stream:
        yield strip_line_ending(raw.decode(encoding, errors="replace"))


class SubprocessHandle:
    """`ProcessHandle` over an `asyncio.subprocess.Process`."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        encoding: str,
        name: str = "karma",
    ) -> None:
        self.process: asyncio.subprocess.Process = process
        self.encoding: str = encoding
        self.name: str = name
        # Track immediately: node may exit before a cancel is requested.
        self.tracked: TrackedProcess | None = track_process(process.pid)
        self._cancel_future: asyncio.Future[None] | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def stdout(self) -> AsyncIterator[str]:
        return _iter_lines(self.process.stdout, self.encoding)

    @property
    def stderr(self) -> AsyncIterator[str]:
        return _iter_lines(self.process.stderr, self.encoding)

    def request_cancel(self) -> None:
        if self.process.returncode is not None:
            return
        if self._cancel_future is not None and not self._cancel_future.done():
            return

        if self.tracked is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass
            return

        loop = asyncio.get_running_loop()
        self._cancel_future = loop.run_in_executor(
            None, functools.partial(stop_tracked_process, self.tracked, name=self.name)
        )
        self._cancel_future.add_done_callback(self._log_cancel_failure)

    def _log_cancel_failure(self, future: asyncio.Future[None]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning(f"Failed to stop {self.name} pid={self.pid}: {exc}")

    async def wait(self) -> int:
        return await self.process.wait()


class SubprocessRunner:
    """Spawn children with asyncio, in their own session so the tree can be stopped."""

    async def spawn(self, options: LaunchOptions) -> ProcessHandle:
        creationflags = 0
        start_new_session = False
        if os.name == "nt":
            creationflags = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
        else:
            start_new_session = True

        env = {**os.environ, **options.env}
        process = await asyncio.create_subprocess_exec(
            options.executable,
            *options.args,
            cwd=options.cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
            start_new_session=start_new_session,
            creationflags=creationflags,
        )
        logger.debug(f"Spawned {options.executable} pid={process.pid}")
        return SubprocessHandle(process, encoding=options.encoding)
