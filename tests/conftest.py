"""Shared fixtures: a scripted fake process runner and a throwaway Karma project."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from karma_server.errors import ProcessFailure
from karma_server.models import LaunchOptions, ServerSettings
from karma_server.supervisor import ServerSupervisor

START_LINE = "[VS Server]: Started - port: 51234"


class FakeProcessHandle:
    """A process whose output and exit are driven by the test."""

    def __init__(self, pid: int, cancel_exit_code: int | None = -15) -> None:
        self.pid: int = pid
        # None: cancel requests are recorded but the process keeps running.
        self.cancel_exit_code: int | None = cancel_exit_code
        self.cancel_requests: int = 0
        self._stdout: asyncio.Queue[str | Exception | None] = asyncio.Queue()
        self._stderr: asyncio.Queue[str | Exception | None] = asyncio.Queue()
        self._exit: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    @property
    def stdout(self) -> AsyncIterator[str]:
        return self._drain(self._stdout)

    @property
    def stderr(self) -> AsyncIterator[str]:
        return self._drain(self._stderr)

    @staticmethod
    async def _drain(queue: asyncio.Queue[str | Exception | None]) -> AsyncIterator[str]:
        while True:
            line = await queue.get()
            if line is None:
                return
            if isinstance(line, Exception):
                raise line
            yield line

    @property
    def exited(self) -> bool:
        return self._exit.done()

    def write_stdout(self, *lines: str) -> None:
        for line in lines:
            self._stdout.put_nowait(line)

    def write_stderr(self, *lines: str) -> None:
        for line in lines:
            self._stderr.put_nowait(line)

    def fail_stdout(self, error: Exception) -> None:
        """Make reading stdout raise `error` after the lines already written."""
        self._stdout.put_nowait(error)

    def exit(self, code: int) -> None:
        if self._exit.done():
            return
        self._stdout.put_nowait(None)
        self._stderr.put_nowait(None)
        self._exit.set_result(code)

    def request_cancel(self) -> None:
        self.cancel_requests += 1
        if self.cancel_exit_code is not None:
            self.exit(self.cancel_exit_code)

    async def wait(self) -> int:
        return await self._exit


class FakeProcessRunner:
    """Records launches and hands out FakeProcessHandles."""

    def __init__(
        self,
        *,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.error: Exception | None = error
        self.gate: asyncio.Event | None = gate
        self.launches: list[LaunchOptions] = []
        self.handles: list[FakeProcessHandle] = []

    async def spawn(self, options: LaunchOptions) -> FakeProcessHandle:
        if self.gate is not None:
            await self.gate.wait()
        self.launches.append(options)
        if self.error is not None:
            raise self.error
        handle = FakeProcessHandle(pid=1000 + len(self.handles))
        self.handles.append(handle)
        return handle

    @property
    def handle(self) -> FakeProcessHandle:
        return self.handles[-1]

    async def wait_spawned(self, count: int = 1) -> FakeProcessHandle:
        while len(self.handles) < count:
            await asyncio.sleep(0)
        return self.handles[count - 1]


class EventRecorder:
    """Collects every event fired by a supervisor."""

    def __init__(self, supervisor: ServerSupervisor) -> None:
        self.started: list[int] = []
        self.stopped: list[tuple[int | None, ProcessFailure | None]] = []
        self.output: list[str] = []
        self.errors: list[str] = []
        self.order: list[str] = []
        supervisor.started += self.started.append
        supervisor.stopped += lambda code, failure: self.stopped.append((code, failure))
        supervisor.output_received += self.output.append
        supervisor.error_received += self.errors.append
        for kind, hook in (
            ("started", supervisor.started),
            ("stopped", supervisor.stopped),
            ("output", supervisor.output_received),
            ("error", supervisor.error_received),
        ):
            hook.subscribe(lambda *_, kind=kind: self.order.append(kind))


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def config_file(project_dir: Path) -> Path:
    path = project_dir / "karma.conf.js"
    path.write_text("module.exports = function (config) {};\n")
    return path


@pytest.fixture
def start_script(tmp_path: Path) -> Path:
    lib = tmp_path / "lib"
    lib.mkdir()
    script = lib / "Start.js"
    script.write_text("// karma start script\n")
    return script


@pytest.fixture
def settings(start_script: Path) -> ServerSettings:
    return ServerSettings(start_script=start_script)


@pytest.fixture
def runner() -> FakeProcessRunner:
    return FakeProcessRunner()


@pytest.fixture
def supervisor_logger() -> logging.Logger:
    logger = logging.getLogger("tests.supervisor")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def supervisor(
    config_file: Path,
    runner: FakeProcessRunner,
    settings: ServerSettings,
    supervisor_logger: logging.Logger,
) -> ServerSupervisor:
    return ServerSupervisor(
        config_file, runner=runner, settings=settings, logger=supervisor_logger
    )


@pytest.fixture
def recorder(supervisor: ServerSupervisor) -> EventRecorder:
    return EventRecorder(supervisor)
