"""Best-effort termination of the Karma server process tree.

- Only stop processes we started (tracked by pid + create_time).
- Prefer graceful shutdown (SIGINT first), escalate to SIGTERM then SIGKILL.
- Node may fork helpers (browsers, watchers); signal the whole session where possible.
"""

from __future__ import annotations

import os
import signal
import time
from typing import ClassVar

import psutil
from pydantic import BaseModel, ConfigDict

from karma_server.constants import SIGINT_TIMEOUT, SIGKILL_TIMEOUT, SIGTERM_TIMEOUT
from karma_server.logging import LogComponent, get_logger

logger = get_logger(LogComponent.PROCESS_CONTROL)


class TrackedProcess(BaseModel):
    """A process we started and are allowed to stop.

    create_time protects against PID reuse. pgid lets POSIX shutdown reach children
    even after the root process has exited.
    """

    pid: int
    create_time: float
    pgid: int | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


def _get_pgid_safe(pid: int) -> int | None:
    # Windows doesn't have pgid.
    if os.name == "nt":
        return None
    try:
        return os.getpgid(pid)
    except OSError:
        return None


def track_process(pid: int) -> TrackedProcess | None:
    """Create a TrackedProcess for a running PID, or None if it is already gone."""
    try:
        proc = psutil.Process(pid)
        return TrackedProcess(
            pid=pid,
            create_time=float(proc.create_time()),
            pgid=_get_pgid_safe(pid),
        )
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """Return a psutil.Process only if PID still matches create_time."""
    try:
        proc = psutil.Process(tp.pid)
        if abs(float(proc.create_time()) - tp.create_time) > 0.001:
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def _pgid_members(pgid: int) -> list[int]:
    if os.name == "nt":
        return []
    pids: list[int] = []
    for proc in psutil.process_iter(["pid"]):
        pid = int(proc.pid)
        if _get_pgid_safe(pid) == pgid:
            pids.append(pid)
    return pids


def _wait_for_pgid_empty(pgid: int, timeout: float, poll: float = 0.1) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if not _pgid_members(pgid):
            return True
        time.sleep(poll)
    return not _pgid_members(pgid)


def _terminate_tree(root: psutil.Process, timeout: float) -> None:
    """Terminate root and its descendants, killing whatever survives the timeout."""
    try:
        procs = root.children(recursive=True)
    except psutil.Error:
        procs = []
    procs.append(root)

    for p in procs:
        try:
            p.terminate()
        except psutil.Error:
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for p in alive:
        try:
            p.kill()
        except psutil.Error:
            pass
    if alive:
        psutil.wait_procs(alive, timeout=max(0.5, timeout / 2))


def _signal_group(pgid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def stop_tracked_process(
    tp: TrackedProcess,
    *,
    name: str,
    sigint_timeout: float = SIGINT_TIMEOUT,
    sigterm_timeout: float = SIGTERM_TIMEOUT,
    sigkill_timeout: float = SIGKILL_TIMEOUT,
) -> None:
    """Stop a tracked process and its children (blocking, best-effort).

    - POSIX with a process group: SIGINT -> SIGTERM -> SIGKILL to the group.
    - Otherwise: terminate/kill the process tree via psutil.
    """
    pgid = tp.pgid if os.name != "nt" else None
    if pgid is None:
        proc = validate_tracked(tp)
        if proc is None:
            return
        logger.debug(f"Stopping {name} pid={tp.pid}")
        _terminate_tree(proc, timeout=sigterm_timeout + sigkill_timeout)
        return

    logger.debug(f"Stopping {name} pid={tp.pid} pgid={pgid}")
    for sig, timeout in (
        (signal.SIGINT, sigint_timeout),
        (signal.SIGTERM, sigterm_timeout),
        (signal.SIGKILL, sigkill_timeout),
    ):
        _signal_group(pgid, sig)
        if _wait_for_pgid_empty(pgid, timeout):
            return
        logger.debug(f"{name} still alive after {sig.name}, escalating")

    # Last resort: the root may have left the group.
    proc = validate_tracked(tp)
    if proc is not None:
        _terminate_tree(proc, timeout=max(0.2, sigkill_timeout))

