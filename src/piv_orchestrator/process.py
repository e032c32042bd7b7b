"""Process lifecycle: PID lock file, liveness probe and shutdown coordination."""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import traceback
from collections.abc import Callable
from pathlib import Path
from types import TracebackType
from typing import Any, Protocol

from piv_orchestrator.errors import AlreadyRunningError
from piv_orchestrator.file_io import atomic_write_json, read_json_tolerant
from piv_orchestrator.schemas import LockInfo

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "orchestrator.pid"


def lock_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / ".agents" / LOCK_FILE_NAME


def is_process_alive(pid: int | None) -> bool:
    """Signal-0 liveness probe; a process we may not signal still counts as alive."""
    try:
        pid = int(pid or 0)
    except (TypeError, ValueError):
        return False
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except (ProcessLookupError, OSError):
        return False
    return True


def read_lock(project_dir: str | Path) -> LockInfo | None:
    data = read_json_tolerant(lock_path(project_dir))
    if data is None:
        return None
    try:
        return LockInfo.model_validate(data)
    except ValueError:
        logger.warning("Ignoring malformed lock file %s", lock_path(project_dir))
        return None


def remove_lock(project_dir: str | Path) -> None:
    try:
        lock_path(project_dir).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove lock file: %s", exc)


def check_for_running_instance(project_dir: str | Path) -> LockInfo | None:
    """Return the live lock holder, or ``None`` when the slot is free.

    A lock left behind by a dead process (or an unreadable lock) is removed.
    """
    path = lock_path(project_dir)
    if not path.exists():
        return None
    info = read_lock(project_dir)
    if info is not None and info.pid != os.getpid() and is_process_alive(info.pid):
        return info
    if info is not None and info.pid == os.getpid():
        return None
    logger.info("Removing stale lock file %s", path)
    remove_lock(project_dir)
    return None


def write_lock(project_dir: str | Path) -> LockInfo:
    """Claim the project lock for this process.

    Raises ``AlreadyRunningError`` when another live orchestrator holds it.
    """
    holder = check_for_running_instance(project_dir)
    if holder is not None:
        raise AlreadyRunningError(holder.pid, holder.project_dir)
    info = LockInfo(pid=os.getpid(), project_dir=str(Path(project_dir).resolve()))
    atomic_write_json(lock_path(project_dir), info.to_payload())
    return info


# ---------------------------------------------------------------------------
# Shutdown coordination
# ---------------------------------------------------------------------------


class Stoppable(Protocol):
    def stop(self) -> None: ...


class ShutdownCoordinator:
    """Run the shutdown sequence exactly once, on normal exit, signal or crash.

    Order: stop timers, remove lock, deregister, final heartbeat, then (crash
    path only) persist a failure record. Every step is best-effort.
    """

    def __init__(self, project_dir: str | Path) -> None:
        self.project_dir = Path(project_dir)
        self._timers: list[Stoppable] = []
        self._on_signal: list[Callable[[], None]] = []
        self.deregister: Callable[[], None] | None = None
        self.final_heartbeat: Callable[[str], None] | None = None
        self.record_crash: Callable[[str], None] | None = None
        self._lock = threading.Lock()
        self._done = False
        self._previous_excepthook: Callable[..., Any] | None = None

    @property
    def done(self) -> bool:
        return self._done

    def add_timer(self, timer: Stoppable) -> None:
        self._timers.append(timer)

    def on_signal(self, callback: Callable[[], None]) -> None:
        """Register a callback run before shutdown when SIGINT/SIGTERM arrives."""
        self._on_signal.append(callback)

    def install(self) -> None:
        """Install SIGINT/SIGTERM handlers and a crash ``sys.excepthook``."""
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._handle_uncaught

    def _handle_signal(self, signum: int, _frame: Any) -> None:
        logger.warning("Received signal %s; shutting down", signum)
        for callback in self._on_signal:
            try:
                callback()
            except Exception:
                logger.warning("Signal callback failed", exc_info=True)
        self.shutdown(reason=f"signal {signum}")
        raise SystemExit(128 + int(signum))

    def _handle_uncaught(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        details = "".join(traceback.format_exception_only(exc_type, exc)).strip()
        self.shutdown(reason="uncaught exception", crash_details=f"orchestrator crash: {details}")
        hook = self._previous_excepthook or sys.__excepthook__
        hook(exc_type, exc, tb)

    def shutdown(self, *, reason: str = "normal exit", crash_details: str | None = None) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        logger.info("Shutdown sequence started (%s)", reason)

        for timer in self._timers:
            self._best_effort("stop timer", timer.stop)
        self._best_effort("remove lock", lambda: remove_lock(self.project_dir))
        if self.deregister is not None:
            self._best_effort("deregister", self.deregister)
        if self.final_heartbeat is not None:
            status = "error" if crash_details else "idle"
            self._best_effort("final heartbeat", lambda: self.final_heartbeat(status))
        if crash_details and self.record_crash is not None:
            self._best_effort("record crash", lambda: self.record_crash(crash_details))

    @staticmethod
    def _best_effort(step: str, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except Exception:
            logger.warning("Shutdown step '%s' failed", step, exc_info=True)
