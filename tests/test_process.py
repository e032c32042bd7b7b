"""Tests for the PID lock file and the shutdown coordinator."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from piv_orchestrator import process
from piv_orchestrator.errors import AlreadyRunningError
from piv_orchestrator.process import (
    ShutdownCoordinator,
    check_for_running_instance,
    is_process_alive,
    lock_path,
    read_lock,
    write_lock,
)


def _write_raw_lock(project: Path, payload: object) -> None:
    path = lock_path(project)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


@pytest.mark.unit
def test_is_process_alive_handles_bad_pids() -> None:
    assert is_process_alive(os.getpid()) is True
    assert is_process_alive(None) is False
    assert is_process_alive(0) is False
    assert is_process_alive(-5) is False
    assert is_process_alive("abc") is False  # type: ignore[arg-type]


def test_write_lock_records_current_process(project: Path) -> None:
    info = write_lock(project)

    assert info.pid == os.getpid()
    raw = json.loads(lock_path(project).read_text(encoding="utf-8"))
    assert raw["pid"] == os.getpid()
    assert "startedAt" in raw
    assert raw["projectDir"] == str(project.resolve())
    assert read_lock(project).pid == os.getpid()


def test_own_lock_does_not_block(project: Path) -> None:
    write_lock(project)

    assert check_for_running_instance(project) is None
    assert lock_path(project).exists()


def test_stale_lock_is_removed(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_raw_lock(project, {"pid": 999_999, "projectDir": str(project)})
    monkeypatch.setattr(process, "is_process_alive", lambda pid: False)

    assert check_for_running_instance(project) is None
    assert not lock_path(project).exists()


def test_malformed_lock_is_removed(project: Path) -> None:
    lock_path(project).parent.mkdir(parents=True)
    lock_path(project).write_text("{not json", encoding="utf-8")

    assert check_for_running_instance(project) is None
    assert not lock_path(project).exists()


def test_live_foreign_lock_raises(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_raw_lock(project, {"pid": 4242, "projectDir": str(project)})
    monkeypatch.setattr(process, "is_process_alive", lambda pid: True)

    holder = check_for_running_instance(project)
    assert holder is not None and holder.pid == 4242

    with pytest.raises(AlreadyRunningError) as excinfo:
        write_lock(project)
    assert excinfo.value.pid == 4242


class _Timer:
    def __init__(self, calls: list[str], name: str) -> None:
        self.calls = calls
        self.name = name

    def stop(self) -> None:
        self.calls.append(f"stop {self.name}")


def test_shutdown_runs_steps_in_order_once(project: Path) -> None:
    write_lock(project)
    calls: list[str] = []
    coordinator = ShutdownCoordinator(project)
    coordinator.add_timer(_Timer(calls, "heartbeat"))
    coordinator.add_timer(_Timer(calls, "watcher"))
    coordinator.deregister = lambda: calls.append("deregister")
    coordinator.final_heartbeat = lambda status: calls.append(f"heartbeat {status}")
    coordinator.record_crash = lambda details: calls.append("crash")

    coordinator.shutdown()
    coordinator.shutdown(reason="again", crash_details="boom")

    assert coordinator.done is True
    assert calls == ["stop heartbeat", "stop watcher", "deregister", "heartbeat idle"]
    assert not lock_path(project).exists()


def test_shutdown_crash_path_records_failure(project: Path) -> None:
    calls: list[str] = []
    coordinator = ShutdownCoordinator(project)
    coordinator.final_heartbeat = lambda status: calls.append(f"heartbeat {status}")
    coordinator.record_crash = lambda details: calls.append(details)

    coordinator.shutdown(reason="crash", crash_details="orchestrator crash: KeyError")

    assert calls == ["heartbeat error", "orchestrator crash: KeyError"]


def test_shutdown_steps_are_best_effort(project: Path) -> None:
    calls: list[str] = []

    def _broken() -> None:
        raise RuntimeError("registry unavailable")

    coordinator = ShutdownCoordinator(project)
    coordinator.deregister = _broken
    coordinator.final_heartbeat = lambda status: calls.append(status)

    coordinator.shutdown()

    assert calls == ["idle"]


def test_uncaught_exception_hook_triggers_crash_shutdown(project: Path) -> None:
    recorded: list[str] = []
    forwarded: list[type[BaseException]] = []
    coordinator = ShutdownCoordinator(project)
    coordinator.record_crash = recorded.append
    coordinator._previous_excepthook = lambda exc_type, exc, tb: forwarded.append(exc_type)

    coordinator._handle_uncaught(ValueError, ValueError("bad state"), None)

    assert recorded == ["orchestrator crash: ValueError: bad state"]
    assert forwarded == [ValueError]
    assert coordinator.done is True
