"""Periodic heartbeat into the cross-project registry for stall detection."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any

from piv_orchestrator import git_tools
from piv_orchestrator.manifest import ManifestStore, phase_numbers, phase_status
from piv_orchestrator.registry import InstanceRegistry
from piv_orchestrator.schemas import ProjectStatus

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 120.0


def infer_current_phase(manifest: dict[str, Any]) -> int | None:
    """First phase that is not fully complete; ``None`` when all are done or none exist."""
    for phase in phase_numbers(manifest):
        if not phase_status(manifest, phase).is_complete:
            return phase
    return None


def last_completed_phase(manifest: dict[str, Any]) -> int | None:
    done = [p for p in phase_numbers(manifest) if phase_status(manifest, p).is_complete]
    return max(done) if done else None


class HeartbeatWriter:
    """Upsert this project's registry entry on start and every *interval* seconds."""

    def __init__(
        self,
        project_dir: str | Path,
        registry: InstanceRegistry,
        store: ManifestStore,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        name: str | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.registry = registry
        self.store = store
        self.interval_seconds = max(0.05, float(interval_seconds))
        self.name = name or self.project_dir.name
        self.status = ProjectStatus.RUNNING
        self._commands_version: str | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def set_status(self, status: ProjectStatus | str) -> None:
        self.status = ProjectStatus(status)

    def beat(self, status: ProjectStatus | str | None = None) -> bool:
        """Write one heartbeat. Returns False on failure instead of raising."""
        try:
            if status is not None:
                self.set_status(status)
            try:
                manifest = self.store.read()
            except Exception:
                logger.debug("Heartbeat could not read manifest", exc_info=True)
                manifest = {}
            if self._commands_version is None:
                self._commands_version = git_tools.commands_version(self.project_dir)
            pid = os.getpid() if self.status in (ProjectStatus.RUNNING, ProjectStatus.ERROR) else None
            self.registry.update_project_heartbeat(
                name=self.name,
                path=self.project_dir,
                status=self.status,
                current_phase=infer_current_phase(manifest),
                pid=pid,
                commands_version=self._commands_version,
                last_completed_phase=last_completed_phase(manifest),
            )
            return True
        except Exception:
            logger.warning("Heartbeat write failed", exc_info=True)
            return False

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self.beat()
            self._thread = threading.Thread(
                target=self._run_loop, name="piv-heartbeat", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None and thread.is_alive():
            thread.join(timeout=1.0)

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.beat()
