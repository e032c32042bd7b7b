"""Cross-project instance registry and bot-owner election.

The registry is a YAML file shared by every orchestrator on the machine
(``~/.piv/registry.yaml`` unless ``PIV_REGISTRY_PATH`` overrides it)::

    instances: [RegistryInstance, ...]   # live orchestrator processes
    projects: {name: RegistryProject}    # heartbeat entries for the supervisor
    last_updated: <iso8601>

Mutation is read-prune-merge-write with no cross-process lock. Two processes
claiming ownership in the same instant can both observe "no owner" and the
later write wins; entries self-heal because dead PIDs are pruned on the
next read.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from piv_orchestrator.file_io import atomic_write_yaml, locked_path, read_yaml
from piv_orchestrator.process import is_process_alive
from piv_orchestrator.schemas import (
    ProjectStatus,
    RegistryInstance,
    RegistryProject,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

REGISTRY_ENV_VAR = "PIV_REGISTRY_PATH"


def default_registry_path() -> Path:
    override = os.getenv(REGISTRY_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".piv" / "registry.yaml"


def project_prefix_for(project_dir: str | Path) -> str:
    return Path(project_dir).resolve().name.lower()


def _same_dir(a: str | Path, b: str | Path) -> bool:
    return Path(a).resolve() == Path(b).resolve()


class RegistryData(BaseModel):
    instances: list[RegistryInstance] = Field(default_factory=list)
    projects: dict[str, RegistryProject] = Field(default_factory=dict)
    last_updated: str = Field(default_factory=utc_now_iso)

    def to_payload(self) -> dict:
        return {
            "instances": [inst.to_payload() for inst in self.instances],
            "projects": {name: proj.to_payload() for name, proj in self.projects.items()},
            "last_updated": self.last_updated,
        }


class InstanceRegistry:
    """Repository over the shared registry file (``read``/``prune``/``upsert``/``write``).

    Read-modify-write sequences hold the per-path lock, so the heartbeat and
    bot threads of one process never drop each other's updates. Separate
    processes still race; the last writer wins.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else default_registry_path()

    # ── Primitive operations ──────────────────────────────────────────

    def read(self) -> RegistryData:
        """Load the registry; missing or malformed files read as empty."""
        try:
            raw = read_yaml(self.path)
        except (yaml.YAMLError, OSError) as exc:
            logger.warning("Registry %s unreadable (%s); treating as empty", self.path, exc)
            return RegistryData()
        if not isinstance(raw, dict):
            return RegistryData()
        instances: list[RegistryInstance] = []
        for item in raw.get("instances") or []:
            try:
                instances.append(RegistryInstance.model_validate(item))
            except ValidationError:
                logger.debug("Skipping malformed registry instance %r", item)
        projects: dict[str, RegistryProject] = {}
        raw_projects = raw.get("projects")
        if isinstance(raw_projects, dict):
            for name, item in raw_projects.items():
                try:
                    projects[str(name)] = RegistryProject.model_validate(item)
                except ValidationError:
                    logger.debug("Skipping malformed registry project %r", name)
        return RegistryData(
            instances=instances,
            projects=projects,
            last_updated=str(raw.get("last_updated") or raw.get("lastUpdated") or utc_now_iso()),
        )

    @staticmethod
    def prune(data: RegistryData) -> RegistryData:
        """Drop instances whose PID is gone and idle projects whose orchestrator died.

        Pure and idempotent: pruning a pruned registry returns an equal one.
        """
        instances = [inst for inst in data.instances if is_process_alive(inst.pid)]
        projects: dict[str, RegistryProject] = {}
        for name, project in data.projects.items():
            if project.orchestrator_pid is not None and not is_process_alive(
                project.orchestrator_pid
            ):
                project = project.model_copy(
                    update={"status": ProjectStatus.IDLE, "orchestrator_pid": None}
                )
            projects[name] = project
        return RegistryData(instances=instances, projects=projects, last_updated=data.last_updated)

    @staticmethod
    def upsert(data: RegistryData, instance: RegistryInstance) -> RegistryData:
        """Insert or replace the instance for ``instance.project_dir``."""
        others = [inst for inst in data.instances if not _same_dir(inst.project_dir, instance.project_dir)]
        return RegistryData(
            instances=[*others, instance], projects=data.projects, last_updated=data.last_updated
        )

    def write(self, data: RegistryData) -> None:
        data.last_updated = utc_now_iso()
        atomic_write_yaml(self.path, data.to_payload())

    def _read_pruned(self) -> RegistryData:
        return self.prune(self.read())

    # ── Instance lifecycle ────────────────────────────────────────────

    def register_instance(
        self,
        project_dir: str | Path,
        *,
        pid: int | None = None,
        prefix: str | None = None,
    ) -> RegistryInstance:
        resolved = str(Path(project_dir).resolve())
        with locked_path(self.path):
            data = self._read_pruned()
            existing = self.instance_for(resolved, data=data)
            instance = RegistryInstance(
                project_prefix=prefix or project_prefix_for(resolved),
                project_dir=resolved,
                pid=pid if pid is not None else os.getpid(),
                is_bot_owner=bool(existing and existing.is_bot_owner),
            )
            self.write(self.upsert(data, instance))
        logger.info("Registered instance %s (pid %s)", instance.project_prefix, instance.pid)
        return instance

    def deregister_instance(self, project_dir: str | Path) -> None:
        with locked_path(self.path):
            data = self._read_pruned()
            data.instances = [inst for inst in data.instances if not _same_dir(inst.project_dir, project_dir)]
            self.write(data)
        logger.info("Deregistered instance for %s", project_dir)

    def instance_for(
        self, project_dir: str | Path, *, data: RegistryData | None = None
    ) -> RegistryInstance | None:
        data = data if data is not None else self._read_pruned()
        for inst in data.instances:
            if _same_dir(inst.project_dir, project_dir):
                return inst
        return None

    def list_instances(self) -> list[RegistryInstance]:
        return list(self._read_pruned().instances)

    # ── Bot ownership ─────────────────────────────────────────────────

    def claim_bot_ownership(self, project_dir: str | Path) -> bool:
        """Try to become the single owner of the messaging connection.

        Succeeds when this project already owns it, nobody owns it, or the
        recorded owner's process is dead (pruned away on read).
        """
        with locked_path(self.path):
            data = self._read_pruned()
            mine = self.instance_for(project_dir, data=data)
            if mine is None:
                resolved = str(Path(project_dir).resolve())
                mine = RegistryInstance(
                    project_prefix=project_prefix_for(resolved), project_dir=resolved, pid=os.getpid()
                )
                data = self.upsert(data, mine)
            if mine.is_bot_owner:
                return True
            for inst in data.instances:
                if inst.is_bot_owner and not _same_dir(inst.project_dir, project_dir):
                    logger.info("Bot owned by %s (pid %s)", inst.project_prefix, inst.pid)
                    return False
            updated: list[RegistryInstance] = []
            for inst in data.instances:
                owner = _same_dir(inst.project_dir, project_dir)
                updated.append(inst.model_copy(update={"is_bot_owner": owner}))
            data.instances = updated
            self.write(data)
            logger.info("Claimed bot ownership for %s", project_dir)
            return True

    def release_bot_ownership(self, project_dir: str | Path) -> None:
        with locked_path(self.path):
            data = self._read_pruned()
            changed = False
            updated: list[RegistryInstance] = []
            for inst in data.instances:
                if inst.is_bot_owner and _same_dir(inst.project_dir, project_dir):
                    inst = inst.model_copy(update={"is_bot_owner": False})
                    changed = True
                updated.append(inst)
            if changed:
                data.instances = updated
                self.write(data)

    def owner(self) -> RegistryInstance | None:
        for inst in self._read_pruned().instances:
            if inst.is_bot_owner:
                return inst
        return None

    def find_by_prefix(self, prefix: str) -> RegistryInstance | None:
        """Resolve a (case-insensitive) project prefix to one live instance.

        An exact match wins; otherwise a unique ``startswith`` match.
        """
        needle = str(prefix or "").strip().lower()
        if not needle:
            return None
        instances = self._read_pruned().instances
        for inst in instances:
            if inst.project_prefix.lower() == needle:
                return inst
        matches = [inst for inst in instances if inst.project_prefix.lower().startswith(needle)]
        return matches[0] if len(matches) == 1 else None

    # ── Heartbeat project entries ─────────────────────────────────────

    def update_project_heartbeat(
        self,
        *,
        name: str,
        path: str | Path,
        status: ProjectStatus | str,
        current_phase: int | None,
        pid: int | None,
        commands_version: str = "unknown",
        last_completed_phase: int | None = None,
    ) -> RegistryProject:
        with locked_path(self.path):
            data = self.read()
            existing = data.projects.get(name)
            project = RegistryProject(
                name=name,
                path=str(Path(path).resolve()),
                status=ProjectStatus(status),
                heartbeat=utc_now_iso(),
                current_phase=current_phase,
                commands_version=commands_version,
                orchestrator_pid=pid,
                registered_at=existing.registered_at if existing else utc_now_iso(),
                last_completed_phase=(
                    last_completed_phase
                    if last_completed_phase is not None
                    else (existing.last_completed_phase if existing else None)
                ),
            )
            data.projects[name] = project
            self.write(data)
        return project

    def list_projects(self, *, prune: bool = True) -> list[RegistryProject]:
        """Heartbeat entries; when *prune* is set, dead PIDs are cleared and persisted."""
        with locked_path(self.path):
            data = self.read()
            if prune:
                pruned = self.prune(data)
                if pruned.model_dump() != data.model_dump():
                    self.write(pruned)
                data = pruned
        return sorted(data.projects.values(), key=lambda proj: proj.name)
