"""Manifest store: the single YAML state document under ``.agents/``.

Every writer reads the whole document, deep-merges its change and writes the
result back atomically, so fields this module does not know about survive.
"""

from __future__ import annotations

import copy
import datetime as dt
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from piv_orchestrator.errors import ManifestError
from piv_orchestrator.file_io import atomic_write_yaml, locked_path, read_yaml
from piv_orchestrator.schemas import (
    FailureEntry,
    FailureResolution,
    NotificationEntry,
    PhaseStatus,
    parse_utc_iso,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

STATE_DIR = ".agents"
MANIFEST_NAME = "manifest.yaml"
DEFAULT_PROFILE_FRESHNESS_DAYS = 7

APPEND_ONLY_KEYS = (
    "plans",
    "executions",
    "validations",
    "checkpoints",
    "failures",
    "notifications",
    "fidelity",
    "drift",
)


def manifest_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / STATE_DIR / MANIFEST_NAME


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _normalise_phase_keys(phases: Any) -> dict[int, Any]:
    if not isinstance(phases, dict):
        return {}
    out: dict[int, Any] = {}
    for key, value in phases.items():
        try:
            out[int(key)] = value
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric phase key %r in manifest", key)
    return out


class ManifestStore:
    """Read / deep-merge / write access to ``.agents/manifest.yaml``."""

    def __init__(self, project_dir: str | Path) -> None:
        self.project_dir = Path(project_dir)
        self.path = manifest_path(self.project_dir)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> dict[str, Any]:
        """Load the manifest; a missing file yields an empty skeleton.

        Raises ``ManifestError`` when the YAML is malformed or not a mapping.
        """
        try:
            data = read_yaml(self.path)
        except yaml.YAMLError as exc:
            raise ManifestError(f"Manifest is corrupt: {self.path}: {exc}") from exc
        except OSError as exc:
            raise ManifestError(f"Manifest unreadable: {self.path}: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ManifestError(
                f"Manifest is corrupt: expected a mapping, got {type(data).__name__}"
            )
        data["phases"] = _normalise_phase_keys(data.get("phases"))
        return data

    def _write(self, data: dict[str, Any]) -> dict[str, Any]:
        data["last_updated"] = utc_now_iso()
        atomic_write_yaml(self.path, data)
        return data

    def merge(self, patch: dict[str, Any]) -> dict[str, Any]:
        """Deep-merge *patch* into the stored manifest and return the result."""
        with locked_path(self.path):
            current = self.read()
            patch = dict(patch)
            if "phases" in patch:
                patch["phases"] = _normalise_phase_keys(patch["phases"])
            return self._write(_deep_merge(current, patch))

    def update(self, mutator: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        """Apply an in-place *mutator* to a fresh read and write the result."""
        with locked_path(self.path):
            current = self.read()
            mutator(current)
            return self._write(current)

    def append(self, key: str, entry: dict[str, Any]) -> dict[str, Any]:
        """Append *entry* to the list stored at *key*."""

        def _mutate(manifest: dict[str, Any]) -> None:
            existing = manifest.get(key)
            items = list(existing) if isinstance(existing, list) else []
            items.append(copy.deepcopy(entry))
            manifest[key] = items

        return self.update(_mutate)

    # ── Typed convenience writers ─────────────────────────────────────

    def set_phase_stage(self, phase: int, **stages: str) -> dict[str, Any]:
        return self.merge({"phases": {phase: {k: str(v) for k, v in stages.items()}}})

    def add_failure(self, failure: FailureEntry) -> dict[str, Any]:
        return self.append("failures", failure.model_dump(mode="json"))

    def add_notification(self, notification: NotificationEntry) -> dict[str, Any]:
        return self.append("notifications", notification.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Pure query helpers over a manifest dict
# ---------------------------------------------------------------------------


def phase_numbers(manifest: dict[str, Any]) -> list[int]:
    return sorted(_normalise_phase_keys(manifest.get("phases")))


def phase_status(manifest: dict[str, Any], phase: int) -> PhaseStatus:
    raw = _normalise_phase_keys(manifest.get("phases")).get(phase)
    if not isinstance(raw, dict):
        return PhaseStatus()
    try:
        return PhaseStatus.model_validate(raw)
    except ValueError:
        logger.warning("Phase %s has unrecognised status values: %r", phase, raw)
        return PhaseStatus()


def pending_failures(manifest: dict[str, Any]) -> list[tuple[int, dict[str, Any]]]:
    """``(index, entry)`` pairs for failures still awaiting resolution."""
    out: list[tuple[int, dict[str, Any]]] = []
    for idx, entry in enumerate(manifest.get("failures") or []):
        if isinstance(entry, dict) and entry.get("resolution") == FailureResolution.PENDING.value:
            out.append((idx, entry))
    return out


def active_checkpoints(manifest: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        entry
        for entry in manifest.get("checkpoints") or []
        if isinstance(entry, dict) and entry.get("status") == "active"
    ]


def freshness_window_days(
    manifest: dict[str, Any], default: int = DEFAULT_PROFILE_FRESHNESS_DAYS
) -> int:
    """``settings.profile_freshness_days`` from the manifest, else *default*."""
    settings = manifest.get("settings") or {}
    try:
        return int(settings.get("profile_freshness_days", default))
    except (TypeError, ValueError):
        return default


def profile_freshness(
    profile: dict[str, Any],
    window_days: int,
    *,
    now: dt.datetime | None = None,
) -> str:
    """``"fresh"`` or ``"stale"`` from ``generated_at`` and the freshness window.

    A missing or unparseable ``generated_at`` falls back to the stored flag.
    """
    generated = parse_utc_iso(profile.get("generated_at"))
    if generated is None:
        return "stale" if profile.get("freshness") == "stale" else "fresh"
    current = now or dt.datetime.now(dt.timezone.utc)
    return "stale" if current - generated > dt.timedelta(days=window_days) else "fresh"


def refresh_profile_freshness(
    manifest: dict[str, Any],
    *,
    now: dt.datetime | None = None,
    default_days: int = DEFAULT_PROFILE_FRESHNESS_DAYS,
) -> dict[str, Any]:
    """Return a ``profiles`` patch with recomputed ``freshness`` flags."""
    window = freshness_window_days(manifest, default_days)
    patch: dict[str, Any] = {}
    for name, profile in (manifest.get("profiles") or {}).items():
        if isinstance(profile, dict):
            patch[name] = {"freshness": profile_freshness(profile, window, now=now)}
    return patch


def latest_entry(manifest: dict[str, Any], key: str, *, phase: int | None = None) -> dict | None:
    for entry in reversed(manifest.get(key) or []):
        if not isinstance(entry, dict):
            continue
        if phase is None or entry.get("phase") == phase:
            return entry
    return None
