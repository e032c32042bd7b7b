"""Failure bookkeeping: classify, record, roll back and escalate."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from piv_orchestrator import git_tools
from piv_orchestrator.errors import (
    ErrorCategory,
    ErrorPolicy,
    can_retry,
    classify_error,
    policy_for,
)
from piv_orchestrator.hooks import format_error_block
from piv_orchestrator.manifest import ManifestStore
from piv_orchestrator.schemas import (
    ExecutionStatus,
    FailureEntry,
    FailureResolution,
    NotificationEntry,
    NotificationSeverity,
    ValidationStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FailureOutcome:
    """What the handler decided for one failure."""

    category: ErrorCategory
    policy: ErrorPolicy
    entry: FailureEntry
    action: str  # "retry" | "auto_rollback_retry" | "escalated"
    rolled_back: bool
    error_block: str

    @property
    def blocking(self) -> bool:
        return self.action == "escalated"


def _same_slot(entry: dict[str, Any], phase: int | None, command: str) -> bool:
    return entry.get("phase") == phase and entry.get("command") == command


class FailureHandler:
    """Apply the retry / rollback / escalation policy for a failed stage."""

    def __init__(
        self,
        project_dir: str | Path,
        store: ManifestStore,
        *,
        rollback: Callable[[Path, str], None] = git_tools.rollback,
        echo: Callable[[str], None] = print,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.store = store
        self._rollback = rollback
        self._echo = echo

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def handle(
        self,
        command: str,
        phase: int | None,
        error_text: str,
        *,
        checkpoint: str | None = None,
        category: ErrorCategory | None = None,
    ) -> FailureOutcome:
        """Record a failure of *command* in *phase* and decide what happens next."""
        category = category or classify_error(error_text)
        policy = policy_for(category)
        manifest = self.store.read()
        failures = [f for f in manifest.get("failures") or [] if isinstance(f, dict)]

        pending_index: int | None = None
        for idx, raw in enumerate(manifest.get("failures") or []):
            if (
                isinstance(raw, dict)
                and _same_slot(raw, phase, command)
                and raw.get("resolution") == FailureResolution.PENDING.value
            ):
                pending_index = idx
        details = " ".join(str(error_text or "").split())[:1000]

        if pending_index is not None:
            previous = FailureEntry.model_validate(manifest["failures"][pending_index])
            entry = previous.model_copy(
                update={
                    "error_category": category.value,
                    "retry_count": previous.retry_count + 1,
                    "max_retries": policy.max_retries,
                    "checkpoint": checkpoint or previous.checkpoint,
                    "details": details,
                    "timestamp": utc_now_iso(),
                }
            )
        else:
            entry = FailureEntry(
                command=command,
                phase=phase,
                error_category=category.value,
                retry_count=0,
                max_retries=policy.max_retries,
                checkpoint=checkpoint,
                details=details,
            )

        rolled_back = False
        if policy.needs_human:
            action = "escalated"
            entry = entry.model_copy(update={"resolution": FailureResolution.ESCALATED_BLOCKING})
        elif category == ErrorCategory.PARTIAL_EXECUTION:
            seen_before = any(
                _same_slot(f, phase, command)
                and f.get("resolution") == FailureResolution.AUTO_ROLLBACK_RETRY.value
                for f in failures
            )
            rolled_back = self._try_rollback(entry.checkpoint, entry.phase)
            if seen_before:
                action = "escalated"
                entry = entry.model_copy(
                    update={"resolution": FailureResolution.ESCALATED_BLOCKING}
                )
            else:
                action = "auto_rollback_retry"
                entry = entry.model_copy(
                    update={"resolution": FailureResolution.AUTO_ROLLBACK_RETRY}
                )
        elif not can_retry(entry):
            rolled_back = self._try_rollback(entry.checkpoint, entry.phase)
            action = "escalated"
            entry = entry.model_copy(update={"resolution": FailureResolution.ESCALATED_BLOCKING})
        else:
            action = "retry"

        self._persist(pending_index, entry)
        self._notify(action, entry, rolled_back)

        retries_remaining = max(0, entry.max_retries - entry.retry_count)
        block = format_error_block(
            category=category.value,
            command=command,
            phase=phase,
            details=details,
            retry_eligible=action != "escalated",
            retries_remaining=retries_remaining if action == "retry" else 0,
            checkpoint=entry.checkpoint,
        )
        self._echo(block)
        log = logger.error if action == "escalated" else logger.warning
        log("%s failed (%s) -> %s", command, category.value, action)
        return FailureOutcome(
            category=category,
            policy=policy,
            entry=entry,
            action=action,
            rolled_back=rolled_back,
            error_block=block,
        )

    # ------------------------------------------------------------------
    # Follow-up transitions
    # ------------------------------------------------------------------

    def resolve_pending(
        self,
        command: str,
        phase: int | None,
        resolution: FailureResolution = FailureResolution.AUTO_FIXED,
    ) -> bool:
        """Close the pending failure for (phase, command) after a successful retry."""
        changed = False

        def _mutate(manifest: dict[str, Any]) -> None:
            nonlocal changed
            for entry in manifest.get("failures") or []:
                if (
                    isinstance(entry, dict)
                    and _same_slot(entry, phase, command)
                    and entry.get("resolution") == FailureResolution.PENDING.value
                ):
                    entry["resolution"] = resolution.value
                    changed = True

        self.store.update(_mutate)
        if changed:
            logger.info(
                "Resolved pending %s failure for phase %s as %s", command, phase, resolution.value
            )
        return changed

    def escalate_pending(self, index: int) -> FailureEntry | None:
        """Roll back to the failure's checkpoint and escalate it (exhausted retries)."""
        failures = self.store.read().get("failures") or []
        raw = failures[index] if 0 <= index < len(failures) else None
        if not isinstance(raw, dict) or raw.get("resolution") != FailureResolution.PENDING.value:
            return None
        entry = FailureEntry.model_validate(raw)
        rolled_back = self._try_rollback(entry.checkpoint, entry.phase)
        entry = entry.model_copy(update={"resolution": FailureResolution.ESCALATED_BLOCKING})
        self._persist(index, entry)
        self._notify("escalated", entry, rolled_back)
        self._echo(
            format_error_block(
                category=entry.error_category,
                command=entry.command,
                phase=entry.phase,
                details=entry.details,
                retry_eligible=False,
                retries_remaining=0,
                checkpoint=entry.checkpoint,
            )
        )
        return entry

    def record_unexpected(self, command: str, phase: int | None, details: str) -> FailureEntry:
        """Persist an internal fault as ``partial_execution`` with one retry."""
        entry = FailureEntry(
            command=command,
            phase=phase,
            error_category=ErrorCategory.PARTIAL_EXECUTION.value,
            retry_count=0,
            max_retries=1,
            details=" ".join(str(details or "").split())[:1000],
        )
        self.store.add_failure(entry)
        self._echo(
            format_error_block(
                category=entry.error_category,
                command=command,
                phase=phase,
                details=entry.details,
                retry_eligible=True,
                retries_remaining=1,
                checkpoint=None,
            )
        )
        return entry

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _try_rollback(self, checkpoint: str | None, phase: int | None) -> bool:
        """Restore the tree to *checkpoint*; the phase's later stages start over."""
        if not checkpoint:
            return False
        try:
            self._rollback(self.project_dir, checkpoint)
        except (git_tools.GitError, OSError) as exc:
            logger.error("Rollback to %s failed: %s", checkpoint, exc)
            return False
        if phase is not None:
            self.store.set_phase_stage(
                phase,
                execution=ExecutionStatus.NOT_STARTED.value,
                validation=ValidationStatus.NOT_RUN.value,
            )
        return True

    def _persist(self, index: int | None, entry: FailureEntry) -> None:
        payload = entry.model_dump(mode="json")
        if index is None:
            self.store.append("failures", payload)
            return

        def _mutate(manifest: dict[str, Any]) -> None:
            failures = manifest.get("failures") or []
            if index < len(failures) and isinstance(failures[index], dict):
                failures[index].update(payload)
            else:
                failures.append(payload)
            manifest["failures"] = failures

        self.store.update(_mutate)

    def _notify(self, action: str, entry: FailureEntry, rolled_back: bool) -> None:
        if action == "retry":
            return
        suffix = f" Rolled back to {entry.checkpoint}." if rolled_back else ""
        if action == "escalated":
            notification = NotificationEntry(
                type="escalation",
                severity=NotificationSeverity.BLOCKING,
                phase=entry.phase,
                details=(
                    f"{entry.command} failed ({entry.error_category}) and needs a human."
                    f"{suffix} {entry.details}"
                )[:1000],
            )
        else:
            notification = NotificationEntry(
                type="auto_rollback_retry",
                severity=NotificationSeverity.INFO,
                phase=entry.phase,
                details=f"{entry.command} partially executed; retrying from a clean tree.{suffix}",
            )
        self.store.add_notification(notification)
