"""Pure next-action decision over a manifest snapshot.

Rules are evaluated in strict priority order and the first match wins:

1. preflight required but not passed      -> ``preflight``
2. pending failure with retries left      -> retry its command
3. pending failure needing escalation      -> ``rollback`` (and escalate)
4. active checkpoint, execution unfinished -> resume ``execute`` for that phase
5. no technology profiles                 -> ``research-stack``
6. a stale profile                        -> ``research-stack`` (refresh)
7. queued new-technology research         -> ``research-stack``
8. no requirements document               -> ``create-prd``
9. first unfinished phase                 -> next stage (plan/execute/validate/commit)
10. everything complete                   -> ``done``
"""

from __future__ import annotations

import datetime as dt
from typing import Any

from piv_orchestrator.commands import Command
from piv_orchestrator.errors import needs_escalation
from piv_orchestrator.manifest import (
    DEFAULT_PROFILE_FRESHNESS_DAYS,
    active_checkpoints,
    freshness_window_days,
    pending_failures,
    phase_numbers,
    phase_status,
    profile_freshness,
)
from piv_orchestrator.preflight import preflight_required
from piv_orchestrator.schemas import (
    ExecutionStatus,
    NextAction,
    PlanStatus,
    ValidationStatus,
)


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _retry_action(index: int, failure: dict[str, Any]) -> NextAction:
    try:
        command = Command.parse(str(failure.get("command") or ""))
    except ValueError:
        command = Command.EXECUTE
    retries = int(failure.get("retry_count") or 0)
    budget = int(failure.get("max_retries") or 0)
    return NextAction(
        command=command.value,
        phase=_as_int(failure.get("phase")),
        reason=(
            f"Retry {command.value} after {failure.get('error_category')} "
            f"(attempt {retries + 1} of {budget})"
        ),
        failure_index=index,
    )


def _stage_action(manifest: dict[str, Any], phase: int, has_checkpoint: bool) -> NextAction | None:
    status = phase_status(manifest, phase)
    if status.plan != PlanStatus.COMPLETE:
        return NextAction(
            command=Command.PLAN_FEATURE.value, phase=phase, reason=f"Phase {phase} has no plan yet"
        )
    if status.execution != ExecutionStatus.COMPLETE:
        return NextAction(
            command=Command.EXECUTE.value, phase=phase, reason=f"Phase {phase} plan is ready to execute"
        )
    if status.validation != ValidationStatus.PASS:
        return NextAction(
            command=Command.VALIDATE.value,
            phase=phase,
            reason=f"Phase {phase} executed; validation is {status.validation.value}",
        )
    if has_checkpoint:
        return NextAction(
            command=Command.COMMIT.value,
            phase=phase,
            reason=f"Phase {phase} validated; commit and resolve its checkpoint",
        )
    return None


def determine_next_action(
    manifest: dict[str, Any],
    *,
    now: dt.datetime | None = None,
    default_freshness_days: int = DEFAULT_PROFILE_FRESHNESS_DAYS,
    only_phase: int | None = None,
) -> NextAction:
    """Return the single recommended action for *manifest*.

    *only_phase* narrows rules 4 and 9 to that phase; ``done`` then means
    that phase is complete.
    """
    # 1. Credential preflight gate.
    if preflight_required(manifest):
        preflight = manifest.get("preflight") or {}
        if not isinstance(preflight, dict) or preflight.get("status") != "passed":
            return NextAction(
                command=Command.PREFLIGHT.value,
                reason="Credentials must be verified before autonomous execution",
            )

    # 2./3. Pending failures, oldest first.
    pending = pending_failures(manifest)
    for index, failure in pending:
        if not needs_escalation(failure):
            return _retry_action(index, failure)
    if pending:
        index, failure = pending[0]
        return NextAction(
            command=Command.ROLLBACK.value,
            phase=_as_int(failure.get("phase")),
            argument=failure.get("checkpoint") or None,
            reason=(
                f"{failure.get('command')} failed with {failure.get('error_category')} "
                "and has no retries left; roll back and escalate"
            ),
            failure_index=index,
        )

    # 4. Interrupted execution under an active checkpoint.
    checkpoints = active_checkpoints(manifest)
    checkpointed_phases = {_as_int(entry.get("phase")) for entry in checkpoints}
    for entry in checkpoints:
        phase = _as_int(entry.get("phase"))
        if phase is None or (only_phase is not None and phase != only_phase):
            continue
        if phase_status(manifest, phase).execution != ExecutionStatus.COMPLETE:
            return NextAction(
                command=Command.EXECUTE.value,
                phase=phase,
                argument=str(entry.get("tag") or "") or None,
                reason=f"Resume interrupted execution of phase {phase} (checkpoint {entry.get('tag')})",
            )

    # 5.-7. Technology profiles and research queue.
    profiles = manifest.get("profiles") or {}
    if not isinstance(profiles, dict) or not profiles:
        return NextAction(command=Command.RESEARCH_STACK.value, reason="No technology profiles exist")
    window = freshness_window_days(manifest, default_freshness_days)
    stale = sorted(
        name
        for name, profile in profiles.items()
        if isinstance(profile, dict) and profile_freshness(profile, window, now=now) == "stale"
    )
    if stale:
        return NextAction(
            command=Command.RESEARCH_STACK.value,
            argument=" ".join(stale),
            reason=f"Refresh stale profiles: {', '.join(stale)}",
        )
    queued = [str(item) for item in manifest.get("pending_research") or [] if str(item).strip()]
    if queued:
        return NextAction(
            command=Command.RESEARCH_STACK.value,
            argument=" ".join(queued),
            reason=f"Research queued technologies: {', '.join(queued)}",
        )

    # 8. Requirements document.
    prd = manifest.get("prd")
    if not isinstance(prd, dict) or not prd.get("path"):
        return NextAction(command=Command.CREATE_PRD.value, reason="No requirements document")

    # 9. Next missing stage of the first unfinished phase.
    phases = phase_numbers(manifest)
    if only_phase is not None:
        action = _stage_action(manifest, only_phase, only_phase in checkpointed_phases)
        return action or NextAction(
            command=Command.DONE.value, phase=only_phase, reason=f"Phase {only_phase} complete"
        )
    if not phases:
        return NextAction(
            command=Command.PLAN_FEATURE.value,
            phase=1,
            reason="Requirements exist but no phases are tracked yet",
            confidence="medium",
        )
    for phase in phases:
        action = _stage_action(manifest, phase, phase in checkpointed_phases)
        if action is not None:
            return action

    # 10.
    return NextAction(command=Command.DONE.value, reason="All phases complete")
