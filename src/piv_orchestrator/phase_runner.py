"""Phase runner - drives the plan / execute / validate / commit pipeline.

Each loop iteration reads the manifest, asks the state machine for the next
action, runs it and records the outcome. Failures go through the failure
handler; the loop stops when the pipeline is done, a failure blocks, or a
shutdown is requested. Pausing takes effect between actions only.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from piv_orchestrator import git_tools
from piv_orchestrator.bridge import ApprovalBroker, ApprovalDecision
from piv_orchestrator.budget import BUDGET_RULES, calculate_budget, count_plan_tasks
from piv_orchestrator.commands import Command, command_prompt, fix_prompt, session_pairing
from piv_orchestrator.drift import DriftRunner
from piv_orchestrator.errors import ErrorCategory, classify_error
from piv_orchestrator.failure_handler import FailureHandler
from piv_orchestrator.fidelity import check_fidelity
from piv_orchestrator.heartbeat import infer_current_phase
from piv_orchestrator.manifest import (
    DEFAULT_PROFILE_FRESHNESS_DAYS,
    ManifestStore,
    freshness_window_days,
    latest_entry,
    phase_numbers,
    profile_freshness,
    refresh_profile_freshness,
)
from piv_orchestrator.preflight import format_report, run_preflight
from piv_orchestrator.schemas import (
    Budget,
    ExecutionStatus,
    NextAction,
    NotificationEntry,
    NotificationSeverity,
    PlanStatus,
    SessionResult,
    SignalAction,
    ValidationStatus,
    utc_now_iso,
)
from piv_orchestrator.session import SessionManager
from piv_orchestrator.state_machine import determine_next_action

logger = logging.getLogger(__name__)

MAX_VALIDATION_REPAIRS = 2
MAX_APPROVALS_PER_VALIDATION = 5
RETRY_BUDGET_FACTOR = 1.5
DEFAULT_MAX_ACTIONS = 200
DEFAULT_APPROVAL_TIMEOUT_SECONDS = 60 * 60


class RunOutcome(str, Enum):
    DONE = "done"
    BLOCKED = "blocked"
    STOPPED = "stopped"
    DRY_RUN = "dry_run"


EXIT_CODES = {
    RunOutcome.DONE: 0,
    RunOutcome.DRY_RUN: 0,
    RunOutcome.STOPPED: 0,
    RunOutcome.BLOCKED: 2,
}


@dataclass
class StageResult:
    """Outcome of one stage; failures carry text for the classifier."""

    ok: bool
    error_text: str = ""
    category: ErrorCategory | None = None
    checkpoint: str | None = None

    @classmethod
    def failed(
        cls,
        text: str,
        *,
        category: ErrorCategory | None = None,
        checkpoint: str | None = None,
    ) -> StageResult:
        return cls(ok=False, error_text=text, category=category, checkpoint=checkpoint)


def session_error_text(result: SessionResult) -> str:
    if result.error is None:
        return ""
    return f"{result.error.type.value}: {result.error.message}"


def reported_category(fields: dict[str, str]) -> ErrorCategory | None:
    """Category the agent reported in its hook block, if it is a known one."""
    raw = (fields.get("error_category") or "").strip().lower()
    try:
        return ErrorCategory(raw) if raw else None
    except ValueError:
        return None


def _as_int(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _truthy(value: Any) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "y"}


class PhaseRunner:
    """Run pipeline actions until done, blocked or stopped."""

    def __init__(
        self,
        project_dir: str | Path,
        store: ManifestStore,
        sessions: SessionManager,
        *,
        failures: FailureHandler | None = None,
        checkpoints: git_tools.CheckpointManager | None = None,
        drift: DriftRunner | None = None,
        approvals: ApprovalBroker | None = None,
        after_action: Callable[[], Any] | None = None,
        claude_binary: str = "claude",
        only_phase: int | None = None,
        default_freshness_days: int = DEFAULT_PROFILE_FRESHNESS_DAYS,
        max_actions: int = DEFAULT_MAX_ACTIONS,
        approval_timeout: float | None = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        echo: Callable[[str], None] = print,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.store = store
        self.sessions = sessions
        self.failures = failures or FailureHandler(self.project_dir, store, echo=echo)
        self.checkpoints = checkpoints or git_tools.CheckpointManager(self.project_dir, store)
        self.drift = drift or DriftRunner(self.project_dir, store, repair=self._repair_session)
        self.approvals = approvals
        self.after_action = after_action
        self.claude_binary = claude_binary
        self.only_phase = only_phase
        self.default_freshness_days = default_freshness_days
        self.max_actions = max(1, int(max_actions))
        self.approval_timeout = approval_timeout
        self._echo = echo

        self._stop_event = threading.Event()
        self._pause_event = threading.Event()
        self._pause_event.set()  # not paused initially
        self.current_action: NextAction | None = None
        self.last_action: NextAction | None = None
        self.actions_run = 0

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return not self._pause_event.is_set()

    def pause(self) -> None:
        logger.info("Pause requested; takes effect after the current action")
        self._pause_event.clear()

    def resume(self) -> None:
        logger.info("Resuming")
        self._pause_event.set()

    def request_stop(self) -> None:
        self._stop_event.set()
        self._pause_event.set()
        self.sessions.cancel_active()

    def apply_signal(self, action: SignalAction | str) -> None:
        action = SignalAction(action)
        if action is SignalAction.PAUSE:
            self.pause()
        elif action in (SignalAction.GO, SignalAction.RESUME):
            self.resume()
        elif action is SignalAction.SHUTDOWN:
            logger.warning("Shutdown signal received")
            self.request_stop()

    def status_text(self) -> str:
        current = self.current_action
        state = "paused" if self.paused else "running"
        if current is None:
            return f"{state}; idle"
        where = f" phase {current.phase}" if current.phase is not None else ""
        return f"{state}; {current.command}{where} ({current.reason})"

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def next_action(self, *, record: bool = True) -> NextAction:
        """Pick the next action; with *record*, persist freshness flags and the choice."""
        manifest = self.store.read()
        if not record:
            return determine_next_action(
                manifest,
                default_freshness_days=self.default_freshness_days,
                only_phase=self.only_phase,
            )
        freshness = refresh_profile_freshness(manifest, default_days=self.default_freshness_days)
        profiles = manifest.get("profiles") or {}
        stored = {
            name: profile.get("freshness") for name, profile in profiles.items() if isinstance(profile, dict)
        }
        if any(stored.get(name) != patch["freshness"] for name, patch in freshness.items()):
            manifest = self.store.merge({"profiles": freshness})
        action = determine_next_action(
            manifest,
            default_freshness_days=self.default_freshness_days,
            only_phase=self.only_phase,
        )
        self.store.merge(
            {"next_action": {**action.model_dump(mode="json"), "computed_at": utc_now_iso()}}
        )
        return action

    def run(self, *, dry_run: bool = False) -> RunOutcome:
        if dry_run:
            action = self.next_action(record=False)
            where = f" (phase {action.phase})" if action.phase is not None else ""
            self._echo(f"Next action: {action.command}{where} - {action.reason} [{action.confidence}]")
            return RunOutcome.DRY_RUN

        while True:
            self._pause_event.wait()
            if self._stop_event.is_set():
                return RunOutcome.STOPPED
            if self.actions_run >= self.max_actions:
                self.store.add_notification(
                    NotificationEntry(
                        type="action_limit",
                        severity=NotificationSeverity.BLOCKING,
                        details=f"Stopped after {self.actions_run} actions without finishing.",
                    )
                )
                self._after_action()
                return RunOutcome.BLOCKED

            action = self.next_action()
            self.current_action = action
            self.last_action = action
            self.actions_run += 1
            logger.info(
                "Action %d: %s phase=%s - %s",
                self.actions_run,
                action.command,
                action.phase,
                action.reason,
            )
            try:
                outcome = self.run_action(action)
            finally:
                self.current_action = None
                self._after_action()
            if outcome is not None:
                return outcome

    def _after_action(self) -> None:
        if self.after_action is None:
            return
        try:
            self.after_action()
        except Exception:
            logger.warning("After-action hook failed", exc_info=True)

    def run_action(self, action: NextAction) -> RunOutcome | None:
        """Run one action; returns an outcome when the loop should stop."""
        command = Command.parse(action.command)
        if command is Command.DONE:
            return self._finish(action)
        if command is Command.PREFLIGHT:
            report = run_preflight(self.store, claude_binary=self.claude_binary)
            self._echo(format_report(report))
            return None if report.passed else RunOutcome.BLOCKED
        if command is Command.ROLLBACK:
            if action.failure_index is not None:
                self.failures.escalate_pending(action.failure_index)
            return RunOutcome.BLOCKED

        stages: dict[Command, Callable[[NextAction], StageResult]] = {
            Command.PRIME: self._simple_stage,
            Command.FIX: self._simple_stage,
            Command.RESEARCH_STACK: self._research_stage,
            Command.CREATE_PRD: self._prd_stage,
            Command.PLAN_FEATURE: self._plan_stage,
            Command.EXECUTE: self._execute_stage,
            Command.VALIDATE: self._validate_stage,
            Command.COMMIT: self._commit_stage,
        }
        result = stages[command](action)
        if self._stop_event.is_set() and not result.ok:
            logger.info("%s interrupted by shutdown; not recording a failure", command.value)
            return RunOutcome.STOPPED
        if result.ok:
            if action.failure_index is not None:
                self.failures.resolve_pending(command.value, action.phase)
            return None
        outcome = self.failures.handle(
            command.value,
            action.phase,
            result.error_text,
            checkpoint=result.checkpoint,
            category=result.category,
        )
        return RunOutcome.BLOCKED if outcome.blocking else None

    def _finish(self, action: NextAction) -> RunOutcome:
        scope = f"Phase {action.phase}" if action.phase is not None else "All phases"
        self.store.add_notification(
            NotificationEntry(
                type="pipeline_complete",
                severity=NotificationSeverity.INFO,
                phase=action.phase,
                details=f"{scope} complete.",
            )
        )
        self._echo(f"{scope} complete.")
        return RunOutcome.DONE

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _budget(self, command: Command, action: NextAction) -> Budget:
        manifest = self.store.read()
        budget = calculate_budget(command, self.project_dir, manifest, action.phase)
        if action.failure_index is None:
            return budget
        failures = manifest.get("failures") or []
        failure = failures[action.failure_index] if action.failure_index < len(failures) else {}
        attempts = (_as_int(failure.get("retry_count")) or 0) + 1 if isinstance(failure, dict) else 1
        rule = BUDGET_RULES[command]
        factor = RETRY_BUDGET_FACTOR**attempts
        turns = min(rule.max_turns, int(budget.max_turns * factor))
        timeout_ms = min(rule.max_timeout_seconds * 1000, int(budget.timeout_ms * factor))
        return Budget(
            max_turns=turns,
            timeout_ms=timeout_ms,
            reasoning=f"{budget.reasoning}; retry x{factor:.2f}",
        )

    def _run_pairing(
        self,
        command: Command,
        action: NextAction,
        *,
        plan_path: str | None = None,
        argument: str | None = None,
    ) -> SessionResult:
        budget = self._budget(command, action)
        logger.info(
            "Budget for %s: %s turns, %ss (%s)",
            command.value,
            budget.max_turns,
            budget.timeout_ms // 1000,
            budget.reasoning,
        )
        prompts = session_pairing(command, phase=action.phase, plan_path=plan_path, argument=argument)
        return self.sessions.run_pairing(prompts, budget)

    def _repair_session(self, details: str) -> SessionResult:
        budget = calculate_budget(Command.FIX, self.project_dir, self.store.read())
        return self.sessions.run_pairing(session_pairing(Command.FIX, argument=details), budget)

    def _failed_session(self, result: SessionResult, *, checkpoint: str | None = None) -> StageResult:
        return StageResult.failed(
            session_error_text(result),
            category=reported_category(result.structured_fields),
            checkpoint=checkpoint,
        )

    def _plan_path(self, phase: int) -> str | None:
        plan = latest_entry(self.store.read(), "plans", phase=phase) or {}
        value = plan.get("plan_file") or plan.get("path")
        return str(value) if value else None

    def _resolve_phase(self, action: NextAction) -> int:
        if action.phase is not None:
            return action.phase
        return infer_current_phase(self.store.read()) or 1

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _simple_stage(self, action: NextAction) -> StageResult:
        command = Command.parse(action.command)
        result = self._run_pairing(command, action, argument=action.argument)
        return StageResult(ok=True) if result.ok else self._failed_session(result)

    def _research_stage(self, action: NextAction) -> StageResult:
        result = self._run_pairing(Command.RESEARCH_STACK, action, argument=action.argument)
        if not result.ok:
            return self._failed_session(result)

        manifest = self.store.read()
        profiles = manifest.get("profiles") or {}
        if not isinstance(profiles, dict) or not profiles:
            return StageResult.failed(
                "research-stack finished without producing any technology profiles",
                category=ErrorCategory.PARTIAL_EXECUTION,
            )
        requested = (action.argument or "").split()
        queued = [str(item) for item in manifest.get("pending_research") or []]
        remaining = [item for item in queued if item not in profiles]
        if remaining != queued:
            self.store.merge({"pending_research": remaining})

        window = freshness_window_days(manifest, self.default_freshness_days)
        unresolved = [
            name
            for name in requested
            if name in remaining
            or (
                isinstance(profiles.get(name), dict)
                and profile_freshness(profiles[name], window) == "stale"
            )
        ]
        if unresolved:
            return StageResult.failed(
                "research-stack did not produce fresh profiles for: " + ", ".join(unresolved),
                category=ErrorCategory.PARTIAL_EXECUTION,
            )
        return StageResult(ok=True)

    def _prd_stage(self, action: NextAction) -> StageResult:
        result = self._run_pairing(Command.CREATE_PRD, action)
        if not result.ok:
            return self._failed_session(result)
        fields = result.structured_fields
        if fields.get("prd_path"):
            self.store.merge({"prd": {"path": fields["prd_path"], "status": "complete"}})
        self._seed_phases(_as_int(fields.get("phases_total")))

        prd = self.store.read().get("prd")
        if not isinstance(prd, dict) or not prd.get("path"):
            return StageResult.failed(
                "create-prd finished without recording a PRD path",
                category=ErrorCategory.PARTIAL_EXECUTION,
            )
        return StageResult(ok=True)

    def _seed_phases(self, total: int | None) -> None:
        """Add not-started entries for phases the PRD defines but the manifest lacks."""
        if not total or total < 1:
            return
        existing = set(phase_numbers(self.store.read()))
        missing = {
            phase: {
                "plan": PlanStatus.NOT_STARTED.value,
                "execution": ExecutionStatus.NOT_STARTED.value,
                "validation": ValidationStatus.NOT_RUN.value,
            }
            for phase in range(1, total + 1)
            if phase not in existing
        }
        if missing:
            self.store.merge({"phases": missing})

    def _plan_stage(self, action: NextAction) -> StageResult:
        phase = self._resolve_phase(action)
        self.store.set_phase_stage(phase, plan=PlanStatus.IN_PROGRESS.value)
        result = self._run_pairing(Command.PLAN_FEATURE, action.model_copy(update={"phase": phase}))
        if not result.ok:
            return self._failed_session(result)

        fields = result.structured_fields
        plan_file = fields.get("plan_file") or self._plan_path(phase)
        if not plan_file:
            return StageResult.failed(
                f"plan-feature for phase {phase} finished without a plan_file",
                category=ErrorCategory.PARTIAL_EXECUTION,
            )
        plan_text = ""
        path = self.project_dir / plan_file
        if path.is_file():
            plan_text = path.read_text(encoding="utf-8", errors="replace")
        tasks = count_plan_tasks(plan_text) or _as_int(fields.get("tasks_total")) or 0
        self.store.append(
            "plans",
            {
                "phase": phase,
                "plan_file": plan_file,
                "tasks_total": tasks,
                "session_id": result.session_id,
                "turns": result.turns,
                "cost_usd": result.cost_usd,
                "timestamp": utc_now_iso(),
            },
        )
        self.store.set_phase_stage(phase, plan=PlanStatus.COMPLETE.value)
        return StageResult(ok=True)

    def _execute_stage(self, action: NextAction) -> StageResult:
        phase = self._resolve_phase(action)
        action = action.model_copy(update={"phase": phase})
        checkpoint = self.checkpoints.create_or_reuse(phase)
        plan_path = self._plan_path(phase)
        self.store.set_phase_stage(phase, execution=ExecutionStatus.IN_PROGRESS.value)

        result = self._run_pairing(Command.EXECUTE, action, plan_path=plan_path)
        fields = result.structured_fields
        status = (fields.get("execution_status") or ("complete" if result.ok else "failed")).lower()
        tasks_total = _as_int(fields.get("tasks_total"))
        if tasks_total is None:
            plan = latest_entry(self.store.read(), "plans", phase=phase) or {}
            tasks_total = _as_int(plan.get("tasks_total"))
        self.store.append(
            "executions",
            {
                "phase": phase,
                "status": status,
                "tasks_total": tasks_total,
                "tasks_done": _as_int(fields.get("tasks_done")),
                "turns": result.turns,
                "cost_usd": result.cost_usd,
                "duration_ms": result.duration_ms,
                "session_id": result.session_id,
                "checkpoint": checkpoint,
                "timestamp": utc_now_iso(),
            },
        )
        if not result.ok:
            return self._failed_session(result, checkpoint=checkpoint)
        if status != ExecutionStatus.COMPLETE.value:
            return StageResult.failed(
                f"execute stopped with status {status} "
                f"({fields.get('tasks_done', '?')}/{tasks_total or '?'} tasks)",
                category=reported_category(fields) or ErrorCategory.PARTIAL_EXECUTION,
                checkpoint=checkpoint,
            )
        self.store.set_phase_stage(phase, execution=ExecutionStatus.COMPLETE.value)

        if plan_path:
            try:
                report = check_fidelity(self.project_dir, plan_path, checkpoint, phase=phase)
                self.store.append(
                    "fidelity", {**report.model_dump(mode="json"), "timestamp": utc_now_iso()}
                )
            except (git_tools.GitError, OSError) as exc:
                logger.warning("Fidelity check skipped: %s", exc)
        try:
            self.drift.check(phase)
        except (git_tools.GitError, OSError) as exc:
            logger.warning("Drift check skipped: %s", exc)
        return StageResult(ok=True, checkpoint=checkpoint)

    def _validate_stage(self, action: NextAction) -> StageResult:
        phase = self._resolve_phase(action)
        action = action.model_copy(update={"phase": phase})
        checkpoint = self.checkpoints.active_for_phase(phase)
        plan_path = self._plan_path(phase)
        budget = self._budget(Command.VALIDATE, action)
        validate_prompt = command_prompt(Command.VALIDATE, phase=phase, plan_path=plan_path)

        result = self.sessions.run_pairing(
            session_pairing(Command.VALIDATE, phase=phase, plan_path=plan_path), budget
        )
        if not result.ok:
            return self._failed_session(result, checkpoint=checkpoint)
        result = self._handle_approvals(result, budget)
        status = self._validation_status(result)
        self._record_validation(phase, result, status, attempt=0)

        repairs = 0
        while status != ValidationStatus.PASS and repairs < MAX_VALIDATION_REPAIRS and result.session_id:
            repairs += 1
            logger.info("Validation %s for phase %s; repair attempt %d", status.value, phase, repairs)
            fix_budget = calculate_budget(Command.FIX, self.project_dir, self.store.read(), phase)
            fix = self.sessions.resume_session(
                result.session_id, fix_prompt(self._failure_details(result)), fix_budget
            )
            if not fix.ok:
                return self._failed_session(fix, checkpoint=checkpoint)
            result = self.sessions.resume_session(
                fix.session_id or result.session_id, validate_prompt, budget
            )
            if not result.ok:
                return self._failed_session(result, checkpoint=checkpoint)
            result = self._handle_approvals(result, budget)
            status = self._validation_status(result)
            self._record_validation(phase, result, status, attempt=repairs)

        self.store.set_phase_stage(phase, validation=status.value)
        if status == ValidationStatus.PASS:
            return StageResult(ok=True, checkpoint=checkpoint)
        details = self._failure_details(result)
        category = reported_category(result.structured_fields) or classify_error(details)
        if category == ErrorCategory.PARTIAL_EXECUTION:
            category = ErrorCategory.TEST_FAILURE
        return StageResult.failed(
            f"validation {status.value} after {repairs} repair attempt(s): {details}",
            category=category,
            checkpoint=checkpoint,
        )

    @staticmethod
    def _validation_status(result: SessionResult) -> ValidationStatus:
        raw = (result.structured_fields.get("validation_status") or "").strip().lower()
        try:
            return ValidationStatus(raw)
        except ValueError:
            return ValidationStatus.PARTIAL

    @staticmethod
    def _failure_details(result: SessionResult) -> str:
        fields = result.structured_fields
        return fields.get("failure_details") or fields.get("details") or (result.text or "")[-1500:]

    def _record_validation(
        self, phase: int, result: SessionResult, status: ValidationStatus, *, attempt: int
    ) -> None:
        fields = result.structured_fields
        self.store.append(
            "validations",
            {
                "phase": phase,
                "attempt": attempt,
                "status": status.value,
                "scenarios_passed": _as_int(fields.get("scenarios_passed")),
                "scenarios_total": _as_int(fields.get("scenarios_total")),
                "turns": result.turns,
                "cost_usd": result.cost_usd,
                "session_id": result.session_id,
                "timestamp": utc_now_iso(),
            },
        )

    def _handle_approvals(self, result: SessionResult, budget: Budget) -> SessionResult:
        """Resolve tiered approvals the agent asks for, resuming with each decision."""
        for _ in range(MAX_APPROVALS_PER_VALIDATION):
            fields = result.structured_fields
            if not result.ok or not _truthy(fields.get("approval_required")) or not result.session_id:
                return result
            resource = fields.get("approval_resource") or "unnamed-resource"
            tier = fields.get("approval_tier") or "?"
            prompt = fields.get("approval_prompt") or f"Allow live access to {resource}?"
            decision: ApprovalDecision | None = None
            if self.approvals is not None:
                decision = self.approvals.request(resource, tier, prompt, timeout=self.approval_timeout)
            if decision is None:
                decision = ApprovalDecision.USE_FIXTURE
                logger.info("No approval answer for %s; using fixtures", resource)
            self.store.append(
                "approvals",
                {
                    "resource": resource,
                    "tier": tier,
                    "decision": decision.value,
                    "timestamp": utc_now_iso(),
                },
            )
            result = self.sessions.resume_session(
                result.session_id,
                f"Approval decision for {resource} (tier {tier}): {decision.value}. "
                "Continue validation and emit the PIV-Automator-Hooks block.",
                budget,
            )
        return result

    def _commit_stage(self, action: NextAction) -> StageResult:
        phase = self._resolve_phase(action)
        action = action.model_copy(update={"phase": phase})
        checkpoint = self.checkpoints.active_for_phase(phase)
        result = self._run_pairing(Command.COMMIT, action)
        if not result.ok:
            return self._failed_session(result, checkpoint=checkpoint)
        sha = result.structured_fields.get("commit_sha")
        try:
            if git_tools.has_uncommitted_changes(self.project_dir):
                sha = git_tools.commit_all(self.project_dir, f"feat: complete phase {phase}")
            sha = sha or git_tools.head_sha(self.project_dir)
        except git_tools.GitError as exc:
            return StageResult.failed(f"commit failed: {exc}", checkpoint=checkpoint)
        if checkpoint:
            self.checkpoints.resolve(checkpoint)
        self.store.merge({"phases": {phase: {"commit_sha": sha}}})
        self.store.add_notification(
            NotificationEntry(
                type="phase_complete",
                severity=NotificationSeverity.INFO,
                phase=phase,
                details=f"Phase {phase} committed at {sha[:12]}.",
            )
        )
        return StageResult(ok=True)
