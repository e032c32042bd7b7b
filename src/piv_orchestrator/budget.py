"""Adaptive turn / timeout budgets derived from repository signals."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from piv_orchestrator import git_tools
from piv_orchestrator.commands import Command
from piv_orchestrator.manifest import latest_entry
from piv_orchestrator.schemas import Budget

logger = logging.getLogger(__name__)

SECONDS_PER_TURN = 45
MIN_TIMEOUT_SECONDS = 5 * 60
LEARNED_RATIO_HEADROOM = 1.25
DEFAULT_TASK_COUNT = 5

SOURCE_SUFFIXES = (
    ".py", ".ts", ".tsx", ".js", ".jsx", ".go", ".rs", ".java", ".kt", ".rb", ".cs", ".swift",
)

_TASK_LINE_RE = re.compile(r"^\s*#{2,4}\s*(?:Task|Step)\s*\d+", re.IGNORECASE | re.MULTILINE)
_CHECKBOX_RE = re.compile(r"^\s*[-*]\s*\[[ xX]\]\s+", re.MULTILINE)
_SCENARIO_RE = re.compile(r"^\s*(?:#{1,6}\s*|[-*]\s*)?(?:\*\*)?Scenario\b", re.IGNORECASE | re.MULTILINE)


@dataclass(frozen=True, slots=True)
class CommandBudgetRule:
    base_turns: int
    max_turns: int
    max_timeout_seconds: int


BUDGET_RULES: dict[Command, CommandBudgetRule] = {
    Command.PRIME: CommandBudgetRule(30, 30, 30 * 60),
    Command.RESEARCH_STACK: CommandBudgetRule(150, 150, 90 * 60),
    Command.CREATE_PRD: CommandBudgetRule(80, 80, 60 * 60),
    Command.PLAN_FEATURE: CommandBudgetRule(120, 120, 60 * 60),
    Command.FIX: CommandBudgetRule(80, 80, 60 * 60),
    Command.EXECUTE: CommandBudgetRule(40, 400, 3 * 60 * 60),
    Command.VALIDATE: CommandBudgetRule(30, 250, 2 * 60 * 60),
    Command.COMMIT: CommandBudgetRule(10, 40, 30 * 60),
}
EXECUTE_TURNS_PER_TASK = 12.0
VALIDATE_TURNS_PER_SOURCE_FILE = 0.5
VALIDATE_TURNS_PER_SCENARIO = 4.0
COMMIT_TURNS_PER_FILE = 1.0


def count_plan_tasks(plan_text: str) -> int:
    """Number of tasks in a plan: ``### Task N`` headers, else checkbox items."""
    headers = len(_TASK_LINE_RE.findall(plan_text or ""))
    if headers:
        return headers
    return len(_CHECKBOX_RE.findall(plan_text or ""))


def count_scenarios(text: str) -> int:
    return len(_SCENARIO_RE.findall(text or ""))


def _read_optional(project_dir: Path, rel: Any) -> str:
    if not rel:
        return ""
    path = Path(str(rel))
    if not path.is_absolute():
        path = project_dir / path
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def learned_turns_per_task(manifest: dict[str, Any], phase: int | None) -> float | None:
    """Turns-per-task measured on the phase immediately before *phase*."""
    if phase is None or phase <= 1:
        return None
    entry = latest_entry(manifest, "executions", phase=phase - 1)
    if not entry:
        return None
    try:
        tasks = int(entry.get("tasks_total") or 0)
        turns = int(entry.get("turns") or 0)
    except (TypeError, ValueError):
        return None
    if tasks <= 0 or turns <= 0:
        return None
    return turns / tasks


def _timeout_ms(turns: int, rule: CommandBudgetRule) -> int:
    seconds = turns * SECONDS_PER_TURN
    seconds = max(MIN_TIMEOUT_SECONDS, min(seconds, rule.max_timeout_seconds))
    return int(seconds * 1000)


def _finish(command: Command, raw_turns: float, reasoning: str) -> Budget:
    rule = BUDGET_RULES[command]
    turns = int(math.ceil(raw_turns))
    if turns > rule.max_turns:
        reasoning += f"; capped {turns} -> {rule.max_turns}"
        turns = rule.max_turns
    turns = max(1, turns)
    return Budget(max_turns=turns, timeout_ms=_timeout_ms(turns, rule), reasoning=reasoning)


def calculate_budget(
    command: Command | str,
    project_dir: str | Path,
    manifest: dict[str, Any],
    phase: int | None = None,
) -> Budget:
    """Turn and timeout allowance for one invocation of *command*."""
    command = Command(command)
    project_dir = Path(project_dir)
    rule = BUDGET_RULES.get(command)
    if rule is None:
        raise ValueError(f"{command.value} runs without an agent session and has no budget")

    if command is Command.EXECUTE:
        plan = latest_entry(manifest, "plans", phase=phase) or {}
        tasks = count_plan_tasks(_read_optional(project_dir, plan.get("plan_file") or plan.get("path")))
        source = "plan"
        if tasks <= 0:
            try:
                tasks = int(plan.get("tasks_total") or 0)
            except (TypeError, ValueError):
                tasks = 0
            source = "manifest"
        if tasks <= 0:
            tasks = DEFAULT_TASK_COUNT
            source = "default"
        per_task = EXECUTE_TURNS_PER_TASK
        learned = learned_turns_per_task(manifest, phase)
        if learned is not None:
            per_task = learned * LEARNED_RATIO_HEADROOM
        reasoning = (
            f"execute: {rule.base_turns} base + {tasks} tasks ({source}) x {per_task:.1f} turns/task"
            + (" (learned from previous phase)" if learned is not None else "")
        )
        return _finish(command, rule.base_turns + tasks * per_task, reasoning)

    if command is Command.VALIDATE:
        try:
            sources = git_tools.tracked_source_file_count(project_dir, SOURCE_SUFFIXES)
        except (git_tools.GitError, OSError):
            sources = 0
        prd = manifest.get("prd") or {}
        plan = latest_entry(manifest, "plans", phase=phase) or {}
        scenarios = count_scenarios(_read_optional(project_dir, plan.get("plan_file"))) or count_scenarios(
            _read_optional(project_dir, prd.get("path") if isinstance(prd, dict) else None)
        )
        raw = (
            rule.base_turns
            + sources * VALIDATE_TURNS_PER_SOURCE_FILE
            + scenarios * VALIDATE_TURNS_PER_SCENARIO
        )
        reasoning = (
            f"validate: {rule.base_turns} base + {sources} source files x "
            f"{VALIDATE_TURNS_PER_SOURCE_FILE} + {scenarios} scenarios x {VALIDATE_TURNS_PER_SCENARIO}"
        )
        return _finish(command, raw, reasoning)

    if command is Command.COMMIT:
        try:
            staged = git_tools.staged_file_count(project_dir)
        except (git_tools.GitError, OSError):
            staged = 0
        reasoning = f"commit: {rule.base_turns} base + {staged} changed files"
        return _finish(command, rule.base_turns + staged * COMMIT_TURNS_PER_FILE, reasoning)

    return _finish(command, rule.base_turns, f"{command.value}: static budget")
