"""Cross-phase regression ("drift") detection over phase-scoped test directories."""

from __future__ import annotations

import json
import logging
import re
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from piv_orchestrator.manifest import ManifestStore
from piv_orchestrator.schemas import (
    DriftReport,
    NotificationEntry,
    NotificationSeverity,
    TestRunSummary,
)

logger = logging.getLogger(__name__)

DEFAULT_TEST_TIMEOUT_SECONDS = 600
PHASE_DIR_TEMPLATES = (
    "tests/phase-{n}",
    "tests/phase_{n}",
    "tests/phase{n}",
    "test/phase-{n}",
    "__tests__/phase-{n}",
)


def find_phase_test_dirs(project_dir: str | Path, phase: int) -> list[Path]:
    """Existing test directories for *phase* under any supported naming scheme."""
    root = Path(project_dir)
    found: list[Path] = []
    for template in PHASE_DIR_TEMPLATES:
        candidate = root / template.format(n=phase)
        if candidate.is_dir() and candidate not in found:
            found.append(candidate)
    return found


def _package_json(project_dir: Path) -> dict[str, Any]:
    path = project_dir / "package.json"
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def detect_test_runner(project_dir: str | Path) -> str | None:
    """``pytest``, ``vitest``, ``jest`` or ``go`` based on project files."""
    root = Path(project_dir)
    pkg = _package_json(root)
    if pkg:
        deps = {**(pkg.get("dependencies") or {}), **(pkg.get("devDependencies") or {})}
        scripts = " ".join(str(v) for v in (pkg.get("scripts") or {}).values())
        if "vitest" in deps or "vitest" in scripts:
            return "vitest"
        if "jest" in deps or "jest" in scripts:
            return "jest"
    if (root / "go.mod").is_file():
        return "go"
    for marker in ("pytest.ini", "conftest.py", "pyproject.toml", "setup.cfg", "tox.ini"):
        if (root / marker).is_file():
            return "pytest"
    if any(root.glob("tests/**/test_*.py")):
        return "pytest"
    return None


VENV_DIR_NAMES = (".venv", "venv", "env")


def project_python(project_dir: str | Path | None) -> str:
    """Interpreter of the project's own virtualenv, else the current one.

    Phase tests import the project's dependencies, which live in its
    environment rather than the orchestrator's.
    """
    if project_dir is not None:
        root = Path(project_dir)
        for name in VENV_DIR_NAMES:
            for candidate in (root / name / "bin" / "python", root / name / "Scripts" / "python.exe"):
                if candidate.is_file():
                    return str(candidate)
    return sys.executable


def runner_command(runner: str, target: str, project_dir: str | Path | None = None) -> list[str]:
    if runner == "pytest":
        return [project_python(project_dir), "-m", "pytest", "-q", "-rf", target]
    if runner == "vitest":
        return ["npx", "vitest", "run", target]
    if runner == "jest":
        return ["npx", "jest", target]
    if runner == "go":
        return ["go", "test", "-v", f"./{target.rstrip('/')}/..."]
    raise ValueError(f"Unsupported test runner: {runner}")


# ── Summary parsing ───────────────────────────────────────────────────

_PYTEST_COUNT_RE = re.compile(r"(\d+) (passed|failed|error|errors)\b")
_PYTEST_FAILED_RE = re.compile(r"^(?:FAILED|ERROR) (\S+)", re.MULTILINE)
_VITEST_TESTS_RE = re.compile(r"^\s*Tests\s+(.*)$", re.MULTILINE)
_VITEST_FAILED_RE = re.compile(r"^\s*(?:FAIL|×|✗)\s+(.+?)\s*(?:\d+ms)?$", re.MULTILINE)
_JEST_TESTS_RE = re.compile(r"^Tests:\s+(.*)$", re.MULTILINE)
_JEST_FAILED_RE = re.compile(r"^\s*●\s+(.+?)\s*$", re.MULTILINE)
_GO_FAIL_RE = re.compile(r"^\s*--- FAIL: (\S+)", re.MULTILINE)
_GO_PASS_RE = re.compile(r"^\s*--- PASS: (\S+)", re.MULTILINE)
_COUNT_RE = re.compile(r"(\d+)\s+(passed|failed)")


def _counts(fragment: str) -> tuple[int, int]:
    passed = failed = 0
    for number, label in _COUNT_RE.findall(fragment):
        if label == "passed":
            passed += int(number)
        else:
            failed += int(number)
    return passed, failed


def parse_test_summary(runner: str, output: str, *, exit_code: int = 0, target: str = "") -> TestRunSummary:
    """Pass/fail counts and failing test names from a runner's console output."""
    text = output or ""
    passed = failed = 0
    failing: list[str] = []

    if runner == "pytest":
        lines = [ln for ln in text.splitlines() if re.search(r"\d+ (passed|failed|error)", ln)]
        if lines:
            for number, label in _PYTEST_COUNT_RE.findall(lines[-1]):
                if label == "passed":
                    passed += int(number)
                else:
                    failed += int(number)
        failing = _PYTEST_FAILED_RE.findall(text)
    elif runner == "vitest":
        matches = _VITEST_TESTS_RE.findall(text)
        if matches:
            passed, failed = _counts(matches[-1])
        failing = [name for name in _VITEST_FAILED_RE.findall(text) if name]
    elif runner == "jest":
        matches = _JEST_TESTS_RE.findall(text)
        if matches:
            passed, failed = _counts(matches[-1])
        failing = _JEST_FAILED_RE.findall(text)
    elif runner == "go":
        failing = _GO_FAIL_RE.findall(text)
        passed = len(_GO_PASS_RE.findall(text))
        failed = len(failing)

    if exit_code != 0 and failed == 0 and not failing:
        # Collection or compile errors leave no summary line.
        failed = 1
    seen: dict[str, None] = {name.strip(): None for name in failing if name.strip()}
    tail = "\n".join(text.splitlines()[-20:])
    return TestRunSummary(
        runner=runner,
        target=target,
        passed=passed,
        failed=max(failed, len(seen)),
        failing_tests=list(seen),
        exit_code=exit_code,
        output_tail=tail,
    )


# ── Runner ────────────────────────────────────────────────────────────


class DriftRunner:
    """Re-run prior phases' tests and attempt one repair when they regress."""

    def __init__(
        self,
        project_dir: str | Path,
        store: ManifestStore,
        *,
        repair: Callable[[str], Any] | None = None,
        runner: str | None = None,
        timeout: int = DEFAULT_TEST_TIMEOUT_SECONDS,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.store = store
        self.repair = repair
        self.runner = runner
        self.timeout = timeout

    def _run_target(self, runner: str, target: Path) -> TestRunSummary:
        rel = target.relative_to(self.project_dir).as_posix()
        cmd = runner_command(runner, rel, self.project_dir)
        logger.info("Drift check: %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            return TestRunSummary(runner=runner, target=rel, failed=1, exit_code=-1, output_tail=str(exc))
        except subprocess.TimeoutExpired:
            return TestRunSummary(
                runner=runner,
                target=rel,
                failed=1,
                exit_code=-1,
                output_tail=f"Timed out after {self.timeout}s",
            )
        combined = (proc.stdout or "") + "\n" + (proc.stderr or "")
        if runner == "pytest" and proc.returncode == 5:
            return TestRunSummary(runner=runner, target=rel, exit_code=0, output_tail="no tests collected")
        return parse_test_summary(runner, combined, exit_code=proc.returncode, target=rel)

    def _run_phases(self, runner: str, phases: list[int]) -> tuple[list[int], list[TestRunSummary]]:
        checked: list[int] = []
        regressions: list[TestRunSummary] = []
        for prior in phases:
            dirs = find_phase_test_dirs(self.project_dir, prior)
            if not dirs:
                continue
            checked.append(prior)
            for target in dirs:
                summary = self._run_target(runner, target)
                if not summary.ok:
                    regressions.append(summary)
        return checked, regressions

    def check(self, phase: int) -> DriftReport:
        """Run every earlier phase's tests; advisory, never raises on test failure."""
        report = DriftReport(phase=phase)
        runner = self.runner or detect_test_runner(self.project_dir)
        if runner is None or phase <= 1:
            return report

        checked, regressions = self._run_phases(runner, list(range(1, phase)))
        report.checked_phases = checked
        if not regressions:
            logger.info("Drift check for phase %s: no regressions in %s", phase, checked or "none")
            return report

        logger.warning(
            "Drift: %d regression(s) in prior phases while completing phase %s",
            len(regressions),
            phase,
        )
        if self.repair is not None:
            report.repair_attempted = True
            try:
                self.repair(self._repair_details(phase, regressions))
            except Exception:
                logger.exception("Drift repair session failed")
            _, regressions = self._run_phases(runner, checked)
            report.repaired = not regressions

        report.regressions = regressions
        self.store.append("drift", report.model_dump(mode="json"))
        if regressions:
            names = ", ".join(
                name for summary in regressions for name in (summary.failing_tests or [summary.target])
            )
            self.store.add_notification(
                NotificationEntry(
                    type="drift_regression",
                    severity=NotificationSeverity.INFO,
                    phase=phase,
                    details=f"Prior-phase tests still failing after repair: {names}"[:500],
                )
            )
        return report

    @staticmethod
    def _repair_details(phase: int, regressions: list[TestRunSummary]) -> str:
        lines = [f"Phase {phase} changes broke tests from earlier phases:"]
        for summary in regressions:
            names = ", ".join(summary.failing_tests) or "(see output)"
            lines.append(f"- {summary.target}: {summary.failed} failing ({names})")
        lines.append("Fix the regressions without weakening the earlier tests.")
        return "\n".join(lines)
