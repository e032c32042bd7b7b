"""Plan-vs-actual check: files a plan said it would touch versus files changed."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from piv_orchestrator import git_tools
from piv_orchestrator.schemas import FidelityReport

logger = logging.getLogger(__name__)

_ACTION_VERBS = r"(?:create|add|modify|update|edit|change|write|implement|extend|refactor|touch)"
_PATH_TOKEN = r"[A-Za-z0-9_.\-]+(?:/[A-Za-z0-9_.\-]+)*\.[A-Za-z0-9]+"

# "Create `src/app.py`", "- **Update** 'tests/x.ts'"
_VERB_QUOTED_RE = re.compile(
    rf"\b{_ACTION_VERBS}[a-z]*\b[^`'\"\n]{{0,40}}[`'\"]({_PATH_TOKEN})[`'\"]",
    re.IGNORECASE,
)
# "CREATE: src/app.py", "MODIFY src/app.py"
_VERB_BARE_RE = re.compile(rf"\b{_ACTION_VERBS}[a-z]*\b\s*:?\s+({_PATH_TOKEN})\b", re.IGNORECASE)
# "| `src/app.py` | create |" table rows
_TABLE_ROW_RE = re.compile(
    rf"^\s*\|\s*`?({_PATH_TOKEN})`?\s*\|.*\b{_ACTION_VERBS}[a-z]*\b", re.IGNORECASE | re.MULTILINE
)
_TABLE_ROW_REVERSED_RE = re.compile(
    rf"^\s*\|\s*{_ACTION_VERBS}[a-z]*\s*\|\s*`?({_PATH_TOKEN})`?\s*\|", re.IGNORECASE | re.MULTILINE
)


def _normalise(path: str) -> str:
    path = path.strip().strip("`'\"").replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def extract_planned_files(plan_text: str) -> list[str]:
    """Paths the plan claims it will create or modify, in first-seen order."""
    seen: dict[str, None] = {}
    for pattern in (_VERB_QUOTED_RE, _VERB_BARE_RE, _TABLE_ROW_RE, _TABLE_ROW_REVERSED_RE):
        for match in pattern.finditer(plan_text or ""):
            path = _normalise(match.group(1))
            if "/" not in path and "." not in path:
                continue
            seen[path] = None
    return list(seen)


def compute_fidelity(planned: list[str] | set[str], actual: list[str] | set[str]) -> FidelityReport:
    """Score ``round(matched / max(|planned|, |actual|) * 100)``; 100 when both empty."""
    planned_set = {_normalise(p) for p in planned}
    actual_set = {_normalise(p) for p in actual}
    matched = planned_set & actual_set
    denominator = max(len(planned_set), len(actual_set))
    score = 100 if denominator == 0 else round(len(matched) / denominator * 100)
    return FidelityReport(
        planned=sorted(planned_set),
        actual=sorted(actual_set),
        matched=sorted(matched),
        missing=sorted(planned_set - actual_set),
        unplanned=sorted(actual_set - planned_set),
        score=score,
    )


def check_fidelity(
    project_dir: str | Path,
    plan_path: str | Path,
    checkpoint_tag: str,
    *,
    phase: int | None = None,
) -> FidelityReport:
    """Compare the plan at *plan_path* with changes since *checkpoint_tag*."""
    project_dir = Path(project_dir)
    path = Path(plan_path)
    if not path.is_absolute():
        path = project_dir / path
    try:
        plan_text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        logger.warning("Fidelity check: plan not readable at %s", path)
        plan_text = ""
    actual = git_tools.changed_files_since(project_dir, checkpoint_tag)
    report = compute_fidelity(extract_planned_files(plan_text), actual)
    report.phase = phase
    logger.info(
        "Fidelity %s%%: %d matched, %d missing, %d unplanned",
        report.score,
        len(report.matched),
        len(report.missing),
        len(report.unplanned),
    )
    return report
