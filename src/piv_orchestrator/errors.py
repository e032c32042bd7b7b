"""Error taxonomy, text classifier and the orchestrator's exception types."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class OrchestratorError(Exception):
    """Base class for orchestrator failures surfaced to the CLI."""


class ManifestError(OrchestratorError):
    """Raised when the manifest cannot be parsed or has the wrong shape."""


class AlreadyRunningError(OrchestratorError):
    """Raised when another live orchestrator holds the project lock."""

    def __init__(self, pid: int, project_dir: str) -> None:
        super().__init__(f"Orchestrator already running for {project_dir} (pid {pid})")
        self.pid = pid
        self.project_dir = project_dir


class ConfigError(OrchestratorError):
    """Raised for missing or invalid startup configuration."""


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class ErrorCategory(str, Enum):
    SYNTAX_ERROR = "syntax_error"
    TEST_FAILURE = "test_failure"
    SCENARIO_MISMATCH = "scenario_mismatch"
    INTEGRATION_AUTH = "integration_auth"
    INTEGRATION_RATE_LIMIT = "integration_rate_limit"
    STALE_ARTIFACT = "stale_artifact"
    PRD_GAP = "prd_gap"
    PARTIAL_EXECUTION = "partial_execution"
    LINE_BUDGET_EXCEEDED = "line_budget_exceeded"
    ORCHESTRATOR_CRASH = "orchestrator_crash"
    MANIFEST_CORRUPTION = "manifest_corruption"


class Severity(str, Enum):
    BLOCKING = "blocking"
    DEGRADED = "degraded"
    ADVISORY = "advisory"


class RecoveryAction(str, Enum):
    AUTO_FIX = "auto_fix"
    RE_VALIDATE = "re_validate"
    ESCALATE = "escalate"
    BACKOFF_RETRY = "backoff_retry"
    REFRESH_ARTIFACT = "refresh_artifact"
    ROLLBACK_RETRY = "rollback_retry"
    REFACTOR_RETRY = "refactor_retry"
    RESTART = "restart"


@dataclass(frozen=True, slots=True)
class ErrorPolicy:
    max_retries: int
    needs_human: bool
    recovery_action: RecoveryAction
    severity: Severity


ERROR_TAXONOMY: dict[ErrorCategory, ErrorPolicy] = {
    ErrorCategory.SYNTAX_ERROR: ErrorPolicy(2, False, RecoveryAction.AUTO_FIX, Severity.DEGRADED),
    ErrorCategory.TEST_FAILURE: ErrorPolicy(2, False, RecoveryAction.AUTO_FIX, Severity.DEGRADED),
    ErrorCategory.SCENARIO_MISMATCH: ErrorPolicy(
        1, False, RecoveryAction.RE_VALIDATE, Severity.DEGRADED
    ),
    ErrorCategory.INTEGRATION_AUTH: ErrorPolicy(0, True, RecoveryAction.ESCALATE, Severity.BLOCKING),
    ErrorCategory.INTEGRATION_RATE_LIMIT: ErrorPolicy(
        3, False, RecoveryAction.BACKOFF_RETRY, Severity.DEGRADED
    ),
    ErrorCategory.STALE_ARTIFACT: ErrorPolicy(
        1, False, RecoveryAction.REFRESH_ARTIFACT, Severity.ADVISORY
    ),
    ErrorCategory.PRD_GAP: ErrorPolicy(0, True, RecoveryAction.ESCALATE, Severity.BLOCKING),
    ErrorCategory.PARTIAL_EXECUTION: ErrorPolicy(
        1, False, RecoveryAction.ROLLBACK_RETRY, Severity.DEGRADED
    ),
    ErrorCategory.LINE_BUDGET_EXCEEDED: ErrorPolicy(
        1, False, RecoveryAction.REFACTOR_RETRY, Severity.ADVISORY
    ),
    ErrorCategory.ORCHESTRATOR_CRASH: ErrorPolicy(1, False, RecoveryAction.RESTART, Severity.DEGRADED),
    ErrorCategory.MANIFEST_CORRUPTION: ErrorPolicy(
        0, True, RecoveryAction.ESCALATE, Severity.BLOCKING
    ),
}


# Most specific first: crash/corruption before auth, auth/rate-limit before
# the generic test/syntax buckets.
_CLASSIFIER_RULES: tuple[tuple[ErrorCategory, re.Pattern[str]], ...] = (
    (
        ErrorCategory.ORCHESTRATOR_CRASH,
        re.compile(
            r"orchestrator[ _-]?crash|uncaught exception|unhandled (?:exception|rejection)"
            r"|segmentation fault|\bSIGKILL\b|\bSIGSEGV\b|out of memory|\bOOM\b|killed by signal",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.MANIFEST_CORRUPTION,
        re.compile(
            r"manifest(?:\.ya?ml)?\b.{0,40}(?:corrupt|invalid|malformed|unparse?able|parse error)"
            r"|(?:corrupt|invalid|malformed)\b.{0,20}manifest|yaml(?:error| parse error)",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.INTEGRATION_AUTH,
        re.compile(
            r"\b401\b|\b403\b|unauthori[sz]ed|forbidden|authentication (?:failed|error)"
            r"|invalid (?:api[ _-]?key|token|credentials?)|missing (?:api[ _-]?key|credentials?)"
            r"|permission denied for|access denied",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.INTEGRATION_RATE_LIMIT,
        re.compile(
            r"\b429\b|rate[ _-]?limit|too many requests|quota exceeded|throttl",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.PRD_GAP,
        re.compile(
            r"prd[ _-]?gap|missing requirement|requirement (?:is )?(?:unclear|ambiguous|undefined)"
            r"|not (?:specified|defined) in (?:the )?prd|prd does not (?:specify|define|cover)",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.STALE_ARTIFACT,
        re.compile(
            r"stale (?:artifact|profile|plan|context)|artifact (?:is )?(?:stale|outdated)"
            r"|profile (?:is )?(?:stale|outdated)|out[ -]of[ -]date",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.LINE_BUDGET_EXCEEDED,
        re.compile(
            r"line[ _-]?budget|exceeds? (?:the )?(?:max(?:imum)? )?line (?:limit|count|budget)"
            r"|too many lines|file too long",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.SCENARIO_MISMATCH,
        re.compile(
            r"scenario[ _-]?(?:mismatch|failed|failure)|scenario .{0,40}(?:did not|does not) match"
            r"|expected behaviou?r .{0,20}(?:differs|mismatch)|acceptance criteria not met",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.TEST_FAILURE,
        re.compile(
            r"tests? fail|\d+ failed|failing tests?|assertion ?error|assert(?:ion)? failed"
            r"|\bFAIL\b|expect\(.*\)\.to",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorCategory.SYNTAX_ERROR,
        re.compile(
            r"syntax ?error|parse error|unexpected token|indentation ?error|type ?error"
            r"|compil(?:e|ation) (?:error|failed)|\bTS\d{4}\b|cannot find (?:name|module)",
            re.IGNORECASE,
        ),
    ),
)


def classify_error(text: Any) -> ErrorCategory:
    """Map free-form error text to a category.

    Never raises: non-string input is coerced and any internal problem falls
    back to ``partial_execution``.
    """
    try:
        haystack = text if isinstance(text, str) else str(text or "")
        for category, pattern in _CLASSIFIER_RULES:
            if pattern.search(haystack):
                return category
    except Exception:  # pragma: no cover - guarded fallback
        logger.debug("Error classification failed; using fallback", exc_info=True)
    return ErrorCategory.PARTIAL_EXECUTION


def policy_for(category: ErrorCategory | str) -> ErrorPolicy:
    """Return the taxonomy entry; unknown names map to ``partial_execution``."""
    try:
        return ERROR_TAXONOMY[ErrorCategory(category)]
    except ValueError:
        return ERROR_TAXONOMY[ErrorCategory.PARTIAL_EXECUTION]


def _field(failure: Any, name: str, default: Any = None) -> Any:
    if isinstance(failure, dict):
        return failure.get(name, default)
    return getattr(failure, name, default)


def can_retry(failure: Any) -> bool:
    """True while the failure's retry count is below its retry budget."""
    return int(_field(failure, "retry_count", 0) or 0) < int(_field(failure, "max_retries", 0) or 0)


def needs_escalation(failure: Any) -> bool:
    """True for human-required categories or once retries are used up."""
    policy = policy_for(str(_field(failure, "error_category", "") or ""))
    if policy.needs_human:
        return True
    return not can_retry(failure)
