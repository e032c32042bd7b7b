"""Pydantic models for structured data throughout the orchestrator."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def parse_utc_iso(value: Any) -> dt.datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` or offset form); ``None`` when invalid."""
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, dt.date):
        parsed = dt.datetime(value.year, value.month, value.day)
    else:
        text = str(value or "").strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


# ---------------------------------------------------------------------------
# Manifest enums
# ---------------------------------------------------------------------------


class PlanStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class ExecutionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class ValidationStatus(str, Enum):
    NOT_RUN = "not_run"
    PASS = "pass"
    PARTIAL = "partial"
    FAIL = "fail"


class CheckpointStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class FailureResolution(str, Enum):
    """Lifecycle of a failure entry: ``pending`` moves to exactly one terminal value."""

    PENDING = "pending"
    AUTO_FIXED = "auto_fixed"
    ROLLED_BACK = "rolled_back"
    ESCALATED_BLOCKING = "escalated_blocking"
    AUTO_ROLLBACK_RETRY = "auto_rollback_retry"


class NotificationSeverity(str, Enum):
    BLOCKING = "blocking"
    INFO = "info"


class ProjectStatus(str, Enum):
    """Heartbeat status written to the cross-project registry."""

    RUNNING = "running"
    IDLE = "idle"
    ERROR = "error"
    COMPLETE = "complete"


class SignalAction(str, Enum):
    GO = "go"
    PAUSE = "pause"
    RESUME = "resume"
    SHUTDOWN = "shutdown"


class SessionErrorType(str, Enum):
    ABORT_TIMEOUT = "abort_timeout"
    PROCESS_ERROR = "process_error"
    AGENT_ERROR = "agent_error"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Manifest records
# ---------------------------------------------------------------------------


class PhaseStatus(BaseModel):
    """Per-phase stage statuses as stored under ``phases.<n>``."""

    model_config = ConfigDict(extra="allow")

    plan: PlanStatus = PlanStatus.NOT_STARTED
    execution: ExecutionStatus = ExecutionStatus.NOT_STARTED
    validation: ValidationStatus = ValidationStatus.NOT_RUN

    @property
    def is_complete(self) -> bool:
        return (
            self.plan == PlanStatus.COMPLETE
            and self.execution == ExecutionStatus.COMPLETE
            and self.validation == ValidationStatus.PASS
        )


class CheckpointEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    tag: str
    phase: int
    status: CheckpointStatus = CheckpointStatus.ACTIVE
    created_at: str = Field(default_factory=utc_now_iso)
    resolved_at: str | None = None


class FailureEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    command: str
    phase: int | None = None
    error_category: str
    timestamp: str = Field(default_factory=utc_now_iso)
    retry_count: int = 0
    max_retries: int = 0
    checkpoint: str | None = None
    resolution: FailureResolution = FailureResolution.PENDING
    details: str = ""


class NotificationEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    timestamp: str = Field(default_factory=utc_now_iso)
    type: str
    severity: NotificationSeverity = NotificationSeverity.INFO
    phase: int | None = None
    details: str = ""
    acknowledged: bool = False


class NextAction(BaseModel):
    """Recommendation produced by the state machine."""

    command: str
    phase: int | None = None
    reason: str = ""
    confidence: str = "high"
    argument: str | None = None
    failure_index: int | None = None


# ---------------------------------------------------------------------------
# Agent sessions
# ---------------------------------------------------------------------------


class Budget(BaseModel):
    """Turn / wall-clock allowance for one agent invocation."""

    max_turns: int
    timeout_ms: int
    reasoning: str = ""


class SessionError(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: SessionErrorType
    message: str = ""


class SessionResult(BaseModel):
    """Outcome of one coding-agent invocation. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    session_id: str | None = None
    text: str = ""
    structured_fields: dict[str, str] = Field(default_factory=dict)
    cost_usd: float = 0.0
    duration_ms: int = 0
    turns: int = 0
    error: SessionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Process coordination files
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class LockInfo(_CamelModel):
    """Content of the per-project PID lock file."""

    pid: int
    started_at: str = Field(default_factory=utc_now_iso)
    project_dir: str


class RegistryInstance(_CamelModel):
    """One live orchestrator process known to the cross-project registry."""

    project_prefix: str
    project_dir: str
    pid: int
    started_at: str = Field(default_factory=utc_now_iso)
    is_bot_owner: bool = False


class RegistryProject(_CamelModel):
    """Heartbeat entry consumed by the external stall supervisor."""

    name: str
    path: str
    status: ProjectStatus = ProjectStatus.IDLE
    heartbeat: str = Field(default_factory=utc_now_iso)
    current_phase: int | None = None
    commands_version: str = "unknown"
    orchestrator_pid: int | None = None
    registered_at: str = Field(default_factory=utc_now_iso)
    last_completed_phase: int | None = None


class SignalMessage(_CamelModel):
    action: SignalAction
    timestamp: str = Field(default_factory=utc_now_iso)
    from_: str = Field(default="", alias="from")


# ---------------------------------------------------------------------------
# Advisory reports
# ---------------------------------------------------------------------------


class FidelityReport(BaseModel):
    phase: int | None = None
    planned: list[str] = Field(default_factory=list)
    actual: list[str] = Field(default_factory=list)
    matched: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    unplanned: list[str] = Field(default_factory=list)
    score: int = 100


class TestRunSummary(BaseModel):
    """Parsed outcome of one test-runner invocation."""

    __test__ = False  # Prevent pytest from collecting this model as a test class.

    runner: str
    target: str = ""
    passed: int = 0
    failed: int = 0
    failing_tests: list[str] = Field(default_factory=list)
    exit_code: int = 0
    output_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.exit_code == 0


class DriftReport(BaseModel):
    phase: int
    checked_phases: list[int] = Field(default_factory=list)
    regressions: list[TestRunSummary] = Field(default_factory=list)
    repair_attempted: bool = False
    repaired: bool = False
    timestamp: str = Field(default_factory=utc_now_iso)

    @property
    def has_regressions(self) -> bool:
        return bool(self.regressions)
