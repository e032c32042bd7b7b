"""Tests for failure recording, retry bookkeeping, rollback and escalation."""

from __future__ import annotations

from pathlib import Path

import pytest

from piv_orchestrator.errors import ErrorCategory
from piv_orchestrator.failure_handler import FailureHandler
from piv_orchestrator.git_tools import GitError
from piv_orchestrator.manifest import ManifestStore, phase_status
from piv_orchestrator.schemas import ExecutionStatus, ValidationStatus

TAG = "piv-checkpoint/phase-1-20260310T000000Z"


def _block_fields(block: str) -> dict[str, str]:
    """Fields of a printed error block, keyed as written."""
    return dict(line.split(": ", 1) for line in block.splitlines()[1:])


class RecordingRollback:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls: list[tuple[Path, str]] = []
        self.fail = fail

    def __call__(self, project_dir: Path, tag: str) -> None:
        self.calls.append((project_dir, tag))
        if self.fail:
            raise GitError("bad tag")


@pytest.fixture
def rollback() -> RecordingRollback:
    return RecordingRollback()


@pytest.fixture
def echoed() -> list[str]:
    return []


@pytest.fixture
def handler(
    project: Path, store: ManifestStore, rollback: RecordingRollback, echoed: list[str]
) -> FailureHandler:
    return FailureHandler(project, store, rollback=rollback, echo=echoed.append)


def test_first_failure_is_recorded_for_retry(
    handler: FailureHandler, store: ManifestStore, echoed: list[str]
) -> None:
    outcome = handler.handle("execute", 1, "SyntaxError: unexpected token", checkpoint=TAG)

    assert outcome.category == ErrorCategory.SYNTAX_ERROR
    assert outcome.action == "retry"
    assert outcome.blocking is False
    [failure] = store.read()["failures"]
    assert failure["resolution"] == "pending"
    assert failure["retry_count"] == 0
    assert failure["max_retries"] == 2
    assert failure["checkpoint"] == TAG
    assert "notifications" not in store.read()
    fields = _block_fields(echoed[0])
    assert fields["category"] == "syntax_error"
    assert fields["retry_eligible"] == "true"
    assert fields["retries_remaining"] == "2"


def test_repeat_failure_updates_the_same_entry(handler: FailureHandler, store: ManifestStore) -> None:
    handler.handle("execute", 1, "2 failed", checkpoint=TAG)
    outcome = handler.handle("execute", 1, "1 failed")

    failures = store.read()["failures"]
    assert len(failures) == 1
    assert failures[0]["retry_count"] == 1
    assert failures[0]["checkpoint"] == TAG
    assert failures[0]["details"] == "1 failed"
    assert outcome.action == "retry"


def test_exhausted_retries_roll_back_and_escalate(
    handler: FailureHandler, store: ManifestStore, rollback: RecordingRollback, project: Path
) -> None:
    store.set_phase_stage(1, plan="complete", execution="complete", validation="fail")
    for _ in range(3):
        outcome = handler.handle("validate-implementation", 1, "tests failed", checkpoint=TAG)

    assert outcome.action == "escalated"
    assert outcome.rolled_back is True
    assert rollback.calls == [(project, TAG)]
    manifest = store.read()
    assert manifest["failures"][0]["resolution"] == "escalated_blocking"
    status = phase_status(manifest, 1)
    assert status.execution == ExecutionStatus.NOT_STARTED
    assert status.validation == ValidationStatus.NOT_RUN
    [notification] = manifest["notifications"]
    assert notification["type"] == "escalation"
    assert notification["severity"] == "blocking"
    assert f"Rolled back to {TAG}" in notification["details"]


def test_human_required_category_escalates_without_rollback(
    handler: FailureHandler, store: ManifestStore, rollback: RecordingRollback, echoed: list[str]
) -> None:
    outcome = handler.handle("execute", 2, "Stripe returned 401 Unauthorized", checkpoint=TAG)

    assert outcome.category == ErrorCategory.INTEGRATION_AUTH
    assert outcome.action == "escalated"
    assert rollback.calls == []
    assert store.read()["failures"][0]["resolution"] == "escalated_blocking"
    assert _block_fields(echoed[0])["retry_eligible"] == "false"


def test_partial_execution_rolls_back_once_then_escalates(
    handler: FailureHandler, store: ManifestStore, rollback: RecordingRollback
) -> None:
    first = handler.handle("execute", 1, "session ended early", checkpoint=TAG)
    second = handler.handle("execute", 1, "session ended early", checkpoint=TAG)

    assert first.category == ErrorCategory.PARTIAL_EXECUTION
    assert first.action == "auto_rollback_retry"
    assert second.action == "escalated"
    assert len(rollback.calls) == 2
    resolutions = [f["resolution"] for f in store.read()["failures"]]
    assert resolutions == ["auto_rollback_retry", "escalated_blocking"]
    types = [n["type"] for n in store.read()["notifications"]]
    assert types == ["auto_rollback_retry", "escalation"]


def test_failed_rollback_is_reported_not_raised(
    project: Path, store: ManifestStore, echoed: list[str]
) -> None:
    handler = FailureHandler(project, store, rollback=RecordingRollback(fail=True), echo=echoed.append)

    outcome = handler.handle("execute", 1, "halted", checkpoint=TAG)

    assert outcome.action == "auto_rollback_retry"
    assert outcome.rolled_back is False


def test_explicit_category_overrides_classifier(handler: FailureHandler) -> None:
    outcome = handler.handle("execute", 1, "2 failed", category=ErrorCategory.LINE_BUDGET_EXCEEDED)

    assert outcome.category == ErrorCategory.LINE_BUDGET_EXCEEDED
    assert outcome.entry.max_retries == 1


def test_resolve_pending_marks_auto_fixed(handler: FailureHandler, store: ManifestStore) -> None:
    handler.handle("execute", 1, "2 failed")

    assert handler.resolve_pending("execute", 1) is True
    assert handler.resolve_pending("execute", 1) is False
    assert store.read()["failures"][0]["resolution"] == "auto_fixed"


def test_escalate_pending(
    handler: FailureHandler, store: ManifestStore, rollback: RecordingRollback
) -> None:
    handler.handle("execute", 1, "2 failed", checkpoint=TAG)

    entry = handler.escalate_pending(0)

    assert entry is not None
    assert entry.resolution.value == "escalated_blocking"
    assert rollback.calls[0][1] == TAG
    assert handler.escalate_pending(0) is None
    assert handler.escalate_pending(7) is None


def test_record_unexpected_is_partial_execution_with_one_retry(
    handler: FailureHandler, store: ManifestStore, echoed: list[str]
) -> None:
    entry = handler.record_unexpected("plan-feature", 3, "KeyError:\n  'phases'")

    assert entry.error_category == "partial_execution"
    assert entry.max_retries == 1
    assert store.read()["failures"][0]["details"] == "KeyError: 'phases'"
    assert _block_fields(echoed[0])["retries_remaining"] == "1"
