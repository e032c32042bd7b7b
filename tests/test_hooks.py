"""Tests for hooks-block parsing and the structured error block."""

from __future__ import annotations

import pytest

from piv_orchestrator.hooks import (
    ERROR_BLOCK_HEADER,
    HOOKS_SENTINEL,
    format_error_block,
    parse_hooks,
)

pytestmark = pytest.mark.unit


def test_parse_hooks_reads_fields_after_sentinel() -> None:
    text = "\n".join(
        [
            "Work finished.",
            "",
            HOOKS_SENTINEL,
            "execution_status: complete",
            "tasks_done: 4",
            "Plan_File: .agents/plans/phase-1.md",
        ]
    )

    fields = parse_hooks(text)

    assert fields == {
        "execution_status": "complete",
        "tasks_done": "4",
        "plan_file": ".agents/plans/phase-1.md",
    }


def test_parse_hooks_without_sentinel_is_empty() -> None:
    assert parse_hooks("execution_status: complete") == {}
    assert parse_hooks("") == {}
    assert parse_hooks(None) == {}


def test_parse_hooks_uses_last_sentinel_and_stops_at_blank_line() -> None:
    text = "\n".join(
        [
            HOOKS_SENTINEL,
            "validation_status: fail",
            "",
            "more prose",
            HOOKS_SENTINEL,
            "validation_status: pass",
            "",
            "trailing: ignored",
        ]
    )

    assert parse_hooks(text) == {"validation_status": "pass"}


def test_parse_hooks_stops_at_next_header_and_skips_noise() -> None:
    text = "\n".join(
        [
            HOOKS_SENTINEL,
            "- just a bullet",
            "prd_path: docs/PRD.md",
            "## Next Section",
            "other: value",
        ]
    )

    assert parse_hooks(text) == {"prd_path": "docs/PRD.md"}


def test_parse_hooks_later_duplicate_wins() -> None:
    text = f"{HOOKS_SENTINEL}\nstatus: one\nstatus: two"

    assert parse_hooks(text) == {"status": "two"}


def test_format_error_block_renders_every_field() -> None:
    block = format_error_block(
        category="test_failure",
        command="validate-implementation",
        phase=2,
        details="3 failed,\n  1 passed",
        retry_eligible=True,
        retries_remaining=1,
        checkpoint="checkpoint/phase-2-20260101T000000",
    )

    lines = block.splitlines()
    assert lines[0] == ERROR_BLOCK_HEADER
    assert "category: test_failure" in lines
    assert "phase: 2" in lines
    assert "details: 3 failed, 1 passed" in lines
    assert "retry_eligible: true" in lines
    assert "retries_remaining: 1" in lines
    assert "checkpoint: checkpoint/phase-2-20260101T000000" in lines


def test_format_error_block_defaults_and_truncation() -> None:
    block = format_error_block(
        category="prd_gap",
        command="plan-feature",
        phase=None,
        details="x" * 500,
        retry_eligible=False,
        retries_remaining=-3,
        checkpoint=None,
    )

    assert "phase: none" in block
    assert "checkpoint: none" in block
    assert "retries_remaining: 0" in block
    assert "retry_eligible: false" in block
    details_line = next(line for line in block.splitlines() if line.startswith("details: "))
    assert details_line.endswith("...")
    assert len(details_line) == len("details: ") + 300
