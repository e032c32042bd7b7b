"""Structured-field extraction from agent output and the ``## PIV-Error`` block."""

from __future__ import annotations

import re

HOOKS_SENTINEL = "## PIV-Automator-Hooks"
ERROR_BLOCK_HEADER = "## PIV-Error"

_KEY_VALUE_RE = re.compile(r"^\s*([A-Za-z0-9_.\-]+)\s*:\s*(.*?)\s*$")


def parse_hooks(text: str | None) -> dict[str, str]:
    """Return the ``key: value`` fields following the last hooks sentinel.

    Parsing stops at the first blank line, the next markdown header or the
    end of the text. Lines that are not ``key: value`` pairs are skipped.
    Keys are lower-cased; later duplicates overwrite earlier ones.
    """
    if not text:
        return {}
    lines = str(text).splitlines()
    start = None
    for idx, line in enumerate(lines):
        if line.strip() == HOOKS_SENTINEL:
            start = idx
    if start is None:
        return {}

    fields: dict[str, str] = {}
    for line in lines[start + 1 :]:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            break
        match = _KEY_VALUE_RE.match(stripped)
        if not match:
            continue
        fields[match.group(1).lower()] = match.group(2)
    return fields


def format_error_block(
    *,
    category: str,
    command: str,
    phase: int | None,
    details: str,
    retry_eligible: bool,
    retries_remaining: int,
    checkpoint: str | None,
) -> str:
    """Render the structured error block printed whenever a stage fails."""
    one_line = " ".join(str(details or "").split())
    if len(one_line) > 300:
        one_line = one_line[:297] + "..."
    return "\n".join(
        [
            ERROR_BLOCK_HEADER,
            f"category: {category}",
            f"command: {command}",
            f"phase: {phase if phase is not None else 'none'}",
            f"details: {one_line}",
            f"retry_eligible: {'true' if retry_eligible else 'false'}",
            f"retries_remaining: {max(0, int(retries_remaining))}",
            f"checkpoint: {checkpoint or 'none'}",
        ]
    )
