"""Credential preflight: verify agent binary, agent auth and profile credentials."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from piv_orchestrator.manifest import ManifestStore
from piv_orchestrator.schemas import NotificationEntry, NotificationSeverity, utc_now_iso

logger = logging.getLogger(__name__)

AGENT_AUTH_ENV_VARS = ("CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_API_KEY")

_PLACEHOLDER_SECRET_VALUES = {
    "sk-...",
    "sk-ant-...",
    "api-key",
    "token",
    "token-here",
    "xxx",
    "your-key",
    "your key",
    "your_api_key",
    "your-api-key",
}
_PLACEHOLDER_SECRET_SUBSTRINGS = (
    "your-key-here",
    "your key here",
    "your_api_key_here",
    "your-anthropic-api-key",
    "replace-me",
    "replace_with",
    "change-me",
    "changeme",
    "placeholder",
    "set-me",
)


def looks_like_placeholder_secret(value: str) -> bool:
    """Return True for obvious placeholder key text."""
    normalized = (value or "").strip().strip('"').strip("'").lower()
    if not normalized:
        return True
    if normalized in _PLACEHOLDER_SECRET_VALUES:
        return True
    if normalized.startswith("<") and normalized.endswith(">"):
        return True
    if normalized.endswith("..."):
        return True
    return any(token in normalized for token in _PLACEHOLDER_SECRET_SUBSTRINGS)


def env_secret_present(var_names: tuple[str, ...] | list[str]) -> bool:
    """Return True when any of *var_names* holds a non-placeholder value."""
    for name in var_names:
        raw = os.getenv(name)
        if raw is None or not raw.strip():
            continue
        if looks_like_placeholder_secret(raw):
            continue
        return True
    return False


def placeholder_env_vars(var_names: tuple[str, ...] | list[str]) -> list[str]:
    """Return env-var names that are set to obvious placeholder text."""
    return [
        name
        for name in var_names
        if (os.getenv(name) or "").strip() and looks_like_placeholder_secret(os.getenv(name) or "")
    ]


def binary_exists(binary: str) -> bool:
    """Return ``True`` when an executable exists for *binary*."""
    binary = os.path.expandvars(os.path.expanduser(str(binary or "").strip()))
    if not binary:
        return False
    try:
        candidate = Path(binary)
        if candidate.is_file():
            return os.access(candidate, os.X_OK)
    except OSError:
        pass
    return shutil.which(binary) is not None


@dataclass(frozen=True)
class PreflightCheck:
    """A single readiness check result."""

    key: str
    label: str
    status: str
    detail: str
    hint: str = ""


@dataclass(frozen=True)
class PreflightReport:
    checks: list[PreflightCheck] = field(default_factory=list)
    checked_at: str = field(default_factory=utc_now_iso)

    @property
    def passed(self) -> bool:
        return all(check.status == "pass" for check in self.checks)

    @property
    def status(self) -> str:
        return "passed" if self.passed else "blocked"

    @property
    def missing(self) -> list[str]:
        return [check.key for check in self.checks if check.status != "pass"]

    def failure_messages(self) -> list[str]:
        return [
            f"{check.label}: {check.hint or check.detail}"
            for check in self.checks
            if check.status != "pass"
        ]

    def to_manifest(self) -> dict[str, Any]:
        return {"status": self.status, "checked_at": self.checked_at, "missing": self.missing}


def required_credentials(manifest: dict[str, Any]) -> list[str]:
    """Env vars listed under ``profiles.<name>.credentials``, de-duplicated in order."""
    seen: dict[str, None] = {}
    for profile in (manifest.get("profiles") or {}).values():
        if not isinstance(profile, dict):
            continue
        for name in profile.get("credentials") or []:
            if isinstance(name, str) and name.strip():
                seen[name.strip()] = None
    return list(seen)


def preflight_required(manifest: dict[str, Any]) -> bool:
    settings = manifest.get("settings") or {}
    return bool(settings.get("preflight_required")) or bool(required_credentials(manifest))


def build_report(manifest: dict[str, Any], *, claude_binary: str = "claude") -> PreflightReport:
    checks: list[PreflightCheck] = []
    binary_ok = binary_exists(claude_binary)
    checks.append(
        PreflightCheck(
            key="claude_binary",
            label="Claude Code CLI binary available",
            status="pass" if binary_ok else "fail",
            detail=f"Configured binary: {claude_binary}",
            hint="" if binary_ok else "Install Claude Code CLI or set PIV_CLAUDE_BIN.",
        )
    )
    auth_ok = env_secret_present(AGENT_AUTH_ENV_VARS)
    placeholders = placeholder_env_vars(AGENT_AUTH_ENV_VARS)
    checks.append(
        PreflightCheck(
            key="agent_auth",
            label="Agent authentication configured",
            status="pass" if auth_ok else "fail",
            detail=(
                "Detected CLAUDE_CODE_OAUTH_TOKEN / ANTHROPIC_API_KEY."
                if auth_ok
                else (
                    "Detected placeholder value(s) in " + ", ".join(placeholders) + "."
                    if placeholders
                    else "No agent auth detected."
                )
            ),
            hint="" if auth_ok else "Set CLAUDE_CODE_OAUTH_TOKEN or ANTHROPIC_API_KEY.",
        )
    )
    for var in required_credentials(manifest):
        ok = env_secret_present((var,))
        checks.append(
            PreflightCheck(
                key=var,
                label=f"Credential {var}",
                status="pass" if ok else "fail",
                detail="present" if ok else "missing or placeholder",
                hint="" if ok else f"Export {var} (or add it to .env) and run /preflight again.",
            )
        )
    return PreflightReport(checks=checks)


def run_preflight(store: ManifestStore, *, claude_binary: str = "claude") -> PreflightReport:
    """Check credentials, persist ``preflight`` and notify when blocked."""
    manifest = store.read()
    report = build_report(manifest, claude_binary=claude_binary)
    store.merge({"preflight": report.to_manifest()})
    if report.passed:
        logger.info("Preflight passed (%d checks)", len(report.checks))
    else:
        logger.warning("Preflight blocked: %s", ", ".join(report.missing))
        store.add_notification(
            NotificationEntry(
                type="preflight_blocked",
                severity=NotificationSeverity.BLOCKING,
                details="Missing credentials: " + ", ".join(report.missing),
            )
        )
    return report


def format_report(report: PreflightReport) -> str:
    lines = [f"Preflight: {report.status.upper()} ({report.checked_at})"]
    for check in report.checks:
        marker = "OK" if check.status == "pass" else "MISSING"
        lines.append(f"  [{marker}] {check.label}: {check.detail}")
    return "\n".join(lines)
