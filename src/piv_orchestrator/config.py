"""Environment-driven configuration for an orchestrator run."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from piv_orchestrator.errors import ConfigError
from piv_orchestrator.preflight import AGENT_AUTH_ENV_VARS, env_secret_present
from piv_orchestrator.registry import default_registry_path

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_S = 120.0
DEFAULT_SIGNAL_POLL_S = 2.0
DEFAULT_PROFILE_FRESHNESS_DAYS = 7


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


def load_env_files(project_dir: Path | None = None) -> None:
    """Load ``.env`` from the cwd and the project directory (existing env wins)."""
    candidates = [Path.cwd() / ".env"]
    if project_dir is not None:
        candidates.append(Path(project_dir) / ".env")
    for env_file in candidates:
        if env_file.is_file():
            load_dotenv(env_file, override=False)


class OrchestratorConfig(BaseModel):
    project_dir: Path
    model: str | None = None
    claude_binary: str = "claude"
    registry_path: Path = Field(default_factory=default_registry_path)
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S
    signal_poll_s: float = DEFAULT_SIGNAL_POLL_S
    profile_freshness_days: int = DEFAULT_PROFILE_FRESHNESS_DAYS

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    @property
    def project_name(self) -> str:
        return self.project_dir.name


def load_config(
    project_dir: str | Path | None = None,
    *,
    require_auth: bool = True,
) -> OrchestratorConfig:
    """Build the run configuration from environment variables.

    ``project_dir`` (the ``--project`` flag) beats ``PIV_PROJECT_DIR``, which
    beats the current directory. Raises ``ConfigError`` when neither agent
    credential is usable and *require_auth* is set.
    """
    load_env_files(Path(project_dir) if project_dir else None)
    raw_dir = str(project_dir or os.getenv("PIV_PROJECT_DIR", "").strip() or Path.cwd())
    resolved = Path(raw_dir).expanduser().resolve()
    if project_dir is None and os.getenv("PIV_PROJECT_DIR"):
        load_env_files(resolved)
    if not resolved.is_dir():
        raise ConfigError(f"Project directory does not exist: {resolved}")

    if require_auth and not env_secret_present(AGENT_AUTH_ENV_VARS):
        raise ConfigError(
            "No agent credentials found: set CLAUDE_CODE_OAUTH_TOKEN (subscription) "
            "or ANTHROPIC_API_KEY (API billing)."
        )

    return OrchestratorConfig(
        project_dir=resolved,
        model=os.getenv("PIV_MODEL", "").strip() or None,
        claude_binary=os.getenv("PIV_CLAUDE_BIN", "").strip() or "claude",
        registry_path=default_registry_path(),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", "").strip() or None,
        telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID", "").strip() or None,
        heartbeat_interval_s=_env_float("PIV_HEARTBEAT_INTERVAL_S", DEFAULT_HEARTBEAT_INTERVAL_S),
        signal_poll_s=_env_float("PIV_SIGNAL_POLL_S", DEFAULT_SIGNAL_POLL_S),
        profile_freshness_days=_env_int("PIV_PROFILE_FRESHNESS_DAYS", DEFAULT_PROFILE_FRESHNESS_DAYS),
    )
