"""Git helpers: repository bootstrap, checkpoints, rollback and change queries."""

from __future__ import annotations

import datetime as dt
import logging
import os
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from piv_orchestrator.schemas import CheckpointEntry, CheckpointStatus, utc_now_iso

if TYPE_CHECKING:
    from piv_orchestrator.manifest import ManifestStore

logger = logging.getLogger(__name__)

CHECKPOINT_TAG_PREFIX = "checkpoint/phase-"
STATE_DIR_NAME = ".agents"


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that prevent child console events from reaching the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 60,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    result = subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
        **_git_subprocess_isolation_kwargs(),
    )
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def is_repo(repo: str | Path) -> bool:
    result = _run_git("rev-parse", "--is-inside-work-tree", cwd=Path(repo), check=False)
    return result.returncode == 0 and result.stdout.strip() == "true"


def has_head(repo: str | Path) -> bool:
    return _run_git("rev-parse", "--verify", "HEAD", cwd=Path(repo), check=False).returncode == 0


def head_sha(repo: str | Path) -> str:
    """Return the short SHA of HEAD."""
    return _run_git("rev-parse", "--short", "HEAD", cwd=Path(repo)).stdout.strip()


def _pending_paths(repo: str | Path) -> list[str]:
    """Paths with staged, unstaged or untracked changes, state directory excluded."""
    raw = _run_git("status", "--porcelain", "--untracked-files=all", cwd=Path(repo)).stdout
    paths: list[str] = []
    for line in raw.splitlines():
        if len(line) < 4:
            continue
        path = line[3:].strip().strip('"')
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if path == STATE_DIR_NAME or path.startswith(f"{STATE_DIR_NAME}/"):
            continue
        paths.append(path)
    return paths


def has_uncommitted_changes(repo: str | Path) -> bool:
    """True when tracked or untracked changes exist outside the state directory."""
    return bool(_pending_paths(repo))


def _untracked_files(repo: Path) -> list[str]:
    raw = _run_git("ls-files", "--others", "--exclude-standard", "-z", cwd=repo).stdout
    return [part for part in raw.split("\x00") if part]


def changed_files_since(repo: str | Path, ref: str) -> list[str]:
    """Files changed relative to *ref*: committed, staged, unstaged and untracked.

    Paths under the state directory are excluded.
    """
    cwd = Path(repo)
    tracked = _run_git("diff", "--name-only", ref, cwd=cwd).stdout.splitlines()
    seen: dict[str, None] = {}
    for rel in [*tracked, *_untracked_files(cwd)]:
        rel = rel.strip()
        if not rel or rel.startswith(f"{STATE_DIR_NAME}/"):
            continue
        seen[Path(rel).as_posix()] = None
    return list(seen)


def staged_file_count(repo: str | Path) -> int:
    """Number of files ``commit_all`` would include (staged + unstaged + untracked)."""
    return len(_pending_paths(repo))


def tracked_source_file_count(repo: str | Path, suffixes: tuple[str, ...]) -> int:
    raw = _run_git("ls-files", "-z", cwd=Path(repo), check=False).stdout
    return sum(1 for rel in raw.split("\x00") if rel and rel.endswith(suffixes))


def commands_version(repo: str | Path) -> str:
    """Short hash of the last commit touching ``.claude/commands/``.

    Falls back to HEAD, then to ``"unknown"`` (no repo, no commits).
    """
    cwd = Path(repo)
    try:
        scoped = _run_git(
            "log", "-1", "--format=%h", "--", ".claude/commands/", cwd=cwd, check=False, timeout=5
        )
        if scoped.returncode == 0 and scoped.stdout.strip():
            return scoped.stdout.strip()
        head = _run_git("rev-parse", "--short", "HEAD", cwd=cwd, check=False, timeout=5)
        if head.returncode == 0 and head.stdout.strip():
            return head.stdout.strip()
    except (OSError, subprocess.SubprocessError):
        logger.debug("Could not resolve commands version for %s", cwd, exc_info=True)
    return "unknown"


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def ensure_git_identity(repo: str | Path) -> None:
    """Set a repo-local ``user.name``/``user.email`` when either is missing."""
    cwd = Path(repo)
    for key, fallback in [
        ("user.name", "PIV Orchestrator"),
        ("user.email", "piv-orchestrator@localhost"),
    ]:
        result = _run_git("config", key, cwd=cwd, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            _run_git("config", key, fallback, cwd=cwd)
            logger.info("Set %s = %s in %s", key, fallback, cwd)


def _exclude_state_dir(repo: Path) -> None:
    """Keep the orchestrator state directory out of commits via ``info/exclude``."""
    git_dir_raw = _run_git("rev-parse", "--git-dir", cwd=repo).stdout.strip()
    git_dir = Path(git_dir_raw)
    if not git_dir.is_absolute():
        git_dir = repo / git_dir
    exclude = git_dir / "info" / "exclude"
    pattern = f"/{STATE_DIR_NAME}/"
    existing = exclude.read_text(encoding="utf-8") if exclude.is_file() else ""
    if pattern in existing.splitlines():
        return
    exclude.parent.mkdir(parents=True, exist_ok=True)
    suffix = "" if not existing or existing.endswith("\n") else "\n"
    exclude.write_text(f"{existing}{suffix}{pattern}\n", encoding="utf-8")


def ensure_repo(repo: str | Path) -> None:
    """Initialise *repo* and create a baseline commit when there is no HEAD.

    Safe to call repeatedly.
    """
    cwd = Path(repo)
    cwd.mkdir(parents=True, exist_ok=True)
    if not is_repo(cwd):
        _run_git("init", cwd=cwd)
        logger.info("Initialised git repository in %s", cwd)
    ensure_git_identity(cwd)
    _exclude_state_dir(cwd)
    if not has_head(cwd):
        _run_git("add", "-A", cwd=cwd)
        _run_git("commit", "--allow-empty", "-m", "chore: baseline before orchestration", cwd=cwd)
        logger.info("Created baseline commit in %s", cwd)


def commit_all(repo: str | Path, message: str) -> str:
    """Stage everything and commit.  Return the new commit SHA."""
    cwd = Path(repo)
    _run_git("add", "-A", cwd=cwd)
    _run_git("commit", "-m", message, "--allow-empty", cwd=cwd)
    return head_sha(repo)


def checkpoint_tag_name(phase: int, now: dt.datetime | None = None) -> str:
    stamp = (now or dt.datetime.now(dt.timezone.utc)).strftime("%Y%m%dT%H%M%S")
    return f"{CHECKPOINT_TAG_PREFIX}{phase}-{stamp}"


def create_checkpoint(repo: str | Path, phase: int) -> str:
    """Tag the current HEAD as a rollback point for *phase* and return the tag.

    Pending work (e.g. the phase plan) is committed first so a rollback
    cannot discard it.
    """
    cwd = Path(repo)
    ensure_repo(cwd)
    if has_uncommitted_changes(cwd):
        commit_all(cwd, f"chore: checkpoint before phase {phase}")
    tag = checkpoint_tag_name(phase)
    if _run_git("rev-parse", "--verify", f"refs/tags/{tag}", cwd=cwd, check=False).returncode == 0:
        # Two checkpoints within the same second; disambiguate.
        suffix = 2
        while (
            _run_git("rev-parse", "--verify", f"refs/tags/{tag}-{suffix}", cwd=cwd, check=False).returncode
            == 0
        ):
            suffix += 1
        tag = f"{tag}-{suffix}"
    _run_git("tag", tag, cwd=cwd)
    logger.info("Created checkpoint %s", tag)
    return tag


def rollback(repo: str | Path, tag: str) -> None:
    """Hard-reset to *tag* and drop untracked files, keeping the state directory."""
    cwd = Path(repo)
    state_dir = cwd / STATE_DIR_NAME
    # The state directory may be tracked in older repos; keep its current content.
    preserved: dict[Path, bytes] = {}
    if state_dir.is_dir():
        for path in state_dir.rglob("*"):
            if path.is_file():
                preserved[path] = path.read_bytes()
    _run_git("reset", "--hard", tag, cwd=cwd)
    _run_git("clean", "-fd", "-e", f"{STATE_DIR_NAME}/", cwd=cwd, check=False)
    for path, data in preserved.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    logger.info("Rolled back %s to %s", cwd, tag)


# ---------------------------------------------------------------------------
# Checkpoint bookkeeping
# ---------------------------------------------------------------------------


class CheckpointManager:
    """Create, reuse and resolve phase checkpoints recorded in the manifest."""

    def __init__(self, project_dir: Path, store: ManifestStore) -> None:
        self.project_dir = Path(project_dir)
        self.store = store

    def active_for_phase(self, phase: int) -> str | None:
        manifest = self.store.read()
        for entry in reversed(manifest.get("checkpoints") or []):
            if not isinstance(entry, dict):
                continue
            if entry.get("phase") == phase and entry.get("status") == CheckpointStatus.ACTIVE.value:
                return str(entry.get("tag") or "") or None
        return None

    def create_or_reuse(self, phase: int) -> str:
        """Return the active checkpoint for *phase*, creating one if none exists."""
        existing = self.active_for_phase(phase)
        if existing:
            logger.info("Reusing checkpoint %s for phase %s", existing, phase)
            return existing
        tag = create_checkpoint(self.project_dir, phase)
        entry = CheckpointEntry(tag=tag, phase=phase)
        self.store.append("checkpoints", entry.model_dump(mode="json"))
        return tag

    def resolve(self, tag: str) -> None:
        """Mark *tag* resolved after a successful commit."""

        def _mutate(manifest: dict) -> None:
            for entry in manifest.get("checkpoints") or []:
                if isinstance(entry, dict) and entry.get("tag") == tag:
                    entry["status"] = CheckpointStatus.RESOLVED.value
                    entry["resolved_at"] = utc_now_iso()

        self.store.update(_mutate)
        logger.info("Resolved checkpoint %s", tag)
