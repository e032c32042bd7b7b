"""Atomic writes and tolerant reads for the orchestrator's state files.

Every file under ``.agents/`` and the shared registry is written through
:func:`atomic_write_text`: content goes to a sibling temp file, is flushed
to disk, and is then renamed over the target, so a concurrent reader (the
stall supervisor, another orchestrator, the Telegram poller) sees either
the old document or the new one.
"""

from __future__ import annotations

import errno
import json
import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

import yaml

_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01

_PATH_LOCKS_GUARD = threading.Lock()
_PATH_LOCKS: dict[str, threading.RLock] = {}


def _path_lock(path: Path) -> threading.RLock:
    with _PATH_LOCKS_GUARD:
        return _PATH_LOCKS.setdefault(str(Path(path).resolve()), threading.RLock())


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize file access for a single process using a per-path lock.

    Threads of one orchestrator (phase loop, heartbeat, bot poller) share
    the manifest; this does not protect against other processes.
    """
    with _path_lock(path):
        yield


def _is_transient_replace_error(exc: OSError) -> bool:
    # Windows reports a target held open by another reader as EACCES.
    return isinstance(exc, PermissionError) or exc.errno == errno.EACCES


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    attempt = 0
    while True:
        try:
            src.replace(dst)
            return
        except OSError as exc:
            attempt += 1
            if not _is_transient_replace_error(exc) or attempt >= _ATOMIC_REPLACE_MAX_RETRIES:
                raise
        time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * attempt)


def atomic_write_text(path: str | Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text via temp file + rename so readers never see a partial file."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{target.name}.", suffix=".tmp", dir=str(target.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="\n") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        with locked_path(target):
            _replace_file_with_retry(tmp_path, target)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def atomic_write_yaml(path: Path, payload: Any) -> None:
    text = yaml.safe_dump(payload, sort_keys=False, allow_unicode=True, default_flow_style=False)
    atomic_write_text(path, text)


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2) + "\n")


def read_yaml(path: Path) -> Any:
    """Parse a YAML file; ``None`` when it does not exist.

    Raises ``yaml.YAMLError`` for malformed content so callers can decide
    whether that is corruption or something to tolerate.
    """
    if not path.is_file():
        return None
    return yaml.safe_load(path.read_text(encoding="utf-8"))


def read_json_tolerant(path: Path) -> dict[str, Any] | None:
    """Read a JSON object, returning ``None`` for missing or unreadable files."""
    try:
        raw = path.read_text(encoding="utf-8")
    except (FileNotFoundError, OSError):
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
