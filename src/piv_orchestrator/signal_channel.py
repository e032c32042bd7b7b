"""File-based one-shot mailbox for relaying control actions between orchestrators."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from piv_orchestrator.file_io import atomic_write_json, locked_path, read_json_tolerant
from piv_orchestrator.schemas import SignalAction, SignalMessage

logger = logging.getLogger(__name__)

SIGNAL_FILE_NAME = "orchestrator.signal"
DEFAULT_POLL_SECONDS = 2.0


def signal_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / ".agents" / SIGNAL_FILE_NAME


def write_signal(project_dir: str | Path, action: SignalAction | str, from_: str = "") -> SignalMessage:
    """Drop *action* into the project's mailbox, replacing any unread signal."""
    message = SignalMessage(action=SignalAction(action), from_=from_)
    atomic_write_json(signal_path(project_dir), message.to_payload())
    logger.info("Wrote signal %s for %s", message.action.value, project_dir)
    return message


def consume_signal(project_dir: str | Path) -> SignalMessage | None:
    """Read and delete the pending signal, if any. Invalid content is discarded."""
    path = signal_path(project_dir)
    with locked_path(path):
        if not path.exists():
            return None
        data = read_json_tolerant(path)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not delete signal file %s: %s", path, exc)
    if data is None:
        logger.warning("Discarded unreadable signal file %s", path)
        return None
    try:
        return SignalMessage.model_validate(data)
    except ValueError:
        logger.warning("Discarded invalid signal payload: %r", data)
        return None


class SignalWatcher:
    """Background thread that polls the mailbox and hands signals to *handler*."""

    def __init__(
        self,
        project_dir: str | Path,
        handler: Callable[[SignalMessage], None],
        *,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.handler = handler
        self.poll_seconds = max(0.05, float(poll_seconds))
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="piv-signal-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_seconds + 1.0)
            self._thread = None

    def poll_once(self) -> SignalMessage | None:
        message = consume_signal(self.project_dir)
        if message is None:
            return None
        logger.info("Received signal %s from %s", message.action.value, message.from_ or "?")
        try:
            self.handler(message)
        except Exception:
            logger.exception("Signal handler failed for %s", message.action.value)
        return message

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.warning("Signal poll failed", exc_info=True)
            self._stop_event.wait(self.poll_seconds)
