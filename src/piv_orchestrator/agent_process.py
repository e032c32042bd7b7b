"""Streaming subprocess executor and typed events for the agent CLI."""

from __future__ import annotations

import json
import logging
import math
import os
import queue
import shutil
import subprocess
import threading
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_MAX_CAPTURED_EVENTS = 20_000
_MAX_CAPTURED_STDERR_LINES = 5_000


class StreamEventKind(str, Enum):
    INIT = "init"
    TEXT = "text"
    TOOL_CALL = "tool_call"
    RESULT = "result"
    ERROR = "error"
    OTHER = "other"


@dataclass(slots=True)
class StreamEvent:
    """One normalised line of ``claude --output-format stream-json`` output."""

    kind: StreamEventKind
    raw: dict[str, Any] = field(default_factory=dict)
    text: str = ""
    session_id: str | None = None
    tool_name: str | None = None


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    return shutil.which(expanded) or expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads."""
    if value is None or isinstance(value, bool):
        return int(bool(value))
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    try:
        return int(float(str(value).strip().replace(",", "")))
    except (TypeError, ValueError, OverflowError):
        return 0


def coerce_float(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def parse_stream_line(line: str) -> StreamEvent | None:
    """Normalise one stream-json line; non-JSON lines are ignored.

    ``system``/``init`` carries the session id, ``assistant`` messages hold
    text and ``tool_use`` blocks, and the final ``result`` holds the answer,
    cost and turn count.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Non-JSON line from agent: %s", line[:200])
        return None
    if not isinstance(data, dict):
        return None

    etype = str(data.get("type") or "").lower()
    session_id = data.get("session_id") if isinstance(data.get("session_id"), str) else None

    if etype == "system":
        kind = StreamEventKind.INIT if data.get("subtype") in (None, "init") else StreamEventKind.OTHER
        return StreamEvent(kind=kind, raw=data, session_id=session_id)

    if etype == "result":
        result = data.get("result")
        text = result if isinstance(result, str) else ""
        return StreamEvent(kind=StreamEventKind.RESULT, raw=data, text=text, session_id=session_id)

    if etype == "assistant":
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return StreamEvent(kind=StreamEventKind.TEXT, raw=data, text=content, session_id=session_id)
        texts: list[str] = []
        tool_name: str | None = None
        for block in content if isinstance(content, list) else []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_use" and tool_name is None:
                tool_name = str(block.get("name") or "unknown")
            elif block.get("type") == "text":
                texts.append(str(block.get("text") or ""))
        if tool_name is not None:
            return StreamEvent(
                kind=StreamEventKind.TOOL_CALL,
                raw=data,
                text="\n".join(texts).strip(),
                session_id=session_id,
                tool_name=tool_name,
            )
        return StreamEvent(
            kind=StreamEventKind.TEXT, raw=data, text="\n".join(texts).strip(), session_id=session_id
        )

    if etype == "error" or "error" in data:
        err = data.get("error")
        if isinstance(err, dict):
            err = err.get("message") or err.get("text")
        return StreamEvent(
            kind=StreamEventKind.ERROR,
            raw=data,
            text=str(err or data.get("message") or ""),
            session_id=session_id,
        )

    return StreamEvent(kind=StreamEventKind.OTHER, raw=data, session_id=session_id)


@dataclass(slots=True)
class StreamExecutionResult:
    """Captured output and metadata from an agent subprocess."""

    events: list[StreamEvent]
    stderr_lines: list[str]
    exit_code: int
    cancelled: bool = False

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_lines).strip()


def _process_isolation_kwargs() -> dict[str, object]:
    """Run the child in its own group/session so terminal signals stay with us."""
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        flags = new_pg | no_win
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def execute_streaming_command(
    *,
    cmd: list[str],
    cwd: Path,
    env: dict[str, str],
    cancel_event: threading.Event | None = None,
    on_event: Callable[[StreamEvent], None] | None = None,
    process_name: str = "agent",
) -> StreamExecutionResult:
    """Run *cmd*, folding stdout JSONL into events until exit or cancellation."""
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
        **_process_isolation_kwargs(),
    )
    if proc.stdout is None or proc.stderr is None:
        raise RuntimeError(f"{process_name} subprocess pipes are unexpectedly unavailable")

    events: deque[StreamEvent] = deque(maxlen=_MAX_CAPTURED_EVENTS)
    stderr_lines: deque[str] = deque(maxlen=_MAX_CAPTURED_STDERR_LINES)
    stream_queue: queue.Queue[tuple[str, str | object]] = queue.Queue()
    done_sentinel = object()

    def _pump_stream(stream_name: str, stream: Any) -> None:
        try:
            for line in stream:
                stream_queue.put((stream_name, line.rstrip("\n\r")))
        finally:
            stream_queue.put((stream_name, done_sentinel))

    def _collect(stream_name: str, line: str) -> None:
        if stream_name == "stderr":
            stderr_lines.append(line)
            return
        event = parse_stream_line(line)
        if event is None:
            return
        events.append(event)
        if on_event is not None:
            try:
                on_event(event)
            except Exception:
                logger.debug("%s event callback failed", process_name, exc_info=True)

    stdout_thread = threading.Thread(target=_pump_stream, args=("stdout", proc.stdout), daemon=True)
    stderr_thread = threading.Thread(target=_pump_stream, args=("stderr", proc.stderr), daemon=True)
    stdout_thread.start()
    stderr_thread.start()

    closed_streams: set[str] = set()
    cancelled = False
    try:
        while len(closed_streams) < 2:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                _terminate_process_with_fallback(proc, process_name=process_name)
                break
            try:
                stream_name, payload = stream_queue.get(timeout=0.25)
            except queue.Empty:
                if proc.poll() is not None and not stdout_thread.is_alive() and not stderr_thread.is_alive():
                    break
                continue
            if payload is done_sentinel:
                closed_streams.add(stream_name)
                continue
            if payload:
                _collect(stream_name, str(payload))

        _wait_for_process(proc)

        while True:
            try:
                stream_name, payload = stream_queue.get_nowait()
            except queue.Empty:
                break
            if payload is done_sentinel or not payload:
                continue
            _collect(stream_name, str(payload))

        return StreamExecutionResult(
            events=list(events),
            stderr_lines=list(stderr_lines),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            cancelled=cancelled,
        )
    finally:
        stdout_thread.join(timeout=1.0)
        stderr_thread.join(timeout=1.0)
        if not proc.stdout.closed:
            proc.stdout.close()
        if not proc.stderr.closed:
            proc.stderr.close()


def _wait_for_process(proc: subprocess.Popen[str]) -> None:
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover
        proc.kill()
        proc.wait(timeout=5.0)


def _terminate_process_with_fallback(
    proc: subprocess.Popen[str],
    *,
    process_name: str,
    terminate_timeout_seconds: float = 1.5,
) -> None:
    """Request graceful terminate first, then force-kill if still alive."""
    if proc.poll() is not None:
        return
    _signal_process(proc, "SIGTERM")
    try:
        proc.wait(timeout=terminate_timeout_seconds)
        return
    except subprocess.TimeoutExpired:
        logger.warning("%s did not exit after terminate; forcing kill.", process_name)
    _signal_process(proc, "SIGKILL")
    with suppress(subprocess.TimeoutExpired):
        proc.wait(timeout=5.0)


def _signal_process(proc: subprocess.Popen[str], sig_name: str) -> None:
    """Best-effort delivery to the child's process group, then the child itself."""
    if os.name != "nt":
        pid = int(getattr(proc, "pid", 0) or 0)
        if pid > 0:
            with suppress(OSError):
                os.killpg(os.getpgid(pid), getattr(signal, sig_name))
    with suppress(OSError):
        if sig_name == "SIGKILL":
            proc.kill()
        else:
            proc.terminate()
