"""Agent-session manager: run ``claude -p`` sessions and fold them into results.

A session is created by the first prompt and resumed (``--resume``) by later
prompts, so a pairing such as ``/prime`` then ``/execute`` shares one context
window. Wall-clock limits are enforced by a cancellation token; running out
of time yields a result with an ``abort_timeout`` error rather than raising.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from pathlib import Path

from piv_orchestrator.agent_process import (
    StreamEvent,
    StreamEventKind,
    StreamExecutionResult,
    coerce_float,
    coerce_int,
    execute_streaming_command,
    resolve_binary,
)
from piv_orchestrator.hooks import parse_hooks
from piv_orchestrator.schemas import Budget, SessionError, SessionErrorType, SessionResult

logger = logging.getLogger(__name__)

Executor = Callable[..., StreamExecutionResult]
ProgressCallback = Callable[[int, str], None]


class CancellationToken:
    """A ``threading.Event`` that can be armed to fire after a deadline."""

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    def __init__(self) -> None:
        self.event = threading.Event()
        self.reason: str | None = None
        self._timer: threading.Timer | None = None

    def arm(self, seconds: float) -> None:
        self.disarm()
        if seconds <= 0:
            return
        self._timer = threading.Timer(seconds, self.cancel, kwargs={"reason": self.TIMEOUT})
        self._timer.daemon = True
        self._timer.start()

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel(self, reason: str = CANCELLED) -> None:
        if not self.event.is_set():
            self.reason = reason
            self.event.set()

    @property
    def cancelled(self) -> bool:
        return self.event.is_set()


class ProgressThrottle:
    """Count tool calls and emit a progress callback on a count or time threshold.

    Callback failures are logged and never change the counter.
    """

    def __init__(
        self,
        callback: ProgressCallback | None,
        *,
        every_n_calls: int = 10,
        min_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.callback = callback
        self.every_n_calls = max(1, int(every_n_calls))
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self._clock = clock
        self.tool_calls = 0
        self.emitted = 0
        self._since_emit = 0
        self._last_emit = clock()

    def record(self, event: StreamEvent) -> None:
        if event.kind != StreamEventKind.TOOL_CALL:
            return
        self.tool_calls += 1
        self._since_emit += 1
        now = self._clock()
        due = self._since_emit >= self.every_n_calls or (
            now - self._last_emit >= self.min_interval_seconds
        )
        if not due or self.callback is None:
            return
        self._since_emit = 0
        self._last_emit = now
        try:
            self.callback(self.tool_calls, event.tool_name or "")
            self.emitted += 1
        except Exception:
            logger.warning("Progress callback failed", exc_info=True)


def fold_events(
    execution: StreamExecutionResult,
    *,
    duration_ms: int,
    cancel_reason: str | None = None,
) -> SessionResult:
    """Reduce a finished stream into one immutable ``SessionResult``."""
    session_id: str | None = None
    text = ""
    last_text = ""
    cost = 0.0
    turns = 0
    result_error: str | None = None
    error_events: list[str] = []

    for event in execution.events:
        if session_id is None and event.session_id:
            session_id = event.session_id
        if event.kind in (StreamEventKind.TEXT, StreamEventKind.TOOL_CALL) and event.text:
            last_text = event.text
        elif event.kind == StreamEventKind.ERROR and event.text:
            error_events.append(event.text)
        elif event.kind == StreamEventKind.RESULT:
            raw = event.raw
            text = event.text or text
            cost = coerce_float(raw.get("total_cost_usd", raw.get("cost_usd", 0.0)))
            turns = coerce_int(raw.get("num_turns", 0))
            if raw.get("is_error") or str(raw.get("subtype") or "").startswith("error"):
                result_error = str(raw.get("subtype") or "error") + (f": {text}" if text else "")

    text = text or last_text
    error: SessionError | None = None
    if execution.cancelled:
        if cancel_reason == CancellationToken.TIMEOUT:
            error = SessionError(
                type=SessionErrorType.ABORT_TIMEOUT,
                message=f"Session aborted after {duration_ms} ms (budget exhausted)",
            )
        else:
            error = SessionError(type=SessionErrorType.CANCELLED, message="Session cancelled")
    elif result_error:
        error = SessionError(type=SessionErrorType.AGENT_ERROR, message=result_error[:2000])
    elif execution.exit_code != 0:
        detail = execution.stderr_text or "; ".join(error_events) or text[:500]
        error = SessionError(
            type=SessionErrorType.PROCESS_ERROR,
            message=f"Agent exited with status {execution.exit_code}: {detail}"[:2000],
        )

    return SessionResult(
        session_id=session_id,
        text=text,
        structured_fields=parse_hooks(text),
        cost_usd=cost,
        duration_ms=duration_ms,
        turns=turns,
        error=error,
    )


class SessionManager:
    """Create, resume and chain agent sessions inside one project directory."""

    def __init__(
        self,
        project_dir: str | Path,
        *,
        claude_binary: str = "claude",
        model: str | None = None,
        env_overrides: dict[str, str] | None = None,
        executor: Executor = execute_streaming_command,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.claude_binary = claude_binary
        self.model = (model or "").strip() or None
        self.env_overrides = env_overrides or {}
        self.executor = executor
        self.on_progress = on_progress
        self._active_token: CancellationToken | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_session(self, prompt: str, budget: Budget) -> SessionResult:
        return self._run(prompt, budget, resume_id=None)

    def resume_session(self, session_id: str, prompt: str, budget: Budget) -> SessionResult:
        return self._run(prompt, budget, resume_id=session_id)

    def run_pairing(self, prompts: list[str], budget: Budget) -> SessionResult:
        """Run *prompts* in one session; stops at the first failing step.

        The returned result carries the last step's text and fields with
        cost, turns and duration summed across steps.
        """
        if not prompts:
            raise ValueError("run_pairing requires at least one prompt")
        total_cost = 0.0
        total_turns = 0
        total_ms = 0
        session_id: str | None = None
        result: SessionResult | None = None
        for idx, prompt in enumerate(prompts):
            if idx == 0 or not session_id:
                result = self.create_session(prompt, budget)
            else:
                result = self.resume_session(session_id, prompt, budget)
            total_cost += result.cost_usd
            total_turns += result.turns
            total_ms += result.duration_ms
            session_id = result.session_id or session_id
            if not result.ok:
                break
        assert result is not None
        return result.model_copy(
            update={
                "session_id": session_id,
                "cost_usd": total_cost,
                "turns": total_turns,
                "duration_ms": total_ms,
            }
        )

    def cancel_active(self) -> None:
        """Abort the running session, if any (used on shutdown signals)."""
        token = self._active_token
        if token is not None:
            token.cancel(CancellationToken.CANCELLED)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def build_command(self, prompt: str, budget: Budget, *, resume_id: str | None = None) -> list[str]:
        cmd = [
            resolve_binary(self.claude_binary),
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
            "--max-turns",
            str(max(1, budget.max_turns)),
        ]
        if resume_id:
            cmd.extend(["--resume", resume_id])
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    def _run(self, prompt: str, budget: Budget, *, resume_id: str | None) -> SessionResult:
        cmd = self.build_command(prompt, budget, resume_id=resume_id)
        env = {**os.environ, **self.env_overrides}
        token = CancellationToken()
        throttle = ProgressThrottle(self.on_progress)
        self._active_token = token
        logger.info(
            "Agent session %s (max_turns=%s, timeout=%ss, prompt=%r)",
            f"resume {resume_id}" if resume_id else "create",
            budget.max_turns,
            budget.timeout_ms // 1000,
            prompt[:80],
        )
        start = time.monotonic()
        token.arm(budget.timeout_ms / 1000.0)
        try:
            execution = self.executor(
                cmd=cmd,
                cwd=self.project_dir,
                env=env,
                cancel_event=token.event,
                on_event=throttle.record,
                process_name="Claude Code",
            )
        except OSError as exc:
            return SessionResult(
                session_id=resume_id,
                duration_ms=int((time.monotonic() - start) * 1000),
                error=SessionError(
                    type=SessionErrorType.PROCESS_ERROR, message=f"Failed to start agent: {exc}"
                ),
            )
        finally:
            token.disarm()
            self._active_token = None

        result = fold_events(
            execution,
            duration_ms=int((time.monotonic() - start) * 1000),
            cancel_reason=token.reason,
        )
        if result.session_id is None and resume_id:
            result = result.model_copy(update={"session_id": resume_id})
        if result.ok:
            logger.info(
                "Agent session done: %s turns, $%.4f, %d hook fields",
                result.turns,
                result.cost_usd,
                len(result.structured_fields),
            )
        else:
            logger.warning("Agent session failed: %s", result.error.message if result.error else "")
        return result
