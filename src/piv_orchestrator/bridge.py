"""Human notification and control bridge over Telegram.

Only the instance that owns the bot (see ``InstanceRegistry.claim_bot_ownership``)
long-polls for updates. Every instance may *send*: manifest notifications are
delivered after each pipeline action and then marked ``acknowledged``.
Commands addressed to another project are written to that project's signal
file instead of being handled here.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from piv_orchestrator.budget import calculate_budget
from piv_orchestrator.commands import Command, command_prompt
from piv_orchestrator.manifest import ManifestStore, phase_numbers, phase_status
from piv_orchestrator.preflight import format_report, run_preflight
from piv_orchestrator.registry import InstanceRegistry, project_prefix_for
from piv_orchestrator.schemas import SignalAction, utc_now_iso
from piv_orchestrator.session import SessionManager
from piv_orchestrator.signal_channel import write_signal
from piv_orchestrator.telegram import TelegramClient, approval_keyboard, escape_html

logger = logging.getLogger(__name__)

APPROVAL_REMINDER_SECONDS = 30 * 60
POLL_RETRY_SECONDS = 1.0
POLL_RETRY_MAX_SECONDS = 60.0
RELAY_FINALIZE_PROMPT = (
    "The requirements conversation is over. Write the final PRD now and emit the "
    "PIV-Automator-Hooks block with prd_path."
)


class RunControl(Protocol):
    def apply_signal(self, action: SignalAction) -> None: ...

    def status_text(self) -> str: ...


# ---------------------------------------------------------------------------
# Tiered approvals
# ---------------------------------------------------------------------------


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    USE_FIXTURE = "use-fixture"
    SKIP = "skip"


@dataclass
class _PendingApproval:
    resource: str
    tier: str
    done: threading.Event = field(default_factory=threading.Event)
    decision: ApprovalDecision | None = None
    reminder: threading.Timer | None = None


class ApprovalBroker:
    """Pending approvals keyed by resource; each request resolves exactly once."""

    def __init__(
        self,
        send: Callable[..., Any],
        *,
        reminder_seconds: float = APPROVAL_REMINDER_SECONDS,
    ) -> None:
        self._send = send
        self.reminder_seconds = reminder_seconds
        self._pending: dict[str, _PendingApproval] = {}
        self._lock = threading.Lock()
        self.reminders_sent = 0

    def pending(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def open(self, resource: str, tier: str, prompt: str) -> _PendingApproval:
        """Register a request, send the keyboard and arm the single reminder."""
        entry = _PendingApproval(resource=resource, tier=str(tier))
        with self._lock:
            previous = self._pending.pop(resource, None)
            self._pending[resource] = entry
        if previous is not None:
            self._finish(previous, ApprovalDecision.SKIP)
        if self.reminder_seconds > 0:
            entry.reminder = threading.Timer(self.reminder_seconds, self._remind, args=(entry,))
            entry.reminder.daemon = True
            entry.reminder.start()
        text = (
            f"<b>Approval needed</b> (tier {escape_html(entry.tier)}): "
            f"<code>{escape_html(resource)}</code>\n{escape_html(prompt)}"
        )
        self._send(text, reply_markup=approval_keyboard(resource))
        return entry

    def request(
        self,
        resource: str,
        tier: str,
        prompt: str,
        *,
        timeout: float | None = None,
    ) -> ApprovalDecision | None:
        """Block until the human answers; ``None`` on timeout or cancellation."""
        entry = self.open(resource, tier, prompt)
        entry.done.wait(timeout)
        if entry.decision is None:
            with self._lock:
                if self._pending.get(resource) is entry:
                    del self._pending[resource]
            self._cancel_reminder(entry)
        return entry.decision

    def resolve(self, resource: str, decision: ApprovalDecision | str) -> bool:
        """Resolve the pending request for *resource*; False if none is pending."""
        with self._lock:
            entry = self._pending.pop(resource, None)
        if entry is None:
            return False
        self._finish(entry, ApprovalDecision(decision))
        logger.info("Approval for %s resolved: %s", resource, entry.decision.value)
        return True

    def cancel_all(self) -> None:
        with self._lock:
            entries = list(self._pending.values())
            self._pending.clear()
        for entry in entries:
            self._cancel_reminder(entry)
            entry.done.set()

    def _finish(self, entry: _PendingApproval, decision: ApprovalDecision) -> None:
        self._cancel_reminder(entry)
        entry.decision = decision
        entry.done.set()

    @staticmethod
    def _cancel_reminder(entry: _PendingApproval) -> None:
        if entry.reminder is not None:
            entry.reminder.cancel()
            entry.reminder = None

    def _remind(self, entry: _PendingApproval) -> None:
        with self._lock:
            still_pending = self._pending.get(entry.resource) is entry
        if not still_pending:
            return
        self.reminders_sent += 1
        self._send(
            f"Reminder: approval for <code>{escape_html(entry.resource)}</code> is still pending.",
            reply_markup=approval_keyboard(entry.resource),
        )


def parse_callback_data(data: str) -> tuple[ApprovalDecision, str] | None:
    action, sep, resource = str(data or "").partition(":")
    if not sep or not resource:
        return None
    try:
        return ApprovalDecision(action), resource
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_notification(project: str, entry: dict[str, Any]) -> str:
    severity = str(entry.get("severity") or "info").upper()
    phase = entry.get("phase")
    where = f" · phase {phase}" if phase is not None else ""
    return (
        f"<b>[{escape_html(severity)}]</b> {escape_html(project)}{where}\n"
        f"<i>{escape_html(entry.get('type') or 'notice')}</i>: {escape_html(entry.get('details') or '')}"
    )


def format_phase_table(manifest: dict[str, Any]) -> str:
    lines = []
    for phase in phase_numbers(manifest):
        status = phase_status(manifest, phase)
        lines.append(
            f"phase {phase}: plan={status.plan.value} execution={status.execution.value} "
            f"validation={status.validation.value}"
        )
    return "\n".join(lines) or "no phases yet"


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


class TelegramBridge:
    """Dispatch bot commands, relay PRD conversations and deliver notifications."""

    COMMANDS = ("/go", "/pause", "/resume", "/status", "/preflight", "/create_prd", "/end_prd")

    def __init__(
        self,
        client: TelegramClient,
        *,
        project_dir: str | Path,
        store: ManifestStore,
        registry: InstanceRegistry,
        control: RunControl | None = None,
        relay_sessions: SessionManager | None = None,
        claude_binary: str = "claude",
        poll_timeout: int = 25,
        poll_retry_seconds: float = POLL_RETRY_SECONDS,
    ) -> None:
        self.client = client
        self.project_dir = Path(project_dir)
        self.store = store
        self.registry = registry
        self.control = control
        self.relay_sessions = relay_sessions
        self.claude_binary = claude_binary
        self.poll_timeout = poll_timeout
        self.poll_retry_seconds = poll_retry_seconds
        self.prefix = project_prefix_for(self.project_dir)
        self.approvals = ApprovalBroker(self.send)
        self.relay_open = False
        self.relay_session_id: str | None = None
        self.polling = False
        self._offset = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._deliver_lock = threading.Lock()

    # ── Outbound ──────────────────────────────────────────────────────

    def send(self, text: str, *, reply_markup: dict[str, Any] | None = None) -> bool:
        return self.client.send_message(text, reply_markup=reply_markup)

    def send_progress(self, tool_calls: int, tool_name: str) -> None:
        self.send(
            f"{escape_html(self.prefix)}: {tool_calls} tool calls so far"
            + (f" (last: {escape_html(tool_name)})" if tool_name else "")
        )

    def deliver_notifications(self) -> int:
        """Send unacknowledged notifications; only delivered ones are acknowledged."""
        with self._deliver_lock:
            manifest = self.store.read()
            delivered: list[int] = []
            for idx, entry in enumerate(manifest.get("notifications") or []):
                if not isinstance(entry, dict) or entry.get("acknowledged"):
                    continue
                if self.send(format_notification(self.prefix, entry)):
                    delivered.append(idx)
                else:
                    break
            if not delivered:
                return 0

            def _mutate(data: dict[str, Any]) -> None:
                notifications = data.get("notifications") or []
                for idx in delivered:
                    if idx < len(notifications) and isinstance(notifications[idx], dict):
                        notifications[idx]["acknowledged"] = True

            self.store.update(_mutate)
            logger.info("Delivered %d notification(s)", len(delivered))
            return len(delivered)

    # ── Inbound polling (bot owner only) ──────────────────────────────

    @property
    def approval_broker(self) -> ApprovalBroker | None:
        """The broker, but only while this instance receives the button callbacks.

        Callbacks reach the bot owner alone; a non-owner waiting on its own
        broker would never be answered.
        """
        return self.approvals if self.polling else None

    def start(self) -> bool:
        """Start the long-poll thread if this instance owns the bot."""
        if not self.registry.claim_bot_ownership(self.project_dir):
            logger.info("Another instance owns the bot; not polling Telegram")
            self.polling = False
            return False
        self.polling = True
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._poll_loop, name="piv-telegram", daemon=True)
        self._thread.start()
        return True

    def stop(self) -> None:
        self.polling = False
        self._stop_event.set()
        self.approvals.cancel_all()
        thread = self._thread
        self._thread = None
        if thread is not None and thread.is_alive():
            thread.join(timeout=1.0)

    def poll_once(self) -> int | None:
        """Handle one batch of updates; ``None`` when the poll request failed."""
        updates = self.client.get_updates(self._offset, poll_timeout=self.poll_timeout)
        if updates is None:
            return None
        for update in updates:
            try:
                self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
            except (TypeError, ValueError):
                continue
            try:
                self.handle_update(update)
            except Exception:
                logger.exception("Failed to handle Telegram update %s", update.get("update_id"))
        return len(updates)

    def _poll_loop(self) -> None:
        delay = self.poll_retry_seconds
        while not self._stop_event.is_set():
            if self.poll_once() is not None:
                delay = self.poll_retry_seconds
                continue
            # Telegram unreachable; wait before polling again.
            if self._stop_event.wait(delay):
                break
            delay = min(delay * 2, POLL_RETRY_MAX_SECONDS)

    # ── Dispatch ──────────────────────────────────────────────────────

    def handle_update(self, update: dict[str, Any]) -> None:
        callback = update.get("callback_query")
        if isinstance(callback, dict):
            self._handle_callback(callback)
            return
        message = update.get("message")
        if not isinstance(message, dict):
            return
        chat = message.get("chat") if isinstance(message.get("chat"), dict) else {}
        if str(chat.get("id", "")) != self.client.chat_id:
            logger.debug("Ignoring message from chat %s", chat.get("id"))
            return
        text = str(message.get("text") or "").strip()
        if text:
            self.handle_text(text)

    def handle_text(self, text: str) -> None:
        if not text.startswith("/"):
            if self.relay_open:
                self._relay(text)
            else:
                self.send("Commands: " + " ".join(self.COMMANDS))
            return
        head, _, rest = text.partition(" ")
        command = head.split("@", 1)[0].lower()
        argument = rest.strip()

        if command in ("/go", "/pause", "/resume"):
            self._dispatch_control(SignalAction(command[1:]), argument)
        elif command == "/status":
            self.send(self._status_text())
        elif command == "/preflight":
            report = run_preflight(self.store, claude_binary=self.claude_binary)
            self.send(f"<pre>{escape_html(format_report(report))}</pre>")
        elif command == "/create_prd":
            self.open_relay()
        elif command == "/end_prd":
            self.close_relay()
        else:
            self.send(f"Unknown command {escape_html(command)}. Try: " + " ".join(self.COMMANDS))

    def _dispatch_control(self, action: SignalAction, prefix: str) -> None:
        if prefix and prefix.lower() != self.prefix:
            target = self.registry.find_by_prefix(prefix)
            if target is None:
                self.send(f"No running project matches <code>{escape_html(prefix)}</code>.")
                return
            if Path(target.project_dir).resolve() != self.project_dir.resolve():
                write_signal(target.project_dir, action, from_=self.prefix)
                self.send(f"Sent <b>{action.value}</b> to {escape_html(target.project_prefix)}.")
                return
        if self.control is None:
            self.send("This instance is not running a pipeline.")
            return
        self.control.apply_signal(action)
        self.send(f"{escape_html(self.prefix)}: <b>{action.value}</b> applied.")

    def _handle_callback(self, callback: dict[str, Any]) -> None:
        parsed = parse_callback_data(str(callback.get("data") or ""))
        callback_id = str(callback.get("id") or "")
        if parsed is None:
            if callback_id:
                self.client.answer_callback_query(callback_id, "Unrecognised action")
            return
        decision, resource = parsed
        resolved = self.approvals.resolve(resource, decision)
        if callback_id:
            self.client.answer_callback_query(
                callback_id, f"{decision.value}: {resource}" if resolved else "No pending approval"
            )

    def _status_text(self) -> str:
        manifest = self.store.read()
        lines = [f"<b>{escape_html(self.prefix)}</b>"]
        if self.control is not None:
            lines.append(escape_html(self.control.status_text()))
        lines.append(f"<pre>{escape_html(format_phase_table(manifest))}</pre>")
        others = [p for p in self.registry.list_projects() if p.name != self.project_dir.name]
        for project in others:
            phase = project.current_phase if project.current_phase is not None else "-"
            lines.append(
                f"{escape_html(project.name)}: {project.status.value}, phase {phase}, "
                f"heartbeat {escape_html(project.heartbeat)}"
            )
        pending = self.approvals.pending()
        if pending:
            lines.append("Pending approvals: " + escape_html(", ".join(pending)))
        return "\n".join(lines)

    # ── PRD relay ─────────────────────────────────────────────────────

    def open_relay(self) -> None:
        if self.relay_sessions is None:
            self.send("PRD relay is unavailable on this instance.")
            return
        self.relay_open = True
        self.relay_session_id = None
        self.send("PRD relay open. Describe what you want to build; /end_prd to finish.")

    def _relay(self, text: str) -> None:
        assert self.relay_sessions is not None
        budget = calculate_budget(Command.CREATE_PRD, self.project_dir, self.store.read())
        if self.relay_session_id is None:
            prompt = f"{command_prompt(Command.CREATE_PRD)}\n\n{text}"
            result = self.relay_sessions.create_session(prompt, budget)
        else:
            result = self.relay_sessions.resume_session(self.relay_session_id, text, budget)
        self.relay_session_id = result.session_id or self.relay_session_id
        if result.ok:
            self.send(escape_html(result.text or "(no reply)"))
        else:
            self.send(f"Relay error: {escape_html(result.error.message if result.error else '')}")

    def close_relay(self) -> None:
        if not self.relay_open:
            self.send("No PRD relay is open.")
            return
        self.relay_open = False
        session_id, self.relay_session_id = self.relay_session_id, None
        if session_id is None or self.relay_sessions is None:
            self.send("PRD relay closed.")
            return
        budget = calculate_budget(Command.CREATE_PRD, self.project_dir, self.store.read())
        result = self.relay_sessions.resume_session(session_id, RELAY_FINALIZE_PROMPT, budget)
        prd_path = result.structured_fields.get("prd_path")
        if result.ok and prd_path:
            self.store.merge({"prd": {"path": prd_path, "status": "complete", "created_at": utc_now_iso()}})
            self.send(f"PRD written to <code>{escape_html(prd_path)}</code>. /go to start.")
        else:
            self.send("PRD relay closed without a PRD path; the pipeline will ask again.")
