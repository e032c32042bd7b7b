"""Tests for tiered approvals, notification delivery and Telegram command dispatch."""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Any

import pytest

from piv_orchestrator.bridge import (
    RELAY_FINALIZE_PROMPT,
    ApprovalBroker,
    ApprovalDecision,
    TelegramBridge,
    format_notification,
    format_phase_table,
    parse_callback_data,
)
from piv_orchestrator.manifest import ManifestStore
from piv_orchestrator.registry import InstanceRegistry
from piv_orchestrator.schemas import (
    Budget,
    NotificationEntry,
    NotificationSeverity,
    SessionError,
    SessionErrorType,
    SessionResult,
    SignalAction,
)
from piv_orchestrator.signal_channel import consume_signal


class FakeClient:
    """Stands in for ``TelegramClient``: records sends, optionally failing after N."""

    def __init__(self, chat_id: str = "100", *, fail_after: int | None = None) -> None:
        self.chat_id = chat_id
        self.fail_after = fail_after
        self.sent: list[tuple[str, dict[str, Any] | None]] = []
        self.answers: list[tuple[str, str]] = []
        self.updates: list[dict[str, Any]] = []

    def send_message(self, text: str, *, reply_markup: dict[str, Any] | None = None) -> bool:
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            return False
        self.sent.append((text, reply_markup))
        return True

    def answer_callback_query(self, callback_query_id: str, text: str = "") -> None:
        self.answers.append((callback_query_id, text))

    def get_updates(self, offset: int, *, poll_timeout: int = 25) -> list[dict[str, Any]] | None:
        updates, self.updates = self.updates, []
        if not updates:
            time.sleep(0.01)  # stands in for the long-poll wait
        return updates

    @property
    def texts(self) -> list[str]:
        return [text for text, _markup in self.sent]


class FakeControl:
    def __init__(self) -> None:
        self.applied: list[SignalAction] = []

    def apply_signal(self, action: SignalAction) -> None:
        self.applied.append(action)

    def status_text(self) -> str:
        return "running phase 2"


class FakeRelaySessions:
    """Scripted replacement for ``SessionManager`` in PRD relay tests."""

    def __init__(self, *results: SessionResult) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, str | None, str]] = []

    def create_session(self, prompt: str, budget: Budget) -> SessionResult:
        self.calls.append(("create", None, prompt))
        return self.results.pop(0)

    def resume_session(self, session_id: str, prompt: str, budget: Budget) -> SessionResult:
        self.calls.append(("resume", session_id, prompt))
        return self.results.pop(0)


def _bridge(project: Path, client: FakeClient, **kwargs: Any) -> TelegramBridge:
    return TelegramBridge(
        client,  # type: ignore[arg-type]
        project_dir=project,
        store=ManifestStore(project),
        registry=InstanceRegistry(),
        **kwargs,
    )


def _message(text: str, chat_id: str = "100", update_id: int = 1) -> dict[str, Any]:
    return {"update_id": update_id, "message": {"chat": {"id": int(chat_id)}, "text": text}}


# ---------------------------------------------------------------------------
# ApprovalBroker
# ---------------------------------------------------------------------------


class _Outbox:
    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any] | None]] = []

    def __call__(self, text: str, *, reply_markup: dict[str, Any] | None = None) -> bool:
        self.messages.append((text, reply_markup))
        return True


@pytest.mark.unit
def test_approval_resolves_exactly_once() -> None:
    outbox = _Outbox()
    broker = ApprovalBroker(outbox, reminder_seconds=0)

    entry = broker.open("stripe", "2", "Create a test customer?")

    assert broker.pending() == ["stripe"]
    assert "tier 2" in outbox.messages[0][0]
    assert outbox.messages[0][1] is not None
    assert broker.resolve("stripe", "use-fixture") is True
    assert broker.resolve("stripe", ApprovalDecision.APPROVE) is False
    assert entry.decision == ApprovalDecision.USE_FIXTURE
    assert broker.pending() == []


@pytest.mark.unit
def test_reopening_a_resource_skips_the_previous_request() -> None:
    broker = ApprovalBroker(_Outbox(), reminder_seconds=0)

    first = broker.open("db", "3", "Run migration?")
    second = broker.open("db", "3", "Run migration again?")

    assert first.decision == ApprovalDecision.SKIP
    assert first.done.is_set()
    assert second.decision is None
    assert broker.pending() == ["db"]


@pytest.mark.unit
def test_reminder_is_sent_only_while_pending() -> None:
    outbox = _Outbox()
    broker = ApprovalBroker(outbox, reminder_seconds=0)
    entry = broker.open("s3", "2", "Create bucket?")

    broker._remind(entry)
    broker.resolve("s3", ApprovalDecision.SKIP)
    broker._remind(entry)

    assert broker.reminders_sent == 1
    assert outbox.messages[1][0].startswith("Reminder:")


@pytest.mark.integration
def test_request_returns_decision_from_another_thread() -> None:
    broker = ApprovalBroker(_Outbox(), reminder_seconds=0)
    timer = threading.Timer(0.05, broker.resolve, args=("stripe", "approve"))
    timer.start()
    try:
        decision = broker.request("stripe", "2", "ok?", timeout=5)
    finally:
        timer.cancel()

    assert decision == ApprovalDecision.APPROVE


@pytest.mark.integration
def test_request_timeout_returns_none_and_clears_pending() -> None:
    broker = ApprovalBroker(_Outbox(), reminder_seconds=0)

    assert broker.request("stripe", "2", "ok?", timeout=0.01) is None
    assert broker.pending() == []


@pytest.mark.unit
def test_cancel_all_wakes_waiters_without_decision() -> None:
    broker = ApprovalBroker(_Outbox(), reminder_seconds=0)
    entry = broker.open("a", "1", "x")

    broker.cancel_all()

    assert entry.done.is_set()
    assert entry.decision is None
    assert broker.pending() == []


@pytest.mark.unit
@pytest.mark.parametrize(
    ("data", "expected"),
    [
        ("approve:stripe", (ApprovalDecision.APPROVE, "stripe")),
        ("use-fixture:db:main", (ApprovalDecision.USE_FIXTURE, "db:main")),
        ("skip:", None),
        ("delete:stripe", None),
        ("garbage", None),
    ],
)
def test_parse_callback_data(data: str, expected: object) -> None:
    assert parse_callback_data(data) == expected


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_format_notification_escapes_and_includes_phase() -> None:
    text = format_notification(
        "demo-app",
        {"severity": "blocking", "phase": 2, "type": "escalation", "details": "x < y"},
    )

    assert text == "<b>[BLOCKING]</b> demo-app · phase 2\n<i>escalation</i>: x &lt; y"


@pytest.mark.unit
def test_format_phase_table() -> None:
    manifest = {"phases": {1: {"plan": "complete", "execution": "complete", "validation": "pass"}}}

    assert format_phase_table(manifest) == "phase 1: plan=complete execution=complete validation=pass"
    assert format_phase_table({}) == "no phases yet"


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


def test_deliver_notifications_acknowledges_sent_entries(project: Path) -> None:
    store = ManifestStore(project)
    for name in ("one", "two"):
        store.add_notification(NotificationEntry(type=name, severity=NotificationSeverity.INFO))
    client = FakeClient()
    bridge = _bridge(project, client)

    assert bridge.deliver_notifications() == 2
    assert bridge.deliver_notifications() == 0
    assert all(entry["acknowledged"] for entry in store.read()["notifications"])
    assert len(client.sent) == 2


def test_deliver_notifications_stops_at_first_failed_send(project: Path) -> None:
    store = ManifestStore(project)
    for name in ("one", "two", "three"):
        store.add_notification(NotificationEntry(type=name))
    bridge = _bridge(project, FakeClient(fail_after=1))

    assert bridge.deliver_notifications() == 1
    acknowledged = [entry["acknowledged"] for entry in store.read()["notifications"]]
    assert acknowledged == [True, False, False]


# ---------------------------------------------------------------------------
# Command dispatch
# ---------------------------------------------------------------------------


def test_messages_from_other_chats_are_ignored(project: Path) -> None:
    client = FakeClient(chat_id="100")
    bridge = _bridge(project, client, control=FakeControl())

    bridge.handle_update(_message("/pause", chat_id="999"))

    assert client.sent == []


def test_control_commands_apply_to_own_pipeline(project: Path) -> None:
    client = FakeClient()
    control = FakeControl()
    bridge = _bridge(project, client, control=control)

    bridge.handle_update(_message("/pause"))
    bridge.handle_text("/resume demo-app")

    assert control.applied == [SignalAction.PAUSE, SignalAction.RESUME]
    assert "<b>pause</b> applied" in client.texts[0]


def test_control_without_pipeline_reports_it(project: Path) -> None:
    client = FakeClient()

    _bridge(project, client).handle_text("/go")

    assert client.texts == ["This instance is not running a pipeline."]


def test_control_for_other_project_writes_its_signal(project: Path, tmp_path: Path) -> None:
    other = tmp_path / "billing-api"
    other.mkdir()
    registry = InstanceRegistry()
    registry.register_instance(other, pid=os.getpid())
    client = FakeClient()
    control = FakeControl()
    bridge = _bridge(project, client, control=control)

    bridge.handle_text("/pause bill")

    message = consume_signal(other)
    assert message is not None
    assert message.action == SignalAction.PAUSE
    assert message.from_ == "demo-app"
    assert control.applied == []
    assert client.texts == ["Sent <b>pause</b> to billing-api."]


def test_control_for_unknown_prefix(project: Path) -> None:
    client = FakeClient()

    _bridge(project, client, control=FakeControl()).handle_text("/pause nothing-here")

    assert client.texts[0].startswith("No running project matches")


def test_status_lists_phases_and_pending_approvals(project: Path) -> None:
    ManifestStore(project).set_phase_stage(1, plan="complete")
    client = FakeClient()
    bridge = _bridge(project, client, control=FakeControl())
    bridge.approvals.reminder_seconds = 0
    bridge.approvals.open("stripe", "2", "ok?")

    bridge.handle_text("/status")

    status = client.texts[-1]
    assert "<b>demo-app</b>" in status
    assert "running phase 2" in status
    assert "phase 1: plan=complete" in status
    assert "Pending approvals: stripe" in status


def test_plain_text_without_relay_shows_help(project: Path) -> None:
    client = FakeClient()

    _bridge(project, client).handle_text("hello?")
    _bridge(project, client).handle_text("/frobnicate")

    assert client.texts[0].startswith("Commands: /go")
    assert client.texts[1].startswith("Unknown command /frobnicate")


def test_callback_resolves_pending_approval(project: Path) -> None:
    client = FakeClient()
    bridge = _bridge(project, client)
    bridge.approvals.reminder_seconds = 0
    entry = bridge.approvals.open("stripe", "2", "ok?")

    bridge.handle_update({"update_id": 3, "callback_query": {"id": "cb1", "data": "approve:stripe"}})
    bridge.handle_update({"update_id": 4, "callback_query": {"id": "cb2", "data": "skip:stripe"}})

    assert entry.decision == ApprovalDecision.APPROVE
    assert client.answers == [("cb1", "approve: stripe"), ("cb2", "No pending approval")]


def test_poll_once_advances_offset_and_survives_handler_errors(project: Path) -> None:
    client = FakeClient()
    bridge = _bridge(project, client)
    client.updates = [_message("hi", update_id=7), {"update_id": 9, "message": "not-a-dict"}]

    assert bridge.poll_once() == 2
    assert bridge._offset == 10


def test_start_requires_bot_ownership(project: Path, tmp_path: Path) -> None:
    other = tmp_path / "billing-api"
    other.mkdir()
    registry = InstanceRegistry()
    registry.register_instance(other, pid=os.getpid())
    assert registry.claim_bot_ownership(other) is True

    bridge = _bridge(project, FakeClient())

    assert bridge.start() is False
    bridge.stop()


class OfflineClient(FakeClient):
    """``get_updates`` fails every time, as when Telegram is unreachable."""

    def __init__(self) -> None:
        super().__init__()
        self.polls = 0

    def get_updates(self, offset: int, *, poll_timeout: int = 25) -> list[dict[str, Any]] | None:
        self.polls += 1
        return None


def test_poll_once_reports_failed_poll(project: Path) -> None:
    bridge = _bridge(project, OfflineClient())

    assert bridge.poll_once() is None
    assert bridge._offset == 0


@pytest.mark.slow
def test_poll_loop_backs_off_while_telegram_is_unreachable(project: Path) -> None:
    client = OfflineClient()
    bridge = _bridge(project, client, poll_retry_seconds=0.05)

    assert bridge.start() is True
    time.sleep(0.4)
    bridge.stop()

    # 0.05 + 0.1 + 0.2 s of waiting fits at most four polls into the window.
    assert 1 <= client.polls <= 5


@pytest.mark.integration
def test_only_the_bot_owner_offers_approvals(project: Path, tmp_path: Path) -> None:
    other = tmp_path / "billing-api"
    other.mkdir()
    registry = InstanceRegistry()
    registry.register_instance(project, pid=os.getpid())
    registry.register_instance(other, pid=os.getpid())
    owner_client, follower_client = FakeClient(), FakeClient()
    owner = _bridge(project, owner_client)
    follower = _bridge(other, follower_client)

    try:
        assert owner.start() is True
        assert follower.start() is False

        assert owner.approval_broker is owner.approvals
        assert follower.approval_broker is None
    finally:
        owner.stop()
        follower.stop()

    assert owner.approval_broker is None
    assert follower_client.sent == []


# ---------------------------------------------------------------------------
# PRD relay
# ---------------------------------------------------------------------------


def test_relay_creates_then_resumes_and_writes_prd(project: Path) -> None:
    sessions = FakeRelaySessions(
        SessionResult(session_id="prd-1", text="What users?"),
        SessionResult(session_id="prd-1", text="Got it."),
        SessionResult(
            session_id="prd-1",
            text="done",
            structured_fields={"prd_path": ".agents/PRD.md"},
        ),
    )
    client = FakeClient()
    bridge = _bridge(project, client, relay_sessions=sessions)

    bridge.handle_text("/create_prd")
    bridge.handle_text("A todo app")
    bridge.handle_text("For teams")
    bridge.handle_text("/end_prd")

    assert sessions.calls[0] == ("create", None, "/create-prd\n\nA todo app")
    assert sessions.calls[1] == ("resume", "prd-1", "For teams")
    assert sessions.calls[2] == ("resume", "prd-1", RELAY_FINALIZE_PROMPT)
    assert client.texts[1] == "What users?"
    assert client.texts[-1].startswith("PRD written to <code>.agents/PRD.md</code>")
    prd = ManifestStore(project).read()["prd"]
    assert prd["path"] == ".agents/PRD.md"
    assert prd["status"] == "complete"
    assert bridge.relay_open is False


def test_relay_error_and_close_without_path(project: Path) -> None:
    sessions = FakeRelaySessions(
        SessionResult(
            session_id="prd-2",
            error=SessionError(type=SessionErrorType.PROCESS_ERROR, message="auth failed"),
        ),
        SessionResult(session_id="prd-2", text="no hooks"),
    )
    client = FakeClient()
    bridge = _bridge(project, client, relay_sessions=sessions)

    bridge.open_relay()
    bridge.handle_text("build it")
    bridge.close_relay()

    assert client.texts[1] == "Relay error: auth failed"
    assert "without a PRD path" in client.texts[-1]
    assert "prd" not in ManifestStore(project).read()


def test_relay_unavailable_without_sessions(project: Path) -> None:
    client = FakeClient()
    bridge = _bridge(project, client)

    bridge.handle_text("/create_prd")
    bridge.handle_text("/end_prd")

    assert client.texts == ["PRD relay is unavailable on this instance.", "No PRD relay is open."]
