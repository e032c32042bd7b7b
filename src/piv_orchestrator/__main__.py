"""CLI entrypoint for the PIV orchestrator."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from piv_orchestrator import git_tools
from piv_orchestrator.bridge import TelegramBridge
from piv_orchestrator.commands import INTERNAL, Command
from piv_orchestrator.config import OrchestratorConfig, load_config
from piv_orchestrator.errors import AlreadyRunningError, ConfigError, OrchestratorError
from piv_orchestrator.failure_handler import FailureHandler
from piv_orchestrator.heartbeat import HeartbeatWriter
from piv_orchestrator.manifest import STATE_DIR, ManifestStore
from piv_orchestrator.phase_runner import EXIT_CODES, PhaseRunner, RunOutcome
from piv_orchestrator.process import ShutdownCoordinator, check_for_running_instance, write_lock
from piv_orchestrator.registry import InstanceRegistry
from piv_orchestrator.schemas import ProjectStatus
from piv_orchestrator.session import SessionManager
from piv_orchestrator.signal_channel import SignalWatcher
from piv_orchestrator.telegram import TelegramClient

logger = logging.getLogger("piv_orchestrator")

LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
LOG_FILE = Path(STATE_DIR) / "logs" / "orchestrator.log"


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser."""
    p = argparse.ArgumentParser(
        prog="piv-orchestrator",
        description="Drive the plan / execute / validate / commit pipeline with a coding agent.",
    )
    p.add_argument(
        "--project", type=str, default="", help="Project root (default: PIV_PROJECT_DIR or cwd)."
    )
    p.add_argument("--phase", type=int, default=None, help="Only run this phase.")
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the next recommended action and exit without running it.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging.")

    sub = p.add_subparsers(dest="command")
    sub.add_parser("status", help="List registered projects and their heartbeats.")
    return p


def _add_file_logging(project_dir: Path, level: int) -> None:
    log_path = project_dir / LOG_FILE
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as exc:
        logger.warning("File logging disabled: %s", exc)
        return
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


def _run_status() -> int:
    registry = InstanceRegistry()
    projects = registry.list_projects()
    owner = registry.owner()
    if not projects:
        print("No projects registered.")
        return 0
    print(f"\n  Registry: {registry.path}")
    print("  " + "=" * 58)
    for project in projects:
        phase = project.current_phase if project.current_phase is not None else "-"
        pid = project.orchestrator_pid if project.orchestrator_pid is not None else "-"
        print(f"  {project.name:<24} {project.status.value:<9} phase {phase:<4} pid {pid}")
        print(f"    heartbeat {project.heartbeat}  commands {project.commands_version}")
    if owner is not None:
        print(f"\n  Bot owner: {owner.project_prefix} (pid {owner.pid})")
    print()
    return 0


# ---------------------------------------------------------------------------
# pipeline
# ---------------------------------------------------------------------------


def _crash_command(runner: PhaseRunner) -> tuple[str, int | None]:
    """Command and phase a crash is charged to; internal actions retry as ``prime``."""
    action = runner.last_action
    if action is None:
        return Command.PRIME.value, None
    if Command.parse(action.command) in INTERNAL:
        return Command.PRIME.value, action.phase
    return action.command, action.phase


def _run_pipeline(config: OrchestratorConfig, *, phase: int | None, dry_run: bool) -> int:
    project_dir = config.project_dir
    store = ManifestStore(project_dir)

    if dry_run:
        sessions = SessionManager(project_dir, claude_binary=config.claude_binary, model=config.model)
        runner = PhaseRunner(
            project_dir,
            store,
            sessions,
            only_phase=phase,
            default_freshness_days=config.profile_freshness_days,
        )
        try:
            return EXIT_CODES[runner.run(dry_run=True)]
        except OrchestratorError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1

    running = check_for_running_instance(project_dir)
    if running is not None:
        print(
            f"Error: orchestrator already running for {project_dir} (pid {running.pid})",
            file=sys.stderr,
        )
        return 1
    try:
        write_lock(project_dir)
    except AlreadyRunningError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    coordinator = ShutdownCoordinator(project_dir)
    failures = FailureHandler(project_dir, store)
    registry = InstanceRegistry(config.registry_path)
    heartbeat = HeartbeatWriter(
        project_dir,
        registry,
        store,
        interval_seconds=config.heartbeat_interval_s,
        name=config.project_name,
    )
    final_status: dict[str, str] = {}
    coordinator.deregister = lambda: registry.deregister_instance(project_dir)
    coordinator.final_heartbeat = lambda status: heartbeat.beat(final_status.get("status", status))

    bridge: TelegramBridge | None = None
    if config.telegram_enabled:
        bridge = TelegramBridge(
            TelegramClient(config.telegram_bot_token or "", config.telegram_chat_id or ""),
            project_dir=project_dir,
            store=store,
            registry=registry,
            relay_sessions=SessionManager(
                project_dir, claude_binary=config.claude_binary, model=config.model
            ),
            claude_binary=config.claude_binary,
        )
    sessions = SessionManager(
        project_dir,
        claude_binary=config.claude_binary,
        model=config.model,
        on_progress=bridge.send_progress if bridge is not None else None,
    )
    runner = PhaseRunner(
        project_dir,
        store,
        sessions,
        failures=failures,
        after_action=bridge.deliver_notifications if bridge is not None else None,
        claude_binary=config.claude_binary,
        only_phase=phase,
        default_freshness_days=config.profile_freshness_days,
    )

    def _record_crash(details: str) -> None:
        command, crash_phase = _crash_command(runner)
        failures.record_unexpected(command, crash_phase, details)

    coordinator.record_crash = _record_crash
    coordinator.on_signal(runner.request_stop)
    coordinator.install()

    try:
        git_tools.ensure_repo(project_dir)
        registry.register_instance(project_dir, pid=os.getpid())
        if bridge is not None:
            bridge.control = runner
            bridge.start()
            runner.approvals = bridge.approval_broker
            if runner.approvals is None:
                logger.info("Approvals default to fixtures; another instance receives bot callbacks")
            coordinator.add_timer(bridge)
        watcher = SignalWatcher(
            project_dir,
            lambda message: runner.apply_signal(message.action),
            poll_seconds=config.signal_poll_s,
        )
        watcher.start()
        coordinator.add_timer(watcher)
        heartbeat.start()
        coordinator.add_timer(heartbeat)

        outcome = runner.run()
    except Exception as exc:
        logger.exception("Orchestrator failed")
        coordinator.shutdown(
            reason="crash", crash_details=f"orchestrator crash: {type(exc).__name__}: {exc}"
        )
        return 1

    if outcome is RunOutcome.DONE:
        final_status["status"] = ProjectStatus.COMPLETE.value
    if bridge is not None:
        bridge.deliver_notifications()
    coordinator.shutdown(reason=outcome.value)
    logger.info("Orchestrator finished: %s", outcome.value)
    return EXIT_CODES[outcome]


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")

    if args.command == "status":
        return _run_status()

    try:
        config = load_config(args.project or None, require_auth=not args.dry_run)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    _add_file_logging(config.project_dir, level)
    return _run_pipeline(config, phase=args.phase, dry_run=args.dry_run)


if __name__ == "__main__":
    raise SystemExit(main())
