"""Pipeline commands, their prompts and the session pairings that run them."""

from __future__ import annotations

from enum import Enum


class Command(str, Enum):
    """Every action the state machine may recommend and the runner may dispatch."""

    PREFLIGHT = "preflight"
    PRIME = "prime"
    RESEARCH_STACK = "research-stack"
    CREATE_PRD = "create-prd"
    PLAN_FEATURE = "plan-feature"
    EXECUTE = "execute"
    VALIDATE = "validate-implementation"
    COMMIT = "commit"
    FIX = "fix"
    ROLLBACK = "rollback"
    DONE = "done"

    @classmethod
    def parse(cls, value: str) -> Command:
        text = str(value or "").strip().lstrip("/").lower()
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown command: {value!r}")


# Commands handled by the orchestrator itself, without an agent session.
INTERNAL = frozenset({Command.PREFLIGHT, Command.ROLLBACK, Command.DONE})


def _phase_label(phase: int | None) -> str:
    return f"Phase {phase}" if phase is not None else "the next phase"


def command_prompt(
    command: Command,
    *,
    phase: int | None = None,
    plan_path: str | None = None,
    argument: str | None = None,
) -> str:
    """Render the slash-command prompt sent to the agent for *command*."""
    if command is Command.PRIME:
        return "/prime"
    if command is Command.RESEARCH_STACK:
        return f"/research-stack {argument}".strip() if argument else "/research-stack"
    if command is Command.CREATE_PRD:
        return "/create-prd"
    if command is Command.PLAN_FEATURE:
        return f'/plan-feature "{_phase_label(phase)}"'
    if command is Command.EXECUTE:
        return f"/execute {plan_path}" if plan_path else f'/execute "{_phase_label(phase)}"'
    if command is Command.VALIDATE:
        target = plan_path or f'"{_phase_label(phase)}"'
        return f"/validate-implementation {target} --full"
    if command is Command.COMMIT:
        return "/commit"
    if command is Command.FIX:
        return fix_prompt(argument or "")
    raise ValueError(f"{command.value} is handled internally and has no agent prompt")


def session_pairing(
    command: Command,
    *,
    phase: int | None = None,
    plan_path: str | None = None,
    argument: str | None = None,
) -> list[str]:
    """Ordered prompts sharing one session: the first creates it, the rest resume.

    Context-hungry commands are preceded by ``/prime`` so the work prompt
    starts with the project loaded.
    """
    prompt = command_prompt(command, phase=phase, plan_path=plan_path, argument=argument)
    if command in (Command.PLAN_FEATURE, Command.EXECUTE, Command.VALIDATE, Command.FIX):
        return [command_prompt(Command.PRIME), prompt]
    return [prompt]


def fix_prompt(details: str) -> str:
    """Free-form repair instruction appended to a resumed session."""
    text = " ".join(str(details or "").split())
    return (
        "The previous step failed. Diagnose and fix the root cause, re-run the "
        f"relevant checks, then emit the PIV-Automator-Hooks block. Failure: {text}"
    )
