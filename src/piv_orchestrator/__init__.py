"""PIV orchestrator - drive a coding agent through plan, execute, validate and commit."""

from importlib.metadata import PackageNotFoundError, version

from piv_orchestrator.schemas import NextAction, SessionResult

__all__ = ["NextAction", "SessionResult"]

try:
    __version__ = version("piv-orchestrator")
except PackageNotFoundError:
    __version__ = "0.0.0"
