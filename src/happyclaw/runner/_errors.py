"""Run failure taxonomy.

These never escape ``run_agent``; the orchestrator converts each one into an
``AgentOutput(status="error")``. Non-terminal conditions (bad frames, buffer
overflow, consumer failures) are log-only and have no exception type.
"""

from __future__ import annotations


class RunnerError(Exception):
    """Base class for terminal run failures."""


class SetupError(RunnerError):
    """Host-mode preflight failed. Carries a user-facing, actionable message."""

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class SpawnError(RunnerError):
    """The OS could not exec the subprocess."""


class InputWriteError(RunnerError):
    """The request could not be written to the subprocess stdin."""
