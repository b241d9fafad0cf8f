"""Exit classification: turns a finished process into the final AgentOutput."""

from __future__ import annotations

import signal
from dataclasses import dataclass

from happyclaw.logger import logger
from happyclaw.runner._protocol import parse_last_frame
from happyclaw.types import AgentOutput

STDERR_TAIL = 200

# Negative returncodes are signals (asyncio convention); docker run reports a
# signalled container as 128 + signum instead.
STOP_SIGNALS = frozenset({signal.SIGTERM, signal.SIGKILL})
STOP_EXIT_CODES = frozenset(128 + s for s in STOP_SIGNALS)


@dataclass
class ExitInfo:
    """Post-exit state of one run."""

    returncode: int | None
    stdout: str
    stderr: str
    duration_ms: float
    has_consumer: bool
    saw_success: bool = False  # a success frame was decoded
    new_session_id: str | None = None  # latest seen in any frame

    @property
    def signum(self) -> signal.Signals | None:
        if self.returncode is None or self.returncode >= 0:
            return None
        try:
            return signal.Signals(-self.returncode)
        except ValueError:
            return None

    @property
    def exit_label(self) -> str:
        sig = self.signum
        if sig is not None:
            return f"signal {sig.name}"
        if self.returncode is None:
            return "signal unknown"
        if self.returncode < 0:
            return f"signal {-self.returncode}"
        return f"code {self.returncode}"

    @property
    def stopped_by_signal(self) -> bool:
        return self.signum in STOP_SIGNALS or self.returncode in STOP_EXIT_CODES


def timeout_output(timeout_secs: float, label: str = "Agent") -> AgentOutput:
    return AgentOutput(
        status="error",
        result=None,
        error=f"{label} timed out after {timeout_secs:g}s",
    )


def classify_exit(
    info: ExitInfo,
    *,
    label: str = "Agent",
    failure_hint: str | None = None,
    run_id: str = "",
) -> AgentOutput:
    """Decide the final outcome of a run that exited on its own or via stop.

    - exit 0 + consumer → success, result None (everything was streamed)
    - exit 0, no consumer → last frame decoded from the full stdout
    - SIGTERM/SIGKILL (or 143/137) + consumer + a prior success frame →
      intentional stop, success
    - anything else → error carrying the last 200 chars of stderr
    """
    if info.returncode == 0:
        if info.has_consumer:
            logger.info(
                "Agent completed (streaming mode)",
                run_id=run_id,
                duration_ms=info.duration_ms,
                new_session_id=info.new_session_id,
            )
            return AgentOutput(status="success", result=None, new_session_id=info.new_session_id)
        try:
            output = parse_last_frame(info.stdout)
        except ValueError as exc:
            logger.error(
                "Failed to parse agent output",
                run_id=run_id,
                err=str(exc),
                stdout_tail=info.stdout[-STDERR_TAIL:],
            )
            return AgentOutput(
                status="error",
                result=None,
                error=f"Failed to parse {label.lower()} output: {exc}",
            )
        logger.info(
            "Agent completed",
            run_id=run_id,
            duration_ms=info.duration_ms,
            status=output.status,
            has_result=bool(output.result),
        )
        return output

    if info.stopped_by_signal and info.has_consumer and info.saw_success:
        # An OOM kill looks identical to a user stop here
        logger.info(
            "Agent terminated after successful output (intentional stop)",
            run_id=run_id,
            exit=info.exit_label,
            duration_ms=info.duration_ms,
        )
        return AgentOutput(status="success", result=None, new_session_id=info.new_session_id)

    logger.error(
        "Agent exited with error",
        run_id=run_id,
        exit=info.exit_label,
        duration_ms=info.duration_ms,
        stderr_tail=info.stderr[-STDERR_TAIL:],
    )
    return AgentOutput(
        status="error",
        result=failure_hint,
        error=f"{label} exited with {info.exit_label}: {info.stderr[-STDERR_TAIL:]}",
    )
