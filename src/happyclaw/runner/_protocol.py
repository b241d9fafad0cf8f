"""Sentinel-delimited output protocol.

The agent runner prints zero or more frames to stdout::

    ---HAPPYCLAW_OUTPUT_START---
    {"status": "stream", "result": null, "streamEvent": {...}}
    ---HAPPYCLAW_OUTPUT_END---

Anything outside a marker pair is informational and ignored here.
"""

from __future__ import annotations

from happyclaw.config import Settings
from happyclaw.logger import logger
from happyclaw.runner._serialization import _parse_agent_output
from happyclaw.types import AgentOutput


class FrameParser:
    """Incremental frame decoder fed with arbitrarily split stdout chunks.

    ``feed()`` returns the frames completed by that chunk, in stream order.
    Incomplete frames stay buffered until their end marker arrives.
    """

    def __init__(
        self,
        *,
        max_buffer: int,
        tail_window: int = 512,
        start_marker: str = Settings.OUTPUT_START_MARKER,
        end_marker: str = Settings.OUTPUT_END_MARKER,
        run_id: str = "",
    ) -> None:
        self._buf = ""
        self._max_buffer = max_buffer
        self._tail_window = tail_window
        self._start = start_marker
        self._end = end_marker
        self._run_id = run_id
        self.frames_decoded = 0
        self.decode_failures = 0
        self.overflowed = False

    @property
    def buffered(self) -> str:
        return self._buf

    def feed(self, chunk: str) -> list[AgentOutput]:
        self._buf += chunk
        frames: list[AgentOutput] = []

        while True:
            start = self._buf.find(self._start)
            if start == -1:
                break
            end = self._buf.find(self._end, start + len(self._start))
            if end == -1:
                break  # wait for the rest of the frame

            payload = self._buf[start + len(self._start) : end].strip()
            self._buf = self._buf[end + len(self._end) :]
            try:
                frames.append(_parse_agent_output(payload))
            except ValueError as exc:
                self.decode_failures += 1
                logger.warning(
                    "Failed to parse streamed output frame",
                    run_id=self._run_id,
                    err=str(exc),
                    preview=payload[:200],
                )

        if len(self._buf) > self._max_buffer:
            self._truncate()

        self.frames_decoded += len(frames)
        return frames

    def _truncate(self) -> None:
        """Bound the buffer, keeping a possibly in-progress frame intact."""
        self.overflowed = True
        last_start = self._buf.rfind(self._start)
        before = len(self._buf)
        if last_start >= 0:
            self._buf = self._buf[last_start:]
        else:
            self._buf = self._buf[-self._tail_window :]
        logger.warning(
            "Parse buffer overflow, truncating",
            run_id=self._run_id,
            before=before,
            after=len(self._buf),
        )


def parse_last_frame(
    stdout: str,
    *,
    start_marker: str = Settings.OUTPUT_START_MARKER,
    end_marker: str = Settings.OUTPUT_END_MARKER,
) -> AgentOutput:
    """Decode the final result from a complete stdout capture (no-consumer mode).

    Uses the last complete marker pair; without one, falls back to the last
    non-empty line for agent runners that predate the markers. Raises
    ValueError if neither decodes.
    """
    end = stdout.rfind(end_marker)
    start = stdout.rfind(start_marker, 0, end) if end != -1 else -1
    if start != -1:
        payload = stdout[start + len(start_marker) : end].strip()
    else:
        lines = [line for line in stdout.strip().splitlines() if line.strip()]
        if not lines:
            raise ValueError("no output")
        payload = lines[-1]
    return _parse_agent_output(payload)
