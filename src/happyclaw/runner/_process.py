"""Process management: stdin write, output pumps, idle timeout, stop strategies.

Provides:
  - BoundedCapture: size-capped copy of an output stream, for run logs only
  - write_request(): send the request on stdin, then close it
  - read_stdout(): capture stdout and feed the frame parser
  - read_stderr(): log stderr lines at debug, capture with truncation
  - TimeoutGovernor: resettable idle deadline that triggers a stop strategy
  - stop_container() / stop_host_process(): graceful stop with kill fallback
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from happyclaw.logger import logger
from happyclaw.runner._errors import InputWriteError
from happyclaw.runner._protocol import FrameParser
from happyclaw.types import AgentOutput

_READ_SIZE = 8192


@dataclass
class BoundedCapture:
    """Accumulates text up to *limit* characters, then drops the rest."""

    limit: int
    label: str = "stdout"
    run_id: str = ""
    truncated: bool = False
    _parts: list[str] = field(default_factory=list)
    _size: int = 0

    def append(self, text: str) -> None:
        if self.truncated or not text:
            return
        remaining = self.limit - self._size
        if len(text) > remaining:
            text = text[:remaining]
            self.truncated = True
            logger.warning(
                f"Agent {self.label} truncated due to size limit",
                run_id=self.run_id,
                size=self._size + len(text),
            )
        self._parts.append(text)
        self._size += len(text)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def __len__(self) -> int:
        return self._size


async def write_request(proc: asyncio.subprocess.Process, payload: bytes) -> None:
    """Write the serialized request and close stdin (EOF = request complete).

    Raises InputWriteError if the pipe is gone.
    """
    assert proc.stdin is not None
    try:
        proc.stdin.write(payload)
        await proc.stdin.drain()
        proc.stdin.close()
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            await proc.stdin.wait_closed()
    except (BrokenPipeError, ConnectionResetError) as exc:
        raise InputWriteError(str(exc) or type(exc).__name__) from exc


async def read_stdout(
    stream: asyncio.StreamReader,
    capture: BoundedCapture,
    parser: FrameParser,
    on_frame: Callable[[AgentOutput], Awaitable[None]],
) -> None:
    """Pump stdout into the log capture and the frame parser until EOF."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_READ_SIZE)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            capture.append(text)
            for frame in parser.feed(text):
                await on_frame(frame)
        if not chunk:
            break


async def read_stderr(stream: asyncio.StreamReader, capture: BoundedCapture) -> None:
    """Log stderr lines at debug and capture them. Never counts as progress."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_READ_SIZE)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            for line in text.strip().splitlines():
                if line:
                    logger.debug(line, run_id=capture.run_id, stream="stderr")
            capture.append(text)
        if not chunk:
            break


class TimeoutGovernor:
    """Idle deadline. Only ``reset()`` (called per decoded frame) pushes it back.

    On expiry, ``on_expire`` is scheduled as a task and ``expired`` is set.
    """

    def __init__(
        self,
        timeout_secs: float,
        on_expire: Callable[[], Awaitable[None]],
        *,
        run_id: str = "",
    ) -> None:
        self.timeout_secs = timeout_secs
        self._on_expire = on_expire
        self._run_id = run_id
        self._handle: asyncio.TimerHandle | None = None
        self.stop_task: asyncio.Task[None] | None = None
        self.expired = False
        self._cancelled = False

    def start(self) -> None:
        self.reset()

    def reset(self) -> None:
        if self.expired or self._cancelled:
            return
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout_secs, self._fire)

    def cancel(self) -> None:
        """Disarm for good. Later ``reset()`` calls are no-ops."""
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self.expired = True
        self._handle = None
        logger.error(
            "Agent idle timeout, stopping",
            run_id=self._run_id,
            timeout_s=self.timeout_secs,
        )
        self.stop_task = asyncio.create_task(self._on_expire())


def _kill(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


async def _wait_or_kill(proc: asyncio.subprocess.Process, timeout: float, run_id: str) -> None:
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except TimeoutError:
        logger.warning("Process did not exit in time, force killing", run_id=run_id)
        _kill(proc)


async def stop_container(
    proc: asyncio.subprocess.Process,
    container_name: str,
    *,
    cli: str,
    timeout: float,
) -> None:
    """``<cli> stop <name>`` bounded by *timeout*; SIGKILL the client on failure."""
    if proc.returncode is not None:
        return
    try:
        stop_proc = await asyncio.create_subprocess_exec(
            cli,
            "stop",
            container_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            code = await asyncio.wait_for(stop_proc.wait(), timeout=timeout)
        except TimeoutError:
            _kill(stop_proc)
            code = None
        if code != 0:
            logger.warning(
                "Graceful stop failed, force killing",
                run_id=container_name,
                exit_code=code,
            )
            _kill(proc)
            return
    except OSError as exc:
        logger.warning(
            "Graceful stop failed, force killing",
            run_id=container_name,
            err=str(exc),
        )
        _kill(proc)
        return
    # docker stop returned; the attached `run -i` client should follow shortly
    await _wait_or_kill(proc, 5.0, container_name)


async def stop_host_process(
    proc: asyncio.subprocess.Process,
    *,
    grace: float,
    run_id: str = "",
) -> None:
    """SIGTERM, then SIGKILL after *grace* seconds."""
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    await _wait_or_kill(proc, grace, run_id)
