"""Tests for output pumps, the idle timeout governor, and stop strategies."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from happyclaw.config import Settings
from happyclaw.runner._errors import InputWriteError
from happyclaw.runner._process import (
    BoundedCapture,
    TimeoutGovernor,
    read_stderr,
    read_stdout,
    stop_container,
    stop_host_process,
    write_request,
)
from happyclaw.runner._protocol import FrameParser


class _Proc:
    """Just enough of asyncio.subprocess.Process for the stop strategies."""

    def __init__(self, *, exits_on_terminate: bool = True) -> None:
        self.returncode: int | None = None
        self._exited = asyncio.Event()
        self._exits_on_terminate = exits_on_terminate
        self.terminated = False
        self.killed = False

    def _exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        if self._exits_on_terminate:
            self._exit(-15)

    def kill(self) -> None:
        self.killed = True
        self._exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class _BrokenStdin:
    def write(self, data: bytes) -> None:
        raise BrokenPipeError("gone")

    async def drain(self) -> None:
        pass


class TestBoundedCapture:
    def test_truncates_at_limit(self):
        cap = BoundedCapture(limit=10)
        cap.append("12345")
        cap.append("67890abc")
        cap.append("more")
        assert cap.text == "1234567890"
        assert cap.truncated is True
        assert len(cap) == 10

    def test_under_limit(self):
        cap = BoundedCapture(limit=100)
        cap.append("abc")
        assert cap.text == "abc"
        assert cap.truncated is False


class TestReaders:
    async def test_stdout_multibyte_split_across_reads(self):
        stream = asyncio.StreamReader()
        frame = (
            f"{Settings.OUTPUT_START_MARKER}\n"
            '{"status": "success", "result": "日本語"}\n'
            f"{Settings.OUTPUT_END_MARKER}\n"
        ).encode()
        cut = frame.index("日".encode()) + 1  # middle of a UTF-8 sequence
        frames = []

        async def on_frame(f):
            frames.append(f)

        task = asyncio.create_task(
            read_stdout(stream, BoundedCapture(1000), FrameParser(max_buffer=1000), on_frame)
        )
        stream.feed_data(frame[:cut])
        await asyncio.sleep(0)
        stream.feed_data(frame[cut:])
        stream.feed_eof()
        await task

        assert [f.result for f in frames] == ["日本語"]

    async def test_stdout_capture_is_bounded_but_parsing_continues(self):
        stream = asyncio.StreamReader()
        cap = BoundedCapture(limit=10)
        frames = []

        async def on_frame(f):
            frames.append(f)

        stream.feed_data(
            (
                "x" * 50
                + f"{Settings.OUTPUT_START_MARKER}\n"
                + '{"status": "success", "result": "late"}\n'
                + f"{Settings.OUTPUT_END_MARKER}\n"
            ).encode()
        )
        stream.feed_eof()
        await read_stdout(stream, cap, FrameParser(max_buffer=10_000), on_frame)

        assert cap.truncated is True
        assert [f.result for f in frames] == ["late"]

    async def test_stderr_captured(self):
        stream = asyncio.StreamReader()
        stream.feed_data(b"warning: one\nwarning: two\n")
        stream.feed_eof()
        cap = BoundedCapture(limit=1000, label="stderr")
        await read_stderr(stream, cap)
        assert cap.text == "warning: one\nwarning: two\n"


async def test_write_request_broken_pipe():
    class _P:
        stdin = _BrokenStdin()

    with pytest.raises(InputWriteError):
        await write_request(_P(), b"{}")


class TestTimeoutGovernor:
    async def test_fires_after_idle(self):
        fired = asyncio.Event()

        async def on_expire():
            fired.set()

        gov = TimeoutGovernor(0.05, on_expire)
        gov.start()
        await asyncio.wait_for(fired.wait(), 1.0)
        assert gov.expired is True

    async def test_reset_pushes_deadline(self):
        fired = asyncio.Event()

        async def on_expire():
            fired.set()

        gov = TimeoutGovernor(0.15, on_expire)
        gov.start()
        for _ in range(5):
            await asyncio.sleep(0.05)
            gov.reset()
        assert gov.expired is False
        gov.cancel()
        await asyncio.sleep(0.2)
        assert not fired.is_set()

    async def test_reset_after_expiry_is_ignored(self):
        async def on_expire():
            pass

        gov = TimeoutGovernor(0.01, on_expire)
        gov.start()
        await asyncio.sleep(0.05)
        assert gov.expired is True
        gov.reset()
        assert gov._handle is None
        assert gov.stop_task is not None
        await gov.stop_task


    async def test_reset_after_cancel_does_not_rearm(self):
        fired = asyncio.Event()

        async def on_expire():
            fired.set()

        gov = TimeoutGovernor(0.05, on_expire)
        gov.start()
        gov.cancel()
        gov.reset()
        assert gov._handle is None
        await asyncio.sleep(0.1)
        assert gov.expired is False
        assert not fired.is_set()


class TestStopStrategies:
    async def test_host_terminate_then_exit(self):
        proc = _Proc()
        await stop_host_process(proc, grace=1.0)
        assert proc.terminated is True
        assert proc.killed is False

    async def test_host_kill_after_grace(self):
        proc = _Proc(exits_on_terminate=False)
        await stop_host_process(proc, grace=0.05)
        assert proc.terminated is True
        assert proc.killed is True

    async def test_host_already_exited_is_noop(self):
        proc = _Proc()
        proc.returncode = 0
        await stop_host_process(proc, grace=0.05)
        assert proc.terminated is False

    async def test_container_graceful_stop(self):
        proc = _Proc()
        calls = []

        async def fake_exec(*args, **kwargs):
            calls.append(args)
            stopper = _Proc()
            stopper._exit(0)
            proc._exit(137)
            return stopper

        with patch("happyclaw.runner._process.asyncio.create_subprocess_exec", fake_exec):
            await stop_container(proc, "happyclaw-x-1", cli="docker", timeout=1.0)

        assert calls == [("docker", "stop", "happyclaw-x-1")]
        assert proc.killed is False

    async def test_container_stop_failure_kills(self):
        proc = _Proc()

        async def fake_exec(*args, **kwargs):
            stopper = _Proc()
            stopper._exit(1)
            return stopper

        with patch("happyclaw.runner._process.asyncio.create_subprocess_exec", fake_exec):
            await stop_container(proc, "happyclaw-x-1", cli="docker", timeout=1.0)

        assert proc.killed is True

    async def test_container_stop_timeout_kills(self):
        proc = _Proc()
        stopper = _Proc(exits_on_terminate=False)

        async def fake_exec(*args, **kwargs):
            return stopper

        with patch("happyclaw.runner._process.asyncio.create_subprocess_exec", fake_exec):
            await stop_container(proc, "happyclaw-x-1", cli="docker", timeout=0.05)

        assert stopper.killed is True
        assert proc.killed is True

    async def test_missing_cli_kills(self):
        proc = _Proc()

        async def fake_exec(*args, **kwargs):
            raise FileNotFoundError("docker")

        with patch("happyclaw.runner._process.asyncio.create_subprocess_exec", fake_exec):
            await stop_container(proc, "happyclaw-x-1", cli="docker", timeout=1.0)

        assert proc.killed is True
