"""Main entry point: run_agent() drives one turn in either execution mode.

Pipeline: launcher.prepare → spawn → write request → stdout reader feeds
the frame parser → each frame resets the idle timeout and is queued for the
consumer → on exit, settle delivery and classify.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from happyclaw.config import get_settings
from happyclaw.logger import logger
from happyclaw.runner._classify import ExitInfo, classify_exit, timeout_output
from happyclaw.runner._delivery import DeliveryQueue, OnOutput
from happyclaw.runner._errors import InputWriteError, SetupError, SpawnError
from happyclaw.runner._launcher import Launcher, LaunchSpec, get_launcher
from happyclaw.runner._logging import _write_run_log
from happyclaw.runner._process import (
    BoundedCapture,
    TimeoutGovernor,
    read_stderr,
    read_stdout,
    write_request,
)
from happyclaw.runner._protocol import FrameParser
from happyclaw.runner._registry import get_registry
from happyclaw.runner._serialization import _input_to_dict
from happyclaw.types import AgentOutput, ExecutionRequest, RunHandle, WorkspaceConfig

OnProcess = Callable[[asyncio.subprocess.Process, str], Any]

# Seconds to wait for a killed child to be reaped on cancellation
_REAP_TIMEOUT = 5.0


def resolve_timeout(group: WorkspaceConfig) -> float:
    """Effective idle timeout in seconds.

    Per-workspace ``container_config.timeout`` takes priority; falls back to
    ``[container].timeout_ms``.
    """
    if group.container_config and group.container_config.timeout:
        return group.container_config.timeout
    return get_settings().container_timeout


@dataclass
class _StreamState:
    saw_success: bool = False
    new_session_id: str | None = None


async def run_agent(
    group: WorkspaceConfig,
    request: ExecutionRequest,
    on_process: OnProcess | None = None,
    on_output: OnOutput | None = None,
    *,
    launcher: Launcher | None = None,
) -> AgentOutput:
    """Run one agent turn and return its final result.

    Args:
        group: The registered workspace.
        request: The turn to run; written once to the agent's stdin.
        on_process: Called with (proc, run_id) right after spawn so the caller
            can hold the process for out-of-band stop.
        on_output: If provided, awaited for every decoded frame, strictly in
            order (streaming mode). Without it, the final frame is parsed
            from the full stdout after exit (legacy mode).
        launcher: Override the launcher chosen from ``group.execution_mode``.

    Returns:
        Exactly one AgentOutput. Run failures never raise.
    """
    if launcher is None:
        try:
            launcher = get_launcher(group.execution_mode)
        except ValueError as exc:
            logger.error("Agent setup failed", group=group.name, err=str(exc))
            return AgentOutput(status="error", result=None, error=str(exc))
    try:
        spec = launcher.prepare(group, request)
    except SetupError as exc:
        logger.error("Agent setup failed", group=group.name, mode=launcher.mode, err=str(exc))
        return AgentOutput(status="error", result=exc.user_message, error=str(exc))
    except (OSError, ValueError) as exc:
        logger.error("Agent setup failed", group=group.name, mode=launcher.mode, err=str(exc))
        return AgentOutput(
            status="error", result=None, error=f"{launcher.label} setup failed: {exc}"
        )

    timeout_secs = resolve_timeout(group)
    logger.info(
        "Spawning agent",
        group=group.name,
        mode=launcher.mode,
        run_id=spec.run_id,
        agent_id=request.agent_id,
        mount_count=len(spec.plan.mounts),
        is_home=request.is_home,
    )

    start_time = time.monotonic()
    try:
        proc = await launcher.spawn(spec)
    except SpawnError as exc:
        # Nothing ran, so there is nothing to settle
        logger.error("Failed to spawn agent", group=group.name, run_id=spec.run_id, err=str(exc))
        return AgentOutput(status="error", result=None, error=str(exc))

    handle = RunHandle(
        proc=proc,
        run_id=spec.run_id,
        group_folder=group.folder,
        mode=launcher.mode,
        started_at=start_time,
        agent_id=request.agent_id,
    )
    registry = get_registry()
    registry.register(handle, launcher)
    try:
        if on_process is not None:
            try:
                on_process(proc, spec.run_id)
            except Exception:
                logger.exception("on_process callback raised", run_id=spec.run_id)
        return await _supervise(
            group, request, spec, launcher, proc, on_output, timeout_secs, start_time
        )
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=_REAP_TIMEOUT)
        raise
    finally:
        registry.unregister(spec.run_id)


async def _supervise(
    group: WorkspaceConfig,
    request: ExecutionRequest,
    spec: LaunchSpec,
    launcher: Launcher,
    proc: asyncio.subprocess.Process,
    on_output: OnOutput | None,
    timeout_secs: float,
    start_time: float,
) -> AgentOutput:
    s = get_settings()
    run_id = spec.run_id
    stdout_cap = BoundedCapture(s.container.max_output_size, "stdout", run_id)
    stderr_cap = BoundedCapture(s.container.max_output_size, "stderr", run_id)
    parser = FrameParser(
        max_buffer=s.container.max_parse_buffer,
        tail_window=s.container.parse_tail_window,
        run_id=run_id,
    )
    delivery: DeliveryQueue | None = None
    if on_output is not None:
        delivery = DeliveryQueue(on_output, maxsize=s.container.delivery_queue_size, run_id=run_id)
        delivery.start()

    state = _StreamState()
    governor = TimeoutGovernor(
        timeout_secs, lambda: launcher.stop(proc, run_id), run_id=run_id
    )

    async def on_frame(frame: AgentOutput) -> None:
        if frame.new_session_id:
            state.new_session_id = frame.new_session_id
        if frame.status == "success":
            state.saw_success = True
        # Decoded frames are the only progress signal
        governor.reset()
        if delivery is not None:
            await delivery.put(frame)

    assert proc.stdout is not None and proc.stderr is not None
    governor.start()
    readers = [
        asyncio.create_task(read_stdout(proc.stdout, stdout_cap, parser, on_frame)),
        asyncio.create_task(read_stderr(proc.stderr, stderr_cap)),
    ]

    payload = json.dumps(_input_to_dict(request)).encode()
    try:
        try:
            await write_request(proc, payload)
        except InputWriteError as exc:
            logger.error("Agent stdin write failed, killing", run_id=run_id, err=str(exc))
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        returncode = await proc.wait()
    except asyncio.CancelledError:
        governor.cancel()
        for task in readers:
            task.cancel()
        if delivery is not None:
            delivery.cancel()
        raise
    governor.cancel()
    # Frames drained after exit are not progress; the verdict is fixed here
    timed_out = governor.expired

    # Output pipes normally hit EOF right after exit; a grandchild holding them
    # open or a stalled consumer must not block the result forever.
    done, pending = await asyncio.wait(readers, timeout=s.settle_timeout)
    for task in pending:
        task.cancel()
    if pending:
        logger.warning("Output readers still busy after exit, cancelled", run_id=run_id)
    for task in done:
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Output reader failed, later output lost",
                run_id=run_id,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
    if governor.stop_task is not None:
        await governor.stop_task

    duration_ms = (time.monotonic() - start_time) * 1000

    # Wait for consumer side effects before reporting done, on every path
    if delivery is not None:
        await delivery.settle(s.settle_timeout)
    _write_run_log(
        logs_dir=spec.logs_dir,
        mode=launcher.mode,
        group_name=group.name,
        run_id=run_id,
        request=request,
        argv=spec.argv,
        mounts=spec.plan.mounts,
        stdout=stdout_cap.text,
        stderr=stderr_cap.text,
        stdout_truncated=stdout_cap.truncated,
        stderr_truncated=stderr_cap.truncated,
        duration_ms=duration_ms,
        exit_code=returncode,
        timed_out=timed_out,
        is_error=returncode != 0,
    )

    if timed_out:
        logger.error(
            "Agent timed out",
            group=group.name,
            run_id=run_id,
            duration_ms=duration_ms,
            exit_code=returncode,
        )
        return timeout_output(timeout_secs, launcher.label)

    info = ExitInfo(
        returncode=returncode,
        stdout=stdout_cap.text,
        stderr=stderr_cap.text,
        duration_ms=duration_ms,
        has_consumer=on_output is not None,
        saw_success=state.saw_success,
        new_session_id=state.new_session_id,
    )
    hint = launcher.failure_hint(info.stderr) if returncode != 0 else None
    return classify_exit(info, label=launcher.label, failure_hint=hint, run_id=run_id)
