"""Per-run log file writing."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from happyclaw.logger import is_verbose, logger
from happyclaw.runner._serialization import _input_to_dict
from happyclaw.types import ExecutionMode, ExecutionRequest, VolumeMount


def _write_run_log(
    *,
    logs_dir: Path,
    mode: ExecutionMode,
    group_name: str,
    run_id: str,
    request: ExecutionRequest,
    argv: list[str],
    mounts: list[VolumeMount],
    stdout: str,
    stderr: str,
    stdout_truncated: bool,
    stderr_truncated: bool,
    duration_ms: float,
    exit_code: int | None,
    timed_out: bool,
    is_error: bool,
) -> Path | None:
    """Write a timestamped log file for one run.

    Full request, argv, mounts and captured output are included only when
    verbose logging is on or the run errored; otherwise a size summary.
    """
    now = datetime.now(UTC)
    ts = now.isoformat().replace(":", "-").replace(".", "-")
    log_file = logs_dir / f"{mode}-{ts}.log"
    title = "Container Run Log" if mode == "container" else "Host Agent Run Log"

    if timed_out:
        lines = [
            f"=== {title} (TIMEOUT) ===",
            f"Timestamp: {now.isoformat()}",
            f"Group: {group_name}",
            f"Run: {run_id}",
            f"Duration: {duration_ms:.0f}ms",
            f"Exit Code: {exit_code}",
        ]
    else:
        verbose = is_verbose()
        lines = [
            f"=== {title} ===",
            f"Timestamp: {now.isoformat()}",
            f"Group: {group_name}",
            f"Run: {run_id}",
            f"IsHome: {request.is_home}",
            f"IsAdminHome: {request.is_admin_home}",
            f"Duration: {duration_ms:.0f}ms",
            f"Exit Code: {exit_code}",
            f"Stdout Truncated: {stdout_truncated}",
            f"Stderr Truncated: {stderr_truncated}",
            "",
        ]
        if verbose or is_error:
            lines.extend(
                [
                    "=== Input ===",
                    json.dumps(_input_to_dict(request), indent=2, ensure_ascii=False),
                    "",
                    "=== Command ===",
                    " ".join(argv),
                    "",
                    "=== Mounts ===",
                    "\n".join(
                        f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                        for m in mounts
                    ),
                    "",
                    f"=== Stderr{' (TRUNCATED)' if stderr_truncated else ''} ===",
                    stderr,
                    "",
                    f"=== Stdout{' (TRUNCATED)' if stdout_truncated else ''} ===",
                    stdout,
                ]
            )
        else:
            lines.extend(
                [
                    "=== Input Summary ===",
                    f"Prompt length: {len(request.prompt)} chars",
                    f"Session ID: {request.session_id or 'new'}",
                    f"Stdout: {len(stdout)} chars",
                    f"Stderr: {len(stderr)} chars",
                    "",
                    "=== Mounts ===",
                    "\n".join(f"{m.container_path}{' (ro)' if m.readonly else ''}" for m in mounts),
                    "",
                ]
            )

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_file.write_text("\n".join(lines))
    except OSError as exc:
        logger.warning("Failed to write run log", run_id=run_id, err=str(exc))
        return None
    logger.debug("Run log written", log_file=str(log_file), run_id=run_id)
    return log_file
