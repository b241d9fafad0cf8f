"""Execution launchers: the only mode-specific part of a run.

Both launchers turn (workspace, request) into a ``LaunchSpec`` and spawn it
with piped stdio and no shell. They differ in how the mount plan reaches the
agent (bind mounts vs. environment variables), in host-mode preflight, and
in how a run is stopped.
"""

from __future__ import annotations

import asyncio
import os
import re
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Protocol

from happyclaw.config import get_settings
from happyclaw.logger import logger
from happyclaw.runner._credentials import resolve_env_vars
from happyclaw.runner._errors import SetupError, SpawnError
from happyclaw.runner._mounts import (
    MountPlan,
    _build_container_args,
    _build_volume_mounts,
    _check_segment,
    _container_name,
)
from happyclaw.runner._process import stop_container, stop_host_process
from happyclaw.security.mount_security import is_path_allowed
from happyclaw.types import ExecutionMode, ExecutionRequest, WorkspaceConfig

_MISSING_PACKAGE_RE = re.compile(r"Cannot find package '([^']+)' imported from")

INSTALL_HINT = "npm --prefix container/agent-runner install"
BUILD_HINT = "npm --prefix container/agent-runner run build"

_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "prefix": "Host mode failed to start: {message}",
        "not_absolute": "working directory must be an absolute path: {path}",
        "unresolvable": "working directory does not exist or cannot be resolved: {path}",
        "not_dir": "working directory is not a directory: {path}",
        "not_allowed": (
            "working directory {path} is not under an allowed root, "
            "check mount-allowlist.json"
        ),
        "missing_deps": "agent-runner dependencies missing ({missing}). Run: {install}",
        "not_built": "agent-runner is not built. Run: {build}",
        "stale": "agent-runner dist may be stale (src is newer than dist). Run: {build}",
        "missing_package": "missing dependency {package}. Run: {install}",
    },
    "zh": {
        "prefix": "宿主机模式启动失败：{message}",
        "not_absolute": "工作目录必须是绝对路径：{path}",
        "unresolvable": "工作目录不存在或无法解析：{path}",
        "not_dir": "工作目录不是目录：{path}",
        "not_allowed": "工作目录 {path} 不在允许的根目录下，请检查 mount-allowlist.json",
        "missing_deps": "缺少 agent-runner 依赖（{missing}）。请先执行：{install}",
        "not_built": "agent-runner 未编译。请先执行：{build}",
        "stale": "agent-runner dist 可能已过期（src 比 dist 新）。建议执行：{build}",
        "missing_package": "缺少依赖 {package}。请先执行：{install}",
    },
}


def _msg(key: str, **kwargs: str) -> str:
    table = _MESSAGES.get(get_settings().host.locale, _MESSAGES["en"])
    return table[key].format(install=INSTALL_HINT, build=BUILD_HINT, **kwargs)


def _setup_error(key: str, **kwargs: str) -> SetupError:
    message = _msg(key, **kwargs)
    return SetupError(message, _msg("prefix", message=message))


def _millis() -> int:
    return int(time.time() * 1000)


@dataclass
class LaunchSpec:
    """A fully resolved invocation. ``program`` + ``args`` are exec'd directly."""

    run_id: str
    program: str
    args: list[str]
    plan: MountPlan
    logs_dir: Path
    cwd: str | None = None
    env: dict[str, str] | None = field(default=None, repr=False)

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]


class Launcher(Protocol):
    mode: ExecutionMode
    label: str

    def prepare(self, group: WorkspaceConfig, request: ExecutionRequest) -> LaunchSpec: ...
    async def spawn(self, spec: LaunchSpec) -> asyncio.subprocess.Process: ...
    async def stop(self, proc: asyncio.subprocess.Process, run_id: str) -> None: ...
    def failure_hint(self, stderr: str) -> str | None: ...


class _BaseLauncher:
    mode: ClassVar[ExecutionMode]
    label: ClassVar[str]

    async def spawn(self, spec: LaunchSpec) -> asyncio.subprocess.Process:
        """Exec without a shell. Raises SpawnError if the OS refuses."""
        try:
            return await asyncio.create_subprocess_exec(
                spec.program,
                *spec.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                env=spec.env,
            )
        except OSError as exc:
            raise SpawnError(f"{self.label} spawn error: {exc}") from exc

    def failure_hint(self, stderr: str) -> str | None:
        return None


class ContainerLauncher(_BaseLauncher):
    mode = "container"
    label = "Container"

    def prepare(self, group: WorkspaceConfig, request: ExecutionRequest) -> LaunchSpec:
        s = get_settings()
        plan = _build_volume_mounts(group, request, mode="container")
        name = _container_name(group.folder, request.agent_id)
        assert plan.group_dir is not None
        logs_dir = plan.group_dir / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        return LaunchSpec(
            run_id=name,
            program=s.container.runtime_cli,
            args=_build_container_args(plan.mounts, name),
            plan=plan,
            logs_dir=logs_dir,
        )

    async def stop(self, proc: asyncio.subprocess.Process, run_id: str) -> None:
        s = get_settings()
        await stop_container(
            proc,
            run_id,
            cli=s.container.runtime_cli,
            timeout=s.container.stop_timeout_seconds,
        )


class HostLauncher(_BaseLauncher):
    mode = "host"
    label = "Host agent"

    def prepare(self, group: WorkspaceConfig, request: ExecutionRequest) -> LaunchSpec:
        """Resolve the workdir, run preflight, and build the child environment.

        Raises SetupError with a localized, actionable message.
        """
        s = get_settings()
        workdir = self._resolve_workdir(group)
        plan = _build_volume_mounts(group, request, mode="host")
        logs_dir = workdir / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)

        entry = self.preflight(group.name)
        self._warn_if_stale(group, entry)

        assert plan.global_dir and plan.memory_dir and plan.ipc_dir and plan.session_dir
        env = dict(os.environ)
        env.update(resolve_env_vars(group.folder))
        env.update(
            {
                "HAPPYCLAW_WORKSPACE_GROUP": str(workdir),
                "HAPPYCLAW_WORKSPACE_GLOBAL": str(plan.global_dir),
                "HAPPYCLAW_WORKSPACE_MEMORY": str(plan.memory_dir),
                "HAPPYCLAW_WORKSPACE_IPC": str(plan.ipc_dir),
                "CLAUDE_CONFIG_DIR": str(plan.session_dir),
            }
        )

        suffix = f"-{request.agent_id}" if request.agent_id else ""
        return LaunchSpec(
            run_id=f"host-{group.folder}{suffix}-{_millis()}",
            program=s.host.interpreter,
            args=[str(entry)],
            plan=plan,
            logs_dir=logs_dir,
            cwd=str(workdir),
            env=env,
        )

    def _resolve_workdir(self, group: WorkspaceConfig) -> Path:
        if not group.custom_cwd:
            folder = _check_segment(group.folder, "workspace folder")
            default_dir = get_settings().groups_dir / folder
            default_dir.mkdir(parents=True, exist_ok=True)
            _ensure_git_root(default_dir, group.folder)
            return default_dir.resolve()

        raw = group.custom_cwd
        if not os.path.isabs(raw):
            raise _setup_error("not_absolute", path=raw)
        try:
            workdir = Path(raw).resolve(strict=True)
        except (OSError, RuntimeError):
            raise _setup_error("unresolvable", path=raw) from None
        if not workdir.is_dir():
            raise _setup_error("not_dir", path=str(workdir))
        # Re-checked on every run: the allowlist may have been tightened
        allowed, _ = is_path_allowed(str(workdir))
        if not allowed:
            logger.error("Custom cwd rejected by allowlist", group=group.name, cwd=str(workdir))
            raise _setup_error("not_allowed", path=str(workdir))
        return workdir

    def preflight(self, group_name: str = "") -> Path:
        """Verify runner dependencies and the compiled entry point exist."""
        s = get_settings()
        runner_dir = s.runner_dir
        node_modules = runner_dir / "node_modules"
        missing = [
            pkg
            for pkg in s.host.required_packages
            if not (node_modules.joinpath(*pkg.split("/")) / "package.json").exists()
        ]
        if missing:
            logger.error(
                "Host agent preflight failed: dependencies missing",
                group=group_name,
                missing=missing,
            )
            raise _setup_error("missing_deps", missing=", ".join(missing))

        entry = runner_dir / s.host.entry_point
        if not entry.exists():
            logger.error(
                "Host agent preflight failed: entry point not built",
                group=group_name,
                entry=str(entry),
            )
            raise _setup_error("not_built")
        return entry

    def _warn_if_stale(self, group: WorkspaceConfig, entry: Path) -> None:
        src_dir = get_settings().runner_dir / "src"
        try:
            built = entry.stat().st_mtime
            newest = max(
                (p.stat().st_mtime for p in src_dir.rglob("*") if p.is_file()),
                default=0.0,
            )
        except OSError:
            return
        if newest > built:
            logger.warning(_msg("stale"), group=group.name)

    async def stop(self, proc: asyncio.subprocess.Process, run_id: str) -> None:
        await stop_host_process(proc, grace=get_settings().host.kill_grace_seconds, run_id=run_id)

    def failure_hint(self, stderr: str) -> str | None:
        match = _MISSING_PACKAGE_RE.search(stderr)
        if match is None:
            return None
        return _msg("prefix", message=_msg("missing_package", package=match.group(1)))


def _ensure_git_root(path: Path, folder: str) -> None:
    """Give the default workdir its own repo so the agent can't walk up to ours."""
    if (path / ".git").exists():
        return
    try:
        subprocess.run(["git", "init"], cwd=path, capture_output=True, check=True)
        logger.info("Initialized git repository for workspace", folder=folder)
    except (subprocess.CalledProcessError, OSError) as exc:
        # Non-fatal: the agent still runs
        logger.warning("Failed to initialize git repository", folder=folder, err=str(exc))


_LAUNCHERS: dict[str, Launcher] = {
    "container": ContainerLauncher(),
    "host": HostLauncher(),
}


def get_launcher(mode: ExecutionMode) -> Launcher:
    try:
        return _LAUNCHERS[mode]
    except KeyError:
        raise ValueError(f"Unknown execution mode: {mode!r}") from None
