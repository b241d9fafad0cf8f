"""Mount planning and container CLI arg construction.

The planner is the one place that decides which host directories a run can
reach. Container runs get them as bind mounts; host runs get the same paths
as environment variables (see ``_launcher.HostLauncher``).
"""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path

from happyclaw.config import get_settings
from happyclaw.logger import logger
from happyclaw.runner._credentials import _write_env_file, resolve_env_vars
from happyclaw.runner._session_prep import _resolve_selected_skills, _write_settings_json
from happyclaw.security.mount_security import validate_additional_mounts
from happyclaw.types import ExecutionMode, ExecutionRequest, VolumeMount, WorkspaceConfig

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_IPC_SUBDIRS = ("messages", "tasks", "input")


@dataclass
class MountPlan:
    """Ordered mounts plus the well-known per-run directories they expose."""

    mounts: list[VolumeMount] = field(default_factory=list)
    group_dir: Path | None = None
    global_dir: Path | None = None
    memory_dir: Path | None = None
    session_dir: Path | None = None
    ipc_dir: Path | None = None

    def describe(self) -> list[str]:
        return [
            f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
            for m in self.mounts
        ]


def _check_segment(value: str, what: str) -> str:
    """Reject anything that is not a single safe path segment."""
    if not _SEGMENT_RE.match(value) or ".." in value:
        raise ValueError(f"Invalid {what}: {value!r}")
    return value


def _scoped(base: Path, folder: str, agent_id: str | None) -> Path:
    """``base/<folder>`` or, for a sub-agent, ``base/<folder>/agents/<id>``."""
    path = base / _check_segment(folder, "workspace folder")
    if agent_id:
        path = path / "agents" / _check_segment(agent_id, "agent id")
    return path


def session_dir_for(folder: str, agent_id: str | None = None) -> Path:
    return _scoped(get_settings().data_dir / "sessions", folder, agent_id) / ".claude"


def ipc_dir_for(folder: str, agent_id: str | None = None) -> Path:
    """``ipc/<folder>/main`` for the parent, a sibling of its ``agents/`` tree."""
    path = _scoped(get_settings().data_dir / "ipc", folder, agent_id)
    return path if agent_id else path / "main"


def global_dir_for(group: WorkspaceConfig) -> Path:
    """Per-owner shared memory dir; ``groups/global`` for ownerless workspaces.

    Concurrent runs for the same owner can write here at once. There is no
    locking: last writer wins.
    """
    groups_dir = get_settings().groups_dir
    if group.owner_id:
        return groups_dir / "user-global" / _check_segment(group.owner_id, "owner id")
    return groups_dir / "global"


def _make_ipc_dirs(ipc_dir: Path, *, owner_only: bool) -> None:
    for sub in _IPC_SUBDIRS:
        (ipc_dir / sub).mkdir(parents=True, exist_ok=True)
    if owner_only:
        # mkdir's mode is filtered by umask; set it explicitly
        os.chmod(ipc_dir, 0o700)
        for sub in _IPC_SUBDIRS:
            os.chmod(ipc_dir / sub, 0o700)


def _skill_mounts(group: WorkspaceConfig) -> list[VolumeMount]:
    s = get_settings()
    roots = [
        (s.project_root / "container" / "skills", "/workspace/project-skills"),
        (s.home_dir / ".claude" / "skills", "/workspace/user-skills"),
    ]
    mounts: list[VolumeMount] = []
    for root, target in roots:
        if not root.is_dir():
            continue
        if group.selected_skills is None:
            mounts.append(VolumeMount(str(root), target, readonly=True))
            continue
        # Mount only the chosen skills so unselected names are not even listable
        for skill_dir in _resolve_selected_skills(root, group.selected_skills):
            mounts.append(VolumeMount(str(skill_dir), f"{target}/{skill_dir.name}", readonly=True))
    return mounts


def _build_volume_mounts(
    group: WorkspaceConfig,
    request: ExecutionRequest,
    *,
    mode: ExecutionMode = "container",
) -> MountPlan:
    """Build the mount plan for one run, creating the host dirs it references.

    Args:
        group: The registered workspace
        request: The turn being run (supplies role flags and sub-agent id)
        mode: ``container`` returns bind mounts for every entry; ``host``
            computes the same directories but skips container-only entries
            (env file, runner source, skills, additional mounts)

    Returns:
        MountPlan with mounts in launch order
    """
    s = get_settings()
    host_mode = mode == "host"
    plan = MountPlan()
    agent_id = request.agent_id

    # Global memory: writable only from the owner's home workspace
    global_dir = global_dir_for(group)
    global_dir.mkdir(parents=True, exist_ok=True)
    plan.global_dir = global_dir
    plan.mounts.append(
        VolumeMount(str(global_dir), "/workspace/global", readonly=not request.is_home)
    )

    if request.is_admin_home:
        plan.mounts.append(VolumeMount(str(s.project_root), "/workspace/project", readonly=False))

    group_dir = s.groups_dir / _check_segment(group.folder, "workspace folder")
    if not (host_mode and group.custom_cwd):
        group_dir.mkdir(parents=True, exist_ok=True)
    plan.group_dir = group_dir
    plan.mounts.append(VolumeMount(str(group_dir), "/workspace/group", readonly=False))

    memory_dir = s.data_dir / "memory" / group.folder
    memory_dir.mkdir(parents=True, exist_ok=True)
    plan.memory_dir = memory_dir
    plan.mounts.append(VolumeMount(str(memory_dir), "/workspace/memory", readonly=False))

    session_dir = session_dir_for(group.folder, agent_id)
    session_dir.mkdir(parents=True, exist_ok=True)
    _write_settings_json(session_dir, owner_only=host_mode)
    plan.session_dir = session_dir
    plan.mounts.append(VolumeMount(str(session_dir), "/home/node/.claude", readonly=False))

    if not host_mode:
        plan.mounts.extend(_skill_mounts(group))

    ipc_dir = ipc_dir_for(group.folder, agent_id)
    _make_ipc_dirs(ipc_dir, owner_only=host_mode)
    plan.ipc_dir = ipc_dir
    plan.mounts.append(VolumeMount(str(ipc_dir), "/workspace/ipc", readonly=False))

    if host_mode:
        return plan

    # Secrets go through a 0600 file, never argv
    env_dir = _write_env_file(group.folder, resolve_env_vars(group.folder))
    if env_dir is not None:
        plan.mounts.append(VolumeMount(str(env_dir), "/workspace/env-dir", readonly=True))

    agent_runner_src = s.runner_dir / "src"
    plan.mounts.append(VolumeMount(str(agent_runner_src), "/app/src", readonly=True))

    if group.container_config and group.container_config.additional_mounts:
        plan.mounts.extend(
            validate_additional_mounts(
                group.container_config.additional_mounts,
                group.name,
                is_main=request.is_home,
            )
        )

    logger.debug("Mount plan built", group=group.name, mounts=plan.describe())
    return plan


def _container_name(folder: str, agent_id: str | None = None) -> str:
    """``happyclaw-<folder>[-<agent>]-<ms>``, restricted to [a-zA-Z0-9-]."""
    safe = re.sub(r"[^a-zA-Z0-9-]", "-", folder)
    if agent_id:
        safe += "-" + re.sub(r"[^a-zA-Z0-9-]", "-", agent_id)
    return f"happyclaw-{safe}-{int(time.time() * 1000)}"


def _build_container_args(mounts: list[VolumeMount], container_name: str) -> list[str]:
    """Build CLI args for ``<runtime> run``. Mount order is preserved."""
    args = ["run", "-i", "--rm", "--name", container_name]
    for m in mounts:
        spec = f"{m.host_path}:{m.container_path}"
        args.extend(["-v", f"{spec}:ro" if m.readonly else spec])
    args.append(get_settings().container.image)
    return args
