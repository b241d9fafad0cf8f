"""Data models for HappyClaw."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    import asyncio

ExecutionMode = Literal["container", "host"]
OutputStatus = Literal["success", "error", "stream"]


@dataclass
class AdditionalMount:
    host_path: str  # Absolute path on host (supports ~ for home)
    container_path: str | None = None  # Defaults to basename of host_path
    readonly: bool = True  # Default: true for safety


@dataclass
class AllowedRoot:
    path: str  # Absolute path or ~ for home
    allow_read_write: bool = False
    description: str | None = None


@dataclass
class MountAllowlist:
    allowed_roots: list[AllowedRoot] = field(default_factory=list)
    blocked_patterns: list[str] = field(default_factory=list)
    non_main_read_only: bool = True


@dataclass
class ContainerConfig:
    additional_mounts: list[AdditionalMount] = field(default_factory=list)
    timeout: float | None = None  # Seconds; None → [container].timeout_ms


@dataclass
class WorkspaceConfig:
    """A workspace as registered by the persistence layer. Read-only here."""

    name: str  # Display name
    folder: str  # Folder under groups/
    execution_mode: ExecutionMode = "container"
    owner_id: str | None = None  # Owning user; scopes the shared global memory dir
    container_config: ContainerConfig | None = None
    custom_cwd: str | None = None  # Host mode only; must resolve under an allowed root
    selected_skills: list[str] | None = None  # None = expose the whole skills tree


@dataclass(frozen=True)
class ImageAttachment:
    data: str  # base64
    mime_type: str | None = None


@dataclass(frozen=True)
class ExecutionRequest:
    """One agent turn. Serialized once to the subprocess stdin."""

    prompt: str
    group_folder: str
    chat_jid: str
    is_home: bool = False
    is_admin_home: bool = False
    is_scheduled_task: bool = False
    session_id: str | None = None
    images: tuple[ImageAttachment, ...] | None = None
    agent_id: str | None = None  # Sub-agent id; namespaces session + IPC dirs
    agent_name: str | None = None


@dataclass
class StreamEvent:
    event_type: str  # text_delta, thinking_delta, tool_use_start, tool_use_end, ...
    text: str | None = None
    tool_name: str | None = None
    tool_use_id: str | None = None
    parent_tool_use_id: str | None = None
    is_nested: bool | None = None
    skill_name: str | None = None
    tool_input_summary: str | None = None
    elapsed_seconds: float | None = None
    hook_name: str | None = None
    hook_event: str | None = None
    hook_outcome: str | None = None
    status_text: str | None = None


@dataclass
class AgentOutput:
    """One decoded frame, or the final result of a run (same shape)."""

    status: OutputStatus
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None
    stream_event: StreamEvent | None = None


StreamFrame = AgentOutput
ExecutionResult = AgentOutput


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


@dataclass
class RunHandle:
    """A live agent subprocess. Exists from spawn until exit."""

    proc: asyncio.subprocess.Process
    run_id: str
    group_folder: str
    mode: ExecutionMode
    started_at: float  # time.monotonic()
    agent_id: str | None = None
