"""Serialization helpers: camelCase/snake_case boundary crossing.

Converts ExecutionRequest to dict for JSON transport into the agent runner,
and parses frames emitted by the agent runner back to AgentOutput.
"""

from __future__ import annotations

import json
from typing import Any

from happyclaw.types import AgentOutput, ExecutionRequest, StreamEvent

_STATUSES = ("success", "error", "stream")

# camelCase wire name -> StreamEvent attribute
_STREAM_EVENT_FIELDS = {
    "eventType": "event_type",
    "text": "text",
    "toolName": "tool_name",
    "toolUseId": "tool_use_id",
    "parentToolUseId": "parent_tool_use_id",
    "isNested": "is_nested",
    "skillName": "skill_name",
    "toolInputSummary": "tool_input_summary",
    "elapsedSeconds": "elapsed_seconds",
    "hookName": "hook_name",
    "hookEvent": "hook_event",
    "hookOutcome": "hook_outcome",
    "statusText": "status_text",
}


def _input_to_dict(request: ExecutionRequest) -> dict[str, Any]:
    """Convert ExecutionRequest to the dict the agent runner reads from stdin."""
    d: dict[str, Any] = {
        "prompt": request.prompt,
        "groupFolder": request.group_folder,
        "chatJid": request.chat_jid,
        "isHome": request.is_home,
        "isAdminHome": request.is_admin_home,
        # Older agent runners only understand isMain
        "isMain": request.is_admin_home,
    }
    if request.session_id is not None:
        d["sessionId"] = request.session_id
    if request.is_scheduled_task:
        d["isScheduledTask"] = True
    if request.images:
        d["images"] = [
            {"data": img.data, **({"mimeType": img.mime_type} if img.mime_type else {})}
            for img in request.images
        ]
    if request.agent_id is not None:
        d["agentId"] = request.agent_id
    if request.agent_name is not None:
        d["agentName"] = request.agent_name
    return d


def _parse_stream_event(raw: Any) -> StreamEvent | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("eventType"), str):
        return None
    return StreamEvent(
        **{attr: raw.get(wire) for wire, attr in _STREAM_EVENT_FIELDS.items()}
    )


def _output_from_dict(data: Any) -> AgentOutput:
    """Build AgentOutput from a decoded frame. Raises ValueError on a bad shape."""
    if not isinstance(data, dict):
        raise ValueError(f"frame is {type(data).__name__}, expected object")
    status = data.get("status")
    if status not in _STATUSES:
        raise ValueError(f"invalid frame status: {status!r}")
    result = data.get("result")
    return AgentOutput(
        status=status,
        result=result if isinstance(result, str) else None,
        new_session_id=data.get("newSessionId"),
        error=data.get("error"),
        stream_event=_parse_stream_event(data.get("streamEvent")),
    )


def _parse_agent_output(json_str: str) -> AgentOutput:
    """Parse one frame's JSON text. Raises ValueError (incl. JSONDecodeError)."""
    try:
        data = json.loads(json_str)
    except RecursionError as exc:
        raise ValueError("frame JSON nested too deeply") from exc
    return _output_from_dict(data)


def _output_to_dict(output: AgentOutput) -> dict[str, Any]:
    """Inverse of :func:`_output_from_dict`, for logs and the CLI."""
    d: dict[str, Any] = {"status": output.status, "result": output.result}
    if output.new_session_id is not None:
        d["newSessionId"] = output.new_session_id
    if output.error is not None:
        d["error"] = output.error
    if output.stream_event is not None:
        d["streamEvent"] = {
            wire: getattr(output.stream_event, attr)
            for wire, attr in _STREAM_EVENT_FIELDS.items()
            if getattr(output.stream_event, attr) is not None
        }
    return d
