"""Best-effort registry of live runs, for out-of-band stop requests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from happyclaw.logger import logger
from happyclaw.types import RunHandle

if TYPE_CHECKING:
    from happyclaw.runner._launcher import Launcher


@dataclass
class _Entry:
    handle: RunHandle
    launcher: Launcher


class RunRegistry:
    """Live handles keyed by run id. Entries exist from spawn until exit.

    Stopping is best-effort: a forced kill can orphan the agent's own
    children, and a run may exit on its own between lookup and stop.
    """

    def __init__(self) -> None:
        self._runs: dict[str, _Entry] = {}

    def register(self, handle: RunHandle, launcher: Launcher) -> None:
        self._runs[handle.run_id] = _Entry(handle, launcher)

    def unregister(self, run_id: str) -> None:
        self._runs.pop(run_id, None)

    def get(self, group_folder: str, agent_id: str | None = None) -> RunHandle | None:
        """Most recently started live run for a workspace (or sub-agent)."""
        matches = [
            e.handle
            for e in self._runs.values()
            if e.handle.group_folder == group_folder and e.handle.agent_id == agent_id
        ]
        return max(matches, key=lambda h: h.started_at, default=None)

    def active(self) -> list[RunHandle]:
        return [e.handle for e in self._runs.values()]

    async def stop(self, run_id: str) -> bool:
        """Gracefully stop a run via its launcher. False if it is not live."""
        entry = self._runs.get(run_id)
        if entry is None or entry.handle.proc.returncode is not None:
            return False
        logger.info("Stopping run on request", run_id=run_id, mode=entry.handle.mode)
        await entry.launcher.stop(entry.handle.proc, run_id)
        return True


_registry = RunRegistry()


def get_registry() -> RunRegistry:
    return _registry
