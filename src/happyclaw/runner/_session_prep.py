"""Session directory preparation: settings.json and skill selection."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

from happyclaw.logger import logger

_SKILL_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

SESSION_SETTINGS: dict[str, Any] = {
    "env": {
        # Subagent orchestration
        "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS": "1",
        # Load CLAUDE.md from the extra mounted directories
        "CLAUDE_CODE_ADDITIONAL_DIRECTORIES_CLAUDE_MD": "1",
        "CLAUDE_CODE_DISABLE_AUTO_MEMORY": "0",
    },
}


def _write_settings_json(session_dir: Path, *, owner_only: bool = False) -> bool:
    """Write the session settings.json once. Never overwrites an existing file.

    The agent (or the user) may edit the file after the first run, so later
    runs leave it alone. Returns True if the file was created.
    """
    settings_file = session_dir / "settings.json"
    payload = json.dumps(SESSION_SETTINGS, indent=2) + "\n"
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    try:
        fd = os.open(settings_file, flags, 0o600 if owner_only else 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w") as f:
        f.write(payload)
    logger.debug("Wrote session settings", path=str(settings_file))
    return True


def _resolve_selected_skills(skills_root: Path, selected: list[str]) -> list[Path]:
    """Map selected skill names to existing directories under *skills_root*.

    Names that are not plain directory names, or that do not exist, are
    skipped with a warning so a crafted name can never reach outside the tree.
    """
    dirs: list[Path] = []
    seen: set[str] = set()
    for name in selected:
        if name in seen:
            continue
        seen.add(name)
        if not _SKILL_NAME_RE.match(name) or ".." in name:
            logger.warning("Ignoring invalid skill name", skill=name)
            continue
        skill_dir = skills_root / name
        if not skill_dir.is_dir():
            logger.debug("Selected skill not present", skill=name, root=str(skills_root))
            continue
        dirs.append(skill_dir)
    return dirs
