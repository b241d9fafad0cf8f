"""Mount security: validates host paths against an external allowlist.

The allowlist lives OUTSIDE the project root (see
``Settings.mount_allowlist_path``) so an agent with a writable project mount
cannot widen its own access. It is loaded once per process; a failed load is
cached too, so a broken file blocks every additional mount until restart.

Expected JSON shape::

    {
      "allowedRoots": [{"path": "~/projects", "allowReadWrite": true, "description": "Dev"}],
      "blockedPatterns": ["password"],
      "nonMainReadOnly": true
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from happyclaw.config import get_settings
from happyclaw.logger import logger
from happyclaw.types import AdditionalMount, AllowedRoot, MountAllowlist, VolumeMount

DEFAULT_BLOCKED_PATTERNS = [
    ".ssh",
    ".gnupg",
    ".gpg",
    ".aws",
    ".azure",
    ".gcloud",
    ".kube",
    ".docker",
    "credentials",
    ".env",
    ".netrc",
    ".npmrc",
    ".pypirc",
    "id_rsa",
    "id_ed25519",
    "private_key",
    ".secret",
]

EXTRA_MOUNT_PREFIX = "/workspace/extra"

_cached_allowlist: MountAllowlist | None = None
_load_error: str | None = None


def _reset_cache() -> None:
    """Forget the cached allowlist (and any cached load error)."""
    global _cached_allowlist, _load_error
    _cached_allowlist = None
    _load_error = None


@dataclass
class MountValidationResult:
    allowed: bool
    reason: str
    real_host_path: str | None = None
    resolved_container_path: str | None = None
    effective_readonly: bool | None = None


def _parse_allowlist(raw: object) -> MountAllowlist:
    if not isinstance(raw, dict):
        raise ValueError("allowlist must be a JSON object")
    roots = raw.get("allowedRoots")
    if not isinstance(roots, list):
        raise ValueError("allowedRoots must be an array")
    patterns = raw.get("blockedPatterns")
    if not isinstance(patterns, list):
        raise ValueError("blockedPatterns must be an array")
    non_main_read_only = raw.get("nonMainReadOnly")
    if not isinstance(non_main_read_only, bool):
        raise ValueError("nonMainReadOnly must be a boolean")

    allowed_roots = []
    for entry in roots:
        if not isinstance(entry, dict) or not isinstance(entry.get("path"), str):
            raise ValueError("each allowed root needs a string 'path'")
        allowed_roots.append(
            AllowedRoot(
                path=entry["path"],
                allow_read_write=bool(entry.get("allowReadWrite", False)),
                description=entry.get("description"),
            )
        )

    # Defaults first, custom patterns appended, duplicates dropped
    merged = list(dict.fromkeys([*DEFAULT_BLOCKED_PATTERNS, *(str(p) for p in patterns)]))
    return MountAllowlist(
        allowed_roots=allowed_roots,
        blocked_patterns=merged,
        non_main_read_only=non_main_read_only,
    )


def load_mount_allowlist() -> MountAllowlist | None:
    """Load and cache the allowlist. Returns None if missing or invalid."""
    global _cached_allowlist, _load_error
    if _cached_allowlist is not None:
        return _cached_allowlist
    if _load_error is not None:
        return None

    path = get_settings().mount_allowlist_path
    if not path.exists():
        _load_error = f"Mount allowlist not found at {path}"
        logger.warning(
            "Mount allowlist not found, additional mounts will be BLOCKED",
            path=str(path),
        )
        return None

    try:
        _cached_allowlist = _parse_allowlist(json.loads(path.read_text()))
    except (OSError, ValueError) as exc:
        # json.JSONDecodeError is a ValueError
        _load_error = str(exc)
        logger.error(
            "Failed to load mount allowlist, additional mounts will be BLOCKED",
            path=str(path),
            err=_load_error,
        )
        return None

    logger.info(
        "Mount allowlist loaded",
        path=str(path),
        allowed_roots=len(_cached_allowlist.allowed_roots),
        blocked_patterns=len(_cached_allowlist.blocked_patterns),
    )
    return _cached_allowlist


def _expand_path(p: str) -> str:
    """Expand ``~`` to $HOME and make the path absolute."""
    home = os.environ.get("HOME") or str(Path.home())
    if p == "~":
        return home
    if p.startswith("~/"):
        return os.path.join(home, p[2:])
    return os.path.abspath(p)


def _real_path(p: str) -> str | None:
    """Resolve symlinks; None if the path does not exist."""
    try:
        return str(Path(p).resolve(strict=True))
    except (OSError, RuntimeError):
        return None


def _matches_blocked_pattern(real_path: str, blocked_patterns: list[str]) -> str | None:
    parts = real_path.split(os.sep)
    for pattern in blocked_patterns:
        if any(pattern in part for part in parts) or pattern in real_path:
            return pattern
    return None


def _is_under(path: str, root: str) -> bool:
    rel = os.path.relpath(path, root)
    return not rel.startswith("..") and not os.path.isabs(rel)


def _find_allowed_root(real_path: str, allowed_roots: list[AllowedRoot]) -> AllowedRoot | None:
    for root in allowed_roots:
        real_root = _real_path(_expand_path(root.path))
        if real_root is None:
            continue  # root doesn't exist on this machine
        if _is_under(real_path, real_root):
            return root
    return None


def _is_valid_container_path(container_path: str) -> bool:
    """Relative, non-empty, no traversal. Prefixed with /workspace/extra/ later."""
    if not container_path or not container_path.strip():
        return False
    if ".." in container_path:
        return False
    return not container_path.startswith("/")


def validate_mount(mount: AdditionalMount, *, is_main: bool) -> MountValidationResult:
    """Validate one additional mount against the allowlist."""
    allowlist = load_mount_allowlist()
    if allowlist is None:
        return MountValidationResult(
            allowed=False,
            reason=f"No mount allowlist configured at {get_settings().mount_allowlist_path}",
        )

    container_path = mount.container_path or os.path.basename(mount.host_path.rstrip("/"))
    if not _is_valid_container_path(container_path):
        return MountValidationResult(
            allowed=False,
            reason=(
                f'Invalid container path: "{container_path}" - must be relative, '
                'non-empty, and not contain ".."'
            ),
        )

    expanded = _expand_path(mount.host_path)
    real = _real_path(expanded)
    if real is None:
        return MountValidationResult(
            allowed=False,
            reason=f'Host path does not exist: "{mount.host_path}" (expanded: "{expanded}")',
        )

    blocked = _matches_blocked_pattern(real, allowlist.blocked_patterns)
    if blocked is not None:
        return MountValidationResult(
            allowed=False,
            reason=f'Path matches blocked pattern "{blocked}": "{real}"',
        )

    root = _find_allowed_root(real, allowlist.allowed_roots)
    if root is None:
        roots = ", ".join(_expand_path(r.path) for r in allowlist.allowed_roots)
        return MountValidationResult(
            allowed=False,
            reason=f'Path "{real}" is not under any allowed root. Allowed roots: {roots}',
        )

    effective_readonly = True
    if not mount.readonly:
        if not is_main and allowlist.non_main_read_only:
            logger.info("Mount forced to read-only for non-home workspace", mount=mount.host_path)
        elif not root.allow_read_write:
            logger.info(
                "Mount forced to read-only, root does not allow read-write",
                mount=mount.host_path,
                root=root.path,
            )
        else:
            effective_readonly = False

    reason = f'Allowed under root "{root.path}"'
    if root.description:
        reason += f" ({root.description})"
    return MountValidationResult(
        allowed=True,
        reason=reason,
        real_host_path=real,
        resolved_container_path=container_path,
        effective_readonly=effective_readonly,
    )


def validate_additional_mounts(
    mounts: list[AdditionalMount], group_name: str, *, is_main: bool
) -> list[VolumeMount]:
    """Return only the mounts that pass validation, mapped under /workspace/extra/."""
    validated: list[VolumeMount] = []
    for mount in mounts:
        result = validate_mount(mount, is_main=is_main)
        if not result.allowed:
            logger.warning(
                "Additional mount REJECTED",
                group=group_name,
                requested_path=mount.host_path,
                container_path=mount.container_path,
                reason=result.reason,
            )
            continue
        assert result.real_host_path is not None
        validated.append(
            VolumeMount(
                host_path=result.real_host_path,
                container_path=f"{EXTRA_MOUNT_PREFIX}/{result.resolved_container_path}",
                readonly=bool(result.effective_readonly),
            )
        )
        logger.debug(
            "Mount validated",
            group=group_name,
            host_path=result.real_host_path,
            container_path=result.resolved_container_path,
            readonly=result.effective_readonly,
        )
    return validated


def is_path_allowed(path: str) -> tuple[bool, str | None]:
    """Check that *path* resolves (through any symlinks) inside an allowed root.

    Used for host-mode custom working directories. Returns ``(ok, real_path)``;
    ``real_path`` is None when the path does not exist. With no allowlist
    configured nothing is allowed.
    """
    real = _real_path(_expand_path(path))
    if real is None:
        return False, None
    allowlist = load_mount_allowlist()
    if allowlist is None:
        return False, real
    return _find_allowed_root(real, allowlist.allowed_roots) is not None, real


def generate_allowlist_template() -> str:
    template = {
        "allowedRoots": [
            {"path": "~/projects", "allowReadWrite": True, "description": "Development projects"},
            {"path": "~/repos", "allowReadWrite": True, "description": "Git repositories"},
            {
                "path": "~/Documents/work",
                "allowReadWrite": False,
                "description": "Work documents (read-only)",
            },
        ],
        "blockedPatterns": ["password", "secret", "token"],
        "nonMainReadOnly": True,
    }
    return json.dumps(template, indent=2)
