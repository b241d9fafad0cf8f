"""Host filesystem access control for agent runs.

Every host path that reaches an agent (additional mounts, host-mode custom
working directories) is checked here against the external mount allowlist.
"""

from happyclaw.security.mount_security import (
    DEFAULT_BLOCKED_PATTERNS,
    MountValidationResult,
    generate_allowlist_template,
    is_path_allowed,
    load_mount_allowlist,
    validate_additional_mounts,
    validate_mount,
)

__all__ = [
    "DEFAULT_BLOCKED_PATTERNS",
    "MountValidationResult",
    "generate_allowlist_template",
    "is_path_allowed",
    "load_mount_allowlist",
    "validate_additional_mounts",
    "validate_mount",
]
