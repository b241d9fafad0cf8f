"""Provider credential rendering and environment file writing.

Credentials come from the global ``[provider]`` settings merged with an
optional per-workspace override file. Container runs receive them through a
0600 env file mounted read-only (never as process arguments); host runs get
the same variables merged into the child environment.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from happyclaw.config import ProviderConfig, get_settings
from happyclaw.logger import logger

ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Global custom env may not shadow these; the merged provider values win
RESERVED_ENV_KEYS = frozenset(
    {"CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_BASE_URL", "ANTHROPIC_AUTH_TOKEN"}
)

DANGEROUS_ENV_VARS = frozenset(
    {
        # preload / code execution
        "LD_PRELOAD",
        "LD_LIBRARY_PATH",
        "LD_AUDIT",
        "DYLD_INSERT_LIBRARIES",
        "DYLD_LIBRARY_PATH",
        "DYLD_FRAMEWORK_PATH",
        "NODE_OPTIONS",
        "JAVA_TOOL_OPTIONS",
        "PERL5OPT",
        # path manipulation
        "PATH",
        "PYTHONPATH",
        "RUBYLIB",
        "PERL5LIB",
        "GIT_EXEC_PATH",
        "CDPATH",
        # shell behavior
        "BASH_ENV",
        "ENV",
        "PROMPT_COMMAND",
        "ZDOTDIR",
        "EDITOR",
        "VISUAL",
        "PAGER",
        # ssh / git
        "SSH_AUTH_SOCK",
        "SSH_AGENT_PID",
        "GIT_SSH",
        "GIT_SSH_COMMAND",
        "GIT_ASKPASS",
        # sensitive dirs
        "HOME",
        "TMPDIR",
        "TEMP",
        "TMP",
        # our own path mapping
        "HAPPYCLAW_WORKSPACE_GROUP",
        "HAPPYCLAW_WORKSPACE_GLOBAL",
        "HAPPYCLAW_WORKSPACE_MEMORY",
        "HAPPYCLAW_WORKSPACE_IPC",
        "CLAUDE_CONFIG_DIR",
    }
)


class WorkspaceEnvOverride(BaseModel):
    """Per-workspace provider override (``data/config/container-env/<folder>.json``).

    Empty strings mean "inherit the global value".
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    anthropic_base_url: str = Field("", alias="anthropicBaseUrl")
    anthropic_auth_token: str = Field("", alias="anthropicAuthToken")
    anthropic_api_key: str = Field("", alias="anthropicApiKey")
    claude_code_oauth_token: str = Field("", alias="claudeCodeOauthToken")
    custom_env: dict[str, str] = Field(default_factory=dict, alias="customEnv")


def _sanitize_value(value: str) -> str:
    """Strip characters that could inject extra env lines."""
    return re.sub(r"[\r\n\0]", "", value)


def _shell_quote(value: str) -> str:
    """Quote a value for safe inclusion in a shell env file."""
    return "'" + value.replace("'", "'\\''") + "'"


def _secret(value) -> str:
    return value.get_secret_value() if value is not None else ""


def override_path(group_folder: str) -> Path:
    if ".." in group_folder or "/" in group_folder:
        raise ValueError(f"Invalid folder name: {group_folder!r}")
    return get_settings().data_dir / "config" / "container-env" / f"{group_folder}.json"


def load_workspace_override(group_folder: str) -> WorkspaceEnvOverride:
    """Read the per-workspace override. Missing or malformed → empty override."""
    try:
        path = override_path(group_folder)
        if not path.exists():
            return WorkspaceEnvOverride()
        return WorkspaceEnvOverride.model_validate(json.loads(path.read_text()))
    except (OSError, ValueError, ValidationError) as exc:
        logger.warning(
            "Failed to read workspace env override, using defaults",
            group=group_folder,
            err=str(exc),
        )
        return WorkspaceEnvOverride()


def merge_provider_config(
    provider: ProviderConfig, override: WorkspaceEnvOverride
) -> dict[str, str]:
    """Non-empty override fields win over the global value."""
    return {
        "anthropic_base_url": override.anthropic_base_url or provider.anthropic_base_url,
        "anthropic_auth_token": override.anthropic_auth_token
        or _secret(provider.anthropic_auth_token),
        "anthropic_api_key": override.anthropic_api_key or _secret(provider.anthropic_api_key),
        "claude_code_oauth_token": override.claude_code_oauth_token
        or _secret(provider.claude_code_oauth_token),
    }


def _accept_custom_key(key: str, *, source: str) -> bool:
    if not ENV_KEY_RE.match(key):
        logger.warning("Skipping invalid env key", key=key, source=source)
        return False
    if key in DANGEROUS_ENV_VARS:
        logger.warning("Blocked dangerous env variable", key=key, source=source)
        return False
    return True


def build_env_vars(
    provider: ProviderConfig, override: WorkspaceEnvOverride
) -> dict[str, str]:
    """Render the ordered env mapping handed to the agent runner."""
    merged = merge_provider_config(provider, override)
    env: dict[str, str] = {}
    for key, field in (
        ("CLAUDE_CODE_OAUTH_TOKEN", "claude_code_oauth_token"),
        ("ANTHROPIC_API_KEY", "anthropic_api_key"),
        ("ANTHROPIC_BASE_URL", "anthropic_base_url"),
        ("ANTHROPIC_AUTH_TOKEN", "anthropic_auth_token"),
    ):
        if merged[field]:
            env[key] = _sanitize_value(merged[field])

    for key, value in provider.custom_env.items():
        if key in RESERVED_ENV_KEYS or not _accept_custom_key(key, source="global"):
            continue
        env[key] = _sanitize_value(value)

    for key, value in override.custom_env.items():
        if not key or not _accept_custom_key(key, source="workspace"):
            continue
        env[key] = _sanitize_value(value)
    return env


def resolve_env_vars(group_folder: str) -> dict[str, str]:
    """Global provider settings merged with *group_folder*'s override."""
    return build_env_vars(get_settings().provider, load_workspace_override(group_folder))


def _write_env_file(group_folder: str, env_vars: dict[str, str]) -> Path | None:
    """Write the owner-only env file for a container run.

    Returns the env dir to mount, or ``None`` if there is nothing to write.
    """
    if not env_vars:
        logger.warning(
            "No provider credentials configured, the agent will fail to authenticate. "
            "Set [provider] in config.toml or PROVIDER__ANTHROPIC_API_KEY in .env",
            group=group_folder,
        )
        return None

    env_dir = get_settings().data_dir / "env" / group_folder
    env_dir.mkdir(parents=True, exist_ok=True)
    env_file = env_dir / "env"
    lines = [f"{k}={_shell_quote(v)}" for k, v in env_vars.items()]

    fd = os.open(env_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write("\n".join(lines) + "\n")
    # O_CREAT's mode only applies to new files
    os.chmod(env_file, 0o600)

    logger.debug("Container env prepared", group=group_folder, vars=list(env_vars))
    return env_dir
