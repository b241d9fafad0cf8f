"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Provider credentials live in .env.
Environment variables override both using ``__`` as the nested delimiter
(e.g. ``PROVIDER__ANTHROPIC_API_KEY``). Credentials use SecretStr for masking
in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from happyclaw.config import get_settings

    s = get_settings()
    print(s.container.image)
    print(s.groups_dir)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ContainerConfig(_StrictModel):
    image: str = "happyclaw-agent:latest"
    runtime_cli: str = "docker"
    timeout_ms: int = 1800000  # 30 minutes, idle (reset on every decoded frame)
    max_output_size: int = 10485760  # 10MB per captured stream, logs only
    max_parse_buffer: int = 10485760  # 10MB, protocol parser
    parse_tail_window: int = 512
    stop_timeout_seconds: float = 15.0
    settle_timeout_ms: int = 30000
    delivery_queue_size: int = 256

    @field_validator("timeout_ms", "max_output_size", "max_parse_buffer", "settle_timeout_ms")
    @classmethod
    def positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("delivery_queue_size")
    @classmethod
    def clamp_queue_size(cls, v: int) -> int:
        return max(1, v)


class HostConfig(_StrictModel):
    runner_dir: str = "container/agent-runner"  # relative to project root
    entry_point: str = "dist/index.js"  # relative to runner_dir
    interpreter: str = "node"
    required_packages: list[str] = [
        "@anthropic-ai/claude-agent-sdk",
        "@modelcontextprotocol/sdk",
    ]
    kill_grace_seconds: float = 5.0
    locale: Literal["en", "zh"] = "en"


class ProviderConfig(_StrictModel):
    """Global LLM provider config, merged with per-workspace overrides at run time."""

    anthropic_base_url: str = ""
    anthropic_auth_token: SecretStr | None = None
    anthropic_api_key: SecretStr | None = None
    claude_code_oauth_token: SecretStr | None = None
    custom_env: dict[str, str] = {}


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    container: ContainerConfig = ContainerConfig()
    host: HostConfig = HostConfig()
    provider: ProviderConfig = ProviderConfig()
    logging: LoggingConfig = LoggingConfig()

    # Sentinels (class-level, not fields): must match the agent runner
    OUTPUT_START_MARKER: ClassVar[str] = "---HAPPYCLAW_OUTPUT_START---"
    OUTPUT_END_MARKER: ClassVar[str] = "---HAPPYCLAW_OUTPUT_END---"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def container_timeout(self) -> float:
        return self.container.timeout_ms / 1000

    @cached_property
    def settle_timeout(self) -> float:
        return self.container.settle_timeout_ms / 1000

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def home_dir(self) -> Path:
        return Path.home()

    @cached_property
    def groups_dir(self) -> Path:
        return (self.project_root / "groups").resolve()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def mount_allowlist_path(self) -> Path:
        # Outside the project root so no workspace mount can reach it
        return self.home_dir / ".config" / "happyclaw" / "mount-allowlist.json"

    @cached_property
    def runner_dir(self) -> Path:
        return self.project_root / self.host.runner_dir


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
