"""Shared test fixtures for HappyClaw."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures: importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "home_dir",
        "groups_dir",
        "data_dir",
        "mount_allowlist_path",
        "runner_dir",
        "container_timeout",
        "settle_timeout",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (container, host, etc.) and cached property
    overrides (project_root, data_dir, groups_dir, etc.).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(container=ContainerConfig(timeout_ms=500))
    """
    from happyclaw.config import (
        ContainerConfig,
        HostConfig,
        LoggingConfig,
        ProviderConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "container": ContainerConfig(),
        "host": HostConfig(),
        "provider": ProviderConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def write_allowlist(
    path: Path,
    roots: list[dict],
    *,
    blocked: list[str] | None = None,
    non_main_read_only: bool = True,
) -> Path:
    """Write a mount allowlist JSON file in the on-disk (camelCase) shape."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            {
                "allowedRoots": roots,
                "blockedPatterns": blocked or [],
                "nonMainReadOnly": non_main_read_only,
            }
        )
    )
    return path


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def settings(tmp_path: Path, monkeypatch):
    """Each test gets a clean Settings singleton rooted in its own tmp dir.

    Built with ``make_settings()``: no config.toml, no .env, no file I/O.
    Every directory the runner touches lives under ``tmp_path``, so tests
    never write into the working tree.
    """
    from happyclaw.security.mount_security import _reset_cache

    s = make_settings(
        project_root=tmp_path,
        home_dir=tmp_path / "home",
        groups_dir=tmp_path / "groups",
        data_dir=tmp_path / "data",
        mount_allowlist_path=tmp_path / "config" / "mount-allowlist.json",
        runner_dir=tmp_path / "container" / "agent-runner",
    )
    monkeypatch.setattr("happyclaw.config._settings", s)
    monkeypatch.setattr("happyclaw.runtime._runtime", None)
    _reset_cache()
    yield s
    _reset_cache()
