"""Tests for mount security: allowed/blocked paths, readonly enforcement.

Covers allowlist loading, path validation, blocked patterns, readonly
enforcement for home vs. non-home workspaces, and the host-mode cwd check.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

from conftest import write_allowlist

from happyclaw.security.mount_security import (
    DEFAULT_BLOCKED_PATTERNS,
    _expand_path,
    _find_allowed_root,
    _is_valid_container_path,
    _matches_blocked_pattern,
    generate_allowlist_template,
    is_path_allowed,
    load_mount_allowlist,
    validate_additional_mounts,
    validate_mount,
)
from happyclaw.types import AdditionalMount, AllowedRoot

# ---------------------------------------------------------------------------
# Path expansion
# ---------------------------------------------------------------------------


class TestExpandPath:
    def test_expands_tilde(self):
        with patch.dict(os.environ, {"HOME": "/Users/testuser"}):
            assert _expand_path("~/projects") == "/Users/testuser/projects"

    def test_expands_bare_tilde(self):
        with patch.dict(os.environ, {"HOME": "/Users/testuser"}):
            assert _expand_path("~") == "/Users/testuser"

    def test_absolute_path_unchanged(self):
        assert _expand_path("/absolute/path") == "/absolute/path"

    def test_relative_path_resolved(self):
        assert os.path.isabs(_expand_path("relative/path"))


# ---------------------------------------------------------------------------
# Blocked patterns
# ---------------------------------------------------------------------------


class TestBlockedPatterns:
    def test_matches_exact_component(self):
        assert _matches_blocked_pattern("/home/user/.ssh/id_rsa", [".ssh"]) == ".ssh"

    def test_matches_substring_in_component(self):
        assert (
            _matches_blocked_pattern("/home/user/credentials-store/data", ["credentials"])
            == "credentials"
        )

    def test_no_match_returns_none(self):
        assert _matches_blocked_pattern("/home/user/projects/myapp", [".ssh", ".env"]) is None

    def test_default_patterns_cover_sensitive_dirs(self):
        for name in (".ssh", ".gnupg", ".aws", ".kube", ".docker", "credentials", ".env"):
            assert name in DEFAULT_BLOCKED_PATTERNS


# ---------------------------------------------------------------------------
# Allowed root matching
# ---------------------------------------------------------------------------


class TestFindAllowedRoot:
    def test_path_under_root(self, tmp_path: Path):
        root = AllowedRoot(path=str(tmp_path), allow_read_write=True)
        child = tmp_path / "subdir"
        child.mkdir()
        assert _find_allowed_root(str(child.resolve()), [root]) is root

    def test_exact_root_matches(self, tmp_path: Path):
        root = AllowedRoot(path=str(tmp_path))
        assert _find_allowed_root(str(tmp_path.resolve()), [root]) is root

    def test_sibling_with_common_prefix_rejected(self, tmp_path: Path):
        (tmp_path / "allowed").mkdir()
        (tmp_path / "allowed-not").mkdir()
        root = AllowedRoot(path=str(tmp_path / "allowed"))
        assert _find_allowed_root(str((tmp_path / "allowed-not").resolve()), [root]) is None

    def test_nonexistent_root_skipped(self, tmp_path: Path):
        root = AllowedRoot(path=str(tmp_path / "nonexistent"))
        assert _find_allowed_root(str(tmp_path / "nonexistent" / "child"), [root]) is None


# ---------------------------------------------------------------------------
# Container path validation
# ---------------------------------------------------------------------------


class TestContainerPathValidation:
    def test_valid_relative_path(self):
        assert _is_valid_container_path("mydata") is True

    def test_nested_relative_path(self):
        assert _is_valid_container_path("some/nested/path") is True

    def test_rejects_dotdot(self):
        assert _is_valid_container_path("../escape") is False

    def test_rejects_absolute_path(self):
        assert _is_valid_container_path("/absolute/path") is False

    def test_rejects_empty(self):
        assert _is_valid_container_path("") is False
        assert _is_valid_container_path("   ") is False


# ---------------------------------------------------------------------------
# Allowlist loading
# ---------------------------------------------------------------------------


class TestLoadAllowlist:
    def test_loads_valid_allowlist(self, settings):
        write_allowlist(
            settings.mount_allowlist_path,
            [{"path": "~/projects", "allowReadWrite": True, "description": "Dev"}],
            blocked=["custom-secret", ".ssh"],
        )
        result = load_mount_allowlist()

        assert result is not None
        assert len(result.allowed_roots) == 1
        assert result.allowed_roots[0].path == "~/projects"
        assert result.allowed_roots[0].allow_read_write is True
        assert result.non_main_read_only is True
        # Defaults first, custom appended, no duplicates
        assert result.blocked_patterns[: len(DEFAULT_BLOCKED_PATTERNS)] == DEFAULT_BLOCKED_PATTERNS
        assert result.blocked_patterns[-1] == "custom-secret"
        assert result.blocked_patterns.count(".ssh") == 1

    def test_returns_none_when_file_missing(self):
        assert load_mount_allowlist() is None

    def test_returns_none_on_invalid_json(self, settings):
        settings.mount_allowlist_path.parent.mkdir(parents=True)
        settings.mount_allowlist_path.write_text("not json")
        assert load_mount_allowlist() is None

    def test_returns_none_on_missing_fields(self, settings):
        settings.mount_allowlist_path.parent.mkdir(parents=True)
        settings.mount_allowlist_path.write_text(json.dumps({"allowedRoots": []}))
        assert load_mount_allowlist() is None

    def test_caches_result(self, settings):
        write_allowlist(settings.mount_allowlist_path, [])
        first = load_mount_allowlist()
        second = load_mount_allowlist()
        assert first is second

    def test_caches_failure_until_reset(self, settings):
        assert load_mount_allowlist() is None
        # Appearing later does not help this process
        write_allowlist(settings.mount_allowlist_path, [])
        assert load_mount_allowlist() is None


# ---------------------------------------------------------------------------
# Full mount validation
# ---------------------------------------------------------------------------


class TestValidateMount:
    def test_allows_path_under_root(self, settings, tmp_path: Path):
        target = tmp_path / "allowed" / "myfile"
        target.mkdir(parents=True)
        write_allowlist(
            settings.mount_allowlist_path,
            [{"path": str(tmp_path / "allowed"), "allowReadWrite": True}],
        )
        result = validate_mount(
            AdditionalMount(host_path=str(target), container_path="myfile"), is_main=True
        )
        assert result.allowed is True
        assert result.real_host_path == str(target.resolve())

    def test_rejects_path_outside_root(self, settings, tmp_path: Path):
        (tmp_path / "allowed").mkdir()
        outside = tmp_path / "outside"
        outside.mkdir()
        write_allowlist(
            settings.mount_allowlist_path,
            [{"path": str(tmp_path / "allowed"), "allowReadWrite": True}],
        )
        result = validate_mount(
            AdditionalMount(host_path=str(outside), container_path="outside"), is_main=True
        )
        assert result.allowed is False
        assert "not under any allowed root" in result.reason

    def test_rejects_symlink_escaping_root(self, settings, tmp_path: Path):
        allowed = tmp_path / "allowed"
        allowed.mkdir()
        outside = tmp_path / "outside"
        outside.mkdir()
        (allowed / "link").symlink_to(outside)
        write_allowlist(settings.mount_allowlist_path, [{"path": str(allowed)}])
        result = validate_mount(
            AdditionalMount(host_path=str(allowed / "link"), container_path="link"), is_main=True
        )
        assert result.allowed is False
        assert "not under any allowed root" in result.reason

    def test_rejects_blocked_pattern(self, settings, tmp_path: Path):
        ssh_dir = tmp_path / "allowed" / ".ssh"
        ssh_dir.mkdir(parents=True)
        write_allowlist(
            settings.mount_allowlist_path,
            [{"path": str(tmp_path / "allowed"), "allowReadWrite": True}],
        )
        result = validate_mount(
            AdditionalMount(host_path=str(ssh_dir), container_path="keys"), is_main=True
        )
        assert result.allowed is False
        assert ".ssh" in result.reason

    def test_rejects_nonexistent_path(self, settings, tmp_path: Path):
        write_allowlist(settings.mount_allowlist_path, [{"path": str(tmp_path)}])
        result = validate_mount(
            AdditionalMount(host_path=str(tmp_path / "ghost"), container_path="ghost"),
            is_main=True,
        )
        assert result.allowed is False
        assert "does not exist" in result.reason

    def test_rejects_no_allowlist(self):
        result = validate_mount(
            AdditionalMount(host_path="/some/path", container_path="x"), is_main=True
        )
        assert result.allowed is False
        assert "No mount allowlist" in result.reason

    def test_rejects_invalid_container_path(self, settings, tmp_path: Path):
        target = tmp_path / "ok"
        target.mkdir()
        write_allowlist(settings.mount_allowlist_path, [{"path": str(tmp_path)}])
        result = validate_mount(
            AdditionalMount(host_path=str(target), container_path="../escape"), is_main=True
        )
        assert result.allowed is False
        assert "Invalid container path" in result.reason

    def test_defaults_container_path_to_basename(self, settings, tmp_path: Path):
        target = tmp_path / "mydata"
        target.mkdir()
        write_allowlist(settings.mount_allowlist_path, [{"path": str(tmp_path)}])
        result = validate_mount(AdditionalMount(host_path=str(target)), is_main=True)
        assert result.allowed is True
        assert result.resolved_container_path == "mydata"


# ---------------------------------------------------------------------------
# Readonly enforcement
# ---------------------------------------------------------------------------


class TestReadonlyEnforcement:
    def _setup(
        self, settings, tmp_path: Path, *, allow_read_write: bool, non_main_read_only: bool
    ):
        target = tmp_path / "data"
        target.mkdir()
        write_allowlist(
            settings.mount_allowlist_path,
            [{"path": str(tmp_path), "allowReadWrite": allow_read_write}],
            non_main_read_only=non_main_read_only,
        )
        return AdditionalMount(host_path=str(target), container_path="data", readonly=False)

    def test_home_gets_readwrite_when_root_allows(self, settings, tmp_path: Path):
        mount = self._setup(settings, tmp_path, allow_read_write=True, non_main_read_only=True)
        assert validate_mount(mount, is_main=True).effective_readonly is False

    def test_non_home_forced_readonly(self, settings, tmp_path: Path):
        mount = self._setup(settings, tmp_path, allow_read_write=True, non_main_read_only=True)
        assert validate_mount(mount, is_main=False).effective_readonly is True

    def test_non_home_readwrite_when_policy_off(self, settings, tmp_path: Path):
        mount = self._setup(settings, tmp_path, allow_read_write=True, non_main_read_only=False)
        assert validate_mount(mount, is_main=False).effective_readonly is False

    def test_root_without_readwrite_forces_readonly(self, settings, tmp_path: Path):
        mount = self._setup(settings, tmp_path, allow_read_write=False, non_main_read_only=False)
        assert validate_mount(mount, is_main=True).effective_readonly is True

    def test_readonly_request_stays_readonly(self, settings, tmp_path: Path):
        mount = self._setup(settings, tmp_path, allow_read_write=True, non_main_read_only=False)
        mount.readonly = True
        assert validate_mount(mount, is_main=True).effective_readonly is True


class TestValidateAdditionalMounts:
    def test_filters_and_prefixes(self, settings, tmp_path: Path):
        good = tmp_path / "good"
        good.mkdir()
        write_allowlist(settings.mount_allowlist_path, [{"path": str(tmp_path)}])
        mounts = validate_additional_mounts(
            [
                AdditionalMount(host_path=str(good), container_path="g"),
                AdditionalMount(host_path=str(tmp_path / "missing")),
            ],
            "Test Group",
            is_main=False,
        )
        assert len(mounts) == 1
        assert mounts[0].container_path == "/workspace/extra/g"
        assert mounts[0].readonly is True


# ---------------------------------------------------------------------------
# Host-mode cwd check
# ---------------------------------------------------------------------------


class TestIsPathAllowed:
    def test_nothing_allowed_without_allowlist(self, tmp_path: Path):
        ok, real = is_path_allowed(str(tmp_path))
        assert ok is False
        assert real == str(tmp_path.resolve())

    def test_missing_path(self, settings, tmp_path: Path):
        write_allowlist(settings.mount_allowlist_path, [{"path": str(tmp_path)}])
        assert is_path_allowed(str(tmp_path / "ghost")) == (False, None)

    def test_allowed_under_root(self, settings, tmp_path: Path):
        work = tmp_path / "work"
        work.mkdir()
        write_allowlist(settings.mount_allowlist_path, [{"path": str(tmp_path)}])
        assert is_path_allowed(str(work)) == (True, str(work.resolve()))

    def test_symlink_out_of_root_rejected(self, settings, tmp_path: Path):
        root = tmp_path / "root"
        root.mkdir()
        (tmp_path / "elsewhere").mkdir()
        (root / "hop").symlink_to(tmp_path / "elsewhere")
        write_allowlist(settings.mount_allowlist_path, [{"path": str(root)}])
        ok, real = is_path_allowed(str(root / "hop"))
        assert ok is False
        assert real == str((tmp_path / "elsewhere").resolve())


def test_template_is_loadable(settings):
    settings.mount_allowlist_path.parent.mkdir(parents=True)
    settings.mount_allowlist_path.write_text(generate_allowlist_template())
    allowlist = load_mount_allowlist()
    assert allowlist is not None
    assert len(allowlist.allowed_roots) == 3
    assert "password" in allowlist.blocked_patterns
