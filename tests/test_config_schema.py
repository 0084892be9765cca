"""Tests for config_schema module."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from gitstate.config_schema import (
    GitConfig,
    GitStateConfig,
    LockingConfig,
    LoggingConfig,
    RemoteConfig,
    RunnerConfig,
)


class TestGitConfig:
    """Tests for GitConfig model."""

    def test_defaults(self):
        config = GitConfig()
        assert config.binary == "git"
        assert config.lfs_bundle_dir == ""
        assert config.use_absolute_lock_paths is True

    def test_missing_bundle_dir_warns(self, tmp_path):
        with pytest.warns(UserWarning, match="does not exist"):
            GitConfig(lfs_bundle_dir=str(tmp_path / "missing"))

    def test_bundle_path_not_directory_warns(self, tmp_path):
        path = tmp_path / "git-lfs"
        path.write_text("binary")
        with pytest.warns(UserWarning, match="not a directory"):
            GitConfig(lfs_bundle_dir=str(path))


class TestLockingConfig:
    """Tests for LockingConfig model."""

    def test_defaults(self):
        config = LockingConfig()
        assert config.use_lfs_locking is False
        assert config.cache_ttl == 30.0
        assert config.lockable_patterns == ["*.uasset", "*.umap"]

    def test_negative_ttl_rejected(self):
        with pytest.raises(ValidationError):
            LockingConfig(cache_ttl=-1)


class TestRemoteConfig:
    """Tests for RemoteConfig model."""

    def test_defaults(self):
        config = RemoteConfig()
        assert config.status_branches == []
        assert config.content_dirs == ["Content/"]

    def test_blank_branches_dropped(self):
        config = RemoteConfig(status_branches=[" origin/main ", "", "origin/dev"])
        assert config.status_branches == ["origin/main", "origin/dev"]

    @pytest.mark.parametrize("branch", ["origin/main..evil", "--upload-pack=x"])
    def test_unsafe_branch_rejected(self, branch):
        with pytest.raises(ValidationError):
            RemoteConfig(status_branches=[branch])


class TestRunnerConfig:
    """Tests for RunnerConfig model."""

    def test_defaults(self):
        config = RunnerConfig()
        assert config.max_files_per_batch == 50
        assert config.timeout == 0

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            RunnerConfig(max_files_per_batch=0)


class TestLoggingConfig:
    """Tests for LoggingConfig model."""

    def test_invalid_level(self):
        with pytest.raises(ValidationError):
            LoggingConfig(level="TRACE")

    def test_log_path_is_file_warns(self, tmp_path):
        path = tmp_path / "logfile"
        path.write_text("")
        with pytest.warns(UserWarning):
            LoggingConfig(dir=str(path))


class TestGitStateConfig:
    """Tests for the root model."""

    def test_default(self):
        config = GitStateConfig.default()
        assert config.version == 1
        assert config.runner.max_files_per_batch == 50

    def test_nested_from_dict(self):
        config = GitStateConfig.model_validate(
            {
                "locking": {"use_lfs_locking": True, "lock_user": "alice"},
                "remote": {"status_branches": ["origin/main"]},
            }
        )
        assert config.locking.use_lfs_locking is True
        assert config.locking.lock_user == "alice"
        assert config.remote.status_branches == ["origin/main"]
        assert config.git.binary == "git"

    def test_version_must_be_positive(self):
        with pytest.raises(ValidationError):
            GitStateConfig(version=0)
