"""Configuration schema for gitstate.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import warnings
from pathlib import Path
from typing import List, Literal

from pydantic import BaseModel, Field, field_validator


class GitConfig(BaseModel):
    """Backend executable settings."""

    binary: str = Field(
        default="git",
        description="Path to the git executable (bare name = resolve on PATH)",
    )
    lfs_bundle_dir: str = Field(
        default="",
        description="Directory holding bundled git-lfs binaries (empty = use 'git lfs')",
    )
    use_absolute_lock_paths: bool = Field(
        default=True,
        description="Resolve lock listing paths against the repository root",
    )

    @field_validator("lfs_bundle_dir")
    @classmethod
    def validate_lfs_bundle_dir(cls, v: str) -> str:
        """Warn if the bundle directory doesn't exist."""
        if v:
            path = Path(v).expanduser()
            if not path.exists():
                warnings.warn(
                    f"git-lfs bundle directory does not exist: {v}",
                    UserWarning,
                )
            elif not path.is_dir():
                warnings.warn(
                    f"git-lfs bundle path is not a directory: {v}",
                    UserWarning,
                )
        return v


class LockingConfig(BaseModel):
    """LFS locking settings."""

    use_lfs_locking: bool = Field(
        default=False,
        description="Query and track git-lfs locks",
    )
    lock_user: str = Field(
        default="",
        description="Operator identity as reported by the lock server (empty = git user.name)",
    )
    cache_ttl: float = Field(
        default=30.0,
        ge=0,
        description="Seconds before the remote lock listing is considered stale",
    )
    lockable_patterns: List[str] = Field(
        default=["*.uasset", "*.umap"],
        description="Patterns checked with 'git check-attr lockable'",
    )


class RemoteConfig(BaseModel):
    """Remote divergence settings."""

    status_branches: List[str] = Field(
        default_factory=list,
        description="Remote branches watched for divergence besides the upstream",
    )
    content_dirs: List[str] = Field(
        default=["Content/"],
        description="Repository-relative directories compared against remote branches",
    )

    @field_validator("status_branches")
    @classmethod
    def validate_status_branches(cls, v: List[str]) -> List[str]:
        cleaned = [b.strip() for b in v if b.strip()]
        for branch in cleaned:
            if ".." in branch or branch.startswith("-"):
                raise ValueError(f"Invalid status branch name: {branch!r}")
        return cleaned


class RunnerConfig(BaseModel):
    """Process runner settings."""

    max_files_per_batch: int = Field(
        default=50,
        ge=1,
        description="Files passed to a single git invocation",
    )
    timeout: float = Field(
        default=0,
        ge=0,
        description="Per-invocation timeout in seconds (0 = none)",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.gitstate/logs)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )

    @field_validator("dir")
    @classmethod
    def validate_log_dir(cls, v: str) -> str:
        """Warn if log path exists but is not a directory (created on use)."""
        if v:
            path = Path(v).expanduser()
            if path.exists() and not path.is_dir():
                warnings.warn(
                    f"Log path exists but is not a directory: {v}",
                    UserWarning,
                )
        return v


class GitStateConfig(BaseModel):
    """Root configuration model."""

    version: int = Field(
        default=1,
        ge=1,
        description="Config schema version",
    )

    git: GitConfig = Field(default_factory=GitConfig)
    locking: LockingConfig = Field(default_factory=LockingConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "GitStateConfig":
        """Create config with all defaults."""
        return cls()
