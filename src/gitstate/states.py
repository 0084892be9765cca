"""Per-file source control state model.

``FileStateRecord`` is the canonical record kept for each tracked absolute
path. Parsers never write records directly: they produce
``PartialStateUpdate`` objects whose ``None`` fields mean "no opinion", and the
reconciler merges those into the canonical record.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class FileState(str, Enum):
    """Content state of a file relative to HEAD."""

    UNKNOWN = "unknown"  # Not in status output, or unclassifiable code
    UNMODIFIED = "unmodified"
    ADDED = "added"
    DELETED = "deleted"  # Deletion staged in the index
    MODIFIED = "modified"
    RENAMED = "renamed"
    COPIED = "copied"
    MISSING = "missing"  # Deleted from the worktree, not staged
    UNMERGED = "unmerged"  # Conflict in progress


class TreeState(str, Enum):
    """Where the change lives (index, worktree, or nowhere)."""

    WORKING = "working"
    STAGED = "staged"
    UNTRACKED = "untracked"
    IGNORED = "ignored"
    UNMODIFIED = "unmodified"
    NOT_IN_REPO = "not_in_repo"


class LockState(str, Enum):
    """LFS lock ownership as seen by the operator."""

    UNLOCKABLE = "unlockable"
    NOT_LOCKED = "not_locked"
    LOCKED = "locked"  # Locked by the operator
    LOCKED_OTHER = "locked_other"


class RemoteState(str, Enum):
    """Divergence of a file against watched remote branches."""

    UP_TO_DATE = "up_to_date"
    NOT_AT_HEAD = "not_at_head"  # Newer on the current branch's upstream
    NOT_LATEST = "not_latest"  # Newer on another status branch


@dataclass
class ConflictInfo:
    """Base and remote sides of an unmerged file."""

    base_revision: str = ""
    base_filename: str = ""
    remote_revision: str = ""
    remote_filename: str = ""

    def to_dict(self) -> dict:
        return {
            "base_revision": self.base_revision,
            "base_filename": self.base_filename,
            "remote_revision": self.remote_revision,
            "remote_filename": self.remote_filename,
        }


@dataclass
class PartialStateUpdate:
    """Field-sparse update produced by one parsing stage.

    ``None`` means the producing stage has no opinion on that field; it never
    overwrites a value learned from another stage.
    """

    file_state: Optional[FileState] = None
    tree_state: Optional[TreeState] = None
    lock_state: Optional[LockState] = None
    lock_user: Optional[str] = None
    remote_state: Optional[RemoteState] = None
    head_branch: Optional[str] = None
    conflict: Optional[ConflictInfo] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def merge(self, other: "PartialStateUpdate") -> "PartialStateUpdate":
        """Return a copy with every field ``other`` has an opinion on applied."""
        changes = {
            f.name: getattr(other, f.name)
            for f in fields(other)
            if getattr(other, f.name) is not None
        }
        return replace(self, **changes)


@dataclass
class FileStateRecord:
    """Canonical state for one tracked file."""

    filename: str
    file_state: FileState = FileState.UNKNOWN
    tree_state: TreeState = TreeState.NOT_IN_REPO
    lock_state: LockState = LockState.UNLOCKABLE
    lock_user: str = ""
    remote_state: RemoteState = RemoteState.UP_TO_DATE
    head_branch: str = ""
    time_stamp: datetime = datetime.min
    conflict: Optional[ConflictInfo] = None

    def can_add(self) -> bool:
        return self.tree_state in (TreeState.UNTRACKED, TreeState.NOT_IN_REPO)

    def is_conflicted(self) -> bool:
        return self.file_state == FileState.UNMERGED

    def is_current(self) -> bool:
        return self.remote_state == RemoteState.UP_TO_DATE

    def is_checked_out(self) -> bool:
        return self.lock_state == LockState.LOCKED

    def is_checked_out_other(self) -> bool:
        return self.lock_state == LockState.LOCKED_OTHER

    def can_checkout(self) -> bool:
        return self.lock_state == LockState.NOT_LOCKED

    def is_source_controlled(self) -> bool:
        return self.tree_state not in (
            TreeState.UNTRACKED,
            TreeState.IGNORED,
            TreeState.NOT_IN_REPO,
        )

    def is_modified(self) -> bool:
        return self.file_state in (
            FileState.ADDED,
            FileState.DELETED,
            FileState.MODIFIED,
            FileState.RENAMED,
            FileState.COPIED,
            FileState.MISSING,
            FileState.UNMERGED,
        )

    def snapshot(self) -> "FileStateRecord":
        """Independent copy safe to hand to readers."""
        conflict = replace(self.conflict) if self.conflict is not None else None
        return replace(self, conflict=conflict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "file_state": self.file_state.value,
            "tree_state": self.tree_state.value,
            "lock_state": self.lock_state.value,
            "lock_user": self.lock_user,
            "remote_state": self.remote_state.value,
            "head_branch": self.head_branch,
            "time_stamp": None if self.time_stamp == datetime.min else self.time_stamp.isoformat(),
            "conflict": self.conflict.to_dict() if self.conflict else None,
        }
