"""Canonical per-file state and the merge of partial updates into it."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from .observability import log_debug
from .states import (
    FileState,
    FileStateRecord,
    LockState,
    PartialStateUpdate,
    RemoteState,
    TreeState,
)

_HOLDS_LOCK_USER = (LockState.LOCKED, LockState.LOCKED_OTHER)


class StateCache:
    """Canonical ``FileStateRecord`` per absolute path.

    Owned by one engine; parsers hand it ``PartialStateUpdate`` objects and
    readers get snapshots back, never the live records.

    Args:
        using_lfs_locking: Stamp refresh times only when locks are tracked
        clock: Wall-clock source for refresh stamps
    """

    def __init__(
        self,
        *,
        using_lfs_locking: bool = False,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.using_lfs_locking = using_lfs_locking
        self._clock = clock
        self._lock = threading.RLock()
        self._records: Dict[str, FileStateRecord] = {}
        self._refreshed: Set[str] = set()

    def _get_or_create(self, path: str) -> FileStateRecord:
        record = self._records.get(path)
        if record is None:
            record = FileStateRecord(filename=path)
            self._records[path] = record
        return record

    def get_state(self, path: str) -> FileStateRecord:
        """Snapshot of the record for ``path`` (a fresh default if unknown)."""
        with self._lock:
            return self._get_or_create(path).snapshot()

    def get_cached_states(
        self, predicate: Optional[Callable[[FileStateRecord], bool]] = None
    ) -> List[FileStateRecord]:
        with self._lock:
            return [
                record.snapshot()
                for record in self._records.values()
                if predicate is None or predicate(record)
            ]

    def remove(self, path: str) -> bool:
        with self._lock:
            return self._records.pop(path, None) is not None

    def is_refreshed(self, path: str) -> bool:
        with self._lock:
            return path in self._refreshed

    def clear_refresh_ignore(self) -> None:
        """Start a new scan cycle."""
        with self._lock:
            self._refreshed.clear()

    def _apply(self, record: FileStateRecord, update: PartialStateUpdate) -> None:
        if update.file_state is not None:
            if (
                update.file_state == FileState.ADDED
                and record.file_state != FileState.UNKNOWN
                and not record.can_add()
            ):
                log_debug(
                    "[STATE] Ignoring transition to added",
                    path=record.filename,
                    current=record.file_state.value,
                )
            else:
                record.file_state = update.file_state

        if update.tree_state is not None:
            record.tree_state = update.tree_state

        if update.lock_state is not None:
            record.lock_state = update.lock_state
            if update.lock_state in _HOLDS_LOCK_USER:
                record.lock_user = update.lock_user or ""
            else:
                record.lock_user = ""

        if update.remote_state is not None:
            record.remote_state = update.remote_state
            if update.remote_state == RemoteState.UP_TO_DATE:
                record.head_branch = ""
            else:
                record.head_branch = update.head_branch or ""

        if update.conflict is not None:
            record.conflict = update.conflict
        if record.file_state != FileState.UNMERGED:
            record.conflict = None

        record.time_stamp = self._clock() if self.using_lfs_locking else datetime.min

    def update_cached_states(self, updates: Mapping[str, PartialStateUpdate]) -> bool:
        """Merge partial updates into the canonical records.

        Fields left as None keep their current value. Returns True if at least
        one record was touched.
        """
        with self._lock:
            for path, update in updates.items():
                record = self._get_or_create(path)
                self._apply(record, update)
                self._refreshed.add(path)
            return bool(updates)

    def collect_new_states(self, states: Mapping[str, PartialStateUpdate]) -> Dict[str, PartialStateUpdate]:
        """Copy whole updates into a fresh result mapping."""
        return {path: PartialStateUpdate().merge(update) for path, update in states.items()}

    def collect_new_states_for_files(
        self,
        files: Iterable[str],
        *,
        file_state: Optional[FileState] = None,
        tree_state: Optional[TreeState] = None,
        lock_state: Optional[LockState] = None,
        lock_user: Optional[str] = None,
        remote_state: Optional[RemoteState] = None,
        head_branch: Optional[str] = None,
    ) -> Dict[str, PartialStateUpdate]:
        """Build one update per file carrying only the fields given.

        Used after operations whose outcome is known without re-running
        status (e.g. a successful lock marks files locked).
        """
        template = PartialStateUpdate(
            file_state=file_state,
            tree_state=tree_state,
            lock_state=lock_state,
            lock_user=lock_user,
            remote_state=remote_state,
            head_branch=head_branch,
        )
        return {path: PartialStateUpdate().merge(template) for path in files}
