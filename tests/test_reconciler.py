"""Tests for merging partial updates into canonical records."""

from __future__ import annotations

from datetime import datetime

from gitstate.reconciler import StateCache
from gitstate.states import (
    ConflictInfo,
    FileState,
    LockState,
    PartialStateUpdate,
    RemoteState,
    TreeState,
)

PATH = "/repo/Content/A.uasset"


def _stamp():
    return datetime(2024, 1, 2, 3, 4, 5)


class TestUpdateCachedStates:
    def test_unknown_path_gets_default_record(self):
        cache = StateCache()
        record = cache.get_state(PATH)
        assert record.filename == PATH
        assert record.file_state == FileState.UNKNOWN

    def test_unset_fields_keep_values(self):
        cache = StateCache()
        cache.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.MODIFIED, tree_state=TreeState.WORKING)})
        cache.update_cached_states({PATH: PartialStateUpdate(lock_state=LockState.LOCKED, lock_user="me")})

        record = cache.get_state(PATH)
        assert record.file_state == FileState.MODIFIED
        assert record.tree_state == TreeState.WORKING
        assert record.lock_state == LockState.LOCKED
        assert record.lock_user == "me"

    def test_empty_update_set_returns_false(self):
        assert StateCache().update_cached_states({}) is False

    def test_added_rejected_for_tracked_file(self):
        cache = StateCache()
        cache.update_cached_states(
            {PATH: PartialStateUpdate(file_state=FileState.MODIFIED, tree_state=TreeState.WORKING)}
        )
        cache.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.ADDED)})
        assert cache.get_state(PATH).file_state == FileState.MODIFIED

    def test_added_accepted_from_unknown_and_untracked(self):
        cache = StateCache()
        cache.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.ADDED)})
        assert cache.get_state(PATH).file_state == FileState.ADDED

        other = "/repo/Content/B.uasset"
        cache.update_cached_states(
            {other: PartialStateUpdate(file_state=FileState.MISSING, tree_state=TreeState.UNTRACKED)}
        )
        cache.update_cached_states({other: PartialStateUpdate(file_state=FileState.ADDED)})
        assert cache.get_state(other).file_state == FileState.ADDED

    def test_lock_user_only_kept_for_locked_states(self):
        cache = StateCache()
        cache.update_cached_states({PATH: PartialStateUpdate(lock_state=LockState.LOCKED_OTHER, lock_user="bob")})
        assert cache.get_state(PATH).lock_user == "bob"

        cache.update_cached_states({PATH: PartialStateUpdate(lock_state=LockState.NOT_LOCKED, lock_user="bob")})
        record = cache.get_state(PATH)
        assert record.lock_state == LockState.NOT_LOCKED
        assert record.lock_user == ""

    def test_up_to_date_clears_head_branch(self):
        cache = StateCache()
        cache.update_cached_states(
            {PATH: PartialStateUpdate(remote_state=RemoteState.NOT_LATEST, head_branch="origin/dev")}
        )
        assert cache.get_state(PATH).head_branch == "origin/dev"

        cache.update_cached_states(
            {PATH: PartialStateUpdate(remote_state=RemoteState.UP_TO_DATE, head_branch="origin/dev")}
        )
        record = cache.get_state(PATH)
        assert record.remote_state == RemoteState.UP_TO_DATE
        assert record.head_branch == ""

    def test_conflict_dropped_once_resolved(self):
        cache = StateCache()
        info = ConflictInfo(base_revision="a" * 40)
        cache.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.UNMERGED, conflict=info)})
        assert cache.get_state(PATH).conflict == info

        cache.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.MODIFIED)})
        assert cache.get_state(PATH).conflict is None

    def test_timestamp_only_with_lfs_locking(self):
        plain = StateCache(clock=_stamp)
        plain.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.MODIFIED)})
        assert plain.get_state(PATH).time_stamp == datetime.min

        lfs = StateCache(using_lfs_locking=True, clock=_stamp)
        lfs.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.MODIFIED)})
        assert lfs.get_state(PATH).time_stamp == _stamp()

    def test_refresh_cycle(self):
        cache = StateCache()
        cache.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.MODIFIED)})
        assert cache.is_refreshed(PATH)
        cache.clear_refresh_ignore()
        assert not cache.is_refreshed(PATH)


class TestReaders:
    def test_snapshots_do_not_alias(self):
        cache = StateCache()
        cache.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.MODIFIED)})
        snapshot = cache.get_state(PATH)
        snapshot.file_state = FileState.DELETED
        assert cache.get_state(PATH).file_state == FileState.MODIFIED

    def test_get_cached_states_predicate(self):
        cache = StateCache()
        cache.update_cached_states(
            {
                PATH: PartialStateUpdate(lock_state=LockState.LOCKED, lock_user="me"),
                "/repo/b.uasset": PartialStateUpdate(lock_state=LockState.NOT_LOCKED),
            }
        )
        locked = cache.get_cached_states(lambda r: r.is_checked_out())
        assert [r.filename for r in locked] == [PATH]
        assert len(cache.get_cached_states()) == 2

    def test_remove(self):
        cache = StateCache()
        cache.update_cached_states({PATH: PartialStateUpdate(file_state=FileState.MODIFIED)})
        assert cache.remove(PATH)
        assert not cache.remove(PATH)


class TestCollectNewStates:
    def test_for_files(self):
        cache = StateCache()
        updates = cache.collect_new_states_for_files(
            ["/repo/a", "/repo/b"], lock_state=LockState.LOCKED, lock_user="me"
        )
        assert set(updates) == {"/repo/a", "/repo/b"}
        assert updates["/repo/a"].lock_state == LockState.LOCKED
        assert updates["/repo/a"].file_state is None
        assert updates["/repo/a"] is not updates["/repo/b"]

    def test_collect_copies(self):
        original = {PATH: PartialStateUpdate(file_state=FileState.ADDED)}
        copied = StateCache().collect_new_states(original)
        copied[PATH].file_state = FileState.DELETED
        assert original[PATH].file_state == FileState.ADDED
