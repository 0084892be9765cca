"""git-lfs lock parsing and the locked-files cache.

The remote lock listing is slow, so ``get_all_locks`` keeps the last answer
for a bounded time and falls back to git-lfs' own offline listings (and then
to the in-memory cache) when the server cannot be reached.
"""

from __future__ import annotations

import os
import stat
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .observability import log_debug, log_warning
from .states import LockState

if TYPE_CHECKING:
    from .runner import ProcessRunner

CACHE_TTL_SECONDS = 30.0

LockChangeHook = Callable[[str, str, bool], None]


@dataclass
class LockRecord:
    """One parsed line of ``git lfs locks`` output."""

    path: str
    user: str


def parse_lock_line(
    line: str,
    *,
    repo_root: Path,
    operator: str,
    absolute_paths: bool = True,
) -> Optional[LockRecord]:
    """Parse ``path\\t[user]\\t[ID:n]``.

    Lines from ``--local`` listings carry no user; those locks belong to the
    operator. Returns None for lines with fewer than two fields.
    """
    fields = [part for part in line.split("\t") if part]
    if len(fields) < 2:
        log_debug("[LOCKS] Skipping malformed lock line", line=line)
        return None

    path = fields[0].rstrip()
    user = fields[1].rstrip()
    if absolute_paths:
        path = os.path.normpath(os.path.join(str(repo_root), path))

    if len(fields) == 2 or not user or user.startswith("ID:"):
        user = operator
    return LockRecord(path=path, user=user)


def parse_lock_lines(
    lines: List[str],
    *,
    repo_root: Path,
    operator: str,
    absolute_paths: bool = True,
) -> Dict[str, str]:
    locks: Dict[str, str] = {}
    for line in lines:
        record = parse_lock_line(line, repo_root=repo_root, operator=operator, absolute_paths=absolute_paths)
        if record is not None:
            locks[record.path] = record.user
    return locks


def relative_lock_path(path: str, repo_root: Path | str) -> str:
    """``path`` relative to ``repo_root`` with forward slashes, as git-lfs prints it."""
    return Path(os.path.relpath(path, str(repo_root))).as_posix()


def lock_state_for(path: str, locks: Dict[str, str], operator: str) -> tuple[LockState, str]:
    """Lock state and owner of ``path`` given a lock mapping."""
    user = locks.get(path)
    if user is None:
        return LockState.NOT_LOCKED, ""
    if user == operator:
        return LockState.LOCKED, user
    return LockState.LOCKED_OTHER, user


def set_read_only(path: str, read_only: bool) -> bool:
    """Toggle the write bits of ``path``. Returns False if it does not exist."""
    try:
        mode = os.stat(path).st_mode
    except FileNotFoundError:
        return False
    if read_only:
        os.chmod(path, mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))
    else:
        os.chmod(path, mode | stat.S_IWUSR)
    return True


class ReadOnlyLockHook:
    """Keep operator-owned lockable files writable only while locked.

    Locks held by anyone else never touch local permissions.
    """

    def __init__(self, operator: str) -> None:
        self.operator = operator

    def __call__(self, path: str, user: str, locked: bool) -> None:
        if user != self.operator:
            return
        if not set_read_only(path, not locked):
            log_debug("[LOCKS] Lock change for missing file", path=path, locked=locked)


class LockedFilesCache:
    """In-memory path -> owner mapping of LFS locks.

    Every mutation notifies ``on_lock_changed`` for each path whose lock
    appeared or disappeared, under the cache lock so notify-and-mutate
    sequences never interleave.

    Args:
        operator: Lock identity of the current user
        on_lock_changed: Hook called as (path, user, locked)
        ttl: Seconds a remote listing stays fresh
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        *,
        operator: str,
        on_lock_changed: Optional[LockChangeHook] = None,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.operator = operator
        self.ttl = ttl
        self._clock = clock
        self._on_lock_changed = on_lock_changed or ReadOnlyLockHook(operator)
        self._lock = threading.RLock()
        self._locked_files: Dict[str, str] = {}
        self.last_updated: Optional[float] = None

    def now(self) -> float:
        return self._clock()

    def get_locked_files(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._locked_files)

    def is_expired(self, now: Optional[float] = None) -> bool:
        with self._lock:
            if self.last_updated is None:
                return True
            now = self.now() if now is None else now
            return (now - self.last_updated) > self.ttl

    def invalidate(self) -> None:
        with self._lock:
            self.last_updated = None

    def mark_updated(self, when: Optional[float] = None) -> None:
        with self._lock:
            self.last_updated = self.now() if when is None else when

    def set_locked_files(self, new_locks: Dict[str, str]) -> None:
        """Replace the mapping, notifying for every lock lost or gained."""
        with self._lock:
            old_locks = self._locked_files
            for path, user in old_locks.items():
                if new_locks.get(path) != user:
                    self._on_lock_changed(path, user, False)
            for path, user in new_locks.items():
                if old_locks.get(path) != user:
                    self._on_lock_changed(path, user, True)
            self._locked_files = dict(new_locks)

    def add_locked_file(self, path: str, user: str) -> None:
        with self._lock:
            self._locked_files[path] = user
            self._on_lock_changed(path, user, True)

    def remove_locked_file(self, path: str) -> None:
        with self._lock:
            user = self._locked_files.pop(path, "")
            self._on_lock_changed(path, user, False)


def get_all_locks(
    runner: "ProcessRunner",
    cache: LockedFilesCache,
    *,
    errors: Optional[List[str]] = None,
    invalidate: bool = False,
    absolute_paths: bool = True,
) -> Dict[str, str]:
    """All known locks, refreshing from the server when the cache is stale.

    Order of preference:
    1. cached mapping while still fresh
    2. ``git lfs locks`` (authoritative, replaces the cache)
    3. ``git lfs locks --cached`` for other users' locks plus
       ``git lfs locks --local`` for the operator's own
    4. the in-memory mapping, whatever its age

    The cache is always keyed by absolute path. With ``absolute_paths=False``
    the returned mapping is re-keyed relative to the repository root.

    Never raises for backend failures; error lines are appended to ``errors``.
    """
    errors = errors if errors is not None else []
    operator = cache.operator
    parse_kwargs = dict(repo_root=runner.repo_root, operator=operator)

    def present(locks: Dict[str, str]) -> Dict[str, str]:
        if absolute_paths:
            return locks
        return {relative_lock_path(path, runner.repo_root): user for path, user in locks.items()}

    now = cache.now()
    if not (invalidate or cache.is_expired(now)):
        return present(cache.get_locked_files())

    result = runner.run_lfs_command("locks")
    errors.extend(result.errors)
    if result.success:
        locks = parse_lock_lines(result.results, **parse_kwargs)
        cache.mark_updated(now)
        cache.set_locked_files(locks)
        log_debug("[LOCKS] Refreshed lock cache from server", count=len(locks))
        return present(locks)

    log_warning("[LOCKS] Remote lock query failed, using git-lfs offline listings")
    cached = runner.run_lfs_command("locks", ["--cached"])
    errors.extend(cached.errors)
    local = runner.run_lfs_command("locks", ["--local"])
    errors.extend(local.errors)

    if cached.success and local.success:
        locks = {
            path: user
            for path, user in parse_lock_lines(cached.results, **parse_kwargs).items()
            if user != operator
        }
        locks.update(
            (path, user)
            for path, user in parse_lock_lines(local.results, **parse_kwargs).items()
            if user == operator
        )
        return present(locks)

    log_warning("[LOCKS] Offline lock listings failed, using in-memory lock cache")
    return present(cache.get_locked_files())
