"""Reconciliation engine.

``ReconciliationEngine`` owns the per-repository state containers (canonical
file states, lock cache, changelists) and runs the operations the editor
integration calls into: a status pass, lock queries, fetch, pull, commit,
lock/unlock, and history lookups.

One reconciliation pass runs at a time per engine. Within a pass, status is
parsed first, locks are looked up only for files present in the result, and
the remote divergence check writes into the same updates before they are
merged.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from .config_schema import GitStateConfig
from .dispatch import MainContextDispatcher, NullPackageReloader, PackageReloader, unlink_and_reload
from .errors import RepositoryError
from .history import Revision, get_origin_revision_on_branch, run_get_history
from .locks import LockChangeHook, LockedFilesCache, get_all_locks
from .observability import log_action, log_debug, log_info, log_warning, timeit
from .reconciler import StateCache
from .remote import check_remote
from .repository import (
    ScopedTempFile,
    change_repository_root_if_submodule,
    check_git_availability,
    check_lfs_lockable,
    get_current_upstream,
    get_user_config,
    is_file_lfs_lockable,
    run_dump_to_file,
)
from .runner import CommandResult, ProcessRunner, remove_redundant_errors
from .states import FileState, FileStateRecord, LockState, TreeState
from .status_parser import (
    STAGED_CHANGELIST,
    WORKING_CHANGELIST,
    changelist_for_line,
    filename_from_status,
    parse_status_results,
    run_get_conflict_status,
    status_lines_by_path,
)

# Benign unlock failure: the lock was already released elsewhere
UNLOCK_MISSING_LOCK_ERROR = "Unable to find lock"


def _extensions_from_patterns(patterns: Iterable[str]) -> List[str]:
    return [p[1:] if p.startswith("*") else p for p in patterns]


@dataclass
class EngineSettings:
    """Resolved runtime settings for one repository."""

    repo_root: Path
    binary: str = "git"
    lfs_bundle_dir: Optional[Path] = None
    using_lfs_locking: bool = False
    lock_user: str = ""
    lock_cache_ttl: float = 30.0
    lockable_patterns: List[str] = field(default_factory=lambda: ["*.uasset", "*.umap"])
    status_branches: List[str] = field(default_factory=list)
    content_dirs: List[str] = field(default_factory=lambda: ["Content/"])
    max_files_per_batch: int = 50
    timeout: Optional[float] = None
    use_absolute_lock_paths: bool = True

    @classmethod
    def from_config(
        cls,
        config: GitStateConfig,
        repo_root: Path,
        *,
        lock_user: Optional[str] = None,
    ) -> "EngineSettings":
        """Build settings from loaded config.

        The lock identity falls back to git's ``user.name`` for the repository.
        """
        user = lock_user or config.locking.lock_user
        if not user:
            try:
                user, _ = get_user_config(repo_root)
            except RepositoryError as e:
                log_warning(f"[ENGINE] Cannot read git identity: {e}")
                user = ""

        return cls(
            repo_root=Path(os.path.abspath(repo_root)),
            binary=config.git.binary,
            lfs_bundle_dir=Path(config.git.lfs_bundle_dir).expanduser() if config.git.lfs_bundle_dir else None,
            using_lfs_locking=config.locking.use_lfs_locking,
            lock_user=user,
            lock_cache_ttl=config.locking.cache_ttl,
            lockable_patterns=list(config.locking.lockable_patterns),
            status_branches=list(config.remote.status_branches),
            content_dirs=list(config.remote.content_dirs),
            max_files_per_batch=config.runner.max_files_per_batch,
            timeout=config.runner.timeout or None,
            use_absolute_lock_paths=config.git.use_absolute_lock_paths,
        )


@dataclass
class UpdateStatusResult:
    success: bool
    states: Dict[str, FileStateRecord] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    pending_restart: bool = False


@dataclass
class PullResult:
    success: bool
    files: List[str] = field(default_factory=list)  # absolute paths touched by the pull
    results: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class ReconciliationEngine:
    """Source control state for one repository.

    Args:
        settings: Resolved settings
        runner: Process runner (defaults to one built from settings)
        dispatcher: Main-context dispatcher for package unlink/reload
        reloader: Package unlink/reload collaborator
        lock_hook: Called on lock changes; defaults to read-only toggling
        lock_clock: Monotonic clock for the lock cache TTL
        state_clock: Wall clock for refresh stamps
    """

    def __init__(
        self,
        settings: EngineSettings,
        *,
        runner: Optional[ProcessRunner] = None,
        dispatcher: Optional[MainContextDispatcher] = None,
        reloader: Optional[PackageReloader] = None,
        lock_hook: Optional[LockChangeHook] = None,
        lock_clock: Callable[[], float] = time.monotonic,
        state_clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.repo_root = Path(os.path.abspath(settings.repo_root))
        self.runner = runner or self._make_runner(self.repo_root)
        self.state_cache = StateCache(using_lfs_locking=settings.using_lfs_locking, clock=state_clock)
        self.lock_cache = LockedFilesCache(
            operator=settings.lock_user,
            on_lock_changed=lock_hook,
            ttl=settings.lock_cache_ttl,
            clock=lock_clock,
        )
        self.reloader = reloader or NullPackageReloader()
        self._dispatcher = dispatcher
        self._owns_dispatcher = dispatcher is None
        self.lockable_extensions = _extensions_from_patterns(settings.lockable_patterns)
        self.pending_restart = False
        self.changelists: Dict[str, Set[str]] = {STAGED_CHANGELIST: set(), WORKING_CHANGELIST: set()}
        self._pass_lock = threading.Lock()

    def _make_runner(self, repo_root: Path) -> ProcessRunner:
        return ProcessRunner(
            repo_root,
            binary=self.settings.binary,
            lfs_bundle_dir=self.settings.lfs_bundle_dir,
            max_files_per_batch=self.settings.max_files_per_batch,
            timeout=self.settings.timeout,
        )

    @property
    def dispatcher(self) -> MainContextDispatcher:
        if self._dispatcher is None:
            self._dispatcher = MainContextDispatcher()
        return self._dispatcher

    def shutdown(self) -> None:
        if self._owns_dispatcher and self._dispatcher is not None:
            self._dispatcher.shutdown()
            self._dispatcher = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def operator(self) -> str:
        return self.settings.lock_user

    def is_lockable(self, path: str) -> bool:
        return is_file_lfs_lockable(path, self.lockable_extensions)

    def absolute(self, path: str) -> str:
        return os.path.normpath(os.path.join(str(self.repo_root), path))

    def relative(self, path: str) -> str:
        return Path(os.path.relpath(self.absolute(path), str(self.repo_root))).as_posix()

    def _in_repository(self, path: str) -> bool:
        root = str(self.repo_root)
        return path == root or path.startswith(root.rstrip(os.sep) + os.sep)

    def git_version(self):
        return check_git_availability(self.runner)

    def refresh_lockable_types(self, errors: Optional[List[str]] = None) -> List[str]:
        """Ask git which configured patterns carry the ``lockable`` attribute."""
        extensions = check_lfs_lockable(self.runner, self.settings.lockable_patterns, errors=errors)
        if extensions is not None:
            self.lockable_extensions = extensions
        return list(self.lockable_extensions)

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def get_state(self, path: str) -> FileStateRecord:
        return self.state_cache.get_state(self.absolute(path))

    def get_cached_states(self, predicate=None) -> List[FileStateRecord]:
        return self.state_cache.get_cached_states(predicate)

    def get_locked_files(self, files: Iterable[str]) -> List[str]:
        """Files among ``files`` the operator currently holds locks on."""
        return [
            record.filename
            for record in (self.get_state(f) for f in files)
            if record.lock_state == LockState.LOCKED
        ]

    def changelist_of(self, path: str) -> Optional[str]:
        path = self.absolute(path)
        for name, members in self.changelists.items():
            if path in members:
                return name
        return None

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def get_all_locks(
        self,
        *,
        invalidate: bool = False,
        errors: Optional[List[str]] = None,
        absolute_paths: Optional[bool] = None,
    ) -> Dict[str, str]:
        """Lock owners by path; keys follow ``use_absolute_lock_paths`` unless overridden."""
        if absolute_paths is None:
            absolute_paths = self.settings.use_absolute_lock_paths
        return get_all_locks(
            self.runner,
            self.lock_cache,
            errors=errors,
            invalidate=invalidate,
            absolute_paths=absolute_paths,
        )

    def lock_files(self, files: Sequence[str]) -> CommandResult:
        """Take LFS locks on lockable ``files``."""
        total = CommandResult(success=True)
        locked: List[str] = []
        for file in files:
            path = self.absolute(file)
            if not self.is_lockable(path):
                log_debug("[ENGINE] Skipping lock of non-lockable file", path=path)
                continue
            result = self.runner.run_lfs_command("lock", [], [self.relative(path)])
            total.extend(result)
            if result.success:
                self.lock_cache.add_locked_file(path, self.operator)
                locked.append(path)

        self.state_cache.update_cached_states(
            self.state_cache.collect_new_states_for_files(
                locked, lock_state=LockState.LOCKED, lock_user=self.operator
            )
        )
        log_action("engine.lock", outcome="ok" if total.success else "error", files=len(locked))
        return total

    def unlock_files(self, files: Sequence[str], *, force: bool = False) -> CommandResult:
        """Release LFS locks; a lock that no longer exists counts as released."""
        total = CommandResult(success=True)
        unlocked: List[str] = []
        params = ["--force"] if force else []
        for file in files:
            path = self.absolute(file)
            result = self.runner.run_lfs_command("unlock", params, [self.relative(path)])
            remove_redundant_errors(result, UNLOCK_MISSING_LOCK_ERROR)
            total.extend(result)
            if result.success:
                self.lock_cache.remove_locked_file(path)
                unlocked.append(path)

        self.state_cache.update_cached_states(
            self.state_cache.collect_new_states_for_files(unlocked, lock_state=LockState.NOT_LOCKED)
        )
        log_action("engine.unlock", outcome="ok" if total.success else "error", files=len(unlocked))
        return total

    # ------------------------------------------------------------------
    # Status pass
    # ------------------------------------------------------------------

    def update_changelist_state(self) -> bool:
        """Rebuild the staged/working changelists from ``git status``."""
        result = self.runner.run_command(
            "--no-optional-locks status", ["--porcelain"], list(self.settings.content_dirs)
        )
        staged: Set[str] = set()
        working: Set[str] = set()
        for line in result.results:
            changelist = changelist_for_line(line)
            if changelist is None:
                continue
            path = self.absolute(filename_from_status(line))
            (staged if changelist == STAGED_CHANGELIST else working).add(path)
        self.changelists = {STAGED_CHANGELIST: staged, WORKING_CHANGELIST: working}
        return result.success

    def update_file_staging_on_saved(self, path: str) -> bool:
        """Re-stage a saved file that was already in the staged changelist."""
        path = self.absolute(path)
        if path not in self.changelists[STAGED_CHANGELIST]:
            return False
        return self.runner.run_command("add", [], [path]).success

    def run_update_status(self, files: Iterable[str]) -> UpdateStatusResult:
        """One reconciliation pass over ``files`` (files or directories)."""
        with self._pass_lock:
            with timeit("engine.update_status") as info:
                return self._run_update_status(files, info)

    def _run_update_status(self, files: Iterable[str], info: dict) -> UpdateStatusResult:
        self.state_cache.clear_refresh_ignore()
        requested = [os.path.normpath(os.path.abspath(f)) for f in files]
        repo_files = [f for f in requested if self._in_repository(f)]
        skipped = len(requested) - len(repo_files)
        if skipped:
            log_debug("[ENGINE] Skipping files outside the repository", count=skipped)
        if not repo_files:
            return UpdateStatusResult(success=False, pending_restart=self.pending_restart)

        status = self.runner.run_command("--no-optional-locks status", ["--porcelain", "-uall"], repo_files)
        errors = list(status.errors)

        updates = {}
        if status.success:
            by_path = status_lines_by_path(status.results, self.repo_root)
            updates = parse_status_results(
                self.runner,
                repo_files,
                by_path,
                using_lfs_locking=self.settings.using_lfs_locking,
                operator=self.operator,
                is_lockable=self.is_lockable,
                lock_provider=lambda: self.get_all_locks(errors=errors, absolute_paths=True),
                conflict_lookup=lambda f: run_get_conflict_status(self.runner, f),
            )

        self.update_changelist_state()

        remote = check_remote(
            self.runner,
            updates,
            status_branches=self.settings.status_branches,
            current_upstream=get_current_upstream(self.runner),
            content_dirs=self.settings.content_dirs,
            is_lockable=self.is_lockable,
        )
        errors.extend(remote.errors)
        if remote.pending_restart:
            self.pending_restart = True

        self.state_cache.update_cached_states(updates)
        info["files"] = len(repo_files)
        info["updated"] = len(updates)
        return UpdateStatusResult(
            success=status.success,
            states={path: self.state_cache.get_state(path) for path in updates},
            errors=errors,
            pending_restart=self.pending_restart,
        )

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    def fetch_remote(self) -> CommandResult:
        """Refresh locks (when tracked) and fetch without tags, pruning."""
        errors: List[str] = []
        if self.settings.using_lfs_locking:
            self.get_all_locks(invalidate=True, errors=errors, absolute_paths=True)
        result = self.runner.run_command("fetch", ["--no-tags", "--prune"])
        result.errors = errors + result.errors
        return result

    def pull_origin(self, already_reloaded: Iterable[str] = ()) -> PullResult:
        """Rebase onto the upstream, releasing and reloading affected packages.

        Refused while a restart is pending, since binaries newer than the
        running editor could corrupt assets on load.
        """
        if self.pending_restart:
            message = "Refused to pull because the editor binaries are out of date; restart and update first."
            log_warning(f"[ENGINE] {message}")
            return PullResult(success=False, errors=[message])

        upstream = get_current_upstream(self.runner)
        if not upstream:
            return PullResult(success=False, errors=["No upstream branch to pull from."])

        diff = self.runner.run_command("diff", ["--name-only", upstream])
        if not diff.success:
            return PullResult(success=False, errors=diff.errors)
        if not diff.results:
            return PullResult(success=True)

        skip = {os.path.normpath(os.path.abspath(f)) for f in already_reloaded}
        changed = [path for path in (self.absolute(name) for name in diff.results) if path not in skip]
        to_reload = [path for path in changed if self.is_lockable(path)]

        with timeit("engine.pull", files=len(changed), reload=len(to_reload)):
            pull = unlink_and_reload(
                self.dispatcher,
                self.reloader,
                to_reload,
                lambda: self.runner.run_command("pull", ["--rebase", "--autostash"]),
            )
        if pull.success:
            log_info("[ENGINE] Pulled from upstream", upstream=upstream, files=len(changed))
        return PullResult(success=pull.success, files=changed, results=pull.results, errors=pull.errors)

    def commit(self, message: str, files: Sequence[str]) -> CommandResult:
        """Stage and commit ``files`` with ``message`` as one commit."""
        absolute_files = [self.absolute(f) for f in files]
        root, absolute_files = change_repository_root_if_submodule(absolute_files, self.repo_root)
        runner = self.runner if root == self.repo_root else self._make_runner(root)

        with ScopedTempFile(message) as message_file:
            result = runner.run_commit([f"--file={message_file.filename}"], absolute_files)

        if result.success:
            self.state_cache.update_cached_states(
                self.state_cache.collect_new_states_for_files(
                    absolute_files,
                    file_state=FileState.UNMODIFIED,
                    tree_state=TreeState.UNMODIFIED,
                )
            )
        log_action("engine.commit", outcome="ok" if result.success else "error", files=len(absolute_files))
        return result

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, file: str, errors: Optional[List[str]] = None) -> tuple[bool, List[Revision]]:
        path = self.absolute(file)
        merge_conflict = self.state_cache.get_state(path).is_conflicted()
        return run_get_history(self.runner, path, merge_conflict=merge_conflict, errors=errors)

    def get_origin_revision_on_branch(
        self, file: str, branch: str, errors: Optional[List[str]] = None
    ) -> Optional[Revision]:
        return get_origin_revision_on_branch(self.runner, file, branch, errors=errors)

    def dump_to_file(self, revision: str, file: str, dump_file: Path) -> bool:
        """Write ``file`` as of ``revision`` (with filters applied) to ``dump_file``."""
        return run_dump_to_file(self.runner, f"{revision}:{self.relative(file)}", dump_file)
