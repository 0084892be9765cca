"""Parsing of ``git status --porcelain`` output.

A porcelain line is ``XY path`` (or ``XY old -> new`` for renames) where X is
the index state and Y the worktree state. The classification is an ordered
decision list: the first rule whose predicate matches decides the file state.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

from .locks import lock_state_for
from .observability import log_debug
from .states import ConflictInfo, FileState, LockState, PartialStateUpdate, TreeState

if TYPE_CHECKING:
    from .runner import ProcessRunner


@dataclass(frozen=True)
class StatusRule:
    """One row of the status decision list.

    ``tree_state`` of None means the tree state comes from the index/worktree
    blank test rather than from the rule.
    """

    name: str
    matches: Callable[[str, str], bool]
    file_state: FileState
    tree_state: Optional[TreeState] = None


STATUS_RULES: List[StatusRule] = [
    StatusRule(
        "unmerged",
        lambda x, y: x == "U" or y == "U" or (x == "A" and y == "A") or (x == "D" and y == "D"),
        FileState.UNMERGED,
        TreeState.WORKING,
    ),
    StatusRule("untracked", lambda x, y: "?" in (x, y), FileState.UNKNOWN, TreeState.UNTRACKED),
    StatusRule("ignored", lambda x, y: "!" in (x, y), FileState.UNKNOWN, TreeState.IGNORED),
    StatusRule("added", lambda x, y: x == "A", FileState.ADDED),
    StatusRule("deleted", lambda x, y: x == "D", FileState.DELETED),
    StatusRule("missing", lambda x, y: y == "D", FileState.MISSING),
    StatusRule("modified", lambda x, y: "M" in (x, y), FileState.MODIFIED),
    StatusRule("renamed", lambda x, y: x == "R", FileState.RENAMED),
    StatusRule("copied", lambda x, y: x == "C", FileState.COPIED),
]


def _tree_state_from_blanks(x: str, y: str) -> TreeState:
    if x == " ":
        return TreeState.WORKING
    if y == " ":
        return TreeState.STAGED
    # Changed in both index and worktree
    return TreeState.WORKING


def classify_status(code: str) -> tuple[FileState, TreeState]:
    """Map a two-character porcelain code to (file state, tree state)."""
    x, y = code[0], code[1]
    for rule in STATUS_RULES:
        if rule.matches(x, y):
            return rule.file_state, rule.tree_state or _tree_state_from_blanks(x, y)
    # Unmodified files never appear in status output
    return FileState.UNKNOWN, _tree_state_from_blanks(x, y)


def _trim_quotes(value: str) -> str:
    if value.startswith('"'):
        value = value[1:]
    if value.endswith('"'):
        value = value[:-1]
    return value


def filename_from_status(line: str) -> str:
    """Relative path from a porcelain line; the new name for renames and copies."""
    path = line[3:]
    if "R" in line[:2] or "C" in line[:2]:
        arrow = path.rfind(" -> ")
        if arrow != -1:
            return _trim_quotes(path[arrow + 4:])
    return _trim_quotes(path)


def parse_status_line(line: str) -> Optional[PartialStateUpdate]:
    """File and tree state for one porcelain line, or None if malformed."""
    if len(line) < 4 or line[2] != " ":
        log_debug("[STATUS] Skipping malformed status line", line=line)
        return None
    file_state, tree_state = classify_status(line[:2])
    return PartialStateUpdate(file_state=file_state, tree_state=tree_state)


STAGED_CHANGELIST = "Staged"
WORKING_CHANGELIST = "Working"


def changelist_for_line(line: str) -> Optional[str]:
    """Changelist a porcelain line belongs to; anything staged counts as staged."""
    if len(line) < 2 or line[:2] in ("??", "!!"):
        return None
    if not line[0].isspace():
        return STAGED_CHANGELIST
    if not line[1].isspace():
        return WORKING_CHANGELIST
    return None


def status_lines_by_path(lines: Iterable[str], repo_root: Path) -> Dict[str, str]:
    """Index porcelain lines by absolute path (new path for renames)."""
    by_path: Dict[str, str] = {}
    for line in lines:
        if len(line) < 4:
            log_debug("[STATUS] Skipping malformed status line", line=line)
            continue
        by_path[absolute_path(repo_root, filename_from_status(line))] = line
    return by_path


def absolute_path(repo_root: Path, relative: str) -> str:
    return os.path.normpath(os.path.join(str(repo_root), relative))


# ----------------------------------------------------------------------
# Conflicts
# ----------------------------------------------------------------------


def parse_conflict_info(lines: List[str]) -> Optional[ConflictInfo]:
    """Base and remote sides from ``git ls-files --unmerged``.

    Lines look like ``100644 <sha1> <stage>\\t<path>``; stage 1 is the common
    ancestor and stage 3 the incoming side. Anything but three lines is not a
    two-sided conflict and yields None.
    """
    if len(lines) != 3:
        return None

    def _side(line: str) -> tuple[str, str]:
        meta, _, path = line.partition("\t")
        return meta[7:47], path

    base_revision, base_filename = _side(lines[0])
    remote_revision, remote_filename = _side(lines[2])
    return ConflictInfo(
        base_revision=base_revision,
        base_filename=base_filename,
        remote_revision=remote_revision,
        remote_filename=remote_filename,
    )


def run_get_conflict_status(runner: "ProcessRunner", file: str) -> Optional[ConflictInfo]:
    result = runner.run_raw("ls-files", ["--unmerged"], [file])
    if not result.success:
        return None
    return parse_conflict_info(result.results)


# ----------------------------------------------------------------------
# Result sets
# ----------------------------------------------------------------------


def parse_directory_status_result(
    status_by_path: Dict[str, str],
    *,
    using_lfs_locking: bool,
) -> Dict[str, PartialStateUpdate]:
    """Keep deleted, missing and untracked entries from leftover status lines.

    These are the files a directory listing cannot enumerate because there is
    nothing left on disk (or in the index) to list.
    """
    states: Dict[str, PartialStateUpdate] = {}
    for path, line in status_by_path.items():
        update = parse_status_line(line)
        if update is None:
            continue
        if (
            update.file_state in (FileState.DELETED, FileState.MISSING)
            or update.tree_state == TreeState.UNTRACKED
        ):
            if not using_lfs_locking:
                update.lock_state = LockState.UNLOCKABLE
            states[path] = update
    return states


def parse_file_status_result(
    files: Iterable[str],
    status_by_path: Dict[str, str],
    *,
    using_lfs_locking: bool,
    operator: str,
    is_lockable: Callable[[str], bool],
    lock_provider: Optional[Callable[[], Dict[str, str]]] = None,
    conflict_lookup: Optional[Callable[[str], Optional[ConflictInfo]]] = None,
) -> Dict[str, PartialStateUpdate]:
    """Build updates for explicitly requested files, then leftover lines.

    Locks are fetched lazily through ``lock_provider``, at most once, and only
    if a lockable file is encountered.
    """
    remaining = dict(status_by_path)
    locks: Optional[Dict[str, str]] = None
    states: Dict[str, PartialStateUpdate] = {}

    for file in files:
        line = remaining.pop(file, None)
        update = parse_status_line(line) if line is not None else None
        if update is not None:
            if update.file_state == FileState.UNMERGED and conflict_lookup is not None:
                update.conflict = conflict_lookup(file)
        else:
            tree_state = TreeState.UNMODIFIED if os.path.exists(file) else TreeState.NOT_IN_REPO
            update = PartialStateUpdate(file_state=FileState.UNKNOWN, tree_state=tree_state)

        if not using_lfs_locking or not is_lockable(file):
            update.lock_state = LockState.UNLOCKABLE
        else:
            if locks is None:
                locks = lock_provider() if lock_provider is not None else {}
            lock_state, lock_user = lock_state_for(file, locks, operator)
            update.lock_state = lock_state
            update.lock_user = lock_user

        states[file] = update

    states.update(parse_directory_status_result(remaining, using_lfs_locking=using_lfs_locking))
    return states


def list_files_in_directory(runner: "ProcessRunner", directory: str) -> List[str]:
    """Tracked files under ``directory`` as absolute paths."""
    result = runner.run_raw("ls-files", [], [directory])
    if not result.success:
        log_debug("[STATUS] ls-files failed", directory=directory, errors=result.errors)
    return [absolute_path(runner.repo_root, rel) for rel in result.results]


def parse_status_results(
    runner: "ProcessRunner",
    files: Iterable[str],
    status_by_path: Dict[str, str],
    **kwargs,
) -> Dict[str, PartialStateUpdate]:
    """Expand requested directories to their tracked files, then parse."""
    expanded: Dict[str, None] = {}
    for file in files:
        if os.path.isdir(file):
            for inner in list_files_in_directory(runner, file):
                expanded[inner] = None
        else:
            expanded[file] = None
    return parse_file_status_result(list(expanded), status_by_path, **kwargs)
