"""Remote divergence checks.

Compares HEAD against the current branch's upstream and any configured status
branches to find lockable files that are newer elsewhere. Assumes a fetch has
already brought the remote refs up to date.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List

from .observability import log_debug
from .states import PartialStateUpdate, RemoteState

if TYPE_CHECKING:
    from .runner import ProcessRunner

CHECKSUM_FILE = ".checksum"
RESTART_PREFIXES = ("binaries/", "plugins/")
WATCHED_PATHS = [CHECKSUM_FILE, "Binaries/", "Plugins/"]


@dataclass
class RemoteCheckResult:
    """Files newer on a remote branch, and whether binaries changed upstream."""

    newer_files: Dict[str, str] = field(default_factory=dict)  # abs path -> branch
    pending_restart: bool = False
    errors: List[str] = field(default_factory=list)


def requires_restart(relative_path: str) -> bool:
    """Whether an upstream change to this path needs an editor restart."""
    return relative_path == CHECKSUM_FILE or relative_path.lower().startswith(RESTART_PREFIXES)


def _ordered_branches(status_branches: Iterable[str], upstream: str) -> List[str]:
    branches = list(dict.fromkeys(b for b in status_branches if b))
    if upstream and upstream not in branches:
        branches.append(upstream)
    return branches


def find_newer_files(
    runner: "ProcessRunner",
    *,
    status_branches: Iterable[str],
    current_upstream: str,
    content_dirs: Iterable[str],
    is_lockable: Callable[[str], bool],
) -> RemoteCheckResult:
    """Map lockable files changed on watched branches to the branch.

    For each branch, ``log ..<branch>`` lists files changed in commits HEAD
    does not have. With status branches configured, that list is intersected
    with ``diff ...<branch>`` so files changed and later reverted are not
    reported. The upstream wins when several branches report the same file.
    """
    status_branches = list(status_branches)
    check = RemoteCheckResult()
    branches = _ordered_branches(status_branches, current_upstream)
    if not branches:
        return check

    paths = [*content_dirs, *WATCHED_PATHS]
    for branch in branches:
        is_upstream = bool(current_upstream) and branch == current_upstream

        log_result = runner.run_command("log", ["--pretty=", "--name-only", f"..{branch}", "--", *paths])
        check.errors.extend(log_result.errors)
        if not log_result.success:
            log_debug("[REMOTE] log against branch failed", branch=branch, errors=log_result.errors)
            continue

        if status_branches:
            diff_result = runner.run_command("diff", ["--pretty=", "--name-only", f"...{branch}", "--", *paths])
            check.errors.extend(diff_result.errors)
            logged = set(log_result.results)
            changed = [name for name in diff_result.results if name in logged]
        else:
            changed = log_result.results

        for name in changed:
            if not is_lockable(name):
                if is_upstream and requires_restart(name):
                    check.pending_restart = True
                continue
            path = os.path.normpath(os.path.join(str(runner.repo_root), name))
            if is_upstream or path not in check.newer_files:
                check.newer_files[path] = branch

    log_debug(
        "[REMOTE] Divergence check complete",
        branches=branches,
        newer=len(check.newer_files),
        pending_restart=check.pending_restart,
    )
    return check


def check_remote(
    runner: "ProcessRunner",
    states: Dict[str, PartialStateUpdate],
    *,
    status_branches: Iterable[str],
    current_upstream: str,
    content_dirs: Iterable[str],
    is_lockable: Callable[[str], bool],
) -> RemoteCheckResult:
    """Mark files already present in ``states`` that are newer remotely.

    A file newer on its own upstream is ``not_at_head``; newer on another
    status branch, ``not_latest``. Every other file in ``states`` is marked
    ``up_to_date`` once at least one branch was compared. Failures are
    absorbed and reported in ``errors``.
    """
    status_branches = list(status_branches)
    check = find_newer_files(
        runner,
        status_branches=status_branches,
        current_upstream=current_upstream,
        content_dirs=content_dirs,
        is_lockable=is_lockable,
    )
    compared = bool(_ordered_branches(status_branches, current_upstream))
    for path, update in states.items():
        branch = check.newer_files.get(path)
        if branch is not None:
            update.remote_state = RemoteState.NOT_AT_HEAD if branch == current_upstream else RemoteState.NOT_LATEST
            update.head_branch = branch
        elif compared and update.remote_state is None:
            update.remote_state = RemoteState.UP_TO_DATE
    return check
