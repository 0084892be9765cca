"""File history from ``git log`` / ``git show`` output."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from .observability import log_debug

if TYPE_CHECKING:
    from .runner import ProcessRunner

MAX_HISTORY_COUNT = 250

LOG_STATUS_ACTIONS = {
    " ": "unmodified",
    "M": "modified",
    "A": "add",
    "D": "delete",
    "R": "branch",  # renamed
    "C": "branch",  # copied
    "T": "type changed",
    "U": "unmerged",
    "X": "unknown",
    "B": "broken pairing",
}


def log_status_to_string(status: str) -> str:
    """Readable action for a ``--name-status`` letter ("" if unknown)."""
    return LOG_STATUS_ACTIONS.get(status, "")


@dataclass
class Revision:
    """One commit in a file's history."""

    commit_id: str = ""
    short_commit_id: str = ""
    commit_id_number: int = 0
    revision_number: int = 0
    user_name: str = ""
    date: Optional[datetime] = None
    description: str = ""
    action: str = ""
    filename: str = ""
    file_hash: str = ""
    file_size: int = 0
    branch_source: Optional["Revision"] = field(default=None, repr=False)
    path_to_repo_root: str = ""

    def to_dict(self) -> dict:
        return {
            "commit_id": self.commit_id,
            "short_commit_id": self.short_commit_id,
            "revision_number": self.revision_number,
            "user_name": self.user_name,
            "date": self.date.isoformat() if self.date else None,
            "description": self.description,
            "action": self.action,
            "filename": self.filename,
            "file_hash": self.file_hash,
            "file_size": self.file_size,
            "branch_source": self.branch_source.commit_id if self.branch_source else None,
        }


def _parse_status_entry(line: str, revision: Revision) -> None:
    if "\t" not in line or line[0] not in LOG_STATUS_ACTIONS:
        log_debug("[HISTORY] Skipping unrecognised log line", line=line[:80])
        return
    revision.action = log_status_to_string(line[0])
    # Renames and copies list both names; the last one is the file at this revision
    revision.filename = line.rsplit("\t", 1)[1]


def parse_log_results(lines: List[str]) -> List[Revision]:
    """Parse ``--pretty=medium --date=raw --name-status`` log output.

    Revisions are returned newest first and numbered so the oldest is 1.
    A renamed or copied revision points at the next older one as its
    ``branch_source``.
    """
    history: List[Revision] = []
    current: Optional[Revision] = None

    for line in lines:
        if line.startswith("commit "):
            current = Revision()
            history.append(current)
            current.commit_id = line[7:].split(" ", 1)[0]
            current.short_commit_id = current.commit_id[:8]
            try:
                current.commit_id_number = int(current.short_commit_id, 16)
            except ValueError:
                current.commit_id_number = 0
        elif current is None:
            continue
        elif line.startswith("Author: "):
            author = line[8:]
            email = author.rfind("<")
            current.user_name = author[:email].rstrip() if email != -1 else author
        elif line.startswith("Date:   "):
            stamp = line[8:].split()
            try:
                current.date = datetime.fromtimestamp(int(stamp[0]), tz=timezone.utc)
            except (ValueError, IndexError):
                log_debug("[HISTORY] Unparseable date", line=line)
        elif line.startswith("    "):
            current.description += line[4:] + "\n"
        else:
            _parse_status_entry(line, current)

    total = len(history)
    for index, revision in enumerate(history):
        revision.revision_number = total - index
        if revision.action == "branch" and index < total - 1:
            revision.branch_source = history[index + 1]
    return history


def parse_ls_tree_line(line: str) -> tuple[str, int]:
    """(blob sha, size) from ``git ls-tree --long`` output."""
    meta = line.split("\t", 1)[0].split()
    if len(meta) < 4:
        return "", 0
    try:
        size = int(meta[3])
    except ValueError:
        size = 0
    return meta[2], size


def run_get_history(
    runner: "ProcessRunner",
    file: str,
    *,
    merge_conflict: bool = False,
    errors: Optional[List[str]] = None,
) -> tuple[bool, List[Revision]]:
    """History of ``file``, with blob hash and size filled per revision.

    During a merge conflict only the tip of MERGE_HEAD is returned.
    """
    errors = errors if errors is not None else []
    params = ["--follow", "--date=raw", "--name-status", "--pretty=medium"]
    if merge_conflict:
        params += ["MERGE_HEAD", "--max-count", "1"]
    else:
        params += ["--max-count", str(MAX_HISTORY_COUNT)]

    result = runner.run_command("log", params, [file])
    errors.extend(result.errors)
    history = parse_log_results(result.results) if result.success else []
    success = result.success

    for revision in history:
        tree = runner.run_command("ls-tree", ["--long", revision.commit_id], [revision.filename])
        errors.extend(tree.errors)
        success = success and tree.success
        if tree.success and tree.results:
            revision.file_hash, revision.file_size = parse_ls_tree_line(tree.results[0])
        revision.path_to_repo_root = str(runner.repo_root)

    return success, history


def get_origin_revision_on_branch(
    runner: "ProcessRunner",
    file: str,
    branch: str,
    *,
    errors: Optional[List[str]] = None,
) -> Optional[Revision]:
    """Tip revision of ``branch``, labelled with ``file`` relative to the root."""
    errors = errors if errors is not None else []
    result = runner.run_command("show", [branch, "--date=raw", "--pretty=medium", "--name-status"])
    errors.extend(result.errors)
    if not result.success:
        return None

    history = parse_log_results(result.results)
    if not history:
        return None

    revision = history[0]
    absolute = os.path.join(os.path.abspath(runner.repo_root), file)
    relative = os.path.relpath(absolute, os.path.abspath(runner.repo_root))
    if relative.startswith(os.pardir):
        relative = file
    revision.filename = Path(relative).as_posix()
    revision.path_to_repo_root = str(runner.repo_root)
    return revision
