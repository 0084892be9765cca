"""Repository-level queries.

Metadata questions (branch, HEAD commit, remote url, identity) go through
GitPython; questions whose answer is a git command's text output go through
the process runner so they honour the configured binary and batching.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence

from git import Repo
from git.exc import InvalidGitRepositoryError, NoSuchPathError

from .errors import RepositoryError
from .observability import log_debug, log_error, log_warning

if TYPE_CHECKING:
    from .runner import ProcessRunner


def find_root_directory(path: Path | str) -> Optional[Path]:
    """Nearest directory at or above ``path`` containing ``.git``.

    ``.git`` may be a directory or, for submodules and worktrees, a file.
    """
    current = Path(os.path.abspath(path))
    while True:
        if (current / ".git").exists():
            return current
        if current.parent == current:
            return None
        current = current.parent


def open_repo(repo_root: Path | str) -> Repo:
    """GitPython ``Repo`` for ``repo_root``."""
    try:
        return Repo(repo_root)
    except (InvalidGitRepositoryError, NoSuchPathError):
        raise RepositoryError(f"Not a git repository: {repo_root}")


def get_branch_name(repo_root: Path | str) -> str:
    """Active branch name, or ``HEAD detached at <short sha>``."""
    repo = open_repo(repo_root)
    if not repo.head.is_detached:
        return repo.active_branch.name
    return f"HEAD detached at {repo.head.commit.hexsha[:7]}"


def get_commit_info(repo_root: Path | str) -> tuple[str, str]:
    """(sha, summary) of HEAD; empty strings before the first commit."""
    repo = open_repo(repo_root)
    try:
        commit = repo.head.commit
    except ValueError:
        return "", ""
    return commit.hexsha, commit.summary


def get_remote_url(repo_root: Path | str) -> str:
    repo = open_repo(repo_root)
    try:
        return repo.remote("origin").url
    except ValueError:
        return ""


def get_user_config(repo_root: Path | str) -> tuple[str, str]:
    """(user.name, user.email) as git resolves them for this repository."""
    reader = open_repo(repo_root).config_reader()
    name = reader.get_value("user", "name", default="")
    email = reader.get_value("user", "email", default="")
    return str(name), str(email)


def get_current_upstream(runner: "ProcessRunner") -> str:
    """Upstream of the current branch (e.g. ``origin/main``), or ""."""
    result = runner.run_command("rev-parse", ["--abbrev-ref", "--symbolic-full-name", "@{u}"])
    if not result.success or not result.results:
        log_debug("[REPO] No upstream for the current branch; skipping it in remote checks")
        return ""
    return result.results[0].strip()


def get_remote_branches_wildcard(runner: "ProcessRunner", pattern: str) -> List[str]:
    result = runner.run_command("branch", ["--remotes", "--list"], [pattern])
    if not result.success:
        log_warning(f"[REPO] No remote branches matching pattern {pattern!r}")
        return []
    return [line.strip() for line in result.results]


# ----------------------------------------------------------------------
# Version
# ----------------------------------------------------------------------


@dataclass
class GitVersion:
    major: int = 0
    minor: int = 0
    patch: int = 0
    fork: str = ""
    fork_major: int = 0
    fork_minor: int = 0
    fork_patch: int = 0
    has_lfs: bool = False

    @property
    def is_fork(self) -> bool:
        return bool(self.fork)

    def is_greater_or_equal_than(self, major: int, minor: int) -> bool:
        return (self.major, self.minor) >= (major, minor)

    @property
    def supports_lfs_locking(self) -> bool:
        """git-lfs file locking needs git 2.10 or later and a working git-lfs."""
        return self.has_lfs and self.is_greater_or_equal_than(2, 10)

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        if self.is_fork:
            return f"{base}.{self.fork}.{self.fork_major}.{self.fork_minor}.{self.fork_patch}"
        return base


def parse_git_version(text: str) -> Optional[GitVersion]:
    """Parse ``git version 2.31.1`` or a fork string like ``2.31.1.vfs.0.3``.

    Returns None when the text is not a git version banner.
    """
    text = text.strip()
    if not text.startswith("git version "):
        return None
    parts = text[len("git version "):].split(" ", 1)[0].split(".")
    if len(parts) < 3 or not all(p.isdigit() for p in parts[:3]):
        return None

    version = GitVersion(major=int(parts[0]), minor=int(parts[1]), patch=int(parts[2]))
    if len(parts) >= 5 and not parts[3].isdigit():
        version.fork = parts[3]
        numbers = [int(p) if p.isdigit() else 0 for p in parts[4:7]]
        numbers += [0] * (3 - len(numbers))
        version.fork_major, version.fork_minor, version.fork_patch = numbers
    return version


def check_git_availability(runner: "ProcessRunner") -> Optional[GitVersion]:
    """Version of the configured git binary, or None if it does not run."""
    result = runner.run_raw("version")
    if not result.success or not result.results:
        log_warning("[REPO] git binary unavailable", binary=runner.binary, errors=result.errors)
        return None
    version = parse_git_version(result.results[0])
    if version is None:
        return None

    lfs = runner.run_lfs_command("version")
    version.has_lfs = lfs.success and any(line.startswith("git-lfs/") for line in lfs.results)
    log_debug(f"[REPO] Git version {version}", lfs=version.has_lfs)
    return version


# ----------------------------------------------------------------------
# Lockable file types
# ----------------------------------------------------------------------


def check_lfs_lockable(
    runner: "ProcessRunner",
    patterns: Sequence[str],
    *,
    errors: Optional[List[str]] = None,
) -> Optional[List[str]]:
    """Extensions whose pattern has the ``lockable`` attribute set.

    ``check-attr`` prints one ``<pattern>: lockable: <value>`` line per
    pattern, in order. Returns None if the command fails.
    """
    errors = errors if errors is not None else []
    result = runner.run_command("check-attr", ["lockable"], list(patterns))
    errors.extend(result.errors)
    if not result.success:
        return None

    extensions: List[str] = []
    for pattern, line in zip(patterns, result.results):
        if line.endswith("set") and not line.endswith("unset"):
            extensions.append(pattern[1:] if pattern.startswith("*") else pattern)
    return extensions


def is_file_lfs_lockable(path: str, extensions: Iterable[str]) -> bool:
    return any(path.endswith(ext) for ext in extensions)


# ----------------------------------------------------------------------
# Submodules
# ----------------------------------------------------------------------


def change_repository_root_if_submodule(files: List[str], repo_root: Path | str) -> tuple[Path, List[str]]:
    """Root to use when every file lives in the same nested repository.

    Returns (root, files) where files outside any repository are dropped.
    Files spread across different nested repositories keep the original root.
    """
    original = Path(os.path.abspath(repo_root))
    chosen = original
    kept: List[str] = []

    for file in files:
        nested: Optional[Path] = None
        in_repo = False
        current = Path(os.path.abspath(file)).parent
        while True:
            if current == original:
                in_repo = True
                break
            if (current / ".git").exists():
                nested = current
                in_repo = True
                break
            if current.parent == current:
                break
            current = current.parent

        if not in_repo:
            log_warning(f"[REPO] File is not inside a git repository: {file}")
            continue
        kept.append(file)
        if nested is None:
            continue
        if chosen != original and chosen != nested:
            log_error("[REPO] Selected files belong to different submodules")
            return original, list(files)
        chosen = nested

    return chosen, kept


# ----------------------------------------------------------------------
# Files
# ----------------------------------------------------------------------


def run_dump_to_file(runner: "ProcessRunner", parameter: str, dump_file: Path | str) -> bool:
    """Write ``git cat-file --filters <rev:path>`` output to ``dump_file``.

    Output is binary, so this bypasses the text runner.
    """

    argv = [runner.binary, "-C", str(runner.repo_root), "cat-file", "--filters", parameter]
    log_debug("[REPO] Dumping blob", parameter=parameter, dump_file=str(dump_file))
    try:
        with open(dump_file, "wb") as out:
            completed = subprocess.run(
                argv,
                stdout=out,
                stderr=subprocess.PIPE,
                env=runner.env,
                timeout=runner.timeout,
            )
    except subprocess.TimeoutExpired:
        log_warning(f"[REPO] TIMEOUT after {runner.timeout}s dumping {parameter}")
        return False
    except OSError as exc:
        log_warning(f"[REPO] Failed to launch {runner.binary}: {exc}")
        return False

    if completed.returncode != 0:
        log_warning(
            "[REPO] cat-file failed",
            parameter=parameter,
            stderr=completed.stderr.decode("utf-8", "replace").strip(),
        )
        return False
    return True


class ScopedTempFile:
    """Temporary file that is removed when the context exits.

    Used for commit messages and other payloads handed to git by filename.
    """

    def __init__(self, text: str = "", *, suffix: str = ".txt") -> None:
        fd, name = tempfile.mkstemp(prefix="gitstate-", suffix=suffix)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        self.filename = Path(name)

    def __enter__(self) -> "ScopedTempFile":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        try:
            self.filename.unlink()
        except FileNotFoundError:
            pass
