"""Backend process runner.

All git and git-lfs invocations go through ``ProcessRunner``. It builds the
``git -C <root> <command> <params...> <files...>`` argument vector, captures
stdout/stderr, and splits long file lists into batches so no single command
line exceeds platform limits.
"""

from __future__ import annotations

import os
import platform
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from subprocess import TimeoutExpired
from typing import Iterable, List, Optional, Sequence

from .observability import log_debug, log_warning

MAX_FILES_PER_BATCH = 50

_PREVIEW_CHARS = 160


@dataclass
class CommandResult:
    """Outcome of one logical backend command (possibly several batches)."""

    success: bool = True
    results: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def extend(self, other: "CommandResult") -> None:
        """Fold another batch into this result: AND success, append lines."""
        self.success = self.success and other.success
        self.results.extend(other.results)
        self.errors.extend(other.errors)


def split_lines(text: str) -> List[str]:
    """Split process output on newlines, dropping empty lines."""
    return [line for line in text.replace("\r\n", "\n").split("\n") if line]


def batched(items: Sequence[str], size: int) -> List[List[str]]:
    """Split ``items`` into consecutive chunks of at most ``size``."""
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def lfs_binary_name(system: Optional[str] = None, machine: Optional[str] = None) -> str:
    """Name of the bundled git-lfs binary for a platform."""
    system = system or platform.system()
    machine = (machine or platform.machine()).lower()
    if system == "Windows":
        return "git-lfs.exe"
    if system == "Darwin":
        if machine in ("arm64", "aarch64"):
            return "git-lfs-mac-arm64"
        return "git-lfs-mac-amd64"
    return "git-lfs"


def remove_redundant_errors(result: CommandResult, error_filter: str) -> CommandResult:
    """Reclassify known-benign error lines as informational output.

    Lines containing ``error_filter`` move from ``errors`` to ``results``. If
    that leaves no errors, the command counts as successful. This is a plain
    substring match against backend diagnostics, so an unrelated message that
    happens to contain the filter text is also absorbed.
    """
    kept: List[str] = []
    found = False
    for line in result.errors:
        if error_filter in line:
            result.results.append(line)
            found = True
        else:
            kept.append(line)

    if found:
        result.errors = kept
        if not kept:
            result.success = True
    return result


class ProcessRunner:
    """Invokes the git backend for one repository.

    Args:
        repo_root: Working tree root passed to ``git -C``
        binary: git executable (bare name resolves on PATH)
        lfs_bundle_dir: Directory holding bundled git-lfs binaries, if any
        max_files_per_batch: Files passed to a single invocation
        timeout: Per-invocation timeout in seconds (None = no limit)
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        binary: str = "git",
        lfs_bundle_dir: Optional[Path] = None,
        max_files_per_batch: int = MAX_FILES_PER_BATCH,
        timeout: Optional[float] = None,
    ) -> None:
        self.repo_root = Path(repo_root)
        self.binary = binary
        self.lfs_bundle_dir = Path(lfs_bundle_dir) if lfs_bundle_dir else None
        self.max_files_per_batch = max(1, max_files_per_batch)
        self.timeout = timeout or None

        env = os.environ.copy()
        env.setdefault("GIT_TERMINAL_PROMPT", "0")
        self.env = env

    # ------------------------------------------------------------------
    # Low level
    # ------------------------------------------------------------------

    def _execute(self, argv: List[str], cwd: Path) -> tuple[int, str, str]:
        """Spawn the process and return (returncode, stdout, stderr).

        Raises OSError when the executable cannot be launched and
        TimeoutExpired when the configured timeout elapses.
        """
        # Avoid handle inheritance on Windows blocking parent stdio
        close_fds = sys.platform == "win32"
        completed = subprocess.run(
            argv,
            cwd=str(cwd),
            env=self.env,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=self.timeout,
            close_fds=close_fds,
        )
        return completed.returncode, completed.stdout or "", completed.stderr or ""

    def _invoke(self, argv: List[str], cwd: Path, expected_return_code: int) -> CommandResult:
        quoted = " ".join(shlex.quote(part) for part in argv)
        log_debug(f"[RUNNER] RUN cwd={cwd} cmd={quoted}")
        start = time.time()
        try:
            returncode, stdout, stderr = self._execute(argv, cwd)
        except TimeoutExpired:
            elapsed = time.time() - start
            log_warning(f"[RUNNER] TIMEOUT after {elapsed:.2f}s cmd={quoted}")
            return CommandResult(success=False, errors=[f"Command timed out after {elapsed:.0f}s: {quoted}"])
        except OSError as exc:
            log_warning(f"[RUNNER] Failed to launch {argv[0]}: {exc}")
            return CommandResult(success=False, errors=[f"Failed to launch {argv[0]}: {exc}"])

        elapsed = time.time() - start
        log_debug(
            f"[RUNNER] DONE rc={returncode} elapsed={elapsed:.2f}s "
            f"stdout='{_preview(stdout)}' stderr='{_preview(stderr)}'"
        )

        success = returncode == expected_return_code
        if success and stderr:
            # Progress and hint text arrives on stderr even when the command worked
            stdout = stdout + stderr
            stderr = ""
        return CommandResult(success=success, results=split_lines(stdout), errors=split_lines(stderr))

    def _root_for(self, files: Sequence[str]) -> Path:
        """Repository root to run in, following migrated assets to their own repo."""
        if files:
            first = Path(files[0])
            if first.is_absolute() and not _is_relative_to(first, self.repo_root):
                from .repository import find_root_directory

                other_root = find_root_directory(first)
                if other_root is not None:
                    return other_root
        return self.repo_root

    def run_raw(
        self,
        command: str,
        params: Iterable[str] = (),
        files: Sequence[str] = (),
        *,
        expected_return_code: int = 0,
    ) -> CommandResult:
        """Run one unbatched git command."""
        root = self._root_for(files)
        argv = [self.binary, "-C", str(root), *shlex.split(command), *params, *files]
        return self._invoke(argv, root, expected_return_code)

    # ------------------------------------------------------------------
    # Batched entry points
    # ------------------------------------------------------------------

    def run_command(
        self,
        command: str,
        params: Iterable[str] = (),
        files: Sequence[str] = (),
        *,
        expected_return_code: int = 0,
    ) -> CommandResult:
        """Run a git command, batching ``files`` into groups of at most
        ``max_files_per_batch``.

        Output lines are concatenated in batch order and the overall result
        is successful only if every batch was.
        """
        params = list(params)
        files = list(files)
        if len(files) <= self.max_files_per_batch:
            return self.run_raw(command, params, files, expected_return_code=expected_return_code)

        total = CommandResult(success=True)
        for batch in batched(files, self.max_files_per_batch):
            total.extend(self.run_raw(command, params, batch, expected_return_code=expected_return_code))
        return total

    def _lfs_binary(self) -> Optional[Path]:
        if self.lfs_bundle_dir is None:
            return None
        candidate = self.lfs_bundle_dir / lfs_binary_name()
        return candidate if candidate.is_file() else None

    def run_lfs_command(
        self,
        command: str,
        params: Iterable[str] = (),
        files: Sequence[str] = (),
        *,
        expected_return_code: int = 0,
    ) -> CommandResult:
        """Run a git-lfs command (``command`` without the ``lfs`` prefix).

        Uses the bundled git-lfs binary when one is configured and present,
        otherwise ``git lfs <command>``.
        """
        lfs = self._lfs_binary()
        if lfs is None:
            return self.run_command(
                f"lfs {command}", params, files, expected_return_code=expected_return_code
            )

        params = list(params)
        files = list(files)
        total = CommandResult(success=True)
        for batch in batched(files, self.max_files_per_batch) or [[]]:
            root = self._root_for(batch)
            argv = [str(lfs), *shlex.split(command), *params, *batch]
            total.extend(self._invoke(argv, root, expected_return_code))
        return total

    def run_commit(self, params: Iterable[str], files: Sequence[str]) -> CommandResult:
        """Stage and commit ``files``, one commit amended batch by batch."""
        params = list(params)
        files = list(files)
        batches = batched(files, self.max_files_per_batch) or [[]]

        first = batches[0]
        total = self.run_raw("add", ["-A"], first)
        total.extend(self.run_raw("commit", params, first))
        for batch in batches[1:]:
            total.extend(self.run_raw("add", ["-A"], batch))
            total.extend(self.run_raw("commit", [*params, "--amend"], batch))
        return total


def _preview(text: str) -> str:
    lines = text.strip().splitlines()
    return lines[0][:_PREVIEW_CHARS] if lines else ""


def _is_relative_to(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True
