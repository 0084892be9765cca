from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pytest


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    # Ensure console scripts load in editable style as well
    os.environ.setdefault("PYTHONPATH", str(src))


@pytest.fixture(autouse=True)
def no_log_files(monkeypatch):
    """Keep test runs from writing session logs under the home directory."""
    monkeypatch.setenv("GITSTATE_LOG_DISABLE_FILE", "1")


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_fake_runner_class():
    from gitstate.runner import ProcessRunner

    class FakeRunner(ProcessRunner):
        """ProcessRunner that answers from a script instead of spawning git.

        Responses are matched on the leading arguments after ``git -C <root>``
        (or after the executable for bundled git-lfs); the most recently added
        match wins. Unmatched commands succeed with no output.
        """

        def __init__(self, repo_root, **kwargs) -> None:
            super().__init__(repo_root, **kwargs)
            self.calls: List[List[str]] = []
            self._responses: List[Tuple[Tuple[str, ...], object]] = []

        def respond(
            self,
            *prefix: str,
            stdout: str = "",
            stderr: str = "",
            returncode: int = 0,
            raises: Optional[BaseException] = None,
        ) -> None:
            reply = raises if raises is not None else (returncode, stdout, stderr)
            self._responses.append((tuple(prefix), reply))

        @staticmethod
        def command_args(argv: Sequence[str]) -> List[str]:
            argv = list(argv)
            if len(argv) >= 3 and argv[1] == "-C":
                return argv[3:]
            return argv[1:]

        def calls_for(self, *prefix: str) -> List[List[str]]:
            return [
                args
                for args in (self.command_args(argv) for argv in self.calls)
                if args[: len(prefix)] == list(prefix)
            ]

        def _execute(self, argv, cwd):
            self.calls.append(list(argv))
            args = self.command_args(argv)
            for prefix, reply in reversed(self._responses):
                if args[: len(prefix)] == list(prefix):
                    if isinstance(reply, BaseException):
                        raise reply
                    return reply
            return 0, "", ""

    return FakeRunner


@pytest.fixture
def fake_runner(tmp_path):
    """Scripted runner rooted at an empty temporary directory."""
    root = tmp_path / "repo"
    root.mkdir()
    return make_fake_runner_class()(root)


@pytest.fixture
def git_repo(tmp_path):
    """A real repository with one committed asset and a configured identity."""
    from git import Actor, Repo

    root = tmp_path / "project"
    root.mkdir()
    repo = Repo.init(root)
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Test")
        cw.set_value("user", "email", "test@example.com")

    (root / "Content").mkdir()
    (root / "Content" / "Hero.uasset").write_bytes(b"hero-v1")
    (root / "README.txt").write_text("readme\n", encoding="utf-8")
    repo.index.add(["Content/Hero.uasset", "README.txt"])
    repo.index.commit("Initial commit", author=Actor("Test", "test@example.com"))
    return repo


@pytest.fixture
def runner_factory():
    """The scripted runner class, for tests that need several roots or options."""
    return make_fake_runner_class()
