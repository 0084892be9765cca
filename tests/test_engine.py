"""Tests for the reconciliation engine."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from gitstate.config_schema import GitStateConfig
from gitstate.dispatch import MainContextDispatcher
from gitstate.engine import EngineSettings, ReconciliationEngine
from gitstate.states import FileState, LockState, RemoteState, TreeState
from gitstate.status_parser import STAGED_CHANGELIST, WORKING_CHANGELIST


class RecordingReloader:
    def __init__(self):
        self.events = []

    def unlink(self, paths):
        self.events.append(("unlink", sorted(paths)))

    def reload(self, paths):
        self.events.append(("reload", sorted(paths)))


class RecordingHook:
    def __init__(self):
        self.events = []

    def __call__(self, path, user, locked):
        self.events.append((path, user, locked))


@pytest.fixture
def dispatcher():
    d = MainContextDispatcher(name="test-main")
    yield d
    d.shutdown()


def _engine(root, runner=None, **overrides):
    settings = EngineSettings(repo_root=Path(root), lock_user="me", **overrides)
    return ReconciliationEngine(settings, runner=runner, lock_hook=RecordingHook())


class TestEngineSettings:
    def test_from_config_uses_git_identity(self, git_repo):
        root = Path(git_repo.working_tree_dir)
        config = GitStateConfig.model_validate(
            {
                "locking": {"use_lfs_locking": True, "cache_ttl": 5},
                "remote": {"status_branches": ["origin/dev"]},
                "runner": {"max_files_per_batch": 10},
            }
        )
        settings = EngineSettings.from_config(config, root)
        assert settings.lock_user == "Test"
        assert settings.using_lfs_locking
        assert settings.lock_cache_ttl == 5
        assert settings.status_branches == ["origin/dev"]
        assert settings.max_files_per_batch == 10
        assert settings.timeout is None
        assert settings.lfs_bundle_dir is None

    def test_explicit_lock_user_wins(self, git_repo):
        config = GitStateConfig.model_validate({"locking": {"lock_user": "from-config"}})
        root = Path(git_repo.working_tree_dir)
        assert EngineSettings.from_config(config, root).lock_user == "from-config"
        assert EngineSettings.from_config(config, root, lock_user="cli").lock_user == "cli"


class TestStatusPassOnRealRepository:
    def test_modified_and_untracked(self, git_repo):
        root = Path(git_repo.working_tree_dir)
        (root / "Content" / "Hero.uasset").write_bytes(b"hero-v2")
        (root / "Content" / "New.uasset").write_bytes(b"new")
        engine = _engine(root)

        result = engine.run_update_status([str(root / "Content")])
        assert result.success

        hero = engine.get_state(str(root / "Content" / "Hero.uasset"))
        assert hero.file_state == FileState.MODIFIED
        assert hero.tree_state == TreeState.WORKING
        assert hero.lock_state == LockState.UNLOCKABLE
        assert hero.remote_state == RemoteState.UP_TO_DATE

        new = engine.get_state(str(root / "Content" / "New.uasset"))
        assert new.tree_state == TreeState.UNTRACKED

        assert engine.changelist_of("Content/Hero.uasset") == WORKING_CHANGELIST
        assert engine.changelist_of("Content/New.uasset") is None

    def test_unmodified_file(self, git_repo):
        root = Path(git_repo.working_tree_dir)
        engine = _engine(root)
        path = str(root / "README.txt")

        engine.run_update_status([path])
        record = engine.get_state(path)
        assert record.file_state == FileState.UNKNOWN
        assert record.tree_state == TreeState.UNMODIFIED
        assert record.is_source_controlled()

    def test_staged_file_restaged_on_save(self, git_repo):
        root = Path(git_repo.working_tree_dir)
        hero = root / "Content" / "Hero.uasset"
        hero.write_bytes(b"hero-v2")
        git_repo.index.add(["Content/Hero.uasset"])
        git_repo.index.write()
        engine = _engine(root)

        engine.run_update_status([str(hero)])
        assert engine.get_state(str(hero)).tree_state == TreeState.STAGED
        assert engine.changelist_of(str(hero)) == STAGED_CHANGELIST

        hero.write_bytes(b"hero-v3")
        assert engine.update_file_staging_on_saved(str(hero))
        assert git_repo.git.status("--porcelain", "Content/Hero.uasset") == "M  Content/Hero.uasset"
        assert not engine.update_file_staging_on_saved(str(root / "README.txt"))

    def test_files_outside_repository_skipped(self, git_repo, tmp_path):
        engine = _engine(Path(git_repo.working_tree_dir))
        result = engine.run_update_status([str(tmp_path / "elsewhere.uasset")])
        assert not result.success
        assert engine.get_cached_states() == []


class TestCommitAndHistory:
    def test_commit_marks_files_unmodified(self, git_repo):
        root = Path(git_repo.working_tree_dir)
        hero = root / "Content" / "Hero.uasset"
        hero.write_bytes(b"hero-v2")
        engine = _engine(root)
        engine.run_update_status([str(hero)])

        result = engine.commit("Update hero", [str(hero)])
        assert result.success, result.errors
        assert git_repo.head.commit.summary == "Update hero"
        assert engine.get_state(str(hero)).file_state == FileState.UNMODIFIED

        success, history = engine.get_history(str(hero))
        assert success
        assert [r.revision_number for r in history] == [2, 1]
        assert history[0].file_size == len(b"hero-v2")

    def test_dump_to_file(self, git_repo, tmp_path):
        root = Path(git_repo.working_tree_dir)
        (root / "Content" / "Hero.uasset").write_bytes(b"local edit")
        engine = _engine(root)
        target = tmp_path / "Hero_HEAD.uasset"
        assert engine.dump_to_file("HEAD", str(root / "Content" / "Hero.uasset"), target)
        assert target.read_bytes() == b"hero-v1"

    def test_git_version(self, git_repo):
        assert _engine(Path(git_repo.working_tree_dir)).git_version() is not None


class TestStatusPassWithLocksAndRemote:
    def test_merged_view(self, fake_runner):
        root = fake_runner.repo_root
        path = os.path.normpath(str(root / "Content" / "A.uasset"))
        fake_runner.respond("--no-optional-locks", "status", stdout=" M Content/A.uasset\n")
        fake_runner.respond("lfs", "locks", stdout="Content/A.uasset\tbob\tID:1\n")
        fake_runner.respond("rev-parse", stdout="origin/main\n")
        fake_runner.respond("log", stdout="Content/A.uasset\n")
        engine = _engine(root, runner=fake_runner, using_lfs_locking=True)

        result = engine.run_update_status([path])
        assert result.success
        record = result.states[path]
        assert record.file_state == FileState.MODIFIED
        assert record.lock_state == LockState.LOCKED_OTHER
        assert record.lock_user == "bob"
        assert record.remote_state == RemoteState.NOT_AT_HEAD
        assert record.head_branch == "origin/main"

        # Status is parsed before locks are queried
        commands = [fake_runner.command_args(argv)[:2] for argv in fake_runner.calls]
        assert commands.index(["--no-optional-locks", "status"]) < commands.index(["lfs", "locks"])

    def test_relative_lock_paths_still_resolve_lock_state(self, fake_runner):
        root = fake_runner.repo_root
        path = os.path.normpath(str(root / "Content" / "A.uasset"))
        fake_runner.respond("--no-optional-locks", "status", stdout=" M Content/A.uasset\n")
        fake_runner.respond("lfs", "locks", stdout="Content/A.uasset\tbob\tID:1\n")
        hook = RecordingHook()
        settings = EngineSettings(
            repo_root=root, lock_user="me", using_lfs_locking=True, use_absolute_lock_paths=False
        )
        engine = ReconciliationEngine(settings, runner=fake_runner, lock_hook=hook)

        record = engine.run_update_status([path]).states[path]
        assert record.lock_state == LockState.LOCKED_OTHER
        assert record.lock_user == "bob"
        assert engine.lock_cache.get_locked_files() == {path: "bob"}
        assert hook.events == [(path, "bob", True)]
        assert engine.get_all_locks() == {"Content/A.uasset": "bob"}

    def test_lock_query_cached_between_passes(self, fake_runner):
        root = fake_runner.repo_root
        path = os.path.normpath(str(root / "Content" / "A.uasset"))
        fake_runner.respond("--no-optional-locks", "status", stdout=" M Content/A.uasset\n")
        engine = _engine(root, runner=fake_runner, using_lfs_locking=True)

        engine.run_update_status([path])
        engine.run_update_status([path])
        assert len(fake_runner.calls_for("lfs", "locks")) == 1

    def test_binaries_change_sets_pending_restart(self, fake_runner):
        root = fake_runner.repo_root
        fake_runner.respond("rev-parse", stdout="origin/main\n")
        fake_runner.respond("log", stdout="Binaries/Win64/Editor.dll\n")
        engine = _engine(root, runner=fake_runner)

        result = engine.run_update_status([str(root / "Content" / "A.uasset")])
        assert result.pending_restart
        assert engine.pending_restart


class TestLocking:
    def test_lock_files(self, fake_runner):
        root = fake_runner.repo_root
        asset = os.path.normpath(str(root / "Content" / "A.uasset"))
        engine = _engine(root, runner=fake_runner, using_lfs_locking=True)

        result = engine.lock_files([asset, str(root / "notes.txt")])
        assert result.success
        assert fake_runner.calls_for("lfs", "lock") == [["lfs", "lock", "Content/A.uasset"]]
        assert engine.lock_cache.get_locked_files() == {asset: "me"}
        record = engine.get_state(asset)
        assert record.lock_state == LockState.LOCKED
        assert record.lock_user == "me"
        assert engine.get_locked_files([asset]) == [asset]

    def test_failed_lock_leaves_state(self, fake_runner):
        root = fake_runner.repo_root
        asset = os.path.normpath(str(root / "Content" / "A.uasset"))
        fake_runner.respond("lfs", "lock", returncode=2, stderr="Lock exists")
        engine = _engine(root, runner=fake_runner, using_lfs_locking=True)

        result = engine.lock_files([asset])
        assert not result.success
        assert result.errors == ["Lock exists"]
        assert engine.lock_cache.get_locked_files() == {}

    def test_unlock_missing_lock_counts_as_released(self, fake_runner):
        root = fake_runner.repo_root
        asset = os.path.normpath(str(root / "Content" / "A.uasset"))
        engine = _engine(root, runner=fake_runner, using_lfs_locking=True)
        engine.lock_files([asset])

        fake_runner.respond("lfs", "unlock", returncode=2, stderr="Unable to find lock for Content/A.uasset")
        result = engine.unlock_files([asset], force=True)
        assert result.success
        assert result.errors == []
        assert fake_runner.calls_for("lfs", "unlock") == [["lfs", "unlock", "--force", "Content/A.uasset"]]
        assert engine.get_state(asset).lock_state == LockState.NOT_LOCKED
        assert engine.lock_cache.get_locked_files() == {}


class TestRemoteOperations:
    def test_fetch_refreshes_locks_first(self, fake_runner):
        engine = _engine(fake_runner.repo_root, runner=fake_runner, using_lfs_locking=True)
        result = engine.fetch_remote()
        assert result.success
        commands = [fake_runner.command_args(argv) for argv in fake_runner.calls]
        assert commands == [["lfs", "locks"], ["fetch", "--no-tags", "--prune"]]

    def test_fetch_without_locking(self, fake_runner):
        engine = _engine(fake_runner.repo_root, runner=fake_runner)
        engine.fetch_remote()
        assert fake_runner.calls_for("lfs") == []

    def test_pull_reloads_lockable_files(self, fake_runner, dispatcher):
        root = fake_runner.repo_root
        fake_runner.respond("rev-parse", stdout="origin/main\n")
        fake_runner.respond("diff", stdout="Content/A.uasset\nContent/B.uasset\nConfig/Game.ini\n")
        fake_runner.respond("pull", stdout="Updated")
        reloader = RecordingReloader()
        engine = ReconciliationEngine(
            EngineSettings(repo_root=root, lock_user="me"),
            runner=fake_runner,
            dispatcher=dispatcher,
            reloader=reloader,
        )
        a = os.path.normpath(str(root / "Content" / "A.uasset"))
        b = os.path.normpath(str(root / "Content" / "B.uasset"))

        result = engine.pull_origin(already_reloaded=[b])
        assert result.success
        assert reloader.events == [("unlink", [a]), ("reload", [a])]
        assert fake_runner.calls_for("pull") == [["pull", "--rebase", "--autostash"]]
        assert fake_runner.calls_for("diff") == [["diff", "--name-only", "origin/main"]]
        assert a in result.files
        assert b not in result.files

    def test_pull_refused_while_restart_pending(self, fake_runner):
        engine = _engine(fake_runner.repo_root, runner=fake_runner)
        engine.pending_restart = True
        result = engine.pull_origin()
        assert not result.success
        assert result.errors
        assert fake_runner.calls == []

    def test_pull_without_upstream(self, fake_runner):
        fake_runner.respond("rev-parse", returncode=128, stderr="fatal: no upstream configured")
        engine = _engine(fake_runner.repo_root, runner=fake_runner)
        result = engine.pull_origin()
        assert not result.success
        assert fake_runner.calls_for("pull") == []

    def test_nothing_to_pull(self, fake_runner):
        fake_runner.respond("rev-parse", stdout="origin/main\n")
        engine = _engine(fake_runner.repo_root, runner=fake_runner)
        assert engine.pull_origin().success
        assert fake_runner.calls_for("pull") == []

    def test_origin_revision_on_branch(self, fake_runner):
        fake_runner.respond(
            "show",
            stdout="commit " + "1" * 40 + "\nAuthor: Bob <b@x>\nDate:   1700000000 +0000\n    Tip\nM\tContent/A.uasset\n",
        )
        engine = _engine(fake_runner.repo_root, runner=fake_runner)
        revision = engine.get_origin_revision_on_branch("Content/A.uasset", "origin/main")
        assert revision.commit_id == "1" * 40
        assert revision.filename == "Content/A.uasset"


class TestLockableTypes:
    def test_refresh_from_attributes(self, fake_runner):
        fake_runner.respond(
            "check-attr",
            stdout="*.uasset: lockable: set\n*.umap: lockable: unspecified\n",
        )
        engine = _engine(fake_runner.repo_root, runner=fake_runner)
        assert engine.refresh_lockable_types() == [".uasset"]
        assert engine.is_lockable("/r/A.uasset")
        assert not engine.is_lockable("/r/M.umap")

    def test_failed_check_keeps_configured_types(self, fake_runner):
        fake_runner.respond("check-attr", returncode=1, stderr="fatal")
        engine = _engine(fake_runner.repo_root, runner=fake_runner)
        assert engine.refresh_lockable_types() == [".uasset", ".umap"]
