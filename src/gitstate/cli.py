#!/usr/bin/env python3
"""gitstate CLI - inspect source control state of a working tree."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"gitstate requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)


def _open_engine(repo: str | None):
    """Build an engine for the repository containing ``repo`` (default: cwd)."""
    from .config_loader import ConfigError, export_logging_env, load_config
    from .engine import EngineSettings, ReconciliationEngine
    from .repository import find_root_directory

    start = Path(repo) if repo else Path.cwd()
    root = find_root_directory(start)
    if root is None:
        print(f"❌ Not inside a git repository: {start}", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_config(root)
    except ConfigError as e:
        print(f"❌ Config error: {e}", file=sys.stderr)
        sys.exit(1)

    export_logging_env(config)
    return ReconciliationEngine(EngineSettings.from_config(config, root))


def _print_errors(errors: list[str]) -> None:
    for line in errors:
        print(f"  ⚠ {line}", file=sys.stderr)


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(
        prog="gitstate",
        description="Source control state for asset repositories",
    )

    sub = ap.add_subparsers(dest="cmd")

    p_status = sub.add_parser("status", help="Reconcile and show file states")
    p_status.add_argument("paths", nargs="*", help="Files or directories (default: repository root)")
    p_status.add_argument("--repo", help="Path inside the repository (default: current directory)")
    p_status.add_argument("--json", dest="as_json", action="store_true", help="Output as JSON")
    p_status.add_argument("--changed", action="store_true", help="Only show files with local or remote changes")

    p_locks = sub.add_parser("locks", help="List git-lfs locks")
    p_locks.add_argument("--repo", help="Path inside the repository (default: current directory)")
    p_locks.add_argument("--json", dest="as_json", action="store_true", help="Output as JSON")

    p_history = sub.add_parser("history", help="Show revision history of a file")
    p_history.add_argument("file")
    p_history.add_argument("--repo", help="Path inside the repository (default: current directory)")
    p_history.add_argument("--json", dest="as_json", action="store_true", help="Output as JSON")

    p_remote = sub.add_parser("check-remote", help="List content changed on watched remote branches")
    p_remote.add_argument("--repo", help="Path inside the repository (default: current directory)")
    p_remote.add_argument("--fetch", action="store_true", help="Fetch before comparing")

    p_config = sub.add_parser("config", help="Configuration management")
    config_sub = p_config.add_subparsers(dest="config_cmd")

    p_config_show = config_sub.add_parser("show", help="Show resolved configuration")
    p_config_show.add_argument("--project-path", help="Project directory for config discovery")
    p_config_show.add_argument("--json", dest="as_json", action="store_true", help="Output as JSON")
    p_config_show.add_argument("--sources", action="store_true", help="Show config source files")

    p_config_validate = config_sub.add_parser("validate", help="Validate configuration files")
    p_config_validate.add_argument("--project-path", help="Project directory for config discovery")
    p_config_validate.add_argument("--strict", action="store_true", help="Treat warnings as errors")

    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(0)

    if args.cmd == "status":
        from .states import FileState, RemoteState, TreeState

        engine = _open_engine(args.repo)
        paths = args.paths or [str(engine.repo_root)]
        try:
            result = engine.run_update_status(paths)
        finally:
            engine.shutdown()

        records = sorted(result.states.values(), key=lambda r: r.filename)
        if args.changed:
            records = [
                r for r in records
                if r.file_state not in (FileState.UNMODIFIED, FileState.UNKNOWN)
                or r.tree_state == TreeState.UNTRACKED
                or r.remote_state != RemoteState.UP_TO_DATE
            ]

        if args.as_json:
            print(json.dumps(
                {
                    "success": result.success,
                    "pending_restart": result.pending_restart,
                    "files": [r.to_dict() for r in records],
                    "errors": result.errors,
                },
                indent=2,
            ))
        else:
            from .repository import get_branch_name

            print(f"On {get_branch_name(engine.repo_root)}")
            for record in records:
                rel = Path(record.filename).relative_to(engine.repo_root).as_posix()
                line = f"{record.file_state.value:<10} {record.tree_state.value:<11} {rel}"
                if record.lock_user:
                    line += f"  [{record.lock_state.value}: {record.lock_user}]"
                if record.head_branch:
                    line += f"  ({record.remote_state.value} on {record.head_branch})"
                print(line)
            if result.pending_restart:
                print("Editor binaries changed upstream; restart required before pulling.")
            _print_errors(result.errors)
        sys.exit(0 if result.success else 1)

    if args.cmd == "locks":
        engine = _open_engine(args.repo)
        errors: list[str] = []
        try:
            locks = engine.get_all_locks(invalidate=True, errors=errors)
        finally:
            engine.shutdown()

        if args.as_json:
            print(json.dumps({"locks": locks, "errors": errors}, indent=2))
        else:
            if not locks:
                print("No locks.")
            for path, user in sorted(locks.items()):
                owner = " (you)" if user == engine.operator else ""
                print(f"{user}{owner}\t{path}")
            _print_errors(errors)
        sys.exit(0)

    if args.cmd == "history":
        engine = _open_engine(args.repo)
        errors = []
        try:
            success, revisions = engine.get_history(args.file, errors=errors)
        finally:
            engine.shutdown()

        if args.as_json:
            print(json.dumps([r.to_dict() for r in revisions], indent=2))
        else:
            for revision in revisions:
                date = revision.date.strftime("%Y-%m-%d %H:%M") if revision.date else "?"
                summary = revision.description.strip().splitlines()[0] if revision.description.strip() else ""
                print(f"#{revision.revision_number:<4} {revision.short_commit_id} {date} {revision.user_name:<20} {revision.action:<8} {summary}")
            _print_errors(errors)
        sys.exit(0 if success else 1)

    if args.cmd == "check-remote":
        from .remote import find_newer_files
        from .repository import get_current_upstream

        engine = _open_engine(args.repo)
        try:
            if args.fetch:
                fetched = engine.fetch_remote()
                if not fetched.success:
                    _print_errors(fetched.errors)
                    sys.exit(1)
            upstream = get_current_upstream(engine.runner)
            check = find_newer_files(
                engine.runner,
                status_branches=engine.settings.status_branches,
                current_upstream=upstream,
                content_dirs=engine.settings.content_dirs,
                is_lockable=engine.is_lockable,
            )
        finally:
            engine.shutdown()

        if not check.newer_files:
            print("Content is up to date with watched branches.")
        for path, branch in sorted(check.newer_files.items()):
            rel = Path(path).relative_to(engine.repo_root).as_posix()
            print(f"{branch}\t{rel}")
        if check.pending_restart:
            print("Editor binaries changed upstream; restart required before pulling.")
        _print_errors(check.errors)
        sys.exit(0)

    if args.cmd == "config":
        if not args.config_cmd:
            print("Usage: gitstate config {show|validate}")
            sys.exit(0)

        if args.config_cmd == "show":
            from .config_loader import ConfigError, get_config_paths, load_config

            project_path = Path(args.project_path) if args.project_path else None

            if args.sources:
                paths = get_config_paths(project_path)
                print("Config sources (in priority order):")
                print()
                for name, path in paths.items():
                    if path and path.exists():
                        print(f"  ✓ {name}: {path}")
                    elif path:
                        print(f"  ✗ {name}: {path} (not found)")
                    else:
                        print(f"  - {name}: (not applicable)")
                print()
                print("Environment variables override all file configs.")
                sys.exit(0)

            try:
                config = load_config(project_path)
            except ConfigError as e:
                print(f"❌ Config error: {e}", file=sys.stderr)
                sys.exit(1)

            if args.as_json:
                print(json.dumps(config.model_dump(), indent=2))
            else:
                import tomlkit

                doc = tomlkit.document()
                doc.add(tomlkit.comment(" gitstate configuration (resolved)"))
                doc.add(tomlkit.nl())
                for section, values in config.model_dump().items():
                    if isinstance(values, dict):
                        table = tomlkit.table()
                        for key, val in values.items():
                            table.add(key, val)
                        doc.add(section, table)
                    else:
                        doc.add(section, values)
                print(tomlkit.dumps(doc))
            sys.exit(0)

        if args.config_cmd == "validate":
            from .config_loader import ConfigError, get_config_paths, load_config

            project_path = Path(args.project_path) if args.project_path else None
            paths = get_config_paths(project_path)

            errors = []
            warnings = []

            found_any = False
            for name, path in paths.items():
                if path and path.exists():
                    found_any = True
                    print(f"  ✓ Found: {path}")

            if not found_any:
                warnings.append("No config files found. Using defaults.")

            try:
                config = load_config(project_path)
                print()
                print("✓ Configuration is valid.")

                if config.locking.use_lfs_locking and not config.locking.lockable_patterns:
                    warnings.append("use_lfs_locking=true but no lockable_patterns are configured.")
                if config.locking.cache_ttl == 0:
                    warnings.append("cache_ttl=0: every status pass queries the lock server.")
            except ConfigError as e:
                errors.append(str(e))

            if warnings:
                print()
                print("Warnings:")
                for w in warnings:
                    print(f"  ⚠ {w}")

            if errors:
                print()
                print("Errors:", file=sys.stderr)
                for e in errors:
                    print(f"  ❌ {e}", file=sys.stderr)
                sys.exit(1)

            if args.strict and warnings:
                print()
                print("--strict: Treating warnings as errors.", file=sys.stderr)
                sys.exit(1)

            sys.exit(0)

    ap.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
