"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import logging as py_logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TextIO

from pydantic import ValidationError

from .config import AppConfig, load_config, render_config, save_config
from .errors import AgentSquadError, ExitCode, user_facing_error
from .git.repository import is_valid_repository
from .logging import configure_logging, default_log_path
from .orchestrator import SquadOrchestrator
from .tmux.bootstrap import ensure_tmux

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")

OrchestratorFactory = Callable[[AppConfig], SquadOrchestrator]


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _title_type(value: str) -> str:
    if not value.strip():
        raise argparse.ArgumentTypeError("title must not be empty")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentsquad")
    parser.add_argument("--log-level", type=_log_level_type, default=None)
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("--config", type=Path, default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    new = commands.add_parser("new", help="Create an instance in a fresh worktree")
    new.add_argument("title", type=_title_type)
    new.add_argument("--path", type=Path, default=Path("."))
    new.add_argument("--program", default=None)
    new.add_argument("--branch", default="")
    new.add_argument("--auto-yes", action="store_true", default=None)

    listing = commands.add_parser("list", help="List instances")
    listing.add_argument("--all", action="store_true", help="Ignore the selected repository filter")

    attach = commands.add_parser("attach", help="Attach to an instance's tmux window")
    attach.add_argument("title")
    attach.add_argument("--terminal", action="store_true", help="Attach to the shell window instead")

    for name in ("pause", "resume"):
        sub = commands.add_parser(name, help=f"{name.capitalize()} an instance")
        sub.add_argument("title")

    kill = commands.add_parser("kill", help="Kill an instance and remove its worktree")
    kill.add_argument("title")
    kill.add_argument("--force", action="store_true", help="Kill even with uncommitted changes")

    prompt = commands.add_parser("prompt", help="Send a prompt to an instance")
    prompt.add_argument("title")
    prompt.add_argument("text")

    preview = commands.add_parser("preview", help="Print an instance's pane content")
    preview.add_argument("title")
    source = preview.add_mutually_exclusive_group()
    source.add_argument("--history", action="store_true", help="Include the full scrollback")
    source.add_argument("--terminal", action="store_true", help="Capture the shell window instead")

    diff = commands.add_parser("diff", help="Show an instance's diff against its base commit")
    diff.add_argument("title")

    repos = commands.add_parser("repos", help="Manage known repositories")
    repo_commands = repos.add_subparsers(dest="repos_command", required=True)
    repo_commands.add_parser("list")
    for name in ("add", "remove", "select"):
        sub = repo_commands.add_parser(name)
        sub.add_argument("path", type=Path)
    scan = repo_commands.add_parser("scan", help="Register every git repository below a directory")
    scan.add_argument("root", type=Path)
    repo_commands.add_parser("cleanup", help="Drop repositories whose path is no longer valid")
    repo_commands.add_parser("compact", help="Drop invalid repositories without instances")

    commands.add_parser("reset", help="Kill every instance and clear stored instances")

    settings = commands.add_parser("config", help="Show or change settings in the config file")
    config_commands = settings.add_subparsers(dest="config_command", required=True)
    config_commands.add_parser("show")
    config_set = config_commands.add_parser("set")
    config_set.add_argument("key", choices=sorted(AppConfig.model_fields))
    config_set.add_argument("value")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


def _print_instances(orchestrator: SquadOrchestrator, *, show_all: bool, out: TextIO) -> None:
    collection = orchestrator.collection
    rows = collection.display_rows(include_all=show_all)
    if collection.tabs.should_show and not show_all:
        print(f"[{collection.tabs.selected_name}]", file=out)
    if not rows:
        print("No instances.", file=out)
        return
    for row in rows:
        marker = "*" if row.selected else " "
        diff = f"+{row.added} -{row.removed}"
        print(f"{marker} {row.title}\t{row.status.value}\t{row.branch}\t{row.repo_name}\t{diff}", file=out)


def _run_repos(namespace: argparse.Namespace, orchestrator: SquadOrchestrator, out: TextIO) -> None:
    action = namespace.repos_command
    if action == "list":
        selected = orchestrator.registry.selected_repository
        repos = orchestrator.repositories()
        if not repos:
            print("No repositories.", file=out)
        for repo in repos:
            marker = "*" if repo.path == selected else " "
            missing = "" if is_valid_repository(repo.path) else "\t(missing)"
            print(f"{marker} {repo.name}\t{repo.instance_count}\t{repo.path}{missing}", file=out)
    elif action == "add":
        repo = orchestrator.add_repository(namespace.path)
        print(f"Added {repo.name}: {repo.path}", file=out)
    elif action == "remove":
        removal = orchestrator.remove_repository(namespace.path)
        print(f"Removed {removal.path} (orphaned instances dropped: {removal.orphaned})", file=out)
        for worktree in removal.worktrees:
            print(f"  worktree left in place: {worktree}", file=out)
        for session in removal.sessions:
            print(f"  tmux session left running: {session}", file=out)
    elif action == "select":
        selected = orchestrator.select_repository(namespace.path)
        print(f"Selected {selected}", file=out)
    elif action == "scan":
        added = orchestrator.scan_repositories(namespace.root)
        for repo in added:
            print(f"Added {repo.name}: {repo.path}", file=out)
        print(f"Registered {len(added)} new repositories", file=out)
    elif action == "cleanup":
        print(f"Removed {orchestrator.cleanup_repositories()} invalid repositories", file=out)
    elif action == "compact":
        print(f"Removed {orchestrator.compact_repositories()} empty invalid repositories", file=out)


def _run_config(namespace: argparse.Namespace, config: AppConfig, out: TextIO) -> None:
    if namespace.config_command == "show":
        print(render_config(config), end="", file=out)
        return
    try:
        setattr(config, namespace.key, namespace.value)
    except ValidationError as exc:
        raise AgentSquadError(
            f"Invalid value for {namespace.key}: {namespace.value!r}",
            code=ExitCode.CONFIG_ERROR,
            hint=exc.errors()[0]["msg"],
        ) from exc
    path = save_config(config, namespace.config)
    print(f"Saved {namespace.key} = {getattr(config, namespace.key)!r} to {path}", file=out)


def run_command(namespace: argparse.Namespace, orchestrator: SquadOrchestrator, out: TextIO) -> int:
    command = namespace.command
    if command == "repos":
        _run_repos(namespace, orchestrator, out)
        return int(ExitCode.SUCCESS)

    if command in ("new", "attach", "resume"):
        ensure_tmux(runner=orchestrator.toolchain.runner)
    orchestrator.load()

    if command == "new":
        instance = orchestrator.create_instance(
            namespace.title,
            path=namespace.path,
            program=namespace.program,
            branch=namespace.branch,
            auto_yes=namespace.auto_yes,
        )
        print(f"Created {instance.title} on branch {instance.branch}", file=out)
    elif command == "list":
        orchestrator.refresh()
        _print_instances(orchestrator, show_all=namespace.all, out=out)
    elif command == "attach":
        finished = orchestrator.attach(namespace.title, terminal=namespace.terminal)
        finished.wait()
    elif command == "pause":
        orchestrator.pause_instance(namespace.title)
        print(f"Paused {namespace.title}", file=out)
    elif command == "resume":
        orchestrator.resume_instance(namespace.title)
        print(f"Resumed {namespace.title}", file=out)
    elif command == "kill":
        instance = orchestrator.get(namespace.title)
        worktree = instance.worktree
        if not namespace.force and worktree is not None and worktree.exists() and worktree.is_dirty():
            raise AgentSquadError(
                f"Instance '{namespace.title}' has uncommitted changes.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Commit or stash the changes, or pass --force.",
            )
        orchestrator.kill_instance(namespace.title)
        print(f"Killed {namespace.title}", file=out)
    elif command == "prompt":
        orchestrator.send_prompt(namespace.title, namespace.text)
    elif command == "preview":
        content = orchestrator.preview(namespace.title, history=namespace.history, terminal=namespace.terminal)
        print(content, end="" if content.endswith("\n") else "\n", file=out)
    elif command == "diff":
        stats = orchestrator.diff(namespace.title)
        if stats.error is not None:
            raise AgentSquadError(f"Diff unavailable: {stats.error}")
        if stats.is_empty:
            print("No changes.", file=out)
        else:
            print(f"+{stats.added} -{stats.removed}", file=out)
            print(stats.content, end="" if stats.content.endswith("\n") else "\n", file=out)
    elif command == "reset":
        killed = orchestrator.reset()
        print(f"Reset: killed {killed} instances", file=out)
    return int(ExitCode.SUCCESS)


def main(
    argv: Sequence[str] | None = None,
    *,
    orchestrator_factory: OrchestratorFactory | None = None,
    out: TextIO | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    config = load_config(namespace.config)
    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level or config.log_level, log_file=log_path)

    factory = orchestrator_factory or SquadOrchestrator
    try:
        logger.debug("Starting command=%s", namespace.command)
        if namespace.command == "config":
            _run_config(namespace, config, out or sys.stdout)
            return int(ExitCode.SUCCESS)
        with factory(config) as orchestrator:
            return run_command(namespace, orchestrator, out or sys.stdout)
    except AgentSquadError as exc:
        logger.error(
            "Handled AgentSquadError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        print(user_facing_error("Unexpected runtime failure", hint=f"Inspect logs: {log_path}"), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
