"""CLI for scaffolding and driving a Nest devkit workspace."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .config import NestConfig
from .errors import NestError
from .pipeline import Orchestrator, list_projects, project_target, view_url
from .progress import ConsoleProgress
from .settings import SettingsStore, is_project
from .topology import find_root_folder

logger = logging.getLogger(__name__)

VIEW_KINDS = {"data": "storage", "queue": "batch", "cicd": "build"}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stderr,
    )


def _ask_user(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [yes/no] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _folder(args: argparse.Namespace) -> Path:
    return Path(args.dir).resolve()


def _install_interrupt(loop: asyncio.AbstractEventLoop, orchestrator: Orchestrator) -> bool:
    """Route Ctrl-C to the orchestrator's cancel event while a command runs."""

    def _interrupt() -> None:
        logger.warning("Interrupted, stopping the running commands ...")
        orchestrator.request_cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, _interrupt)
    except (NotImplementedError, RuntimeError):
        # no loop signal handlers on Windows, Ctrl-C stays a KeyboardInterrupt
        return False
    return True


def _run(
    args: argparse.Namespace,
    root: Path,
    operation: Callable[[Orchestrator], Awaitable[Any]],
) -> Any:
    async def _main() -> Any:
        orchestrator = Orchestrator(
            root,
            config=NestConfig.from_env(command_timeout=args.timeout),
            progress=ConsoleProgress(),
            confirm=None if args.yes else _ask_user,
            cancel=asyncio.Event(),
        )
        loop = asyncio.get_running_loop()
        installed = _install_interrupt(loop, orchestrator)
        try:
            return await operation(orchestrator)
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(_main())


def cmd_scaffold_up(args: argparse.Namespace) -> int:
    folder = _folder(args)
    if is_project(folder):
        raise NestError("Run the scaffold command from the root folder.")
    batch = _run(args, find_root_folder(folder), lambda o: o.scaffold_up())
    print(f"[scaffold] {len(batch.results)} services ready.")
    return 0


def cmd_scaffold_down(args: argparse.Namespace) -> int:
    folder = _folder(args)
    if is_project(folder):
        raise NestError("Run the scaffold command from the root folder.")
    _run(args, find_root_folder(folder), lambda o: o.scaffold_down())
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    _run(args, find_root_folder(_folder(args)), lambda o: o.reset())
    return 0


def _project_command(name: str) -> Callable[[argparse.Namespace], int]:
    def _command(args: argparse.Namespace) -> int:
        folder = _folder(args)
        _run(args, find_root_folder(folder), lambda o: getattr(o, name)(folder))
        return 0

    _command.__name__ = f"cmd_{name}"
    return _command


def cmd_unit_test_debug_host(args: argparse.Namespace) -> int:
    folder = _folder(args)
    pid = _run(args, find_root_folder(folder), lambda o: o.unit_test_debug_host(folder))
    print(pid)
    return 0


def cmd_kick(args: argparse.Namespace) -> int:
    root = find_root_folder(_folder(args))
    if args.target == "ci":
        _run(args, root, lambda o: o.kick_ci())
    else:
        _run(args, root, lambda o: o.kick_cd())
    return 0


def cmd_view(args: argparse.Namespace) -> int:
    settings = SettingsStore(find_root_folder(_folder(args))).load()
    url, login = view_url(settings, VIEW_KINDS[args.target])
    print(f"[view {args.target}] {login}")
    print(url)
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    settings = SettingsStore(find_root_folder(_folder(args))).load()
    for name in list_projects(settings):
        print(name)
    return 0


def cmd_select(args: argparse.Namespace) -> int:
    root = find_root_folder(_folder(args))
    settings = SettingsStore(root).load()
    print(project_target(root, settings, args.name))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nest", description=__doc__)
    parser.add_argument(
        "--dir", default=".", help="Workspace root or project folder (default: cwd)"
    )
    parser.add_argument(
        "--yes", "-y", action="store_true", help="Answer yes to every confirmation"
    )
    parser.add_argument(
        "--timeout", type=float, help="Seconds before a subprocess is killed"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- Whole nest ---
    scaffold = subparsers.add_parser("scaffold", help="Create or remove the nest")
    scaffold_subs = scaffold.add_subparsers(dest="scaffold_command", required=True)
    scaffold_subs.add_parser(
        "up", help="Compose the containers and provision every project"
    ).set_defaults(func=cmd_scaffold_up)
    scaffold_subs.add_parser(
        "down", help="Stop the containers and remove all local assets"
    ).set_defaults(func=cmd_scaffold_down)

    subparsers.add_parser(
        "reset", help="Restart the containers and rebuild every project"
    ).set_defaults(func=cmd_reset)

    # --- Single project ---
    project_commands = [
        ("pull", "pull", "Replace the local source with the remote source"),
        ("push", "push", "Upload the project and shared source"),
        ("deploy", "deploy", "Release build and restart the remote services"),
        ("restore", "restore", "Restore the project packages"),
        ("build", "build", "Build the project and kick off a CI session"),
        ("clean", "clean", "Clean the project build output"),
        ("clear", "clear", "Clear the project deployment"),
        ("kill", "kill", "Kill the running nests"),
        ("unit-test-build", "unit_test_build", "Clean build the unit tests"),
    ]
    for command, name, help_text in project_commands:
        subparsers.add_parser(command, help=help_text).set_defaults(
            func=_project_command(name)
        )

    subparsers.add_parser(
        "unit-test-debug-host", help="Print the process id of the unit test host"
    ).set_defaults(func=cmd_unit_test_debug_host)

    data = subparsers.add_parser("data", help="Move the project database")
    data_subs = data.add_subparsers(dest="data_command", required=True)
    data_subs.add_parser("up", help="Upload the local database").set_defaults(
        func=_project_command("data_up")
    )
    data_subs.add_parser(
        "down", help="Replace the local database from production"
    ).set_defaults(func=_project_command("data_down"))

    # --- Services ---
    view = subparsers.add_parser("view", help="Show the URL of a service console")
    view.add_argument("target", choices=sorted(VIEW_KINDS))
    view.set_defaults(func=cmd_view)

    kick = subparsers.add_parser("kick", help="Kick off a CI or CD session")
    kick.add_argument("target", choices=["ci", "cd"])
    kick.set_defaults(func=cmd_kick)

    subparsers.add_parser("list", help="List the projects of the nest").set_defaults(
        func=cmd_list
    )
    select = subparsers.add_parser("select", help="Print the folder of a project")
    select.add_argument("name", help="Project key or 'shared'")
    select.set_defaults(func=cmd_select)

    help_parser = subparsers.add_parser("help", help="Show this help")
    help_parser.set_defaults(func=lambda args: parser.print_help() or 0)

    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    try:
        result = args.func(args)
    except NestError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("interrupted")
        print("Interrupted.", file=sys.stderr)
        return 130
    # Commands may return an exit code; treat None as success
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    raise SystemExit(main())
