# run.py
# CLI entry point. Config and wiring only; the work happens in orchestrator.py.
#
#   ut-agent --init                 write .ut_agent/agent.toml from defaults
#   ut-agent run src/pkg/mod.py     generate tests for one or more files
#   ut-agent check                  probe the configured LLM endpoint

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from rich.logging import RichHandler

from ut_agent import display

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=display.console, rich_tracebacks=True, show_path=verbose)],
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _project_root(targets: list[str]) -> Path:
    from ut_agent.orchestrator import find_project_root

    for target in targets:
        root = find_project_root(Path(target))
        if root is not None:
            return root
    return Path.cwd()


def _run(args: argparse.Namespace) -> int:
    from ut_agent.config import load_config
    from ut_agent.orchestrator import GenerationOrchestrator

    try:
        config = load_config(_project_root(args.targets))
    except ValueError as exc:
        display.halt(str(exc))
        return 2
    if args.iterative is not None:
        config.workflow.iterative_mode = args.iterative
    if args.stream is not None:
        config.workflow.stream = args.stream
    if args.dry_run:
        config.batch.dry_run = True

    display.banner(_get_version(), config.llm.model_name, str(config.project_root))
    try:
        orchestrator = GenerationOrchestrator(config)
    except ValueError as exc:
        display.halt(str(exc))
        return 2

    # Targets are named relative to where the user stands, not the project root.
    targets = [Path(target).resolve() for target in args.targets]
    if len(targets) == 1 and not config.batch.dry_run:
        report = orchestrator.run(targets[0], args.context)
        return 0 if report.success else 1

    reports = orchestrator.run_batch(targets)
    return 0 if all(r.success for r in reports) else 1


def _check() -> int:
    from ut_agent.config import load_config
    from ut_agent.llm import create_adapter

    config = load_config(Path.cwd())
    try:
        adapter = create_adapter(config.llm)
    except ValueError as exc:
        display.halt(str(exc))
        return 2
    try:
        ok = adapter.test_connection()
    finally:
        adapter.close()
    if not ok:
        display.halt(f"Could not reach {config.llm.model_name}")
        return 1
    print(f"{config.llm.model_name}: OK")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the ut-agent CLI."""
    parser = argparse.ArgumentParser(
        prog="ut-agent",
        description="Generate, verify and repair unit tests with an LLM agent",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Generate .ut_agent/agent.toml from source defaults",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Generate tests for target files")
    run_parser.add_argument("targets", nargs="+", help="Source files to cover")
    run_parser.add_argument(
        "--iterative",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Per-method generation with verification (default: from config)",
    )
    run_parser.add_argument(
        "--stream",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Stream model output to the terminal (default: from config)",
    )
    run_parser.add_argument("--context", default=None, help="Extra instructions for the agent")
    run_parser.add_argument("--dry-run", action="store_true", help="List targets without running")
    run_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    check_parser = subparsers.add_parser("check", help="Test the LLM connection")
    check_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    _args = parser.parse_args(argv)

    if _args.init:
        from ut_agent.config import init_config

        path = init_config(Path.cwd())
        print(f"Wrote {path}")
        return 0

    if _args.command is None:
        parser.print_help()
        return 0

    _setup_logging(_args.verbose)
    if _args.command == "run":
        return _run(_args)
    return _check()


def _get_version() -> str:
    from ut_agent import __version__

    return __version__


if __name__ == "__main__":
    sys.exit(main())
