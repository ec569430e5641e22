"""CLI dispatcher.

Builds the subcommand parser and routes to the command handlers.
"""

import argparse
import sys
from typing import Callable

from .common import add_verbosity_args, load_env_file


def create_subcommand_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="backup-runner",
        description="Run backup jobs through an external transfer tool and report the outcome",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    add_verbosity_args(parser)

    parser.add_argument(
        "-V",
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Path to configuration file",
    )

    parser.add_argument(
        "--env-file",
        metavar="FILE",
        help="Load environment variables from FILE (default: nearest .env)",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="Available commands (use 'command --help' for details)",
    )

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Execute all configured backup jobs",
        description="Run every enabled job, retrying failures, then send a summary",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be run without running anything",
    )
    run_parser.add_argument(
        "--concurrency",
        type=int,
        metavar="N",
        help="Max concurrent jobs (overrides config)",
    )
    run_parser.add_argument(
        "--no-notify",
        action="store_true",
        help="Do not send the summary notification",
    )

    # config command with subcommands
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Validate or initialize configuration",
    )
    config_subs = config_parser.add_subparsers(dest="config_action")

    config_subs.add_parser(
        "validate",
        help="Validate configuration file",
    )

    init_parser = config_subs.add_parser(
        "init",
        help="Generate example configuration",
    )
    init_parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help="Output file (default: stdout)",
    )

    return parser


def cmd_run(args: argparse.Namespace) -> int:
    """Execute run command."""
    from .run import execute_run

    return execute_run(args)


def cmd_config(args: argparse.Namespace) -> int:
    """Execute config command."""
    from .config_cmd import execute_config

    return execute_config(args)


def run_subcommand(args: argparse.Namespace) -> int:
    """Run the specified subcommand.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    from .. import __version__

    if args.version:
        print(f"backup-runner {__version__}")
        return 0

    if not args.command:
        print("No command specified. Use --help for usage information.")
        return 1

    handlers: dict[str, Callable[[argparse.Namespace], int]] = {
        "run": cmd_run,
        "config": cmd_config,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        print(f"Unknown command: {args.command}")
        return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point for backup-runner CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    from ..core.coordinator import EXIT_CONFIG_ERROR

    if argv is None:
        argv = sys.argv[1:]

    parser = create_subcommand_parser()
    args = parser.parse_args(argv)

    try:
        load_env_file(args.env_file)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    return run_subcommand(args)
