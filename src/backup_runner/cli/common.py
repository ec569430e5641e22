"""Shared CLI utilities and argument parsers."""

import argparse
import logging
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)


def add_verbosity_args(parser: argparse.ArgumentParser) -> None:
    """Add verbosity-related arguments to a parser."""
    group = parser.add_argument_group("Output options")
    group.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    group.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )
    group.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output, including transfer command output",
    )


def get_log_level(args: argparse.Namespace) -> str:
    """Determine log level from parsed arguments.

    Args:
        args: Parsed command line arguments

    Returns:
        Log level string (DEBUG, INFO, WARNING, ERROR)
    """
    if getattr(args, "debug", False):
        return "DEBUG"
    elif getattr(args, "quiet", False):
        return "WARNING"
    elif getattr(args, "verbose", False):
        return "DEBUG"
    else:
        return "INFO"


def load_env_file(env_file: str | None = None) -> bool:
    """Load environment variables from a .env file.

    An explicit file must exist. Without one, the nearest .env file from the
    working directory upwards is used if there is any. Variables already set
    in the environment win.

    Returns:
        True if a file was loaded

    Raises:
        FileNotFoundError: If ``env_file`` does not exist
    """
    if env_file:
        if not Path(env_file).is_file():
            raise FileNotFoundError(f"Can not load .env file from '{env_file}'")
        load_dotenv(env_file, override=False)
        return True

    found = find_dotenv(usecwd=True)
    if not found:
        logger.debug("No .env file detected")
        return False
    load_dotenv(found, override=False)
    return True
