# pyright: standard

"""backup-runner: backup_runner/__logger__.py
A common logger for displaying through rich.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

# Initialize basic console and handler
cons = Console(stderr=True)
rich_handler = RichHandler(console=cons, show_path=False)
logger = logging.getLogger("backup_runner")


def create_logger(level: str = "INFO") -> None:
    """Helper function to setup logging for the CLI.

    Everything under the ``backup_runner`` logger goes through a rich handler
    on stderr; third party libraries only report warnings and above.
    """
    # pylint: disable=global-statement
    global cons, rich_handler

    cons = Console(stderr=True)
    rich_handler = RichHandler(console=cons, show_path=False)

    logger.handlers.clear()
    logger.propagate = False
    logger.addHandler(rich_handler)
    logger.setLevel(level)

    logging.basicConfig(
        format="%(message)s",
        datefmt="%H:%M:%S",
        level=logging.WARNING,
        handlers=[rich_handler],
        force=True,
    )
