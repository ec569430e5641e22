"""Run command: Execute all configured backup jobs."""

import argparse
import logging
import shlex
import signal
import threading

from rich.console import Console
from rich.table import Table

from .. import __util__
from ..__logger__ import create_logger
from ..config import Config, ConfigError, find_config_file, load_config
from ..core.coordinator import EXIT_CONFIG_ERROR, EXIT_OK, RunCoordinator
from .common import get_log_level

logger = logging.getLogger(__name__)


def _config_loader(args: argparse.Namespace):
    """Return a callable loading the configuration selected by ``args``."""

    def load() -> Config:
        config_path = find_config_file(getattr(args, "config", None))
        if config_path is None:
            raise ConfigError(
                "No configuration file found. Create one with: backup-runner config init"
            )

        logger.info("Loading configuration from: %s", config_path)
        config, warnings = load_config(config_path)

        for warning in warnings:
            logger.warning("Config: %s", warning)
        return config

    return load


def execute_run(args: argparse.Namespace) -> int:
    """Execute the run command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    log_level = get_log_level(args)
    create_logger(log_level)

    load = _config_loader(args)

    if getattr(args, "dry_run", False):
        try:
            config = load()
        except ConfigError as e:
            logger.error("Configuration error: %s", e)
            return EXIT_CONFIG_ERROR
        return _dry_run(config, getattr(args, "concurrency", None))

    cancel = threading.Event()
    coordinator = RunCoordinator(
        load,
        cancel=cancel,
        concurrency=getattr(args, "concurrency", None),
        notify=not getattr(args, "no_notify", False),
    )

    def on_sigterm(signum, frame):
        logger.warning("Received signal %d, cancelling run", signum)
        cancel.set()

    previous = signal.signal(signal.SIGTERM, on_sigterm)
    try:
        return coordinator.run()
    finally:
        signal.signal(signal.SIGTERM, previous)


def _dry_run(config: Config, concurrency: int | None = None) -> int:
    """Show what would be done without running anything."""
    console = Console()
    glob = config.global_config

    console.print("Dry run mode - showing what would be run:")
    console.print(
        f"Concurrency: {concurrency or glob.concurrency}, "
        f"backoff: {glob.backoff_base:g}s doubling up to {glob.backoff_max:g}s"
    )

    table = Table(show_header=True, header_style="bold")
    table.add_column("Job")
    table.add_column("Command")
    table.add_column("Timeout", justify="right")
    table.add_column("Attempts", justify="right")
    jobs = config.build_jobs()
    for job in jobs:
        table.add_row(
            job.name,
            shlex.join(job.argv),
            __util__.format_duration(job.timeout),
            str(job.max_attempts),
        )
    console.print(table)

    for job in jobs:
        if job.rotation:
            console.print(
                f"Rotation: {job.name} keeps the {job.rotation.keep} newest file(s) in {job.rotation.remote}"
            )

    for job in config.jobs:
        if not job.enabled:
            console.print(f"[dim]Disabled: {job.name}[/dim]")

    if config.notify.enabled:
        console.print(f"Summary would be sent to {config.notify.url}")
    else:
        console.print("No notification configured")

    return EXIT_OK
