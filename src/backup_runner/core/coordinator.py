"""Top level orchestration of a backup run.

Loading configuration, scheduling, aggregating and notifying happen in that
order. Only a configuration problem ends a run before its jobs have been
scheduled; every other outcome goes through the notifier.
"""

import logging
import threading
import time
from functools import partial
from typing import Callable

from filelock import FileLock, Timeout

from .. import __util__
from ..config import Config, ConfigError
from ..notify import NotificationDeliveryError, Notifier
from .models import RunSummary
from .retry import execute_job
from .scheduler import run_all

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_JOBS_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


class RunCoordinator:
    """Run every configured job once and report the outcome.

    Args:
        load: Callable returning the validated Config, raising ConfigError
        notifier_factory: Builds a notifier from the [notify] settings
        cancel: Event cancelling the run when set
        concurrency: Overrides the configured concurrency limit
        notify: Set to False to only log the summary
    """

    def __init__(
        self,
        load: Callable[[], Config],
        *,
        notifier_factory: Callable[..., Notifier] = Notifier,
        cancel: threading.Event | None = None,
        concurrency: int | None = None,
        notify: bool = True,
    ) -> None:
        self.load = load
        self.notifier_factory = notifier_factory
        self.cancel = cancel if cancel is not None else threading.Event()
        self.concurrency = concurrency
        self.notify = notify
        self.summary: RunSummary | None = None
        self.state = "idle"

    def run(self) -> int:
        """Execute the run and return the process exit code."""
        self.state = "loading"
        try:
            config = self.load()
            if self.concurrency is not None and self.concurrency < 1:
                raise ConfigError("Concurrency must be >= 1")
        except ConfigError as e:
            logger.error("Configuration error: %s", e)
            self.state = "terminated"
            return EXIT_CONFIG_ERROR

        lock_file = config.global_config.lock_file
        if not lock_file:
            return self._run(config)

        lock = FileLock(lock_file)
        try:
            lock.acquire(timeout=0)
        except Timeout:
            logger.error("Another run holds the lock %s, not starting", lock_file)
            self.state = "terminated"
            return EXIT_CONFIG_ERROR
        except OSError as e:
            logger.error("Cannot create lock file %s: %s", lock_file, e)
            self.state = "terminated"
            return EXIT_CONFIG_ERROR
        try:
            return self._run(config)
        finally:
            lock.release()

    def _run(self, config: Config) -> int:
        jobs = config.build_jobs()
        concurrency = self.concurrency or config.global_config.concurrency

        self.state = "scheduling"
        logger.info(__util__.log_heading(f"Started at {time.ctime()}"))
        summary = run_all(
            jobs,
            concurrency,
            cancel=self.cancel,
            execute=partial(
                execute_job,
                policy=config.global_config.retry_policy(),
                tail_bytes=config.global_config.tail_bytes,
            ),
        )

        self.state = "aggregating"
        self.summary = summary
        self._log_summary(summary)

        self.state = "notifying"
        self._notify(config, summary)

        self.state = "terminated"
        if summary.overall_succeeded:
            return EXIT_OK
        return EXIT_INTERRUPTED if summary.cancelled else EXIT_JOBS_FAILED

    def _log_summary(self, summary: RunSummary) -> None:
        logger.info(__util__.log_heading(f"Finished at {time.ctime()}"))
        for result in summary.results:
            if result.succeeded:
                logger.info(
                    "  %s: succeeded in %s",
                    result.job_name,
                    __util__.format_duration(result.total_duration),
                )
            else:
                logger.error(
                    "  %s: failed after %d attempt(s)",
                    result.job_name,
                    len(result.attempts),
                )
        for name in summary.skipped:
            logger.warning("  %s: skipped", name)

        failed = len(summary.failed_results)
        if summary.overall_succeeded:
            logger.info("All %d job(s) completed successfully", len(summary.results))
        else:
            logger.warning(
                "Completed with errors: %d succeeded, %d failed, %d skipped",
                len(summary.results) - failed,
                failed,
                len(summary.skipped),
            )

    def _notify(self, config: Config, summary: RunSummary) -> None:
        if not self.notify:
            logger.debug("Notifications disabled for this run")
            return
        if not config.notify.enabled:
            logger.info("No notification URL configured, skipping notification")
            return
        try:
            self.notifier_factory(config.notify).notify(summary)
        except NotificationDeliveryError as e:
            logger.error("Notification failed: %s", e)
