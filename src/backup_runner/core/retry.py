"""Retry with exponential backoff.

``retry_call`` is a generic wrapper around any fallible operation; the
operation reports failure through its return value, and every outcome is
kept. ``execute_job`` applies it to the process runner.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
    wait_random,
)

from .models import ExecutionAttempt, Job, JobResult
from .process import SpawnError, run_process
from .rotate import RotationError, rotate

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff between attempts.

    The wait after failed attempt ``n`` is
    ``min(max_delay, base_delay * multiplier ** (n - 1))``, plus up to
    ``jitter`` random seconds.
    """

    base_delay: float = 5.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: float = 0.0

    def delay_for(self, failed_attempt: int) -> float:
        return min(self.max_delay, self.base_delay * self.multiplier ** (failed_attempt - 1))

    def wait_strategy(self):
        wait = wait_exponential(
            multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay
        )
        if self.jitter > 0:
            wait = wait + wait_random(0, self.jitter)
        return wait


class _Cancelled(Exception):
    pass


def _sleeper(cancel: threading.Event | None) -> Callable[[float], None]:
    """Sleep that wakes up as soon as ``cancel`` is set."""

    def sleep(seconds: float) -> None:
        if cancel is None:
            time.sleep(seconds)
        elif cancel.wait(seconds):
            raise _Cancelled()

    return sleep


def _log_retry(label: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "[%s] Attempt %d/%d failed, retrying in %.1fs",
            label,
            state.attempt_number,
            max_attempts,
            delay,
        )

    return before_sleep


def retry_call(
    operation: Callable[[int], T],
    *,
    max_attempts: int,
    policy: RetryPolicy,
    succeeded: Callable[[T], bool],
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
    label: str = "operation",
) -> list[T]:
    """Call ``operation(attempt_number)`` until it succeeds.

    Stops on the first outcome accepted by ``succeeded``, after
    ``max_attempts`` calls, or once ``cancel`` is set. Exceptions raised by
    the operation are not retried and propagate.

    Returns:
        Every outcome, in attempt order (never empty)
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    outcomes: list[T] = []

    def attempt() -> T:
        outcome = operation(len(outcomes) + 1)
        outcomes.append(outcome)
        return outcome

    stop = stop_after_attempt(max_attempts)
    if cancel is not None:
        stop = stop | stop_when_event_set(cancel)

    retrying = Retrying(
        stop=stop,
        wait=policy.wait_strategy(),
        retry=retry_if_result(lambda outcome: not succeeded(outcome)),
        retry_error_callback=lambda state: state.outcome.result(),
        before_sleep=_log_retry(label, max_attempts),
        sleep=sleep or _sleeper(cancel),
    )
    try:
        retrying(attempt)
    except _Cancelled:
        logger.info("[%s] Cancelled while waiting to retry", label)
    return outcomes


def execute_job(
    job: Job,
    *,
    policy: RetryPolicy,
    cancel: threading.Event | None = None,
    runner: Callable[..., ExecutionAttempt] = run_process,
    sleep: Callable[[float], None] | None = None,
    tail_bytes: int = 8192,
) -> JobResult:
    """Run ``job`` through the process runner with retries.

    A command that cannot be spawned counts as a failed attempt. When the
    job has a rotation and the transfer succeeded, old backups are pruned
    afterwards with the same runner.
    """
    started = time.monotonic()

    def attempt(number: int) -> ExecutionAttempt:
        logger.info("[%s] Attempt %d/%d", job.name, number, job.max_attempts)
        try:
            return runner(
                job.command,
                job.arguments,
                job.timeout,
                attempt_number=number,
                env=job.env or None,
                cwd=job.cwd,
                cancel=cancel,
                tail_bytes=tail_bytes,
                label=job.name,
            )
        except SpawnError as e:
            logger.error("[%s] %s", job.name, e)
            now = datetime.now()
            return ExecutionAttempt(
                attempt_number=number,
                started_at=now,
                finished_at=now,
                exit_code=None,
                error=str(e),
            )

    attempts = retry_call(
        attempt,
        max_attempts=job.max_attempts,
        policy=policy,
        succeeded=lambda a: a.succeeded,
        cancel=cancel,
        sleep=sleep,
        label=job.name,
    )
    pruned: list[str] = []
    rotation_error = None
    cancelled = cancel is not None and cancel.is_set()
    if job.rotation is not None and attempts[-1].succeeded and not cancelled:
        try:
            pruned = rotate(job, job.rotation, cancel=cancel, runner=runner)
        except RotationError as e:
            logger.error("[%s] Rotation failed: %s", job.name, e)
            rotation_error = str(e)

    result = JobResult(
        job_name=job.name,
        attempts=tuple(attempts),
        total_duration=time.monotonic() - started,
        pruned=tuple(pruned),
        rotation_error=rotation_error,
    )

    if result.succeeded:
        logger.info("[%s] Succeeded after %d attempt(s)", job.name, len(attempts))
    else:
        last = result.last_attempt
        if last.timed_out:
            reason = "timed out"
        elif last.cancelled:
            reason = "cancelled"
        elif last.error:
            reason = "could not start"
        else:
            reason = f"exit status {last.exit_code}"
        logger.error("[%s] Failed after %d attempt(s): %s", job.name, len(attempts), reason)
    return result
