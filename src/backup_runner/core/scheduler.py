"""Bounded parallel execution of backup jobs."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from functools import partial
from typing import Callable, Sequence

from .models import ExecutionAttempt, Job, JobResult, RunSummary
from .retry import RetryPolicy, execute_job

logger = logging.getLogger(__name__)


def _crashed_result(job: Job, error: BaseException, started_at: datetime) -> JobResult:
    now = datetime.now()
    return JobResult(
        job_name=job.name,
        attempts=(
            ExecutionAttempt(
                attempt_number=1,
                started_at=started_at,
                finished_at=now,
                exit_code=None,
                error=f"{type(error).__name__}: {error}",
            ),
        ),
        total_duration=(now - started_at).total_seconds(),
    )


def run_all(
    jobs: Sequence[Job],
    concurrency_limit: int,
    *,
    policy: RetryPolicy | None = None,
    cancel: threading.Event | None = None,
    execute: Callable[..., JobResult] | None = None,
) -> RunSummary:
    """Run every job with at most ``concurrency_limit`` running at once.

    Each job occupies one worker for its whole retry sequence, backoff waits
    included. A failing job never stops the others. Results are returned in
    the order of ``jobs``.

    On KeyboardInterrupt the cancel event is set: running jobs terminate
    their subprocess and finish with a cancelled attempt, queued jobs are
    listed in ``RunSummary.skipped``.

    Args:
        jobs: Jobs to run, names must be unique
        concurrency_limit: Maximum number of jobs running concurrently
        policy: Backoff policy for retries
        cancel: Event used to cancel the run, created if not given
        execute: Callable running one job, defaults to ``execute_job``

    Returns:
        RunSummary for the jobs that ran
    """
    if concurrency_limit < 1:
        raise ValueError("concurrency_limit must be >= 1")
    names = [job.name for job in jobs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Duplicate job names: {', '.join(duplicates)}")

    if cancel is None:
        cancel = threading.Event()
    if execute is None:
        execute = partial(execute_job, policy=policy or RetryPolicy())

    started_at = datetime.now()
    if not jobs:
        return RunSummary(started_at=started_at, finished_at=datetime.now())

    workers = min(concurrency_limit, len(jobs))
    logger.info("Running %d job(s), %d at a time", len(jobs), workers)

    def run_one(job: Job) -> JobResult | None:
        if cancel.is_set():
            return None
        job_started = datetime.now()
        try:
            return execute(job, cancel=cancel)
        except Exception as e:  # pylint: disable=broad-except
            logger.exception("[%s] Unexpected error: %s", job.name, e)
            return _crashed_result(job, e, job_started)

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="job")
    futures: list[Future] = [executor.submit(run_one, job) for job in jobs]
    try:
        while True:
            try:
                wait(futures)
                break
            except KeyboardInterrupt:
                if cancel.is_set():
                    logger.warning("Interrupted again, still waiting for jobs to stop")
                else:
                    logger.warning("Interrupted, cancelling running jobs")
                    cancel.set()
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    results: list[JobResult] = []
    skipped: list[str] = []
    for job, future in zip(jobs, futures):
        result = None if future.cancelled() else future.result()
        if result is None:
            skipped.append(job.name)
        else:
            results.append(result)

    summary = RunSummary(
        started_at=started_at,
        finished_at=datetime.now(),
        results=tuple(results),
        cancelled=cancel.is_set(),
        skipped=tuple(skipped),
    )
    if skipped:
        logger.warning("Skipped %d job(s) after cancellation: %s", len(skipped), ", ".join(skipped))
    return summary
