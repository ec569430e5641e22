"""Core job orchestration for backup-runner.

Process supervision, retries, remote rotation, bounded parallel
scheduling and the run coordinator tying them to configuration and
notifications.
"""

from .models import ExecutionAttempt, Job, JobResult, Rotation, RunSummary
from .process import SpawnError, run_process
from .retry import RetryPolicy, execute_job, retry_call
from .rotate import RotationError, rotate
from .scheduler import run_all

__all__ = [
    "Job",
    "ExecutionAttempt",
    "JobResult",
    "Rotation",
    "RunSummary",
    "SpawnError",
    "run_process",
    "RetryPolicy",
    "retry_call",
    "execute_job",
    "RotationError",
    "rotate",
    "run_all",
]
