"""Data model shared by the runner, the scheduler and the notifier.

All objects are immutable once built. Success flags are derived from the
recorded attempts instead of being stored, so a result can never disagree
with its own history.
"""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Rotation:
    """Keep only the ``keep`` newest files in ``remote`` after a transfer."""

    remote: str
    keep: int = 30

    def __post_init__(self):
        if not self.remote:
            raise ValueError("Rotation remote must not be empty")
        if self.keep < 1:
            raise ValueError("Rotation keep must be >= 1")


@dataclass(frozen=True)
class Job:
    """A named backup unit wrapping one transfer command.

    Attributes:
        name: Unique name within a run
        command: Executable to launch (looked up on PATH)
        arguments: Arguments passed to the executable, in order
        timeout: Seconds an attempt may run before it is killed
        max_attempts: Upper bound on attempts, at least 1
        env: Extra environment variables for the process
        cwd: Working directory for the process
        rotation: Pruning of old backups after a successful transfer
    """

    name: str
    command: str
    arguments: tuple[str, ...] = ()
    timeout: float = 3600.0
    max_attempts: int = 1
    env: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    cwd: str | None = None
    rotation: Rotation | None = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Job name must not be empty")
        if self.max_attempts < 1:
            raise ValueError(f"Job '{self.name}': max_attempts must be >= 1")
        if self.timeout <= 0:
            raise ValueError(f"Job '{self.name}': timeout must be positive")
        # Accept any sequence but store a tuple
        object.__setattr__(self, "arguments", tuple(self.arguments))

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.arguments]


@dataclass(frozen=True)
class ExecutionAttempt:
    """Outcome of one execution of a job's command.

    ``exit_code`` is None when the process never started (``error`` is set),
    timed out, or was terminated because the run was cancelled.
    """

    attempt_number: int
    started_at: datetime
    finished_at: datetime
    exit_code: int | None
    stdout_tail: str = ""
    stderr_tail: str = ""
    timed_out: bool = False
    cancelled: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class JobResult:
    """All attempts made for one job, ordered by attempt number.

    ``pruned`` lists the remote files deleted by rotation. A rotation
    failure is reported in ``rotation_error`` and does not affect
    ``succeeded``: the transfer itself went through.
    """

    job_name: str
    attempts: tuple[ExecutionAttempt, ...]
    total_duration: float = 0.0
    pruned: tuple[str, ...] = ()
    rotation_error: str | None = None

    def __post_init__(self):
        attempts = tuple(sorted(self.attempts, key=lambda a: a.attempt_number))
        if not attempts:
            raise ValueError(f"Job '{self.job_name}': a result needs at least one attempt")
        object.__setattr__(self, "attempts", attempts)
        object.__setattr__(self, "pruned", tuple(self.pruned))

    @property
    def succeeded(self) -> bool:
        return self.attempts[-1].succeeded

    @property
    def last_attempt(self) -> ExecutionAttempt:
        return self.attempts[-1]


@dataclass(frozen=True)
class RunSummary:
    """Aggregated outcome of a run.

    Attributes:
        started_at: When scheduling began
        finished_at: When the last job finished
        results: One result per executed job, in job input order
        cancelled: The run was interrupted before all jobs completed
        skipped: Names of jobs that never started because of cancellation
    """

    started_at: datetime
    finished_at: datetime
    results: tuple[JobResult, ...] = ()
    cancelled: bool = False
    skipped: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "results", tuple(self.results))
        object.__setattr__(self, "skipped", tuple(self.skipped))

    @property
    def overall_succeeded(self) -> bool:
        # Cancelled attempts already fail their result
        if self.skipped:
            return False
        return all(r.succeeded for r in self.results)

    @property
    def failed_results(self) -> list[JobResult]:
        return [r for r in self.results if not r.succeeded]

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()
