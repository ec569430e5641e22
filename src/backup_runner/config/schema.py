"""Configuration schema definitions using dataclasses.

Defines the structure for TOML configuration with sensible defaults.
"""

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..core.models import Job, Rotation
from ..core.retry import RetryPolicy

DEFAULT_LOCK_FILE = str(Path(tempfile.gettempdir()) / "backup-runner.lock")


@dataclass
class NotifyConfig:
    """Notification webhook configuration.

    Attributes:
        url: Endpoint receiving the run summary (None disables notifications)
        topic: ntfy topic, added to the JSON body when set
        username: Basic auth user
        password: Basic auth password
        token: Bearer token, takes precedence over basic auth
        timeout: Seconds per HTTP request
        max_attempts: Delivery attempts before giving up
        excerpt_limit: Characters of failing job output included per job
    """

    url: Optional[str] = None
    topic: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    timeout: float = 10.0
    max_attempts: int = 3
    excerpt_limit: int = 500

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass
class JobConfig:
    """Backup job configuration.

    Attributes:
        name: Unique job name
        command: Transfer executable (defaults to the global command)
        args: Arguments passed to the command
        timeout: Seconds per attempt (defaults to the global timeout)
        max_attempts: Attempts per run (defaults to the global value)
        env: Extra environment variables
        cwd: Working directory for the command
        enabled: Whether this job runs
        rotate_remote: Remote pruned after a successful transfer (None disables it)
        rotate_keep: Newest files kept in rotate_remote
    """

    name: str
    command: str
    args: list[str] = field(default_factory=list)
    timeout: float = 3600.0
    max_attempts: int = 3
    env: dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    enabled: bool = True
    rotate_remote: Optional[str] = None
    rotate_keep: int = 30

    def to_job(self) -> Job:
        rotation = None
        if self.rotate_remote:
            rotation = Rotation(remote=self.rotate_remote, keep=self.rotate_keep)
        return Job(
            name=self.name,
            command=self.command,
            arguments=tuple(self.args),
            timeout=self.timeout,
            max_attempts=self.max_attempts,
            env=dict(self.env),
            cwd=self.cwd,
            rotation=rotation,
        )


@dataclass
class GlobalConfig:
    """Global configuration settings.

    Attributes:
        concurrency: Max jobs running at the same time
        command: Default transfer executable
        timeout: Default seconds per attempt
        max_attempts: Default attempts per job
        backoff_base: Seconds to wait after the first failed attempt
        backoff_max: Upper bound for the wait between attempts
        tail_bytes: Bytes of stdout/stderr kept per attempt
        lock_file: Lock preventing overlapping runs (None disables it)
        rotate_keep: Default number of backups kept by job rotation
    """

    concurrency: int = 2
    command: str = "rclone"
    timeout: float = 3600.0
    max_attempts: int = 3
    backoff_base: float = 5.0
    backoff_max: float = 300.0
    tail_bytes: int = 8192
    lock_file: Optional[str] = DEFAULT_LOCK_FILE
    rotate_keep: int = 30

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(base_delay=self.backoff_base, max_delay=self.backoff_max)


@dataclass
class Config:
    """Root configuration object.

    Attributes:
        global_config: Global settings that apply to all jobs
        notify: Notification settings
        jobs: Job configurations, in run order
    """

    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    jobs: list[JobConfig] = field(default_factory=list)

    def get_enabled_jobs(self) -> list[JobConfig]:
        """Get list of enabled jobs."""
        return [j for j in self.jobs if j.enabled]

    def build_jobs(self) -> list[Job]:
        """Build runnable jobs for every enabled job, in configuration order."""
        return [j.to_job() for j in self.get_enabled_jobs()]
