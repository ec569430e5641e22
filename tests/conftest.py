"""Pytest configuration and shared fixtures."""

import logging
import sys
from datetime import datetime, timedelta

import pytest

from backup_runner.core.models import ExecutionAttempt, Job, JobResult

PYTHON = sys.executable

# Fails with a message the first time, succeeds once the marker file exists
FLAKY_SCRIPT = """
import pathlib, sys
marker = pathlib.Path(sys.argv[1])
if marker.exists():
    print("transfer complete")
    sys.exit(0)
marker.write_text("seen")
print("transient network error", file=sys.stderr)
sys.exit(1)
"""


def python_job(name: str, script: str, *args: str, **kwargs) -> Job:
    """Build a job running ``script`` with the current interpreter."""
    kwargs.setdefault("timeout", 30.0)
    return Job(name=name, command=PYTHON, arguments=("-c", script, *args), **kwargs)


def make_attempt(
    number: int = 1,
    exit_code: int | None = 0,
    *,
    timed_out: bool = False,
    cancelled: bool = False,
    stderr: str = "",
    stdout: str = "",
    error: str | None = None,
    seconds: float = 1.0,
) -> ExecutionAttempt:
    started = datetime(2026, 1, 1, 12, 0, 0)
    return ExecutionAttempt(
        attempt_number=number,
        started_at=started,
        finished_at=started + timedelta(seconds=seconds),
        exit_code=exit_code,
        stdout_tail=stdout,
        stderr_tail=stderr,
        timed_out=timed_out,
        cancelled=cancelled,
        error=error,
    )


def make_result(name: str, *exit_codes: int | None, **kwargs) -> JobResult:
    attempts = tuple(
        make_attempt(i, code, **kwargs) for i, code in enumerate(exit_codes, 1)
    )
    return JobResult(job_name=name, attempts=attempts, total_duration=float(len(attempts)))


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_toml():
    """Return a sample valid TOML configuration string."""
    return """
[global]
concurrency = 2
command = "rclone"
timeout = "2h"
max_attempts = 3
backoff_base = 5
backoff_max = "5m"

[notify]
url = "https://ntfy.example.com"
topic = "backups"
username = "alice"
password = "secret"
max_attempts = 2

[[jobs]]
name = "documents"
args = ["sync", "/home/me/Documents", "b2:backups/documents"]

[[jobs]]
name = "photos"
args = ["copy", "/srv/photos", "b2:backups/photos"]
timeout = "30m"
max_attempts = 2

[[jobs]]
name = "database"
command = "/usr/local/bin/dump.sh"
env = { PGHOST = "localhost" }
cwd = "/var/tmp"
enabled = false
"""


@pytest.fixture
def minimal_config_toml():
    """Return a minimal valid TOML configuration string."""
    return """
[[jobs]]
name = "home"
args = ["sync", "/home", "remote:home"]
"""


@pytest.fixture
def config_file(tmp_config_dir, sample_config_toml):
    """Create a temporary config file with sample content."""
    config_path = tmp_config_dir / "config.toml"
    config_path.write_text(sample_config_toml)
    return config_path


@pytest.fixture
def minimal_config_file(tmp_config_dir, minimal_config_toml):
    """Create a temporary config file with minimal content."""
    config_path = tmp_config_dir / "minimal.toml"
    config_path.write_text(minimal_config_toml)
    return config_path


@pytest.fixture(autouse=True)
def clean_notify_env(monkeypatch):
    """Keep notification credentials of the host out of the tests."""
    for var in (
        "NTFY_BASE_URL",
        "NTFY_TOPIC",
        "NTFY_USERNAME",
        "NTFY_PASSWORD",
        "NTFY_TOKEN",
        "BACKUP_RUNNER_CONFIG",
        "BACKUP_ROTATE",
    ):
        # setenv first so teardown also drops values loaded from .env files
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo create_logger() so caplog keeps seeing backup_runner records."""
    yield
    package_logger = logging.getLogger("backup_runner")
    package_logger.handlers.clear()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)
