"""TOML configuration loading and validation.

Handles config file discovery, parsing, and validation with helpful error messages.
"""

import os
import tomllib
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

from ..__util__ import BackupRunnerError, parse_duration
from .schema import Config, GlobalConfig, JobConfig, NotifyConfig


class ConfigError(BackupRunnerError):
    """Configuration loading or validation error."""

    pass


# Config file search paths in priority order
CONFIG_PATHS = [
    Path.home() / ".config" / "backup-runner" / "config.toml",
    Path("/etc/backup-runner/config.toml"),
]

CONFIG_ENV_VAR = "BACKUP_RUNNER_CONFIG"

ROTATE_ENV_VAR = "BACKUP_ROTATE"

# Environment variables overriding [notify] settings
NOTIFY_ENV_VARS = {
    "url": "NTFY_BASE_URL",
    "topic": "NTFY_TOPIC",
    "username": "NTFY_USERNAME",
    "password": "NTFY_PASSWORD",
    "token": "NTFY_TOKEN",
}


def find_config_file(
    explicit_path: str | None = None, environ: Mapping[str, str] | None = None
) -> Path | None:
    """Find configuration file.

    Args:
        explicit_path: Explicitly specified config path (highest priority)
        environ: Environment to read BACKUP_RUNNER_CONFIG from

    Returns:
        Path to config file, or None if not found
    """
    environ = os.environ if environ is None else environ
    explicit_path = explicit_path or environ.get(CONFIG_ENV_VAR)
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit_path}")

    for path in CONFIG_PATHS:
        if path.exists():
            return path

    return None


def _duration(data: dict[str, Any], key: str, default: float, where: str) -> float:
    if key not in data:
        return default
    try:
        value = parse_duration(data[key])
    except ValueError as e:
        raise ConfigError(f"{where}: {e}")
    if value <= 0:
        raise ConfigError(f"{where}: '{key}' must be positive")
    return value


def _positive_int(data: dict[str, Any], key: str, default: int, where: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{where}: '{key}' must be an integer >= 1, got {value!r}")
    return value


def _optional_str(data: dict[str, Any], key: str, where: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ConfigError(f"{where}: '{key}' must be a string, got {value!r}")
    return value


def _table(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a table, got {value!r}")
    return value


def _rotate_keep(
    data: dict[str, Any], environ: Mapping[str, str], default: int, where: str
) -> int:
    """Default rotation depth, BACKUP_ROTATE taking precedence over the file."""
    override = environ.get(ROTATE_ENV_VAR)
    if not override:
        return _positive_int(data, "rotate_keep", default, where)
    if not override.isdigit() or int(override) < 1:
        raise ConfigError(f"{ROTATE_ENV_VAR} must be an integer >= 1, got {override!r}")
    return int(override)


def _parse_global(data: dict[str, Any], environ: Mapping[str, str]) -> GlobalConfig:
    """Parse global configuration from dict."""
    where = "[global]"
    defaults = GlobalConfig()
    command = data.get("command", defaults.command)
    if not isinstance(command, str) or not command:
        raise ConfigError(f"{where}: 'command' must be a non-empty string")

    backoff_base = data.get("backoff_base", defaults.backoff_base)
    if "backoff_base" in data:
        try:
            backoff_base = parse_duration(backoff_base)
        except ValueError as e:
            raise ConfigError(f"{where}: {e}")
        if backoff_base < 0:
            raise ConfigError(f"{where}: 'backoff_base' must not be negative")

    lock_file = defaults.lock_file
    if "lock_file" in data:
        lock_file = _optional_str(data, "lock_file", where) or None

    return GlobalConfig(
        concurrency=_positive_int(data, "concurrency", defaults.concurrency, where),
        command=command,
        timeout=_duration(data, "timeout", defaults.timeout, where),
        max_attempts=_positive_int(data, "max_attempts", defaults.max_attempts, where),
        backoff_base=backoff_base,
        backoff_max=_duration(data, "backoff_max", defaults.backoff_max, where),
        tail_bytes=_positive_int(data, "tail_bytes", defaults.tail_bytes, where),
        lock_file=lock_file,
        rotate_keep=_rotate_keep(data, environ, defaults.rotate_keep, where),
    )


def _parse_notify(data: dict[str, Any], environ: Mapping[str, str]) -> NotifyConfig:
    """Parse notification configuration, letting the environment override it."""
    where = "[notify]"
    values = {key: _optional_str(data, key, where) for key in NOTIFY_ENV_VARS}
    for key, var in NOTIFY_ENV_VARS.items():
        if environ.get(var):
            values[key] = environ[var]

    url = values["url"]
    if url:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"{where}: 'url' must be an http(s) URL, got {url!r}")

    if bool(values["username"]) != bool(values["password"]):
        raise ConfigError(f"{where}: 'username' and 'password' must be set together")

    defaults = NotifyConfig()
    return NotifyConfig(
        url=url or None,
        topic=values["topic"] or None,
        username=values["username"] or None,
        password=values["password"] or None,
        token=values["token"] or None,
        timeout=_duration(data, "timeout", defaults.timeout, where),
        max_attempts=_positive_int(data, "max_attempts", defaults.max_attempts, where),
        excerpt_limit=_positive_int(data, "excerpt_limit", defaults.excerpt_limit, where),
    )


def _parse_job(data: dict[str, Any], global_config: GlobalConfig, index: int) -> JobConfig:
    """Parse job configuration from dict."""
    name = data.get("name")
    if not name or not isinstance(name, str):
        raise ConfigError(f"Job #{index + 1} missing required 'name' field")
    where = f"Job '{name}'"

    command = data.get("command", global_config.command)
    if not isinstance(command, str) or not command:
        raise ConfigError(f"{where}: 'command' must be a non-empty string")

    args = data.get("args", [])
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise ConfigError(f"{where}: 'args' must be a list of strings")

    env = data.get("env", {})
    if not isinstance(env, dict):
        raise ConfigError(f"{where}: 'env' must be a table")

    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"{where}: 'enabled' must be true or false, got {enabled!r}")

    return JobConfig(
        name=name,
        command=command,
        args=list(args),
        timeout=_duration(data, "timeout", global_config.timeout, where),
        max_attempts=_positive_int(data, "max_attempts", global_config.max_attempts, where),
        env={str(k): str(v) for k, v in env.items()},
        cwd=_optional_str(data, "cwd", where) or None,
        enabled=enabled,
        rotate_remote=_optional_str(data, "rotate", where) or None,
        rotate_keep=_positive_int(data, "rotate_keep", global_config.rotate_keep, where),
    )


def _validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of warnings."""
    warnings = []

    names = [j.name for j in config.jobs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate job names: {', '.join(duplicates)}")

    enabled = config.get_enabled_jobs()
    if not enabled:
        raise ConfigError("No enabled jobs configured")

    for job in config.jobs:
        if not job.enabled:
            warnings.append(f"Job '{job.name}' is disabled")

    if config.global_config.concurrency > len(enabled):
        warnings.append(
            f"Concurrency {config.global_config.concurrency} is higher than the "
            f"number of enabled jobs ({len(enabled)})"
        )

    if not config.notify.enabled:
        warnings.append("No notification URL configured, summaries will only be logged")

    return warnings


def parse_config(
    data: dict[str, Any], environ: Mapping[str, str] | None = None
) -> tuple[Config, list[str]]:
    """Build and validate a Config from already parsed TOML data.

    Raises:
        ConfigError: If the configuration is invalid
    """
    environ = os.environ if environ is None else environ

    global_config = _parse_global(_table(data, "global"), environ)
    notify = _parse_notify(_table(data, "notify"), environ)

    job_list = data.get("jobs", [])
    if not isinstance(job_list, list):
        raise ConfigError("'jobs' must be an array of tables, use [[jobs]]")

    jobs = []
    for index, job_data in enumerate(job_list):
        if not isinstance(job_data, dict):
            raise ConfigError(f"Job #{index + 1} must be a table, got {job_data!r}")
        jobs.append(_parse_job(job_data, global_config, index))

    config = Config(global_config=global_config, notify=notify, jobs=jobs)

    # Validate and collect warnings
    warnings = _validate_config(config)

    return config, warnings


def load_config(
    path: Path | str, environ: Mapping[str, str] | None = None
) -> tuple[Config, list[str]]:
    """Load and validate configuration from TOML file.

    Args:
        path: Path to configuration file
        environ: Environment providing notification overrides

    Returns:
        Tuple of (Config object, list of warnings)

    Raises:
        ConfigError: If config is invalid or cannot be parsed
    """
    path = Path(path)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax: {e}")
    except UnicodeDecodeError as e:
        raise ConfigError(f"Config file is not valid UTF-8: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}")

    return parse_config(data, environ)


def generate_example_config() -> str:
    """Generate example configuration file content."""
    return """# backup-runner configuration

[global]
concurrency = 2            # Jobs running at the same time
command = "rclone"         # Default transfer executable
timeout = "2h"             # Per attempt: seconds or "90s", "30m", "2h", "1d"
max_attempts = 3
backoff_base = 5           # Seconds before the first retry, doubled each time
backoff_max = 300
# lock_file = "/run/lock/backup-runner.lock"
# rotate_keep = 30         # Default for jobs with rotate, BACKUP_ROTATE overrides it

[notify]
# Credentials can also come from NTFY_BASE_URL, NTFY_TOPIC,
# NTFY_USERNAME, NTFY_PASSWORD and NTFY_TOKEN (e.g. in a .env file)
url = "https://ntfy.sh"
topic = "backups"
# token = "tk_..."

[[jobs]]
name = "documents"
args = ["sync", "/home/me/Documents", "b2:backups/documents"]

[[jobs]]
name = "photos"
args = ["copy", "/srv/photos", "b2:backups/photos", "--transfers", "8"]
timeout = "6h"
max_attempts = 2

# Keep only the 14 newest archives on the remote after each upload
# [[jobs]]
# name = "archives"
# args = ["copy", "/var/backups/archives", "b2:backups/archives"]
# rotate = "b2:backups/archives"
# rotate_keep = 14

# Any executable works, not only rclone
# [[jobs]]
# name = "database"
# command = "/usr/local/bin/dump-and-upload.sh"
# env = { PGHOST = "localhost" }
# enabled = false
"""
