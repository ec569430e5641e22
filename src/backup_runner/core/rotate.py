"""Pruning of old backups on an rclone remote.

After a successful transfer the remote is listed with ``lsjson`` and every
file beyond the ``keep`` newest (by modification time) is removed with
``deletefile``. A file that cannot be deleted is logged and skipped.
"""

import json
import logging
import re
import threading
from datetime import datetime, timezone
from typing import Callable

from ..__util__ import BackupRunnerError
from .models import ExecutionAttempt, Job, Rotation
from .process import run_process

logger = logging.getLogger(__name__)

# Listings are parsed whole, so keep far more than a log tail
LIST_TAIL_BYTES = 4 * 1024 * 1024

FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class RotationError(BackupRunnerError):
    """The remote could not be listed."""


def remote_path(remote: str, name: str) -> str:
    """Join ``name`` to an rclone ``remote:path``."""
    if remote.endswith((":", "/")):
        return remote + name
    return f"{remote}/{name}"


def _mod_time(entry: dict) -> datetime:
    try:
        # rclone reports nanoseconds, datetime stops at microseconds
        value = FRACTION_RE.sub(r"\1", entry["ModTime"])
        mod_time = datetime.fromisoformat(value)
    except (KeyError, TypeError, ValueError) as e:
        raise RotationError(f"Unexpected lsjson entry {entry!r}: {e}") from e
    if mod_time.tzinfo is None:
        mod_time = mod_time.replace(tzinfo=timezone.utc)
    return mod_time


def parse_listing(output: str) -> list[tuple[str, datetime]]:
    """Parse ``rclone lsjson`` output into ``(path, mod_time)`` pairs, newest first.

    Raises:
        RotationError: If the output is not a JSON list of file entries
    """
    try:
        entries = json.loads(output)
    except json.JSONDecodeError as e:
        raise RotationError(f"Cannot parse lsjson output: {e}") from e
    if not isinstance(entries, list):
        raise RotationError("lsjson output is not a list")

    files = []
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("IsDir"):
            continue
        path = entry.get("Path") or entry.get("Name")
        if not isinstance(path, str) or not path:
            raise RotationError(f"Unexpected lsjson entry {entry!r}")
        files.append((path, _mod_time(entry)))

    files.sort(key=lambda item: item[1], reverse=True)
    return files


def _describe(attempt: ExecutionAttempt) -> str:
    if attempt.error:
        return attempt.error
    if attempt.timed_out:
        return "timed out"
    if attempt.cancelled:
        return "cancelled"
    detail = attempt.stderr_tail.strip()
    return f"exit status {attempt.exit_code}" + (f": {detail}" if detail else "")


def rotate(
    job: Job,
    rotation: Rotation,
    *,
    cancel: threading.Event | None = None,
    runner: Callable[..., ExecutionAttempt] = run_process,
) -> list[str]:
    """Delete all but the newest ``rotation.keep`` files of ``rotation.remote``.

    The listing and deletions use the job's command, environment and
    timeout.

    Returns:
        Remote paths that were deleted

    Raises:
        RotationError: If the remote could not be listed
    """
    options = dict(
        attempt_number=1,
        env=job.env or None,
        cwd=job.cwd,
        cancel=cancel,
        label=f"{job.name} rotate",
    )

    logger.debug("[%s] Listing %s", job.name, rotation.remote)
    try:
        listing = runner(
            job.command,
            ("lsjson", "--files-only", rotation.remote),
            job.timeout,
            tail_bytes=LIST_TAIL_BYTES,
            **options,
        )
    except BackupRunnerError as e:
        raise RotationError(str(e)) from e
    if not listing.succeeded:
        raise RotationError(f"Listing {rotation.remote} failed: {_describe(listing)}")

    files = parse_listing(listing.stdout_tail)
    expired = files[rotation.keep :]
    if not expired:
        logger.debug("[%s] %d file(s) in %s, nothing to prune", job.name, len(files), rotation.remote)
        return []

    deleted = []
    for name, _ in reversed(expired):
        if cancel is not None and cancel.is_set():
            break
        target = remote_path(rotation.remote, name)
        try:
            attempt = runner(job.command, ("deletefile", target), job.timeout, **options)
        except BackupRunnerError as e:
            logger.warning("[%s] Failed to delete %s: %s", job.name, target, e)
            continue
        if attempt.succeeded:
            logger.info("[%s] Deleted %s", job.name, target)
            deleted.append(target)
        else:
            logger.warning("[%s] Failed to delete %s: %s", job.name, target, _describe(attempt))
    return deleted
