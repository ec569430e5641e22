"""Run summary notifications.

The summary is rendered as text and POSTed as JSON to a webhook. The body
follows ntfy's JSON publishing format (``topic``, ``title``, ``message``,
``priority``, ``tags``) and carries a machine readable ``jobs`` list, so any
HTTP endpoint accepting JSON can consume it.
"""

import logging
import socket
import time
from typing import Any, Callable

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from . import __util__
from .__util__ import BackupRunnerError
from .config.schema import NotifyConfig
from .core.models import ExecutionAttempt, RunSummary

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class NotificationDeliveryError(BackupRunnerError):
    """The summary could not be delivered after all retries."""


class _RetryableStatus(Exception):
    def __init__(self, response: requests.Response) -> None:
        super().__init__(f"HTTP {response.status_code}: {response.text[:200]}")
        self.response = response


def _should_retry(error: BaseException) -> bool:
    return isinstance(
        error, (_RetryableStatus, requests.ConnectionError, requests.Timeout)
    )


def _failure_detail(attempt: ExecutionAttempt, limit: int) -> str:
    """Describe why ``attempt`` failed, with an excerpt of its output."""
    if attempt.error:
        return attempt.error
    if attempt.cancelled:
        head = "cancelled"
    elif attempt.timed_out:
        head = f"timed out after {__util__.format_duration(attempt.duration)}"
    else:
        head = f"exit status {attempt.exit_code}"
    output = attempt.stderr_tail.strip() or attempt.stdout_tail.strip()
    if not output:
        return head
    return f"{head}\n{__util__.excerpt(output, limit)}"


def render_summary(
    summary: RunSummary, *, hostname: str | None = None, excerpt_limit: int = 500
) -> str:
    """Render ``summary`` as plain text, one line per job in run order."""
    hostname = hostname or socket.gethostname()
    if summary.overall_succeeded:
        state = "succeeded"
    elif summary.cancelled:
        state = "was cancelled"
    else:
        state = "failed"

    passed = sum(1 for r in summary.results if r.succeeded)
    lines = [
        f"Backup {state} on {hostname}",
        f"{passed}/{len(summary.results) + len(summary.skipped)} job(s) succeeded "
        f"in {__util__.format_duration(summary.duration)}",
        "",
    ]

    for result in summary.results:
        mark = "OK" if result.succeeded else "FAILED"
        lines.append(
            f"[{mark}] {result.job_name} "
            f"({__util__.format_duration(result.total_duration)}, "
            f"{len(result.attempts)} attempt(s))"
        )
        if not result.succeeded:
            detail = _failure_detail(result.last_attempt, excerpt_limit)
            lines.extend(f"    {line}" for line in detail.splitlines())
        if result.pruned:
            lines.append(f"    pruned {len(result.pruned)} old backup(s)")
        if result.rotation_error:
            lines.append(f"    rotation failed: {__util__.excerpt(result.rotation_error, excerpt_limit)}")

    for name in summary.skipped:
        lines.append(f"[SKIPPED] {name}")

    return "\n".join(lines).rstrip() + "\n"


def build_payload(
    summary: RunSummary, settings: NotifyConfig, *, hostname: str | None = None
) -> dict[str, Any]:
    """JSON body for the webhook."""
    message = render_summary(
        summary, hostname=hostname, excerpt_limit=settings.excerpt_limit
    )
    ok = summary.overall_succeeded
    payload: dict[str, Any] = {
        "title": message.splitlines()[0],
        "message": message,
        "priority": 3 if ok else 4,
        "tags": ["white_check_mark"] if ok else ["warning"],
        "succeeded": ok,
        "cancelled": summary.cancelled,
        "jobs": [
            {
                "name": r.job_name,
                "succeeded": r.succeeded,
                "attempts": len(r.attempts),
                "duration": round(r.total_duration, 3),
                "pruned": len(r.pruned),
                "rotation_error": r.rotation_error,
            }
            for r in summary.results
        ],
        "skipped": list(summary.skipped),
    }
    if settings.topic:
        payload["topic"] = settings.topic
    return payload


class Notifier:
    """Deliver run summaries to the configured webhook."""

    def __init__(
        self,
        settings: NotifyConfig,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if not settings.url:
            raise ValueError("Notifier requires a URL")
        self.settings = settings
        self.session = session or requests.Session()
        self._sleep = sleep or time.sleep

        if settings.token:
            self.session.headers["Authorization"] = f"Bearer {settings.token}"
        elif settings.username and settings.password:
            self.session.auth = (settings.username, settings.password)

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        response = self.session.post(
            self.settings.url, json=payload, timeout=self.settings.timeout
        )
        if response.status_code in RETRY_STATUS_CODES:
            raise _RetryableStatus(response)
        response.raise_for_status()
        return response

    def notify(self, summary: RunSummary) -> None:
        """Send ``summary``.

        Raises:
            NotificationDeliveryError: If every delivery attempt failed
        """
        payload = build_payload(summary, self.settings)
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=1, max=10),
            retry=retry_if_exception(_should_retry),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
            sleep=self._sleep,
        )
        try:
            response = retrying(self._post, payload)
        except (requests.RequestException, _RetryableStatus) as e:
            raise NotificationDeliveryError(
                f"Could not deliver notification to {self.settings.url}: {e}"
            ) from e
        logger.info("Notification delivered (HTTP %d)", response.status_code)
