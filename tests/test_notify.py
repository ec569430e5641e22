"""Tests for summary rendering and webhook delivery."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import requests

from backup_runner.config.schema import NotifyConfig
from backup_runner.core.models import JobResult, RunSummary
from backup_runner.notify import (
    NotificationDeliveryError,
    Notifier,
    build_payload,
    render_summary,
)

from conftest import make_attempt, make_result


def make_summary(*results, cancelled=False, skipped=()):
    started = datetime(2026, 1, 1, 12, 0, 0)
    return RunSummary(
        started_at=started,
        finished_at=started + timedelta(seconds=75),
        results=tuple(results),
        cancelled=cancelled,
        skipped=tuple(skipped),
    )


def make_response(status_code: int) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response._content = b""
    return response


def make_notifier(settings=None, responses=()):
    settings = settings or NotifyConfig(url="https://ntfy.example.com", topic="backups")
    session = requests.Session()
    session.post = MagicMock(side_effect=list(responses))
    delays = []
    return Notifier(settings, session=session, sleep=delays.append), session, delays


class TestRenderSummary:
    """Tests for render_summary."""

    def test_success(self):
        summary = make_summary(make_result("documents", 0), make_result("photos", 1, 0))
        text = render_summary(summary, hostname="nas")

        lines = text.splitlines()
        assert lines[0] == "Backup succeeded on nas"
        assert lines[1] == "2/2 job(s) succeeded in 1m 15s"
        assert "[OK] documents (1.0s, 1 attempt(s))" in lines
        assert "[OK] photos (2.0s, 2 attempt(s))" in lines

    def test_jobs_in_run_order(self):
        summary = make_summary(make_result("zeta", 0), make_result("alpha", 0), make_result("mid", 0))
        text = render_summary(summary, hostname="nas")
        assert text.index("zeta") < text.index("alpha") < text.index("mid")

    def test_failure_includes_stderr_excerpt(self):
        failed = make_result("photos", 1, 2, stderr="quota exceeded on remote\n")
        summary = make_summary(make_result("documents", 0), failed)
        text = render_summary(summary, hostname="nas")

        assert text.startswith("Backup failed on nas")
        assert "1/2 job(s) succeeded" in text
        assert "[FAILED] photos (2.0s, 2 attempt(s))" in text
        assert "    exit status 2" in text
        assert "    quota exceeded on remote" in text

    def test_stdout_used_when_stderr_empty(self):
        summary = make_summary(make_result("db", 1, stdout="dump aborted"))
        assert "dump aborted" in render_summary(summary, hostname="nas")

    def test_excerpt_is_limited(self):
        noisy = "x" * 2000 + "final error"
        summary = make_summary(make_result("db", 1, stderr=noisy))
        text = render_summary(summary, hostname="nas", excerpt_limit=100)

        assert "final error" in text
        assert "x" * 200 not in text

    def test_timeout_and_spawn_error_details(self):
        summary = make_summary(
            make_result("slow", None, timed_out=True),
            make_result("missing", None, error="Cannot start 'rclone': No such file or directory"),
        )
        text = render_summary(summary, hostname="nas")

        assert "timed out after 1.0s" in text
        assert "Cannot start 'rclone'" in text

    def test_cancelled_run_lists_skipped(self):
        summary = make_summary(
            make_result("documents", None, cancelled=True), cancelled=True, skipped=["photos"]
        )
        text = render_summary(summary, hostname="nas")

        assert text.startswith("Backup was cancelled on nas")
        assert "0/2 job(s) succeeded" in text
        assert "    cancelled" in text
        assert text.rstrip().endswith("[SKIPPED] photos")

    def test_rotation_details(self):
        pruned = JobResult(
            job_name="documents",
            attempts=(make_attempt(1, 0),),
            pruned=("b2:docs/a.tar", "b2:docs/b.tar"),
        )
        unlisted = JobResult(
            job_name="photos",
            attempts=(make_attempt(1, 0),),
            rotation_error="Listing b2:photos failed: exit status 3",
        )
        text = render_summary(make_summary(pruned, unlisted), hostname="nas")

        assert text.startswith("Backup succeeded on nas")
        assert "    pruned 2 old backup(s)" in text
        assert "    rotation failed: Listing b2:photos failed: exit status 3" in text


class TestBuildPayload:
    """Tests for the webhook body."""

    def test_success_payload(self):
        settings = NotifyConfig(url="https://ntfy.example.com", topic="backups")
        payload = build_payload(make_summary(make_result("documents", 0)), settings, hostname="nas")

        assert payload["topic"] == "backups"
        assert payload["title"] == "Backup succeeded on nas"
        assert payload["priority"] == 3
        assert payload["succeeded"] is True
        assert payload["jobs"] == [
            {
                "name": "documents",
                "succeeded": True,
                "attempts": 1,
                "duration": 1.0,
                "pruned": 0,
                "rotation_error": None,
            }
        ]
        assert payload["message"].startswith("Backup succeeded on nas")

    def test_failure_payload_without_topic(self):
        settings = NotifyConfig(url="https://hooks.example.com/backup")
        payload = build_payload(make_summary(make_result("db", 1)), settings, hostname="nas")

        assert "topic" not in payload
        assert payload["priority"] == 4
        assert payload["succeeded"] is False
        assert payload["tags"] == ["warning"]


class TestNotifier:
    """Tests for Notifier delivery and retries."""

    def test_requires_url(self):
        with pytest.raises(ValueError):
            Notifier(NotifyConfig())

    def test_delivers_once(self):
        notifier, session, delays = make_notifier(responses=[make_response(200)])
        notifier.notify(make_summary(make_result("documents", 0)))

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args[0] == "https://ntfy.example.com"
        assert kwargs["json"]["topic"] == "backups"
        assert kwargs["timeout"] == 10.0
        assert delays == []

    def test_retries_connection_error(self):
        notifier, session, delays = make_notifier(
            responses=[requests.ConnectionError("refused"), make_response(200)]
        )
        notifier.notify(make_summary(make_result("documents", 0)))

        assert session.post.call_count == 2
        assert len(delays) == 1

    def test_retries_server_errors(self):
        notifier, session, _ = make_notifier(
            responses=[make_response(503), make_response(429), make_response(200)]
        )
        notifier.notify(make_summary(make_result("documents", 0)))
        assert session.post.call_count == 3

    def test_gives_up_after_max_attempts(self):
        settings = NotifyConfig(url="https://ntfy.example.com", max_attempts=2)
        notifier, session, _ = make_notifier(
            settings, responses=[requests.Timeout("slow"), requests.Timeout("slow")]
        )

        with pytest.raises(NotificationDeliveryError, match="ntfy.example.com"):
            notifier.notify(make_summary(make_result("documents", 0)))
        assert session.post.call_count == 2

    def test_client_error_not_retried(self):
        notifier, session, _ = make_notifier(responses=[make_response(400)])

        with pytest.raises(NotificationDeliveryError):
            notifier.notify(make_summary(make_result("documents", 0)))
        assert session.post.call_count == 1

    def test_bearer_token(self):
        settings = NotifyConfig(url="https://ntfy.example.com", token="tk_abc", username="alice", password="pw")
        notifier, session, _ = make_notifier(settings, responses=[make_response(200)])

        assert session.headers["Authorization"] == "Bearer tk_abc"
        assert session.auth is None

    def test_basic_auth(self):
        settings = NotifyConfig(url="https://ntfy.example.com", username="alice", password="pw")
        notifier, session, _ = make_notifier(settings, responses=[make_response(200)])

        assert session.auth == ("alice", "pw")
        assert "Authorization" not in session.headers
