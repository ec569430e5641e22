"""Tests for the supervised process runner."""

import os
import threading
import time

import pytest

from backup_runner.core.process import ProcessHandle, SpawnError, run_process

from conftest import PYTHON


def run_script(script: str, *args: str, **kwargs):
    kwargs.setdefault("timeout", 30)
    return run_process(PYTHON, ["-c", script, *args], **kwargs)


class TestRunProcess:
    """Tests for run_process function."""

    def test_success(self):
        attempt = run_script("print('hello')")

        assert attempt.exit_code == 0
        assert attempt.succeeded
        assert attempt.stdout_tail == "hello\n"
        assert attempt.stderr_tail == ""
        assert not attempt.timed_out
        assert attempt.finished_at >= attempt.started_at

    def test_non_zero_exit_is_not_raised(self):
        attempt = run_script("import sys; print('disk full', file=sys.stderr); sys.exit(3)")

        assert attempt.exit_code == 3
        assert not attempt.succeeded
        assert "disk full" in attempt.stderr_tail

    def test_attempt_number_is_recorded(self):
        attempt = run_script("pass", attempt_number=4)
        assert attempt.attempt_number == 4

    def test_arguments_are_passed(self):
        attempt = run_script("import sys; print(' '.join(sys.argv[1:]))", "copy", "a b", "c")
        assert attempt.stdout_tail.strip() == "copy a b c"

    def test_env_is_merged(self):
        attempt = run_script(
            "import os; print(os.environ['BACKUP_TEST_VAR'], 'PATH' in os.environ)",
            env={"BACKUP_TEST_VAR": "42"},
        )
        assert attempt.stdout_tail.strip() == "42 True"

    def test_cwd(self, tmp_path):
        attempt = run_script("import os; print(os.getcwd())", cwd=str(tmp_path))
        assert os.path.samefile(attempt.stdout_tail.strip(), tmp_path)

    def test_timeout_kills_process(self):
        start = time.monotonic()
        attempt = run_script("import time; print('started', flush=True); time.sleep(60)", timeout=0.5)
        elapsed = time.monotonic() - start

        assert attempt.timed_out
        assert attempt.exit_code is None
        assert not attempt.succeeded
        assert "started" in attempt.stdout_tail
        assert elapsed < 10

    def test_timeout_escalates_to_kill(self, monkeypatch):
        monkeypatch.setattr("backup_runner.core.process.TERMINATE_GRACE", 0.5)
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n"
        )
        start = time.monotonic()
        attempt = run_script(script, timeout=1)

        assert attempt.timed_out
        assert attempt.exit_code is None
        assert time.monotonic() - start < 15

    def test_cancellation_terminates_process(self):
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        try:
            attempt = run_script("import time; time.sleep(60)", cancel=cancel)
        finally:
            timer.cancel()

        assert attempt.cancelled
        assert not attempt.timed_out
        assert attempt.exit_code is None
        assert not attempt.succeeded

    def test_output_tail_is_bounded(self):
        script = "import sys; sys.stdout.write('x' * 200000); sys.stdout.write('END')"
        attempt = run_script(script, tail_bytes=1024)

        assert attempt.exit_code == 0
        assert len(attempt.stdout_tail) == 1024
        assert attempt.stdout_tail.endswith("END")

    def test_output_lines_are_logged_at_debug(self, caplog):
        caplog.set_level("DEBUG", logger="backup_runner.core.process")
        run_script("print('line one'); print('line two')", label="docs")

        messages = [r.getMessage() for r in caplog.records]
        assert "[docs stdout] line one" in messages
        assert "[docs stdout] line two" in messages

    def test_missing_executable_raises_spawn_error(self, tmp_path):
        with pytest.raises(SpawnError, match="Cannot start"):
            run_process(str(tmp_path / "no-such-rclone"), [], 5)

    def test_not_executable_raises_spawn_error(self, tmp_path):
        script = tmp_path / "transfer.sh"
        script.write_text("#!/bin/sh\nexit 0\n")
        script.chmod(0o644)

        with pytest.raises(SpawnError):
            run_process(str(script), [], 5)

    def test_missing_cwd_raises_spawn_error(self, tmp_path):
        with pytest.raises(SpawnError):
            run_script("pass", cwd=str(tmp_path / "missing"))


class TestProcessHandle:
    """Tests for the scoped process handle."""

    def test_exit_terminates_running_process(self):
        with ProcessHandle([PYTHON, "-c", "import time; time.sleep(60)"], grace=2) as handle:
            assert handle.proc.poll() is None

        assert handle.proc.returncode is not None

    def test_exit_on_error_still_reaps(self):
        with pytest.raises(RuntimeError):
            with ProcessHandle([PYTHON, "-c", "import time; time.sleep(60)"], grace=2) as handle:
                raise RuntimeError("boom")

        assert handle.proc.returncode is not None

    def test_wait_reports_exit(self):
        with ProcessHandle([PYTHON, "-c", "pass"]) as handle:
            assert handle.wait(30) == "exited"
        assert handle.proc.returncode == 0
