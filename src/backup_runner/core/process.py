"""Supervised execution of external transfer commands.

Every attempt spawns exactly one process in its own session so the whole
process tree can be signalled. Output is drained by reader threads into
bounded tails, and the process is always terminated and reaped before
``run_process`` returns, whatever the exit path.
"""

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from datetime import datetime

from ..__util__ import BackupRunnerError, OutputTail
from .models import ExecutionAttempt

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
TERMINATE_GRACE = 5.0
READ_CHUNK = 4096


class SpawnError(BackupRunnerError):
    """The command could not be started at all."""


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.send_signal(sig)


def _drain(stream, tail: OutputTail, label: str, channel: str) -> None:
    """Copy ``stream`` into ``tail`` until EOF, logging complete lines."""
    pending = b""
    try:
        for chunk in iter(lambda: stream.read1(READ_CHUNK), b""):
            tail.feed(chunk)
            if not logger.isEnabledFor(logging.DEBUG):
                continue
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                logger.debug("[%s %s] %s", label, channel, line.decode(errors="replace").rstrip())
            # Unterminated output is only logged once a newline shows up
            pending = pending[-tail.limit :]
        if pending and logger.isEnabledFor(logging.DEBUG):
            logger.debug("[%s %s] %s", label, channel, pending.decode(errors="replace").rstrip())
    finally:
        stream.close()


class ProcessHandle:
    """Owns one child process for the duration of a ``with`` block.

    On exit the process group is terminated if still running, the child is
    reaped and the reader threads are joined.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        tail_bytes: int = 8192,
        label: str | None = None,
        grace: float | None = None,
    ) -> None:
        self.argv = argv
        self.env = env
        self.cwd = cwd
        self.label = label or argv[0]
        self.grace = TERMINATE_GRACE if grace is None else grace
        self.stdout = OutputTail(tail_bytes)
        self.stderr = OutputTail(tail_bytes)
        self.proc: subprocess.Popen | None = None
        self._readers: list[threading.Thread] = []

    def __enter__(self) -> "ProcessHandle":
        env = None
        if self.env:
            env = {**os.environ, **self.env}
        logger.debug("[%s] Spawning: %s", self.label, shlex.join(self.argv))
        try:
            self.proc = subprocess.Popen(
                self.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Cannot start '{self.argv[0]}': {e.strerror or e}") from e

        for stream, tail, channel in (
            (self.proc.stdout, self.stdout, "stdout"),
            (self.proc.stderr, self.stderr, "stderr"),
        ):
            reader = threading.Thread(
                target=_drain,
                args=(stream, tail, self.label, channel),
                name=f"{self.label}-{channel}",
                daemon=True,
            )
            reader.start()
            self._readers.append(reader)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.proc is None:
            return False
        if self.proc.poll() is None:
            self.terminate()
        self.proc.wait()
        for reader in self._readers:
            reader.join(timeout=self.grace)
        if any(r.is_alive() for r in self._readers):
            # Grandchildren still hold the pipes open
            _signal_group(self.proc, signal.SIGKILL)
            for reader in self._readers:
                reader.join()
        return False

    def terminate(self) -> None:
        """SIGTERM the process group, escalating to SIGKILL after the grace period."""
        assert self.proc is not None
        _signal_group(self.proc, signal.SIGTERM)
        try:
            self.proc.wait(timeout=self.grace)
        except subprocess.TimeoutExpired:
            logger.warning("[%s] Did not exit after SIGTERM, killing", self.label)
            _signal_group(self.proc, signal.SIGKILL)
            self.proc.wait()

    def wait(self, timeout: float, cancel: threading.Event | None = None) -> str:
        """Wait for the process to exit.

        Returns:
            "exited", "timeout" or "cancelled"
        """
        assert self.proc is not None
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return "timeout"
            if cancel is not None and cancel.is_set():
                return "cancelled"
            try:
                self.proc.wait(timeout=min(POLL_INTERVAL, remaining))
                return "exited"
            except subprocess.TimeoutExpired:
                continue


def run_process(
    command: str,
    arguments=(),
    timeout: float = 3600.0,
    *,
    attempt_number: int = 1,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    cancel: threading.Event | None = None,
    tail_bytes: int = 8192,
    label: str | None = None,
) -> ExecutionAttempt:
    """Run ``command`` with ``arguments`` and describe what happened.

    A non-zero exit status is not an error: it is reported in the returned
    attempt. On timeout or cancellation the process group is terminated and
    the attempt carries ``exit_code=None``.

    Raises:
        SpawnError: If the executable could not be launched
    """
    argv = [command, *arguments]
    label = label or command
    started_at = datetime.now()

    with ProcessHandle(argv, env=env, cwd=cwd, tail_bytes=tail_bytes, label=label) as handle:
        outcome = handle.wait(timeout, cancel)
        if outcome == "timeout":
            logger.warning("[%s] Timed out after %.0fs, terminating", label, timeout)
            handle.terminate()
        elif outcome == "cancelled":
            logger.warning("[%s] Run cancelled, terminating", label)
            handle.terminate()

    finished_at = datetime.now()
    exit_code = handle.proc.returncode if outcome == "exited" else None
    if exit_code is not None:
        logger.debug(
            "[%s] Exited with status %d after %.1fs",
            label,
            exit_code,
            (finished_at - started_at).total_seconds(),
        )

    return ExecutionAttempt(
        attempt_number=attempt_number,
        started_at=started_at,
        finished_at=finished_at,
        exit_code=exit_code,
        stdout_tail=handle.stdout.text(),
        stderr_tail=handle.stderr.text(),
        timed_out=outcome == "timeout",
        cancelled=outcome == "cancelled",
    )
