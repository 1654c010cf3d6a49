"""Subprocess execution with a deadline and bounded output capture.

``run`` never raises for launch, working-directory or timeout conditions; every
such condition is folded into the returned ``ExecutionOutcome``.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import IO

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
EXIT_CODE_TIMEOUT = 124
EXIT_CODE_FAILURE = 1
READ_CHUNK_BYTES = 32 * 1024
WAIT_POLL_SECONDS = 0.05
# Upper bound for draining pipes once the process itself is gone; a detached
# grandchild may keep a pipe open after its group was killed.
DRAIN_GRACE_SECONDS = 2.0

IS_WINDOWS = os.name == "nt"


@dataclass(frozen=True)
class ExecutionRequest:
    bin_path: str
    args: tuple[str, ...] = ()
    workdir: str = ""
    timeout: float | None = None
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    extra_env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionOutcome:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    timed_out: bool = False


class TailBuffer:
    """Byte buffer that keeps only the most recent ``limit`` bytes."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.truncated = False
        self._buf = bytearray()

    def write(self, data: bytes) -> int:
        if not data:
            return 0
        if len(data) >= self.limit:
            if len(data) > self.limit or self._buf:
                self.truncated = True
            self._buf[:] = data[len(data) - self.limit :]
            return len(data)
        overflow = len(self._buf) + len(data) - self.limit
        if overflow > 0:
            del self._buf[:overflow]
            self.truncated = True
        self._buf.extend(data)
        return len(data)

    def __len__(self) -> int:
        return len(self._buf)

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def text(self) -> str:
        return self._buf.decode("utf-8", errors="replace")


def clip_tail(text: str, limit: int) -> tuple[str, bool]:
    if limit <= 0 or len(text) <= limit:
        return text, False
    return text[len(text) - limit :], True


def append_error(stderr: str, message: str, limit: int) -> tuple[str, bool]:
    if not stderr:
        return clip_tail(message, limit)
    if message in stderr:
        return stderr, False
    return clip_tail(f"{stderr}\n{message}", limit)


def _drain(stream: IO[bytes], buffer: TailBuffer) -> None:
    try:
        for chunk in iter(lambda: stream.read1(READ_CHUNK_BYTES), b""):
            buffer.write(chunk)
    except (OSError, ValueError) as exc:
        logger.debug("Stopped draining output: %s", exc)


def _signal_group(pid: int) -> None:
    try:
        if IS_WINDOWS:
            subprocess.run(
                ["taskkill", "/F", "/T", "/PID", str(pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        else:
            os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError as exc:
        logger.warning("Failed to kill process group %s: %s", pid, exc)


def _kill_process_tree(process: subprocess.Popen) -> None:
    """Forcefully terminate the process and every descendant in its group."""
    _signal_group(process.pid)
    if process.poll() is None:
        process.kill()


def _join_drains(drains: list[threading.Thread], grace: float) -> bool:
    deadline = time.monotonic() + grace
    for drain in drains:
        drain.join(max(deadline - time.monotonic(), 0.0))
    return not any(drain.is_alive() for drain in drains)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


def _popen_isolation() -> dict:
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _wait_for_exit(
    process: subprocess.Popen,
    deadline: float | None,
    cancel: threading.Event | None,
) -> bool:
    """Block until the process exits or the deadline/cancellation fires.

    Returns True when the process had to be stopped.
    """
    while True:
        wait_for = WAIT_POLL_SECONDS if cancel is not None else None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            wait_for = remaining if wait_for is None else min(wait_for, remaining)
        try:
            process.wait(timeout=wait_for)
            return False
        except subprocess.TimeoutExpired:
            pass
        if cancel is not None and cancel.is_set():
            return True


def run(request: ExecutionRequest, cancel: threading.Event | None = None) -> ExecutionOutcome:
    """Execute ``request`` and return exactly one outcome.

    ``cancel`` is the caller's cancellation signal (for example a host-imposed
    deadline). When ``request.timeout`` is set it bounds the run in addition to
    ``cancel``; otherwise only ``cancel`` can stop the process early.
    """
    limit = request.max_output_bytes if request.max_output_bytes > 0 else DEFAULT_MAX_OUTPUT_BYTES
    workdir = request.workdir or os.getcwd()

    try:
        os.makedirs(workdir, exist_ok=True)
    except OSError as exc:
        stderr, truncated = clip_tail(str(exc), limit)
        return ExecutionOutcome(exit_code=EXIT_CODE_FAILURE, stderr=stderr.strip(), truncated=truncated)

    env = os.environ.copy()
    env.update(request.extra_env)
    command = [request.bin_path, *request.args]

    deadline = None
    if request.timeout is not None:
        deadline = time.monotonic() + max(request.timeout, 0.0)

    logger.debug("Spawning %s with %d argument(s) in %s", request.bin_path, len(request.args), workdir)
    try:
        process = subprocess.Popen(
            command,
            cwd=workdir,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            **_popen_isolation(),
        )
    except (OSError, ValueError, subprocess.SubprocessError) as exc:
        logger.warning("Failed to launch %s: %s", request.bin_path, exc)
        stderr, truncated = clip_tail(str(exc), limit)
        return ExecutionOutcome(exit_code=EXIT_CODE_FAILURE, stderr=stderr, truncated=truncated)

    stdout_buf = TailBuffer(limit)
    stderr_buf = TailBuffer(limit)
    drains = [
        threading.Thread(target=_drain, args=(process.stdout, stdout_buf), daemon=True),
        threading.Thread(target=_drain, args=(process.stderr, stderr_buf), daemon=True),
    ]
    for drain in drains:
        drain.start()

    timed_out = False
    try:
        timed_out = _wait_for_exit(process, deadline, cancel)
    finally:
        if timed_out or process.poll() is None:
            _kill_process_tree(process)
        process.wait()
        if not _join_drains(drains, DRAIN_GRACE_SECONDS):
            # The leader is gone but a descendant still holds the pipes open.
            _signal_group(process.pid)
        if _join_drains(drains, DRAIN_GRACE_SECONDS):
            process.stdout.close()
            process.stderr.close()
        else:
            logger.warning("Output pipes of %s still held open by a detached descendant", request.bin_path)

    truncated = stdout_buf.truncated or stderr_buf.truncated
    stdout = stdout_buf.text()
    stderr = stderr_buf.text()

    if timed_out:
        logger.warning("%s exceeded its deadline; process group killed", request.bin_path)
        return ExecutionOutcome(
            exit_code=EXIT_CODE_TIMEOUT,
            stdout=stdout,
            stderr=stderr,
            truncated=truncated,
            timed_out=True,
        )

    exit_code = process.returncode
    if exit_code is None:
        stderr, err_truncated = append_error(stderr, "process exit status unavailable", limit)
        return ExecutionOutcome(
            exit_code=EXIT_CODE_FAILURE,
            stdout=stdout,
            stderr=stderr,
            truncated=truncated or err_truncated,
        )
    if exit_code < 0:
        # Killed by a signal; report it the way a shell does.
        stderr, err_truncated = append_error(stderr, f"terminated by {_signal_name(-exit_code)}", limit)
        return ExecutionOutcome(
            exit_code=128 - exit_code,
            stdout=stdout,
            stderr=stderr,
            truncated=truncated or err_truncated,
        )

    return ExecutionOutcome(exit_code=exit_code, stdout=stdout, stderr=stderr, truncated=truncated)
