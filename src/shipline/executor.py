# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Mapping, Optional, Protocol, Sequence

from .model import Cause, Job

DEFAULT_TIMEOUT = 3600.0
DEFAULT_OUTPUT_LIMIT = 64 * 1024

# Only these are inherited from the engine's own environment. Everything
# else a job sees comes from job.environment and its resolved contexts.
DEFAULT_PASSTHROUGH_ENV = (
    "PATH",
    "HOME",
    "LANG",
    "LC_ALL",
    "TERM",
    "TMPDIR",
    "TZ",
    # needed for processes to start on Windows
    "SYSTEMROOT",
    "COMSPEC",
    "PATHEXT",
    "TEMP",
    "TMP",
)

MASK = "****"
MIN_MASK_LENGTH = 4


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: Optional[int]
    output: str
    cause: Optional[Cause] = None
    truncated: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.cause is None and self.exit_code == 0


class JobExecutor(Protocol):
    def execute(
        self,
        job: Job,
        secrets: Mapping[str, str],
        token: Optional["CancelToken"] = None,
    ) -> ExecutionResult:
        ...


# ----------------------------------------------------------------------
# Output capture
# ----------------------------------------------------------------------

def _maskable(secrets: Mapping[str, str] | None) -> list[bytes]:
    # longest first so a secret containing another is masked whole
    values = {v for v in (secrets or {}).values() if len(v) >= MIN_MASK_LENGTH}
    return sorted((v.encode("utf-8") for v in values), key=len, reverse=True)


class OutputBuffer:
    """
    Keeps the last `limit` bytes written. Earlier bytes are dropped and
    counted; getvalue() prefixes a marker when anything was dropped.

    Secret values are masked as the bytes arrive, before anything can be
    dropped. The last len(longest secret) - 1 bytes are held back until the
    next write, so a secret split across chunks is still caught.
    """

    def __init__(self, limit: int = DEFAULT_OUTPUT_LIMIT, secrets: Mapping[str, str] | None = None):
        if limit <= 0:
            raise ValueError("output limit must be positive")
        self.limit = limit
        self.dropped = 0
        self._buf = bytearray()
        self._secrets = _maskable(secrets)
        self._hold = max((len(s) for s in self._secrets), default=1) - 1
        self._pending = b""
        self._lock = threading.Lock()

    def write(self, chunk: bytes) -> None:
        with self._lock:
            data = self._pending + bytes(chunk)
            for secret in self._secrets:
                data = data.replace(secret, MASK.encode())
            cut = len(data) - self._hold
            if cut <= 0:
                self._pending = data
                return
            self._pending = data[cut:]
            self._keep(data[:cut])

    def _keep(self, data: bytes) -> None:
        self._buf.extend(data)
        excess = len(self._buf) - self.limit
        if excess > 0:
            del self._buf[:excess]
            self.dropped += excess

    def flush(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, b""
            self._keep(pending)

    def drain(self, stream: IO[bytes]) -> None:
        for chunk in iter(lambda: stream.read1(8192), b""):
            self.write(chunk)
        stream.close()

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def getvalue(self) -> str:
        self.flush()
        with self._lock:
            text = bytes(self._buf).decode("utf-8", errors="replace")
            dropped = self.dropped
        if dropped:
            return f"[output truncated: {dropped} bytes dropped]\n{text}"
        return text


def mask_secrets(text: str, secrets: Mapping[str, str] | None) -> str:
    """Replace every secret value in `text`. Very short values are left alone."""
    for value in _maskable(secrets):
        text = text.replace(value.decode("utf-8"), MASK)
    return text


# ----------------------------------------------------------------------
# Process control
# ----------------------------------------------------------------------

def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            # the job runs in its own session; signal its children too
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class CancelToken:
    """
    Lets the scheduler terminate a job that is executing on another thread.
    Cancelling before the process starts terminates it as soon as it does.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or `timeout` passes. True if cancelled."""
        return self._event.wait(timeout)

    def attach(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._proc = proc
            if self.cancelled:
                _signal_group(proc, signal.SIGTERM)

    def detach(self) -> None:
        with self._lock:
            self._proc = None

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            if self._proc is not None:
                _signal_group(self._proc, signal.SIGTERM)


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

class SubprocessExecutor:
    """
    Runs a job's command as a local process.

    - no shell: the command's argv is executed as-is
    - environment = passthrough allow-list + job.environment + secrets
    - stdout/stderr merged into a bounded buffer
    - timeout kills the whole process group
    """

    def __init__(
        self,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        passthrough_env: Sequence[str] = DEFAULT_PASSTHROUGH_ENV,
        workdir: str | Path = ".",
        reader_grace: float = 5.0,
    ):
        self.default_timeout = default_timeout
        self.output_limit = output_limit
        self.passthrough_env = tuple(passthrough_env)
        self.workdir = Path(workdir)
        self.reader_grace = reader_grace

    def build_env(self, job: Job, secrets: Mapping[str, str] | None) -> dict[str, str]:
        env = {k: os.environ[k] for k in self.passthrough_env if k in os.environ}
        env.update(job.environment)
        env.update(secrets or {})
        return env

    def _cwd(self, job: Job) -> Path:
        return (self.workdir / (job.working_directory or ".")).resolve()

    def execute(
        self,
        job: Job,
        secrets: Mapping[str, str] | None = None,
        token: Optional[CancelToken] = None,
    ) -> ExecutionResult:
        secrets = dict(secrets or {})
        timeout = job.timeout or self.default_timeout
        cwd = self._cwd(job)
        start = time.monotonic()

        if not cwd.is_dir():
            return ExecutionResult(
                exit_code=None,
                output=f"[{job.name}] working directory not found: {cwd}",
                cause=Cause.EXECUTION_FAILURE,
            )

        try:
            proc = subprocess.Popen(
                job.command.argv,
                cwd=str(cwd),
                env=self.build_env(job, secrets),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            # shells report "command not found" as 127
            return ExecutionResult(
                exit_code=127,
                output=f"[{job.name}] could not start {job.command.executable}: {e}",
                cause=Cause.EXECUTION_FAILURE,
                duration=time.monotonic() - start,
            )

        buf = OutputBuffer(self.output_limit, secrets)
        reader = threading.Thread(target=buf.drain, args=(proc.stdout,), daemon=True)
        reader.start()

        if token is not None:
            token.attach(proc)

        timed_out = False
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            _signal_group(proc, _SIGKILL)
            proc.wait()
        finally:
            if token is not None:
                token.detach()

        # a background grandchild may still hold the pipe open
        reader.join(self.reader_grace)

        output = buf.getvalue()
        exit_code = proc.returncode

        if timed_out:
            cause = Cause.TIMEOUT
            output += f"\n[{job.name}] timed out after {timeout:g}s"
        elif exit_code != 0 and token is not None and token.cancelled:
            cause = Cause.CANCELLED
        elif exit_code != 0:
            cause = Cause.EXECUTION_FAILURE
        else:
            cause = None

        return ExecutionResult(
            exit_code=exit_code,
            output=output,
            cause=cause,
            truncated=buf.truncated,
            duration=time.monotonic() - start,
        )
