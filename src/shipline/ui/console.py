"""Console output formatting utilities for shipline."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from shipline.model import Event, JobReport, JobStatus, RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including job output and stack traces
            quiet: If True, suppress per-job progress lines (results and errors still print)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs finish on worker threads; keep their lines from interleaving
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(self, run_id: str, event: Event, job_count: int) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Run ID: {run_id}",
            f"Event: {event.ref_kind.value} {event.ref}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._print(f"JOB STARTED: {name}")

    def print_job_skipped(self, name: str, reason: str, blocked_by: Optional[str] = None) -> None:
        if self.quiet:
            return
        suffix = f" <- {blocked_by}" if blocked_by else ""
        self._print(f"JOB SKIPPED: {name} ({reason}{suffix})")

    def print_job_finished(self, job: JobReport) -> None:
        """
        Print job completion. Output of failed jobs is always shown (last
        line only unless debug); output of successful jobs only in debug.
        """
        if self.quiet and job.status is JobStatus.SUCCEEDED:
            return
        lines = []
        if job.status is JobStatus.SUCCEEDED:
            lines.append(f"JOB SUCCEEDED: {job.name}{_duration(job)}")
        else:
            lines.append(f"JOB FAILED: {job.name}{_duration(job)}")
            if job.cause is not None:
                lines.append(f"Cause: {job.cause.value}")
            if job.exit_code is not None:
                lines.append(f"Exit code: {job.exit_code}")
        if job.output and (self.debug or job.status is JobStatus.FAILED):
            if self.debug:
                lines.append(job.output.rstrip("\n"))
            else:
                last = job.output.rstrip("\n").splitlines()[-1:] or [""]
                lines.append(f"Output: {last[0]}")
        self._print(*lines)

    def print_plan(self, stages: list[list[str]], eligible: dict[str, bool]) -> None:
        """Print the stages of a pipeline and which jobs an event selects."""
        for idx, stage in enumerate(stages):
            self._print(f"=== Stage {idx + 1} ===")
            for name in stage:
                mark = "run" if eligible.get(name) else "skip: filter mismatch"
                self._print(f"  {name} ({mark})")

    def print_results(self, report: RunReport) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, f"RESULTS ({report.run_id})", "=" * 40]
        for job in report.jobs:
            status = job.status.value.upper()
            if job.skip_reason is not None:
                status += f" ({job.skip_reason.value})"
            elif job.cause is not None:
                status += f" ({job.cause.value})"
            lines.append(f"  {job.name}: {status}")
        lines.append(f"RUN: {report.status.value.upper()}")
        self._print(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


def _duration(job: JobReport) -> str:
    d = job.duration
    return f" ({d:.1f}s)" if d is not None else ""


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
