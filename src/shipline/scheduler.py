# scheduler.py
from __future__ import annotations

import os
import queue
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

from .credentials import CredentialResolver, CredentialScope
from .dag import build_dag, dependents_of, topo_levels
from .errors import EventAlreadyOwned, UnknownContext, UnknownRun
from .executor import CancelToken, ExecutionResult, JobExecutor, mask_secrets
from .model import (
    Cause,
    Event,
    Job,
    JobReport,
    JobStatus,
    RunReport,
    RunStatus,
    SkipReason,
)
from .triggers import is_eligible
from .ui.console import Console, get_console

if TYPE_CHECKING:
    from .archive import RunArchive


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# Allowed job status transitions. Terminal statuses have none, so a job
# can't be re-run or re-skipped once it has finished.
_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.READY, JobStatus.SKIPPED}),
    JobStatus.READY: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.SKIPPED: frozenset(),
}


@dataclass
class JobRecord:
    name: str
    status: JobStatus = JobStatus.PENDING
    skip_reason: Optional[SkipReason] = None
    blocked_by: Optional[str] = None
    cause: Optional[Cause] = None
    exit_code: Optional[int] = None
    output: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def report(self) -> JobReport:
        return JobReport(
            name=self.name,
            status=self.status,
            skip_reason=self.skip_reason,
            blocked_by=self.blocked_by,
            cause=self.cause,
            exit_code=self.exit_code,
            output=self.output,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


class WorkflowRun:
    """
    One execution of the job DAG for one event.

    The DAG snapshot (jobs, edges, stages) is read-only. Per-job status is
    the only mutable state and changes only through transition().
    """

    def __init__(self, run_id: str, event: Event, jobs: List[Job]):
        adj, indeg = build_dag(jobs)
        stages = topo_levels(adj, indeg)

        self.run_id = run_id
        self.event = event
        self.jobs: Mapping[str, Job] = MappingProxyType({j.name: j for j in jobs})
        self.stages = tuple(tuple(s) for s in stages)
        self._adj: Mapping[str, FrozenSet[str]] = MappingProxyType(
            {k: frozenset(v) for k, v in adj.items()}
        )
        # topological order for single-pass readiness checks
        self.order = tuple(name for stage in self.stages for name in stage)
        self.records: Dict[str, JobRecord] = {j.name: JobRecord(j.name) for j in jobs}

        self.status = RunStatus.PENDING
        self.created_at = now_utc()
        self.finished_at: Optional[datetime] = None
        self.cancel_requested = False
        # set once cancellation skipped or signalled at least one job
        self.cancel_applied = False
        self._lock = threading.Lock()

    def transition(self, name: str, status: JobStatus, **fields) -> JobRecord:
        with self._lock:
            rec = self.records[name]
            if status not in _TRANSITIONS[rec.status]:
                raise RuntimeError(
                    f"Illegal transition for job '{name}': {rec.status.value} -> {status.value}"
                )
            rec.status = status
            for key, value in fields.items():
                setattr(rec, key, value)
            return rec

    def set_status(self, status: RunStatus) -> None:
        with self._lock:
            self.status = status
            if status not in (RunStatus.PENDING, RunStatus.RUNNING):
                self.finished_at = now_utc()

    def status_of(self, name: str) -> JobStatus:
        return self.records[name].status

    def dependents(self, name: str) -> Set[str]:
        return dependents_of(self._adj, name)

    def blocker(self, name: str) -> Optional[str]:
        """The first required job that ended without succeeding, if any."""
        for req in self.jobs[name].requires:
            st = self.records[req].status
            if st in (JobStatus.FAILED, JobStatus.SKIPPED):
                return req
        return None

    def requirements_met(self, name: str) -> bool:
        return all(self.records[r].status is JobStatus.SUCCEEDED for r in self.jobs[name].requires)

    @property
    def finished(self) -> bool:
        return all(r.status.terminal for r in self.records.values())

    def snapshot(self) -> RunReport:
        with self._lock:
            return RunReport(
                run_id=self.run_id,
                event=self.event,
                status=self.status,
                jobs=tuple(rec.report() for rec in self.records.values()),
                created_at=self.created_at,
                finished_at=self.finished_at,
            )


@dataclass(frozen=True)
class _Completion:
    name: str
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None


_CANCEL = object()


# finished runs kept in memory when there is no archive
DEFAULT_HISTORY_LIMIT = 1000


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Drives workflow runs: trigger filtering, readiness, dispatch, cascade.

    Jobs execute on a thread pool. Their completion reports arrive on a
    per-run queue and are applied one at a time on the thread that called
    execute(), so status transitions have a single writer.
    """

    def __init__(
        self,
        executor: JobExecutor,
        resolver: CredentialResolver | None = None,
        *,
        max_workers: int | None = None,
        console: Console | None = None,
        archive: "RunArchive | None" = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self.executor = executor
        self.resolver = resolver if resolver is not None else CredentialResolver()
        self.max_workers = max_workers or default_workers()
        self._console = console
        self.archive = archive
        self.history_limit = history_limit

        self._lock = threading.Lock()
        self._runs: Dict[str, WorkflowRun] = {}
        self._finished: Dict[str, RunReport] = {}
        self._owners: Dict[str, str] = {}
        self._inboxes: Dict[str, "queue.Queue[object]"] = {}
        self._tokens: Dict[str, Dict[str, CancelToken]] = {}

    @property
    def console(self) -> Console:
        return self._console or get_console()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def create_run(self, jobs: Iterable[Job], event: Event) -> WorkflowRun:
        """
        Snapshot the pipeline for `event`. Raises CyclicDependency or
        InvalidPipeline before anything executes.
        """
        jobs = list(jobs)
        run = WorkflowRun(uuid.uuid4().hex, event, jobs)
        with self._lock:
            owner = self._owners.get(event.id)
            if owner is None and self.archive is not None:
                owner = self.archive.owner_of(event.id)
            if owner is not None:
                raise EventAlreadyOwned(event.id, owner)
            self._owners[event.id] = run.run_id
            self._runs[run.run_id] = run
            self._inboxes[run.run_id] = queue.Queue()
            self._tokens[run.run_id] = {}
        return run

    def run(self, jobs: Iterable[Job], event: Event) -> RunReport:
        return self.execute(self.create_run(jobs, event))

    def execute(self, run: WorkflowRun) -> RunReport:
        """Run every job of `run` to a terminal status. Blocks until done."""
        if run.status is not RunStatus.PENDING:
            raise RuntimeError(f"Run {run.run_id} was already started")
        inbox = self._inboxes[run.run_id]
        tokens = self._tokens[run.run_id]
        console = self.console

        run.set_status(RunStatus.RUNNING)
        console.print_run_started(run.run_id, run.event, len(run.jobs))

        # Trigger evaluation happens for every job before any dependency
        # is considered, so a filtered job is always "filter mismatch".
        for name in run.order:
            if not is_eligible(run.jobs[name], run.event):
                self._skip(run, name, SkipReason.FILTER_MISMATCH)

        in_flight = 0
        with ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix=f"shipline-{run.run_id[:8]}",
        ) as pool:
            if run.cancel_requested:
                self._cancel_pending(run)
            else:
                in_flight += self._advance(run, pool, inbox, tokens)

            while in_flight:
                msg = inbox.get()
                if msg is _CANCEL:
                    self._cancel_pending(run)
                    if tokens:
                        run.cancel_applied = True
                    for token in list(tokens.values()):
                        token.cancel()
                    continue

                in_flight -= 1
                self._complete(run, msg)
                if run.cancel_requested:
                    # cancel() may land while this report is applied, with
                    # its message still queued behind the last completion
                    self._cancel_pending(run)
                else:
                    in_flight += self._advance(run, pool, inbox, tokens)

        if run.cancel_requested:
            self._cancel_pending(run)
        if not run.finished:
            stuck = sorted(n for n, r in run.records.items() if not r.status.terminal)
            raise RuntimeError(f"Scheduler stalled with non-terminal jobs: {stuck}")

        return self._finalize(run)

    def cancel(self, run_id: str) -> bool:
        """
        Request cancellation. Running jobs get a termination signal, jobs not
        started yet are skipped. False if the run already finished.
        """
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                if run_id in self._finished or (self.archive and self.archive.get(run_id)):
                    return False
                raise UnknownRun(run_id)
            if run.status not in (RunStatus.PENDING, RunStatus.RUNNING) or run.cancel_requested:
                return False
            run.cancel_requested = True
            self._inboxes[run_id].put(_CANCEL)
        return True

    def status(self, run_id: str) -> RunReport:
        """Read-only status of an active, finished or archived run."""
        with self._lock:
            run = self._runs.get(run_id)
            report = run.snapshot() if run is not None else self._finished.get(run_id)
        if report is None and self.archive is not None:
            report = self.archive.get(run_id)
        if report is None:
            raise UnknownRun(run_id)
        return report

    def active(self) -> List[RunReport]:
        with self._lock:
            return [r.snapshot() for r in self._runs.values()]

    # ------------------------------------------------------------------
    # Internals (scheduler thread only)
    # ------------------------------------------------------------------

    def _skip(
        self,
        run: WorkflowRun,
        name: str,
        reason: SkipReason,
        blocked_by: Optional[str] = None,
    ) -> None:
        run.transition(name, JobStatus.SKIPPED, skip_reason=reason, blocked_by=blocked_by, finished_at=now_utc())
        self.console.print_job_skipped(name, reason.value, blocked_by)

    def _advance(self, run: WorkflowRun, pool: ThreadPoolExecutor, inbox, tokens) -> int:
        """
        One pass in topological order: skip jobs whose requirements can no
        longer succeed, dispatch jobs whose requirements all succeeded.
        Returns the number of jobs submitted.
        """
        submitted = 0
        for name in run.order:
            if run.status_of(name) is not JobStatus.PENDING:
                continue
            blocker = run.blocker(name)
            if blocker is not None:
                self._skip(run, name, SkipReason.UPSTREAM_FAILURE, blocked_by=blocker)
            elif run.requirements_met(name):
                if self._dispatch(run, name, pool, inbox, tokens):
                    submitted += 1
        return submitted

    def _dispatch(self, run: WorkflowRun, name: str, pool: ThreadPoolExecutor, inbox, tokens) -> bool:
        job = run.jobs[name]
        run.transition(name, JobStatus.READY)
        try:
            scope = self.resolver.resolve(job.contexts, job=name)
        except UnknownContext as e:
            self._fail_before_start(run, name, Cause.UNKNOWN_CONTEXT, str(e))
            return False
        except Exception as e:
            # the secret store is external; its errors stay with this job
            self._fail_before_start(
                run,
                name,
                Cause.EXECUTION_FAILURE,
                f"credential lookup failed: {type(e).__name__}: {e}",
            )
            return False

        token = CancelToken()
        tokens[name] = token
        run.transition(name, JobStatus.RUNNING, started_at=now_utc())
        self.console.print_job_start(name)
        pool.submit(self._work, job, scope, token, inbox)
        return True

    def _fail_before_start(self, run: WorkflowRun, name: str, cause: Cause, output: str) -> None:
        rec = run.transition(name, JobStatus.FAILED, cause=cause, output=output, finished_at=now_utc())
        self.console.print_job_finished(rec.report())
        self._cascade(run, name)

    def _work(self, job: Job, scope: CredentialScope, token: CancelToken, inbox) -> None:
        # worker thread: never touches run state, only reports back
        with scope:
            try:
                result = self.executor.execute(job, scope, token)
            except Exception as e:
                # masked while the scope still holds the values
                detail = mask_secrets(f"{type(e).__name__}: {e}", scope)
                inbox.put(_Completion(job.name, error=detail))
                return
        inbox.put(_Completion(job.name, result=result))

    def _complete(self, run: WorkflowRun, msg: _Completion) -> None:
        finished_at = now_utc()
        if msg.error is not None:
            rec = run.transition(
                msg.name,
                JobStatus.FAILED,
                cause=Cause.EXECUTION_FAILURE,
                output=msg.error,
                finished_at=finished_at,
            )
        elif msg.result is not None and msg.result.ok:
            rec = run.transition(
                msg.name,
                JobStatus.SUCCEEDED,
                exit_code=msg.result.exit_code,
                output=msg.result.output,
                finished_at=finished_at,
            )
        else:
            result = msg.result
            rec = run.transition(
                msg.name,
                JobStatus.FAILED,
                cause=(result.cause if result and result.cause else Cause.EXECUTION_FAILURE),
                exit_code=result.exit_code if result else None,
                output=result.output if result else "",
                finished_at=finished_at,
            )
        self._tokens[run.run_id].pop(msg.name, None)
        self.console.print_job_finished(rec.report())
        if rec.status is JobStatus.FAILED:
            self._cascade(run, msg.name)

    def _cascade(self, run: WorkflowRun, failed: str) -> None:
        downstream = run.dependents(failed)
        for name in run.order:
            if name in downstream and not run.status_of(name).terminal:
                self._skip(run, name, SkipReason.UPSTREAM_FAILURE, blocked_by=failed)

    def _cancel_pending(self, run: WorkflowRun) -> None:
        for name in run.order:
            if run.status_of(name) is JobStatus.PENDING:
                self._skip(run, name, SkipReason.CANCELLED)
                run.cancel_applied = True

    def _finalize(self, run: WorkflowRun) -> RunReport:
        statuses = [r.status for r in run.records.values()]
        # a cancel that arrived after every job finished changed nothing
        if run.cancel_applied:
            final = RunStatus.CANCELLED
        elif JobStatus.FAILED in statuses:
            final = RunStatus.FAILED
        else:
            # all-skipped is a valid "nothing to do for this event"
            final = RunStatus.SUCCEEDED
        run.set_status(final)
        report = run.snapshot()

        self.console.print_results(report)
        archived = False
        try:
            if self.archive is not None:
                self.archive.save(report)
                archived = True
        finally:
            with self._lock:
                self._runs.pop(run.run_id, None)
                self._inboxes.pop(run.run_id, None)
                self._tokens.pop(run.run_id, None)
                if archived:
                    # the archive answers ownership from here on
                    self._owners.pop(run.event.id, None)
                else:
                    self._remember(report)
        return report

    def _remember(self, report: RunReport) -> None:
        """Keep a finished report in memory, evicting the oldest past the limit."""
        self._finished[report.run_id] = report
        while len(self._finished) > self.history_limit:
            oldest = self._finished.pop(next(iter(self._finished)))
            if self._owners.get(oldest.event.id) == oldest.run_id:
                del self._owners[oldest.event.id]
