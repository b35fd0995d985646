from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import PipelineError
from .model import Cause, Event, Job, JobStatus, RefKind, RunReport, RunStatus, SkipReason
from .scheduler import Scheduler

# -------------------- Schemas --------------------

class EventIn(BaseModel):
    ref: str
    # omitted when `ref` is fully qualified (refs/heads/..., refs/tags/...)
    ref_kind: Optional[RefKind] = None
    # webhook delivery id; a redelivery of the same id is rejected
    id: Optional[str] = Field(default=None, max_length=64)

class EventAccepted(BaseModel):
    run_id: str
    event_id: str

class JobOut(BaseModel):
    name: str
    status: JobStatus
    skip_reason: Optional[SkipReason] = None
    blocked_by: Optional[str] = None
    cause: Optional[Cause] = None
    exit_code: Optional[int] = None
    output: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class RunOut(BaseModel):
    run_id: str
    event_id: str
    ref: str
    ref_kind: RefKind
    status: RunStatus
    jobs: List[JobOut]
    created_at: datetime
    finished_at: Optional[datetime] = None

class CancelOut(BaseModel):
    run_id: str
    cancelled: bool


def run_out(report: RunReport) -> RunOut:
    return RunOut(
        run_id=report.run_id,
        event_id=report.event.id,
        ref=report.event.ref,
        ref_kind=report.event.ref_kind,
        status=report.status,
        jobs=[
            JobOut(
                name=j.name,
                status=j.status,
                skip_reason=j.skip_reason,
                blocked_by=j.blocked_by,
                cause=j.cause,
                exit_code=j.exit_code,
                output=j.output,
                started_at=j.started_at,
                finished_at=j.finished_at,
            )
            for j in report.jobs
        ],
        created_at=report.created_at,
        finished_at=report.finished_at,
    )


_STATUS_CODES = {
    "cyclic_dependency": 422,
    "invalid_pipeline": 422,
    "config_error": 422,
    "event_already_owned": 409,
    "unknown_run": 404,
}


def create_app(load_jobs: Callable[[], List[Job]], scheduler: Scheduler) -> FastAPI:
    """
    HTTP surface of the engine.

    `load_jobs` is called for every event so edits to the pipeline file are
    picked up without a restart; each run still snapshots what it loaded.
    """
    app = FastAPI(title="shipline")
    app.state.scheduler = scheduler

    @app.exception_handler(PipelineError)
    async def pipeline_error(_request, exc: PipelineError):
        return JSONResponse(
            status_code=_STATUS_CODES.get(exc.kind, 400),
            content={"kind": exc.kind, "detail": exc.message, "job": exc.job, "details": exc.details},
        )

    # -------------------- Endpoints --------------------

    @app.post("/events", response_model=EventAccepted, status_code=202)
    def ingest(req: EventIn, background: BackgroundTasks):
        try:
            if req.ref_kind is None:
                event = Event.from_git_ref(req.ref)
            else:
                event = Event(ref=req.ref, ref_kind=req.ref_kind)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        if req.id:
            event = Event(ref=event.ref, ref_kind=event.ref_kind, id=req.id)

        run = scheduler.create_run(load_jobs(), event)
        background.add_task(scheduler.execute, run)
        return EventAccepted(run_id=run.run_id, event_id=event.id)

    @app.get("/runs", response_model=List[RunOut])
    def list_runs(limit: int = 50):
        reports = scheduler.active()
        if scheduler.archive is not None:
            reports.extend(scheduler.archive.recent(limit))
        return [run_out(r) for r in reports[:limit]]

    @app.get("/runs/{run_id}", response_model=RunOut)
    def get_run(run_id: str):
        return run_out(scheduler.status(run_id))

    @app.post("/runs/{run_id}/cancel", response_model=CancelOut)
    def cancel_run(run_id: str):
        return CancelOut(run_id=run_id, cancelled=scheduler.cancel(run_id))

    return app
