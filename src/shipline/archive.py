# archive.py
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import Cause, Event, JobReport, JobStatus, RefKind, RunReport, RunStatus, SkipReason


class Base(DeclarativeBase):
    pass


class Run(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    # one run per event
    event_id: Mapped[str] = mapped_column(sa.String(64), unique=True, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref_kind: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    jobs: Mapped[List["RunJob"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="RunJob.position"
    )


class RunJob(Base):
    __tablename__ = "run_jobs"
    run_id: Mapped[str] = mapped_column(sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    name: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    skip_reason: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    blocked_by: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    cause: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    # secret values are masked before output reaches the archive
    output: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    run: Mapped[Run] = relationship(back_populates="jobs")


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _ensure_sqlite_dir(url: str) -> None:
    u = make_url(url)
    if u.get_backend_name() == "sqlite" and u.database and u.database != ":memory:":
        Path(u.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


class RunArchive:
    """
    Finished runs, stored read-only. A run is written once, when it reaches
    its terminal status, and only read after that.
    """

    def __init__(self, database_url: str):
        _ensure_sqlite_dir(database_url)
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
            # one shared connection, or every thread sees an empty database
            self.engine = sa.create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = sa.create_engine(database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def save(self, report: RunReport) -> None:
        if report.status in (RunStatus.PENDING, RunStatus.RUNNING):
            raise ValueError(f"Run {report.run_id} is not finished ({report.status.value})")
        with self.SessionLocal() as s:
            with s.begin():
                run = Run(
                    id=report.run_id,
                    event_id=report.event.id,
                    ref=report.event.ref,
                    ref_kind=report.event.ref_kind.value,
                    status=report.status.value,
                    created_at=report.created_at,
                    finished_at=report.finished_at,
                )
                for pos, j in enumerate(report.jobs):
                    run.jobs.append(
                        RunJob(
                            name=j.name,
                            position=pos,
                            status=j.status.value,
                            skip_reason=j.skip_reason.value if j.skip_reason else None,
                            blocked_by=j.blocked_by,
                            cause=j.cause.value if j.cause else None,
                            exit_code=j.exit_code,
                            output=j.output,
                            started_at=j.started_at,
                            finished_at=j.finished_at,
                        )
                    )
                s.add(run)

    def get(self, run_id: str) -> Optional[RunReport]:
        with self.SessionLocal() as s:
            run = s.get(Run, run_id, options=[selectinload(Run.jobs)])
            if run is None:
                return None
            return _to_report(run)

    def owner_of(self, event_id: str) -> Optional[str]:
        with self.SessionLocal() as s:
            return s.execute(sa.select(Run.id).where(Run.event_id == event_id)).scalar_one_or_none()

    def recent(self, limit: int = 50) -> List[RunReport]:
        with self.SessionLocal() as s:
            q = (
                sa.select(Run)
                .options(selectinload(Run.jobs))
                .order_by(Run.created_at.desc())
                .limit(limit)
            )
            return [_to_report(r) for r in s.execute(q).scalars()]


def _to_report(run: Run) -> RunReport:
    return RunReport(
        run_id=run.id,
        event=Event(ref=run.ref, ref_kind=RefKind(run.ref_kind), id=run.event_id),
        status=RunStatus(run.status),
        jobs=tuple(
            JobReport(
                name=j.name,
                status=JobStatus(j.status),
                skip_reason=SkipReason(j.skip_reason) if j.skip_reason else None,
                blocked_by=j.blocked_by,
                cause=Cause(j.cause) if j.cause else None,
                exit_code=j.exit_code,
                output=j.output,
                started_at=_utc(j.started_at),
                finished_at=_utc(j.finished_at),
            )
            for j in run.jobs
        ),
        created_at=_utc(run.created_at),
        finished_at=_utc(run.finished_at),
    )
