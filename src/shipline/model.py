# model.py
from __future__ import annotations

import shlex
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .triggers import FilterRule


class RefKind(str, Enum):
    BRANCH = "branch"
    TAG = "tag"


class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SkipReason(str, Enum):
    FILTER_MISMATCH = "filter mismatch"
    UPSTREAM_FAILURE = "upstream failure"
    CANCELLED = "cancelled"


class Cause(str, Enum):
    """Why a job ended `failed`."""
    EXECUTION_FAILURE = "ExecutionFailure"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    UNKNOWN_CONTEXT = "UnknownContext"


@dataclass(frozen=True)
class Command:
    """An opaque executable reference plus its arguments."""
    executable: str
    args: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.executable:
            raise ValueError("Command needs an executable")
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]

    @classmethod
    def parse(cls, line: str) -> "Command":
        """
        Build a command from shell-like text.

        A single line is split with shlex; a multi-line script runs through
        `/bin/sh -ec` so the first failing line fails the job.
        """
        text = line.strip()
        if not text:
            raise ValueError("Empty command")
        if "\n" in text:
            return cls("/bin/sh", ("-ec", text))
        parts = shlex.split(text)
        return cls(parts[0], tuple(parts[1:]))

    def __str__(self) -> str:
        return shlex.join(self.argv)


@dataclass(frozen=True)
class Job:
    """
    A unit of work: one command, the contexts it needs, the jobs it requires,
    and the trigger filter deciding which events it runs for.

    Frozen so a run's DAG snapshot can't change under the scheduler.
    """
    name: str
    command: Command
    contexts: Tuple[str, ...] = ()
    requires: Tuple[str, ...] = ()
    filters: Optional["FilterRule"] = None
    environment: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    working_directory: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Job needs a name")
        # lists are accepted for convenience; store immutable copies
        object.__setattr__(self, "contexts", tuple(self.contexts))
        object.__setattr__(self, "requires", tuple(self.requires))
        env = {str(k): str(v) for k, v in dict(self.environment).items()}
        object.__setattr__(self, "environment", MappingProxyType(env))
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Job '{self.name}' timeout must be positive")


@dataclass(frozen=True)
class Event:
    """A branch push or tag push. Exactly one run owns a given event id."""
    ref: str
    ref_kind: RefKind
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ref_kind", RefKind(self.ref_kind))
        if not self.ref:
            raise ValueError("Event ref must not be empty")

    @classmethod
    def branch(cls, name: str) -> "Event":
        return cls(ref=name, ref_kind=RefKind.BRANCH)

    @classmethod
    def tag(cls, name: str) -> "Event":
        return cls(ref=name, ref_kind=RefKind.TAG)

    @classmethod
    def from_git_ref(cls, ref: str) -> "Event":
        """`refs/tags/v1.2.3` -> tag event, `refs/heads/main` -> branch event."""
        if ref.startswith("refs/tags/"):
            return cls.tag(ref[len("refs/tags/"):])
        if ref.startswith("refs/heads/"):
            return cls.branch(ref[len("refs/heads/"):])
        raise ValueError(f"Not a branch or tag ref: {ref!r}")


# ----------------------------------------------------------------------
# Read-only run snapshots (status query + archive)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class JobReport:
    name: str
    status: JobStatus
    skip_reason: Optional[SkipReason] = None
    blocked_by: Optional[str] = None
    cause: Optional[Cause] = None
    exit_code: Optional[int] = None
    output: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class RunReport:
    run_id: str
    event: Event
    status: RunStatus
    jobs: Tuple[JobReport, ...]
    created_at: datetime
    finished_at: Optional[datetime] = None

    def job(self, name: str) -> JobReport:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def executed(self) -> list[str]:
        return [j.name for j in self.jobs if j.started_at is not None]
