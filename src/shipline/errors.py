# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable


@dataclass(eq=False)
class PipelineError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - API error bodies
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class CyclicDependency(PipelineError):
    """The job graph has a cycle. Fatal: the run never starts."""

    def __init__(self, stuck: Iterable[str]):
        stuck = sorted(stuck)
        super().__init__(
            kind="cyclic_dependency",
            message=f"Job graph has a cycle. Stuck jobs: {stuck}",
            details={"stuck": stuck},
        )
        self.stuck = stuck


class InvalidPipeline(PipelineError):
    """Duplicate job names or `requires` pointing at unknown jobs."""

    def __init__(self, message: str, *, job: str | None = None, **details: Any):
        super().__init__(kind="invalid_pipeline", message=message, job=job, details=details)


class UnknownContext(PipelineError):
    """A declared context has no registered secrets."""

    def __init__(self, context: str, job: str | None = None):
        super().__init__(
            kind="unknown_context",
            message=f"Context '{context}' has no registered secrets",
            job=job,
            details={"context": context},
        )
        self.context = context


class ConfigError(PipelineError):
    """A pipeline definition or settings value could not be understood."""

    def __init__(self, message: str, *, source: str | None = None):
        details = {"source": source} if source else {}
        super().__init__(kind="config_error", message=message, details=details)


class EventAlreadyOwned(PipelineError):
    def __init__(self, event_id: str, run_id: str):
        super().__init__(
            kind="event_already_owned",
            message=f"Event {event_id} is already owned by run {run_id}",
            details={"event_id": event_id, "run_id": run_id},
        )


class UnknownRun(PipelineError):
    def __init__(self, run_id: str):
        super().__init__(kind="unknown_run", message=f"No run with id {run_id}", details={"run_id": run_id})