from .dsl import job, cmd, only, ignore, regex, semver, filters, release_only, wf, JobBuilder, build
from .scheduler import Scheduler
from .model import Command, Event, Job, RunReport

__all__ = [
    "job",
    "cmd",
    "only",
    "ignore",
    "regex",
    "semver",
    "filters",
    "release_only",
    "wf",
    "JobBuilder",
    "build",
    "Scheduler",
    "Command",
    "Event",
    "Job",
    "RunReport",
]
