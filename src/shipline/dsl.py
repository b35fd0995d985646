# src/shipline/dsl.py
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Union

from .model import Command, Job
from .triggers import AnyRef, Exact, FilterRule, Ignore, Only, Pattern, Regex, SemverTag

CommandLike = Union[Command, str, Sequence[str]]

ALL = AnyRef()


# ---------------------------------------------------------------------
# Command helper
# ---------------------------------------------------------------------

def cmd(command: CommandLike) -> Command:
    """
    Accepts a Command, shell-like text ("deploy.sh -c engineering") or an
    argv list (["deploy.sh", "-c", "engineering"]).
    """
    if isinstance(command, Command):
        return command
    if isinstance(command, str):
        return Command.parse(command)
    argv = [str(a) for a in command]
    if not argv:
        raise ValueError("Empty command")
    return Command(argv[0], tuple(argv[1:]))


# ---------------------------------------------------------------------
# Filter helpers
# ---------------------------------------------------------------------

def regex(pattern: str) -> Regex:
    return Regex(pattern)


def semver(prefix: str = "v", *, prefix_required: bool = False) -> SemverTag:
    return SemverTag(prefix, prefix_required)


def only(*patterns: Union[str, Pattern]) -> Only:
    return Only(patterns)


def ignore(*patterns: Union[str, Pattern]) -> Ignore:
    return Ignore(patterns)


def filters(
    *,
    branches: Union[Only, Ignore, None] = None,
    tags: Optional[Only] = None,
) -> FilterRule:
    return FilterRule(branches=branches, tags=tags)


def release_only(prefix: str = "v") -> FilterRule:
    """Never on branch pushes; on tag pushes only for semantic-version tags."""
    return FilterRule(branches=Ignore((ALL,)), tags=Only((SemverTag(prefix),)))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    command: CommandLike,
    *,
    requires: Optional[List[str]] = None,
    contexts: Union[str, List[str], None] = None,
    filters: Optional[FilterRule] = None,
    environment: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    cwd: str | None = None,
) -> Job:
    if isinstance(contexts, str):
        contexts = [contexts]
    return Job(
        name=name,
        command=cmd(command),
        requires=tuple(requires or ()),
        contexts=tuple(contexts or ()),
        filters=filters,
        environment=environment or {},
        timeout=timeout,
        working_directory=cwd,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._command: Optional[Command] = None
        self._requires: list[str] = []
        self._contexts: list[str] = []
        self._env: dict[str, str] = {}
        self._filters: Optional[FilterRule] = None
        self._timeout: Optional[float] = None
        self._cwd: Optional[str] = None

    def run(self, command: CommandLike):
        self._command = cmd(command)
        return self

    def depends_on(self, *job_names: str):
        self._requires.extend(job_names)
        return self

    def with_contexts(self, *contexts: str):
        self._contexts.extend(contexts)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_filters(self, rule: FilterRule):
        self._filters = rule
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def in_dir(self, cwd: str):
        self._cwd = cwd
        return self

    def build(self) -> Job:
        if self._command is None:
            raise ValueError(f"Job '{self.name}' has no command")
        return Job(
            name=self.name,
            command=self._command,
            requires=tuple(self._requires),
            contexts=tuple(self._contexts),
            filters=self._filters,
            environment=self._env,
            timeout=self._timeout,
            working_directory=self._cwd,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('deploy').run('deploy.sh').depends_on('build').build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper:

        from shipline import wf, job, release_only

        def workflow():
            return wf(
                job("build", "scripts/build.sh"),
                job("deploy", "scripts/deploy.sh", requires=["build"], filters=release_only()),
            )

    Or define JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)


__all__ = [
    "ALL",
    "Exact",
    "JobBuilder",
    "build",
    "cmd",
    "filters",
    "ignore",
    "job",
    "only",
    "regex",
    "release_only",
    "semver",
    "wf",
]
