# config.py
from __future__ import annotations

import re
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .model import Command, Job
from .triggers import Exact, FilterRule, Ignore, Only, Pattern, Regex

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: Any) -> Optional[float]:
    """`90`, `"90s"`, `"10m"`, `"1h"` -> seconds. None stays None."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        m = _DURATION_RE.match(str(value))
        if m is None:
            raise ConfigError(f"Invalid duration: {value!r} (use e.g. 30s, 10m, 1h)")
        seconds = float(m.group(1)) * _UNITS[m.group(2)]
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path, *, workflow: str | None = None) -> List[Job]:
    """
    Load a pipeline from a file path.

    - `.py`: the file must define either workflow() -> List[Job] or JOBS = [Job, ...]
    - `.yml` / `.yaml`: CircleCI-shaped jobs + workflows (see load_yaml_pipeline)

    Returns:
      List[Job]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigError(f"Workflow file not found: {wf_path}", source=str(wf_path))

    if wf_path.suffix in (".yml", ".yaml"):
        try:
            data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", source=str(wf_path)) from e
        return load_yaml_pipeline(data, workflow=workflow, source=str(wf_path))

    if wf_path.suffix != ".py":
        raise ConfigError(
            f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}", source=str(wf_path)
        )

    module_name = f"shipline_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise ConfigError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...].",
            source=str(wf_path),
        )

    return jobs


# ----------------------------------------------------------------------
# CircleCI-shaped YAML
# ----------------------------------------------------------------------

def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def parse_pattern(text: Any) -> Pattern:
    """`/regex/` is a full-match regex, anything else an exact ref name."""
    s = str(text)
    if len(s) >= 2 and s.startswith("/") and s.endswith("/"):
        try:
            return Regex(s[1:-1])
        except ValueError as e:
            raise ConfigError(str(e)) from e
    return Exact(s)


def parse_filters(data: Any, *, job: str) -> Optional[FilterRule]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ConfigError(f"[{job}] filters must be a mapping")

    branches = None
    b = data.get("branches")
    if b is not None:
        if not isinstance(b, dict) or ("only" in b) == ("ignore" in b):
            raise ConfigError(f"[{job}] filters.branches needs exactly one of 'only' or 'ignore'")
        if "only" in b:
            branches = Only(tuple(parse_pattern(p) for p in _as_list(b["only"])))
        else:
            branches = Ignore(tuple(parse_pattern(p) for p in _as_list(b["ignore"])))

    tags = None
    t = data.get("tags")
    if t is not None:
        if not isinstance(t, dict) or set(t) != {"only"}:
            raise ConfigError(f"[{job}] filters.tags supports only an 'only' allow-list")
        tags = Only(tuple(parse_pattern(p) for p in _as_list(t["only"])))

    return FilterRule(branches=branches, tags=tags)


def _job_body(name: str, spec: Any) -> Dict[str, Any]:
    """Command, environment and timeout of a `jobs.<name>` entry."""
    if not isinstance(spec, dict):
        raise ConfigError(f"Job '{name}' must be a mapping")

    env: Dict[str, str] = {str(k): str(v) for k, v in (spec.get("environment") or {}).items()}
    timeout = parse_duration(spec.get("timeout"))
    scripts: List[str] = []

    if "command" in spec:
        scripts.append(str(spec["command"]))

    for step in _as_list(spec.get("steps")):
        if not isinstance(step, dict) or "run" not in step:
            # checkout, setup_remote_docker, ... are the runner image's business
            continue
        run = step["run"]
        if isinstance(run, str):
            scripts.append(run)
            continue
        if not isinstance(run, dict) or "command" not in run:
            raise ConfigError(f"Job '{name}': run step needs a command")
        scripts.append(str(run["command"]))
        env.update({str(k): str(v) for k, v in (run.get("environment") or {}).items()})
        if run.get("no_output_timeout") is not None and timeout is None:
            timeout = parse_duration(run["no_output_timeout"])

    scripts = [s.strip() for s in scripts if s and s.strip()]
    if not scripts:
        raise ConfigError(f"Job '{name}' has no command")
    command = Command.parse("\n".join(scripts)) if len(scripts) > 1 else Command.parse(scripts[0])

    return {
        "command": command,
        "environment": env,
        "timeout": timeout,
        "working_directory": spec.get("working_directory"),
    }


def load_yaml_pipeline(
    data: Any,
    *,
    workflow: str | None = None,
    source: str | None = None,
) -> List[Job]:
    """
    Build jobs from a CircleCI-shaped mapping:

        jobs:
          publishImage:
            steps:
              - checkout
              - run:
                  command: /scripts/publish-image.sh org/image
        workflows:
          release:
            jobs:
              - publishImage:
                  context: dockerhub-bot
                  requires: [buildImage]
                  filters:
                    branches: {ignore: /.*/}
                    tags: {only: /^v[0-9]+\\.[0-9]+\\.[0-9]+$/}

    Job entries are taken from the selected workflow (the only one, unless
    `workflow` names it). `version` keys are ignored.
    """
    try:
        if not isinstance(data, dict):
            raise ConfigError("Pipeline file must be a mapping with 'jobs' and 'workflows'")
        job_specs = data.get("jobs") or {}
        if not isinstance(job_specs, dict) or not job_specs:
            raise ConfigError("Pipeline defines no jobs")

        workflows = {k: v for k, v in (data.get("workflows") or {}).items() if k != "version"}
        if not workflows:
            # no workflow section: every job, unfiltered, no dependencies
            return [Job(name=str(n), **_job_body(str(n), s)) for n, s in job_specs.items()]

        if workflow is None:
            if len(workflows) > 1:
                raise ConfigError(f"Several workflows defined, pick one of: {sorted(workflows)}")
            workflow = next(iter(workflows))
        if workflow not in workflows:
            raise ConfigError(f"Unknown workflow '{workflow}'. Known: {sorted(workflows)}")

        wf_spec = workflows[workflow] or {}
        jobs: List[Job] = []
        for entry in _as_list(wf_spec.get("jobs")):
            if isinstance(entry, str):
                name, opts = entry, {}
            elif isinstance(entry, dict) and len(entry) == 1:
                name, opts = next(iter(entry.items()))
                opts = opts or {}
            else:
                raise ConfigError(f"Workflow '{workflow}': bad job entry {entry!r}")
            if name not in job_specs:
                raise ConfigError(f"Workflow '{workflow}' references undefined job '{name}'")

            jobs.append(
                Job(
                    name=str(name),
                    contexts=tuple(str(c) for c in _as_list(opts.get("context"))),
                    requires=tuple(str(r) for r in _as_list(opts.get("requires"))),
                    filters=parse_filters(opts.get("filters"), job=str(name)),
                    **_job_body(str(name), job_specs[name]),
                )
            )
        return jobs
    except ConfigError as e:
        if source and "source" not in e.details:
            e.details["source"] = source
        raise
