# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import CyclicDependency, InvalidPipeline
from .model import Job


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.requires: names of jobs that must succeed BEFORE this job

    Returns (adj, indeg) where adj maps a job to the jobs requiring it.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise InvalidPipeline(f"Duplicate job names found: {dupes}", duplicates=dupes)

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for req in job.requires:
            if req not in name_set:
                raise InvalidPipeline(
                    f"Job '{job.name}' requires missing job '{req}'. Known jobs: {sorted(name_set)}",
                    job=job.name,
                    missing=req,
                )
            # Edge req -> job.name (req must succeed before job)
            if job.name not in adj[req]:
                adj[req].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Jobs in one stage have no dependency on each other.

    Raises CyclicDependency if some jobs can never be reached.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        raise CyclicDependency(n for n, d in indeg.items() if d > 0)

    return levels


def check_acyclic(jobs: Iterable[Job]) -> List[List[str]]:
    """Validate names, requirements and acyclicity in one go; returns the stages."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)


def dependents_of(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """All jobs that transitively require `name`."""
    seen: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(adj.get(node, ()))
    return seen
