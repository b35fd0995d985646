# git_facts.py
# Small, focused wrapper around the Git CLI.
# Used to derive the triggering event (branch push or tag push) from the
# current checkout when none is given on the command line.

from __future__ import annotations

import subprocess
from typing import List, Optional

from .model import Event
from .semver import VersionTagMatcher


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError if git exits non-zero and
    FileNotFoundError if git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def tags_at_head(cwd: Optional[str] = None) -> List[str]:
    out = _git(["tag", "--points-at", "HEAD"], cwd=cwd)
    return out.splitlines() if out else []


def current_event(cwd: Optional[str] = None) -> Event:
    """
    The event a push of the current checkout would produce.

    A detached HEAD sitting on a tag (what CI checks out for tag pushes) is
    a tag event, preferring a semantic-version tag when several point at
    HEAD. Otherwise the current branch is a branch event.
    """
    branch = current_branch(cwd)
    if branch is not None:
        return Event.branch(branch)

    tags = tags_at_head(cwd)
    if not tags:
        raise ValueError("Detached HEAD without a tag: pass --branch or --tag explicitly")
    matcher = VersionTagMatcher()
    releases = [(matcher.parse(t), t) for t in tags]
    releases = [(v, t) for v, t in releases if v is not None]
    if not releases:
        return Event.tag(sorted(tags)[-1])
    # a final release outranks its own pre-releases
    _, best = max(releases, key=lambda vt: (vt[0].major, vt[0].minor, vt[0].patch, not vt[0].prerelease))
    return Event.tag(best)
