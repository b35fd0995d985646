# triggers.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from .model import Event, Job, RefKind, SkipReason
from .semver import VersionTagMatcher

# ---------------------------------------------------------------------
# Ref patterns
# ---------------------------------------------------------------------
# A pattern is one of a closed set of variants. Each variant is a frozen
# value with a total `matches(ref) -> bool`; nothing here raises for odd
# input, so eligibility can be evaluated for any event.


@dataclass(frozen=True)
class Exact:
    value: str

    def matches(self, ref: str) -> bool:
        return ref == self.value


@dataclass(frozen=True)
class Regex:
    """Full-string regex match (a prefix or suffix match is not enough)."""
    pattern: str
    _compiled: "re.Pattern[str]" = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        try:
            compiled = re.compile(self.pattern)
        except re.error as e:
            raise ValueError(f"Invalid ref pattern /{self.pattern}/: {e}") from e
        object.__setattr__(self, "_compiled", compiled)

    def matches(self, ref: str) -> bool:
        return self._compiled.fullmatch(ref) is not None


@dataclass(frozen=True)
class SemverTag:
    prefix: str = "v"
    prefix_required: bool = False

    def matches(self, ref: str) -> bool:
        return VersionTagMatcher(self.prefix, self.prefix_required).matches(ref)


@dataclass(frozen=True)
class AnyRef:
    def matches(self, ref: str) -> bool:
        return True


Pattern = Union[Exact, Regex, SemverTag, AnyRef]


def _as_patterns(patterns) -> Tuple[Pattern, ...]:
    if isinstance(patterns, (Exact, Regex, SemverTag, AnyRef)):
        return (patterns,)
    out = []
    for p in patterns:
        # bare strings are exact names
        out.append(Exact(p) if isinstance(p, str) else p)
    return tuple(out)


# ---------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Only:
    """Allow-list: the ref has to match one of the patterns."""
    patterns: Tuple[Pattern, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "patterns", _as_patterns(self.patterns))

    def allows(self, ref: str) -> bool:
        return any(p.matches(ref) for p in self.patterns)


@dataclass(frozen=True)
class Ignore:
    """Ignore-list: the ref must not match any of the patterns."""
    patterns: Tuple[Pattern, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "patterns", _as_patterns(self.patterns))

    def allows(self, ref: str) -> bool:
        return not any(p.matches(ref) for p in self.patterns)


BranchRule = Union[Only, Ignore]


@dataclass(frozen=True)
class FilterRule:
    """
    Branch and tag conditions of a job. Only the rule for the event's ref
    kind is consulted:

      - branch push: no branch rule means every branch
      - tag push: no tag rule means no tag at all
    """
    branches: Optional[BranchRule] = None
    tags: Optional[Only] = None

    def __post_init__(self) -> None:
        if self.tags is not None and not isinstance(self.tags, Only):
            raise TypeError("tags filter must be an allow-list (Only)")


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _rule_allows(rule: FilterRule, event: Event) -> bool:
    if event.ref_kind is RefKind.BRANCH:
        if rule.branches is None:
            return True
        return rule.branches.allows(event.ref)
    if rule.tags is None:
        return False
    return rule.tags.allows(event.ref)


def is_eligible(job: Job, event: Event) -> bool:
    """Decide whether `job` runs for `event`. A job without filters always runs."""
    if job.filters is None:
        return True
    return _rule_allows(job.filters, event)


def explain(job: Job, event: Event) -> Optional[SkipReason]:
    """None if eligible, otherwise why the job is skipped."""
    return None if is_eligible(job, event) else SkipReason.FILTER_MISMATCH
