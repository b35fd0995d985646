# semver.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Tuple

# Strict semver 2.0.0 grammar. ASCII digits only: `\d` would accept any
# unicode decimal digit.
_NUM = r"0|[1-9][0-9]*"
_PRE_ID = r"0|[1-9][0-9]*|[0-9]*[A-Za-z-][0-9A-Za-z-]*"
_BUILD_ID = r"[0-9A-Za-z-]+"

_SEMVER = (
    rf"(?P<major>{_NUM})\.(?P<minor>{_NUM})\.(?P<patch>{_NUM})"
    rf"(?:-(?P<prerelease>(?:{_PRE_ID})(?:\.(?:{_PRE_ID}))*))?"
    rf"(?:\+(?P<build>{_BUILD_ID}(?:\.{_BUILD_ID})*))?"
)

SEMVER_RE = re.compile(_SEMVER)


@dataclass(frozen=True)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: Tuple[str, ...] = ()
    build: Tuple[str, ...] = ()

    def __str__(self) -> str:
        out = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            out += "-" + ".".join(self.prerelease)
        if self.build:
            out += "+" + ".".join(self.build)
        return out


class VersionTagMatcher:
    """
    Decide whether a tag string is a semantic-version release tag.

    Release tags conventionally carry a `v` prefix (`v1.2.3`). By default the
    prefix is optional; with prefix_required=True a bare `1.2.3` is rejected.
    The whole string has to match: `v1.2.3-rc.1+build.5` is a release tag,
    `v1.2`, `1.2.3.4` and `v01.2.3` are not.
    """

    def __init__(self, prefix: str = "v", prefix_required: bool = False):
        self.prefix = prefix
        self.prefix_required = prefix_required

    def _strip(self, tag: str) -> Optional[str]:
        if self.prefix and tag.startswith(self.prefix):
            return tag[len(self.prefix):]
        if self.prefix and self.prefix_required:
            return None
        return tag

    def parse(self, tag: object) -> Optional[Version]:
        if not isinstance(tag, str):
            return None
        body = self._strip(tag)
        if body is None:
            return None
        m = SEMVER_RE.fullmatch(body)
        if m is None:
            return None
        pre = m.group("prerelease")
        build = m.group("build")
        return Version(
            major=int(m.group("major")),
            minor=int(m.group("minor")),
            patch=int(m.group("patch")),
            prerelease=tuple(pre.split(".")) if pre else (),
            build=tuple(build.split(".")) if build else (),
        )

    def matches(self, tag: object) -> bool:
        return self.parse(tag) is not None

    def __repr__(self) -> str:
        return f"VersionTagMatcher(prefix={self.prefix!r}, prefix_required={self.prefix_required})"


_default = VersionTagMatcher()


def matches(tag: object) -> bool:
    """True if `tag` is a (optionally v-prefixed) semantic-version tag."""
    return _default.matches(tag)


def parse(tag: object) -> Optional[Version]:
    return _default.parse(tag)
