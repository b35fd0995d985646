# credentials.py
from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Protocol, Sequence

import yaml

from .errors import ConfigError, UnknownContext


class SecretStore(Protocol):
    """External collaborator holding named contexts. Read-only for the engine."""

    def lookup(self, context: str) -> Optional[Mapping[str, str]]:
        ...


class InMemorySecretStore:
    """
    Secret store backed by a dict of {context: {KEY: value}}.

    The input is copied on construction; later changes to the caller's dict
    are not visible and nothing handed out can mutate the store.
    """

    def __init__(self, contexts: Mapping[str, Mapping[str, str]] | None = None):
        frozen: Dict[str, Mapping[str, str]] = {}
        for name, values in (contexts or {}).items():
            frozen[str(name)] = MappingProxyType({str(k): str(v) for k, v in dict(values).items()})
        self._contexts = MappingProxyType(frozen)

    def lookup(self, context: str) -> Optional[Mapping[str, str]]:
        return self._contexts.get(context)

    @property
    def names(self) -> list[str]:
        return sorted(self._contexts)


class FileSecretStore(InMemorySecretStore):
    """
    Secret store loaded once from a YAML file:

        dockerhub-bot:
          DOCKER_USER: bot
          DOCKER_PASSWORD: s3cret
        github-bot:
          GITHUB_TOKEN: ghp_...
    """

    def __init__(self, path: str | Path):
        p = Path(path).expanduser()
        if not p.exists():
            raise ConfigError(f"Secrets file not found: {p}", source=str(p))
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ConfigError("Secrets file must map context names to key/value mappings", source=str(p))
        for name, values in data.items():
            if not isinstance(values, dict):
                raise ConfigError(f"Context '{name}' must be a mapping of KEY: value", source=str(p))
        super().__init__(data)
        self.path = p


class CredentialScope(Mapping[str, str]):
    """
    Secrets visible to exactly one job execution.

    Use as a context manager: leaving the block discards the values, so a
    scope can't outlive the job it was resolved for. repr never shows values.
    """

    def __init__(self, values: Mapping[str, str], contexts: Sequence[str]):
        self._values: Dict[str, str] = dict(values)
        self.contexts = tuple(contexts)
        self.closed = False

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def close(self) -> None:
        self._values.clear()
        self.closed = True

    def __enter__(self) -> "CredentialScope":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"CredentialScope(contexts={list(self.contexts)}, keys={sorted(self._values)})"


class CredentialResolver:
    def __init__(self, store: SecretStore | None = None):
        self.store = store if store is not None else InMemorySecretStore()

    def resolve(self, contexts: Sequence[str], *, job: str | None = None) -> CredentialScope:
        """
        Merge the secrets of `contexts` in order. On a key collision the later
        context wins. Raises UnknownContext for a context with no secrets.
        """
        merged: Dict[str, str] = {}
        for name in contexts:
            values = self.store.lookup(name)
            if not values:
                raise UnknownContext(name, job=job)
            merged.update(values)
        return CredentialScope(merged, contexts)
