"""
Shared fixtures: the four-job release pipeline, a secret store holding its
contexts, and a fake executor that records what it was asked to run.
"""
import threading

import pytest

from shipline.credentials import CredentialResolver, InMemorySecretStore
from shipline.dsl import filters, job, only, regex, release_only
from shipline.executor import ExecutionResult
from shipline.scheduler import Scheduler
from shipline.ui.console import Console


class FakeExecutor:
    """
    Stands in for SubprocessExecutor.

    outcomes: job name -> ExecutionResult or exception to raise
    hooks:    job name -> callable(job, secrets, token) run before returning
    """

    def __init__(self, outcomes=None, hooks=None):
        self.outcomes = dict(outcomes or {})
        self.hooks = dict(hooks or {})
        self.calls = []
        self.scopes = []
        self._lock = threading.Lock()

    def execute(self, job, secrets, token=None):
        with self._lock:
            self.calls.append((job.name, dict(secrets)))
            self.scopes.append(secrets)
        hook = self.hooks.get(job.name)
        if hook is not None:
            hook(job, secrets, token)
        outcome = self.outcomes.get(job.name, ExecutionResult(exit_code=0, output=f"{job.name} ok"))
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @property
    def executed(self):
        return [name for name, _ in self.calls]


RELEASE_CONTEXTS = {
    "dockerhub-bot": {"DOCKER_USER": "bot", "DOCKER_PASSWORD": "hub-secret"},
    "github-bot": {"GITHUB_TOKEN": "gh-secret"},
    "engineering-access-registrar": {"GCP_KEY": "gcp-secret", "SHARED": "first"},
    "registrar-test": {"KUBE_TOKEN": "kube-secret", "SHARED": "second"},
}


def release_pipeline():
    return [
        job(
            "buildImage",
            "/scripts/build-image.sh web3f/registrar .",
            contexts="dockerhub-bot",
            filters=filters(tags=only(regex(".*"))),
        ),
        job(
            "publishImage",
            "/scripts/publish-image.sh web3f/registrar",
            requires=["buildImage"],
            contexts="dockerhub-bot",
            filters=release_only(),
        ),
        job(
            "publishChart",
            "/scripts/publish-chart.sh",
            requires=["buildImage"],
            contexts="github-bot",
            filters=release_only(),
        ),
        job(
            "deploy",
            "/scripts/deploy.sh -c engineering",
            requires=["publishImage", "publishChart"],
            contexts=["engineering-access-registrar", "registrar-test"],
            filters=release_only(),
            environment={"GCP_REGION": "europe-west3", "HELM_ENV": "production"},
        ),
    ]


@pytest.fixture
def release_jobs():
    return release_pipeline()


@pytest.fixture
def secret_store():
    return InMemorySecretStore(RELEASE_CONTEXTS)


@pytest.fixture
def quiet_console():
    return Console(quiet=True)


@pytest.fixture
def make_scheduler(secret_store, quiet_console):
    def _make(executor, store=None, **kwargs):
        kwargs.setdefault("max_workers", 4)
        return Scheduler(
            executor,
            CredentialResolver(store if store is not None else secret_store),
            console=quiet_console,
            **kwargs,
        )

    return _make
