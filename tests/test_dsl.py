import pytest

from shipline.dsl import build, cmd, job, release_only, wf
from shipline.model import Command, Event
from shipline.triggers import is_eligible


class TestCmd:

    def test_from_text(self):
        assert cmd("deploy.sh -c engineering") == Command("deploy.sh", ("-c", "engineering"))

    def test_from_argv(self):
        assert cmd(["deploy.sh", "-c", "engineering"]) == Command("deploy.sh", ("-c", "engineering"))

    def test_passthrough(self):
        c = Command("x")
        assert cmd(c) is c

    def test_empty_argv(self):
        with pytest.raises(ValueError):
            cmd([])


class TestJobHelpers:

    def test_single_context_string(self):
        j = job("publishChart", "publish-chart.sh", contexts="github-bot")
        assert j.contexts == ("github-bot",)

    def test_builder(self):
        j = (
            build("deploy")
            .run("deploy.sh -c engineering")
            .depends_on("publishImage", "publishChart")
            .with_contexts("engineering-access-registrar", "registrar-test")
            .with_env(GCP_REGION="europe-west3")
            .with_filters(release_only())
            .with_timeout(600)
            .in_dir("charts")
            .build()
        )
        assert j.requires == ("publishImage", "publishChart")
        assert j.contexts == ("engineering-access-registrar", "registrar-test")
        assert j.environment == {"GCP_REGION": "europe-west3"}
        assert j.timeout == 600
        assert j.working_directory == "charts"
        assert is_eligible(j, Event.tag("v3.0.0"))
        assert not is_eligible(j, Event.branch("main"))

    def test_builder_needs_command(self):
        with pytest.raises(ValueError):
            build("empty").build()

    def test_wf_is_a_list(self):
        jobs = wf(job("a", "true"), job("b", "true"))
        assert isinstance(jobs, list)
        assert [j.name for j in jobs] == ["a", "b"]
