import pytest

from shipline.dag import build_dag, check_acyclic, dependents_of, topo_levels
from shipline.dsl import job
from shipline.errors import CyclicDependency, InvalidPipeline


class TestBuildDag:

    def test_release_pipeline_stages(self, release_jobs):
        assert check_acyclic(release_jobs) == [
            ["buildImage"],
            ["publishChart", "publishImage"],
            ["deploy"],
        ]

    def test_edges_point_at_dependents(self, release_jobs):
        adj, indeg = build_dag(release_jobs)
        assert adj["buildImage"] == {"publishImage", "publishChart"}
        assert indeg["deploy"] == 2
        assert indeg["buildImage"] == 0

    def test_duplicate_names(self):
        with pytest.raises(InvalidPipeline) as exc:
            build_dag([job("a", "true"), job("a", "false")])
        assert exc.value.details["duplicates"] == ["a"]

    def test_missing_requirement(self):
        with pytest.raises(InvalidPipeline) as exc:
            build_dag([job("a", "true", requires=["ghost"])])
        assert exc.value.job == "a"
        assert exc.value.details["missing"] == "ghost"

    def test_repeated_requirement_counts_once(self):
        adj, indeg = build_dag([job("a", "true"), job("b", "true", requires=["a", "a"])])
        assert indeg["b"] == 1


class TestCycles:

    def test_two_job_cycle(self):
        jobs = [job("a", "true", requires=["b"]), job("b", "true", requires=["a"])]
        with pytest.raises(CyclicDependency) as exc:
            check_acyclic(jobs)
        assert exc.value.stuck == ["a", "b"]

    def test_self_cycle(self):
        with pytest.raises(CyclicDependency):
            check_acyclic([job("a", "true", requires=["a"])])

    def test_cycle_reports_jobs_behind_it(self):
        jobs = [
            job("root", "true"),
            job("a", "true", requires=["root", "b"]),
            job("b", "true", requires=["a"]),
            job("after", "true", requires=["b"]),
        ]
        with pytest.raises(CyclicDependency) as exc:
            adj, indeg = build_dag(jobs)
            topo_levels(adj, indeg)
        assert exc.value.stuck == ["a", "after", "b"]


class TestDependents:

    def test_transitive(self, release_jobs):
        adj, _ = build_dag(release_jobs)
        assert dependents_of(adj, "buildImage") == {"publishImage", "publishChart", "deploy"}
        assert dependents_of(adj, "publishChart") == {"deploy"}
        assert dependents_of(adj, "deploy") == set()
