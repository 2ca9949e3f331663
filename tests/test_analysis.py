"""Tests for junkrat.pm.analysis module."""

from junkrat.pm.analysis import (
    analyze_plan,
    assess_plan_complexity,
    critical_path,
    estimate_duration,
    extract_technologies,
    find_cycles,
)
from junkrat.pm.models import Phase

from fakes import make_plan


def _phases(*complexities):
    return [Phase(id=f"p{i}", title="", description="", order=i, estimated_complexity=c)
            for i, c in enumerate(complexities, 1)]


class TestCriticalPath:
    """Tests for critical_path."""

    def test_linear_chain(self):
        graph = {"a": [], "b": ["a"], "c": ["b"]}
        assert critical_path(graph) == ["c", "b", "a"]

    def test_picks_longest_branch(self):
        graph = {"a": [], "b": ["a"], "c": [], "d": ["b", "c"]}
        assert critical_path(graph) == ["d", "b", "a"]

    def test_single_node(self):
        assert critical_path({"a": []}) == ["a"]

    def test_empty(self):
        assert critical_path({}) == []

    def test_cycle_does_not_loop(self):
        """Edges that would close a cycle are skipped."""
        graph = {"a": ["b"], "b": ["a"]}
        assert critical_path(graph) == ["a", "b"]


class TestFindCycles:
    """Tests for find_cycles."""

    def test_acyclic(self):
        assert find_cycles({"a": [], "b": ["a"]}) == []

    def test_two_node_cycle_reported_once(self):
        assert find_cycles({"a": ["b"], "b": ["a"]}) == [["a", "b"]]

    def test_self_loop(self):
        assert find_cycles({"a": ["a"]}) == [["a"]]

    def test_dangling_dependency_ignored(self):
        assert find_cycles({"a": ["missing"]}) == []


class TestHeuristics:
    """Tests for duration, complexity and technology heuristics."""

    def test_duration_weights(self):
        """low=1, medium=2, high=3 units; two units per week, halves round up."""
        assert estimate_duration(_phases("low")) == "1 week"
        assert estimate_duration(_phases("medium", "medium")) == "2 weeks"
        assert estimate_duration(_phases("high", "low", "low")) == "3 weeks"
        assert estimate_duration(_phases("high")) == "2 weeks"

    def test_duration_empty_is_one_week(self):
        assert estimate_duration([]) == "1 week"

    def test_complexity_buckets(self):
        assert assess_plan_complexity(3) == "simple"
        assert assess_plan_complexity(10) == "simple"
        assert assess_plan_complexity(11) == "moderate"
        assert assess_plan_complexity(40) == "moderate"
        assert assess_plan_complexity(41) == "complex"
        assert assess_plan_complexity(150) == "complex"
        assert assess_plan_complexity(151) == "very-complex"

    def test_extract_technologies(self):
        techs = extract_technologies("A React frontend with a FastAPI backend on Postgres, shipped via Docker")
        assert techs == ["react", "fastapi", "postgres", "docker"]

    def test_extract_technologies_whole_tokens(self):
        """Keywords match whole tokens, not substrings."""
        assert "go" not in extract_technologies("We need a good goal")
        assert "go" in extract_technologies("Backend written in Go")
        assert extract_technologies("a javascript widget") == []


class TestAnalyzePlan:
    """Tests for analyze_plan."""

    def test_full_analysis(self):
        plan = make_plan(count=3)
        plan.phases[2].estimated_complexity = "high"
        analysis = analyze_plan(plan)
        assert analysis.total_phases == 3
        assert analysis.complexity_distribution == {"low": 0, "medium": 2, "high": 1}
        assert analysis.dependency_graph["phase-002"] == ["phase-001"]
        assert analysis.critical_path == ["phase-003", "phase-002", "phase-001"]
        assert analysis.estimated_duration == "4 weeks"
        assert analysis.cycles == []
