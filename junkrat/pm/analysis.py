"""
Phase plan analysis.

Dependency graph, critical path, cycle detection and the heuristics that
fill in PhasePlanMetadata (duration estimate, complexity bucket, detected
technologies).

The dependency graph maps each phase id to the ids it depends on. Validation
only guarantees that every dependency resolves; it does not reject cycles,
so the graph walks here carry an on-path set and skip any edge that would
close one.
"""

import re
from dataclasses import dataclass, field

from junkrat.pm.models import Phase, PhasePlan

__all__ = [
    "PlanAnalysis",
    "analyze_plan",
    "build_dependency_graph",
    "critical_path",
    "find_cycles",
    "estimate_duration",
    "assess_plan_complexity",
    "extract_technologies",
    "TECH_KEYWORDS",
]

COMPLEXITY_WEIGHTS = {"low": 1, "medium": 2, "high": 3}

TECH_KEYWORDS = [
    "react", "angular", "vue", "svelte", "node", "express", "nestjs",
    "python", "django", "flask", "fastapi", "java", "spring", "kotlin",
    "swift", "go", "rust", "c#", ".net", "graphql", "postgres", "mysql",
    "mongodb", "redis", "docker", "kubernetes", "aws", "azure", "gcp",
    "tailwind", "storybook", "next.js", "nuxt", "remix", "react native",
    "flutter",
]

_TOKEN_PATTERN = re.compile(r'([a-z0-9+.#-]{2,})', re.IGNORECASE)


@dataclass
class PlanAnalysis:
    total_phases: int
    complexity_distribution: dict[str, int]
    dependency_graph: dict[str, list[str]]
    critical_path: list[str]
    estimated_duration: str
    cycles: list[list[str]] = field(default_factory=list)


def build_dependency_graph(phases: list[Phase]) -> dict[str, list[str]]:
    return {phase.id: list(phase.dependencies) for phase in phases}


def critical_path(graph: dict[str, list[str]]) -> list[str]:
    """Longest dependency chain, starting from the dependent end.

    Exhaustive DFS from every node, run iteratively with an explicit stack.
    Each stack frame holds the current path, the set of ids on it and an
    iterator over the remaining dependencies. The first longest path found
    (in graph order) wins ties.
    """
    longest: list[str] = []

    for start in graph:
        stack = [([start], {start}, iter(graph.get(start, ())))]
        if not longest:
            longest = [start]

        while stack:
            path, on_path, deps = stack[-1]
            dep = next(deps, None)
            if dep is None:
                stack.pop()
                continue
            if dep in on_path:
                # Edge closes a cycle
                continue
            new_path = path + [dep]
            if len(new_path) > len(longest):
                longest = new_path
            stack.append((new_path, on_path | {dep}, iter(graph.get(dep, ()))))

    return longest


def find_cycles(graph: dict[str, list[str]]) -> list[list[str]]:
    """Every dependency cycle, each reported once.

    A cycle is returned as the list of ids along it, rotated so the id that
    comes first in graph order leads.
    """
    position = {node: i for i, node in enumerate(graph)}
    seen: set[tuple[str, ...]] = set()
    cycles: list[list[str]] = []

    for start in graph:
        stack = [([start], iter(graph.get(start, ())))]
        while stack:
            path, deps = stack[-1]
            dep = next(deps, None)
            if dep is None:
                stack.pop()
                continue
            if dep == start:
                cycle = list(path)
                lead = min(range(len(cycle)), key=lambda i: position.get(cycle[i], len(position)))
                key = tuple(cycle[lead:] + cycle[:lead])
                if key not in seen:
                    seen.add(key)
                    cycles.append(list(key))
                continue
            # Only extend through nodes after the start so each cycle is walked from its lowest node
            if dep in path or dep not in graph or position[dep] < position[start]:
                continue
            stack.append((path + [dep], iter(graph.get(dep, ()))))

    return cycles


def estimate_duration(phases: list[Phase]) -> str:
    """Complexity-weighted duration: low 1, medium 2, high 3; two units per week."""
    total = sum(COMPLEXITY_WEIGHTS.get(p.estimated_complexity, 2) for p in phases)
    # Halves round up
    weeks = max(1, (total + 1) // 2)
    return f"{weeks} week{'' if weeks == 1 else 's'}"


def assess_plan_complexity(total_phases: int) -> str:
    if total_phases <= 10:
        return "simple"
    if total_phases <= 40:
        return "moderate"
    if total_phases <= 150:
        return "complex"
    return "very-complex"


def extract_technologies(requirements: str) -> list[str]:
    """Known technology keywords that appear as tokens in the requirements."""
    tokens = {t.lower() for t in _TOKEN_PATTERN.findall(requirements)}
    return [kw for kw in TECH_KEYWORDS if kw in tokens]


def analyze_plan(plan: PhasePlan) -> PlanAnalysis:
    distribution = {"low": 0, "medium": 0, "high": 0}
    for phase in plan.phases:
        if phase.estimated_complexity in distribution:
            distribution[phase.estimated_complexity] += 1

    graph = build_dependency_graph(plan.phases)
    return PlanAnalysis(
        total_phases=plan.total_phases,
        complexity_distribution=distribution,
        dependency_graph=graph,
        critical_path=critical_path(graph),
        estimated_duration=estimate_duration(plan.phases),
        cycles=find_cycles(graph),
    )
