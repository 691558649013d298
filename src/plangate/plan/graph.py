"""Graph checks over step dependency edges and the step parent hierarchy."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence


@dataclass(slots=True)
class CycleCheckResult:
    """Outcome of a cycle search; ``cycle`` starts and ends on the same node."""

    has_cycle: bool
    cycle: list[str] = field(default_factory=list)


def _edge_pair(edge: Any) -> tuple[str, str] | None:
    """Return ``(step_id, depends_on)`` for a raw document or a model instance."""
    if isinstance(edge, Mapping):
        step_id = edge.get("stepId", edge.get("step_id"))
        depends_on = edge.get("dependsOn", edge.get("depends_on"))
    else:
        step_id = getattr(edge, "step_id", None)
        depends_on = getattr(edge, "depends_on", None)
    if not isinstance(step_id, str) or not isinstance(depends_on, str):
        return None
    return step_id, depends_on


def build_adjacency(edges: Iterable[Any]) -> dict[str, list[str]]:
    """Adjacency from prerequisite to dependent, with sorted neighbour lists."""
    graph: dict[str, set[str]] = {}
    for edge in edges:
        pair = _edge_pair(edge)
        if pair is None:
            continue
        step_id, depends_on = pair
        graph.setdefault(depends_on, set()).add(step_id)
        graph.setdefault(step_id, set())
    return {node: sorted(neighbours) for node, neighbours in graph.items()}


def has_circular_dependencies(edges: Iterable[Any]) -> CycleCheckResult:
    """Detect a cycle among step dependency edges.

    Runs an iterative depth-first search from every unvisited node in sorted
    order, keeping the current path on an explicit stack. Reaching a node that
    is still on the path closes a cycle; the reported cycle is that slice of
    the path followed by the node again. Sorting makes the reported cycle
    independent of edge order.
    """

    graph = build_adjacency(edges)
    state: dict[str, str] = {}

    for root in sorted(graph):
        if state.get(root) == "permanent":
            continue
        path: list[str] = [root]
        on_path: set[str] = {root}
        iterators = [iter(graph[root])]
        state[root] = "temporary"
        while iterators:
            neighbour = next(iterators[-1], None)
            if neighbour is None:
                finished = path.pop()
                on_path.discard(finished)
                state[finished] = "permanent"
                iterators.pop()
                continue
            if neighbour in on_path:
                start_index = path.index(neighbour)
                return CycleCheckResult(has_cycle=True, cycle=path[start_index:] + [neighbour])
            if state.get(neighbour) == "permanent":
                continue
            state[neighbour] = "temporary"
            path.append(neighbour)
            on_path.add(neighbour)
            iterators.append(iter(graph.get(neighbour, [])))

    return CycleCheckResult(has_cycle=False)


def find_unresolved_dependencies(dependencies: Mapping[str, Any], step_ids: Sequence[str]) -> list[str]:
    """List references in ``dependencies`` that name steps absent from the plan."""
    known = set(step_ids)
    errors: list[str] = []

    for index, edge in enumerate(dependencies.get("stepDependencies") or []):
        pair = _edge_pair(edge)
        if pair is None:
            continue
        step_id, depends_on = pair
        if step_id not in known:
            errors.append(f"Step dependency {index + 1}: stepId references unknown step \"{step_id}\"")
        if depends_on not in known:
            errors.append(f"Step dependency {index + 1}: dependsOn references unknown step \"{depends_on}\"")

    for external in dependencies.get("externalDependencies") or []:
        if not isinstance(external, Mapping):
            continue
        name = external.get("name", "unknown")
        for step_id in external.get("requiredBy") or []:
            if step_id not in known:
                errors.append(
                    f"External dependency \"{name}\": requiredBy references unknown step \"{step_id}\""
                )
    return errors


def find_parent_cycle(parents: Mapping[str, str | None]) -> list[str] | None:
    """Return the first cycle in a ``step -> parent`` hierarchy, if any."""
    settled: set[str] = set()
    for start in sorted(parents):
        if start in settled:
            continue
        chain: list[str] = []
        seen: set[str] = set()
        node: str | None = start
        while node is not None and node in parents and node not in settled:
            if node in seen:
                return chain[chain.index(node):] + [node]
            seen.add(node)
            chain.append(node)
            node = parents[node]
        settled.update(chain)
    return None


__all__ = [
    "CycleCheckResult",
    "build_adjacency",
    "find_parent_cycle",
    "find_unresolved_dependencies",
    "has_circular_dependencies",
]
