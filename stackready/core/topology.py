"""Dependency leveling (Kahn's algorithm) with cycle detection."""

from collections.abc import Iterable

from stackready.exceptions import ConfigurationError, CycleDetectedError
from stackready.models import ServiceDescriptor


def resolve_levels(services: Iterable[ServiceDescriptor]) -> list[list[str]]:
    """Order services into start levels.

    Every dependency of a service in level *k* sits in a level below *k*;
    services inside one level may be started concurrently. Raises
    CycleDetectedError naming every service that lies on a cycle; no
    partial leveling is returned in that case.
    """
    graph = {s.name: set(s.depends_on) for s in services}
    for name, deps in graph.items():
        unknown = deps - graph.keys()
        if unknown:
            raise ConfigurationError(
                f"Service '{name}' depends on unknown service(s): {', '.join(sorted(unknown))}"
            )

    dependents: dict[str, set[str]] = {name: set() for name in graph}
    for name, deps in graph.items():
        for dep in deps:
            dependents[dep].add(name)

    indegree = {name: len(deps) for name, deps in graph.items()}
    current = sorted(name for name, degree in indegree.items() if degree == 0)
    levels: list[list[str]] = []
    placed = 0

    while current:
        levels.append(current)
        placed += len(current)
        following = []
        for name in current:
            for child in dependents[name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    following.append(child)
        current = sorted(following)

    if placed != len(graph):
        remaining = {name for name, degree in indegree.items() if degree > 0}
        cycles = find_cycles({name: graph[name] & remaining for name in remaining})
        raise CycleDetectedError([name for group in cycles for name in group])
    return levels


def find_cycles(graph: dict[str, set[str]]) -> list[list[str]]:
    """Return the strongly connected groups of *graph* that form cycles.

    A group forms a cycle when it has more than one member or when its
    single member depends on itself. Tarjan's algorithm, iterative.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    groups: list[list[str]] = []
    counter = 0

    for root in sorted(graph):
        if root in index_of:
            continue
        work = [(root, iter(sorted(graph[root])))]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)

        while work:
            node, children = work[-1]
            advanced = False
            for child in children:
                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(sorted(graph[child]))))
                    advanced = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if advanced:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                group = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    group.append(member)
                    if member == node:
                        break
                if len(group) > 1 or node in graph[node]:
                    groups.append(sorted(group))

    return sorted(groups)
