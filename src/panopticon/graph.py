"""Dependency graph checks for tasks and milestones.

Graphs are adjacency maps keyed by entity id: ``graph[a]`` lists the ids
``a`` depends on. They must stay acyclic, so a new edge is checked before the
event recording it is created.
"""
from typing import Dict, Iterable, List, Mapping, Optional

from .recovery import CycleError

WHITE, GRAY, BLACK = 0, 1, 2

def find_cycle(graph: Mapping[str, Iterable[str]]) -> Optional[List[str]]:
    """Return one cycle as a list of ids (first id repeated at the end), or None.

    Iterative DFS with white/gray/black coloring; a gray successor is a back
    edge.
    """
    color: Dict[str, int] = {}
    nodes = set(graph)
    for targets in graph.values():
        nodes.update(targets)

    for root in sorted(nodes):
        if color.get(root, WHITE) != WHITE:
            continue
        color[root] = GRAY
        path = [root]
        stack = [iter(sorted(graph.get(root, ())))]
        while stack:
            successor = next(stack[-1], None)
            if successor is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            state = color.get(successor, WHITE)
            if state == GRAY:
                return path[path.index(successor):] + [successor]
            if state == WHITE:
                color[successor] = GRAY
                path.append(successor)
                stack.append(iter(sorted(graph.get(successor, ()))))
    return None

def check_new_edge(graph: Mapping[str, Iterable[str]], source: str, target: str) -> None:
    """Raise CycleError if adding ``source -> target`` would close a cycle."""
    if source == target:
        raise CycleError(f"{source} cannot depend on itself", [source, source])

    candidate = {node: list(targets) for node, targets in graph.items()}
    candidate.setdefault(source, []).append(target)
    cycle = find_cycle(candidate)
    if cycle is not None:
        raise CycleError(f"Dependency {source} -> {target} would create a cycle: {' -> '.join(cycle)}", cycle)
