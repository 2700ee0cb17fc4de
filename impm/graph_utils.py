from __future__ import annotations
from typing import Dict, Iterable, List, TypeVar

T = TypeVar("T")

def connected_components(adj: Dict[T, Iterable[T]]) -> List[List[T]]:
    """Return the connected components of an undirected graph, largest first."""
    # ensure all nodes included
    nodes = set(adj.keys())
    for u, vs in adj.items():
        for v in vs:
            nodes.add(v)
    undirected: Dict[T, set] = {n: set() for n in nodes}
    for u, vs in adj.items():
        for v in vs:
            undirected[u].add(v)
            undirected[v].add(u)

    seen: set = set()
    comps: List[List[T]] = []
    for start in sorted(nodes):
        if start in seen:
            continue
        stack = [start]
        seen.add(start)
        comp = []
        while stack:
            u = stack.pop()
            comp.append(u)
            for v in undirected[u]:
                if v not in seen:
                    seen.add(v)
                    stack.append(v)
        comps.append(sorted(comp))
    comps.sort(key=len, reverse=True)
    return comps
