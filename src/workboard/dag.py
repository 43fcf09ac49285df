# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple


class CycleError(ValueError):
    def __init__(self, stuck: List[str]):
        super().__init__(f"Graph has a cycle. Stuck nodes: {stuck}")
        self.stuck = stuck


def build_dag(
    node_ids: Iterable[str],
    edges: Iterable[Tuple[str, str]],
) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency + in-degree maps from node ids and (source, target) pairs.

    Requires:
      - node ids unique
      - every edge endpoint is a known node id
    """
    names = list(node_ids)
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate node ids found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for source, target in edges:
        for endpoint in (source, target):
            if endpoint not in name_set:
                raise ValueError(
                    f"Edge {source} -> {target} references missing node '{endpoint}'. "
                    f"Known nodes: {sorted(name_set)}"
                )
        # Edge source -> target (source must complete before target)
        if target not in adj[source]:
            adj[source].add(target)
            indeg[target] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels".
    Every node of a level only depends on nodes of earlier levels.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise CycleError(remaining)

    return levels


def is_acyclic(node_ids: Iterable[str], edges: Iterable[Tuple[str, str]]) -> bool:
    adj, indeg = build_dag(node_ids, edges)
    try:
        topo_levels(adj, indeg)
    except CycleError:
        return False
    return True


def topological_order(node_ids: Iterable[str], edges: Iterable[Tuple[str, str]]) -> List[str]:
    adj, indeg = build_dag(node_ids, edges)
    return [n for level in topo_levels(adj, indeg) for n in level]
