"""
Cycle Detector — depth-first back-edge cycle enumeration.

Walks the directed graph with an explicit recursion stack. Whenever an
edge points at a node that is still on the stack (a back-edge), the
stack segment from that node to the current node is reported as a
cycle, closed by repeating its first node::

    A→B, B→C, C→A   ⇒   [["A", "B", "C", "A"]]

Every node is expanded once, so the walk is O(V+E) and each back-edge
yields exactly one cycle. Roots are taken in first-appearance order
over the edge list, so disconnected components are all covered and the
output is stable for a fixed edge ordering.

Dense graphs can contain exponentially many simple cycles; reporting is
capped at ``max_cycles`` and ``truncated`` flags that more back-edges
were found than reported.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

logger = getLogger(__name__)

DEFAULT_MAX_CYCLES = 100

_UNVISITED, _ON_STACK, _DONE = 0, 1, 2


@dataclass
class CycleReport:
    """Cycles found in a graph, each as a closed node-id path."""
    cycles: List[List[str]] = field(default_factory=list)
    truncated: bool = False

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    def nodes_in_cycles(self) -> List[str]:
        seen: Dict[str, None] = {}
        for cycle in self.cycles:
            for node_id in cycle:
                seen.setdefault(node_id, None)
        return list(seen)


def _adjacency(edges: Sequence[Tuple[str, str]]) -> Tuple[List[str], Dict[str, List[str]]]:
    order: Dict[str, None] = {}
    adjacency: Dict[str, List[str]] = {}
    for source, target in edges:
        order.setdefault(source, None)
        order.setdefault(target, None)
        adjacency.setdefault(source, []).append(target)
    return list(order), adjacency


def find_cycles(
    edges: Iterable[Tuple[str, str]],
    max_cycles: Optional[int] = None,
) -> CycleReport:
    """Find the back-edge cycles of a directed graph.

    Args:
        edges: ``(source, target)`` pairs. Order determines traversal order.
        max_cycles: Reporting cap (defaults to ``DEFAULT_MAX_CYCLES``).
    """
    limit = DEFAULT_MAX_CYCLES if max_cycles is None else max_cycles
    if limit < 0:
        raise ValueError(f"max_cycles must be non-negative, got {limit}")

    nodes, adjacency = _adjacency(list(edges))
    state: Dict[str, int] = {n: _UNVISITED for n in nodes}
    report = CycleReport()

    for root in nodes:
        if state[root] != _UNVISITED:
            continue

        # Each frame: (node, index of the next successor to explore)
        stack: List[str] = [root]
        positions: Dict[str, int] = {root: 0}
        frames: List[List] = [[root, 0]]
        state[root] = _ON_STACK

        while frames:
            frame = frames[-1]
            node, next_index = frame
            successors = adjacency.get(node, [])

            if next_index >= len(successors):
                frames.pop()
                stack.pop()
                del positions[node]
                state[node] = _DONE
                continue

            frame[1] = next_index + 1
            succ = successors[next_index]

            if state[succ] == _UNVISITED:
                state[succ] = _ON_STACK
                positions[succ] = len(stack)
                stack.append(succ)
                frames.append([succ, 0])
            elif state[succ] == _ON_STACK:
                if len(report.cycles) >= limit:
                    report.truncated = True
                    continue
                report.cycles.append(stack[positions[succ]:] + [succ])

    if report.truncated:
        logger.warning(
            f"Cycle report truncated at {limit} cycles "
            f"({len(nodes)} nodes, {sum(len(v) for v in adjacency.values())} edges)"
        )
    return report


def find_workflow_cycles(workflow, max_cycles: Optional[int] = None) -> CycleReport:
    """Run ``find_cycles`` over a workflow's edges, in edge order."""
    return find_cycles(((e.source, e.target) for e in workflow.edges), max_cycles)
