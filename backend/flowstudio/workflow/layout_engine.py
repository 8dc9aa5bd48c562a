"""
Layout Engine — layered (hierarchical) positioning of workflow nodes.

Pipeline:

    1. Back-edges:   DFS over id-sorted nodes; an edge into a node that is
                     still on the DFS stack (self-loops included) is a
                     back-edge and is ignored for layering.
    2. Layering:     longest-path layering over the remaining DAG, so
                     every kept edge goes from a lower to a higher layer.
    3. Ordering:     layer 0 by id, later layers by the barycenter of
                     their predecessors' in-layer index (id tie-break).
    4. Coordinates:  layers are stacked along the flow axis separated by
                     ``layer_gap``; within a layer nodes are packed along
                     the cross axis with ``node_gap`` and centered.

The result depends only on the node/edge *sets* and the direction, so
repeated runs are reproducible regardless of input ordering. Cyclic
graphs never raise: every node always receives a finite position.
"""

from __future__ import annotations

import asyncio
import heapq
from dataclasses import dataclass, field
from logging import getLogger
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from flowstudio.config import get_studio_config
from flowstudio.workflow.workflow_model import (
    DEFAULT_NODE_HEIGHT,
    DEFAULT_NODE_WIDTH,
    FlowDirection,
    Position,
    Workflow,
)

logger = getLogger(__name__)


@dataclass(frozen=True)
class LayoutNode:
    id: str
    width: float = DEFAULT_NODE_WIDTH
    height: float = DEFAULT_NODE_HEIGHT


@dataclass
class LayoutOptions:
    """Spacing between nodes in a layer and between consecutive layers."""
    node_gap: float = 50.0
    layer_gap: float = 75.0

    @classmethod
    def from_config(cls) -> "LayoutOptions":
        config = get_studio_config()
        return cls(node_gap=config.layout_node_gap, layer_gap=config.layout_layer_gap)


@dataclass
class LayoutResult:
    positions: Dict[str, Position] = field(default_factory=dict)
    layers: List[List[str]] = field(default_factory=list)
    back_edges: List[Tuple[str, str]] = field(default_factory=list)

    def layer_of(self, node_id: str) -> int:
        for index, layer in enumerate(self.layers):
            if node_id in layer:
                return index
        raise KeyError(node_id)


# ============================================================================
# Phases
# ============================================================================


def _successors(node_ids: List[str], edges: Set[Tuple[str, str]]) -> Dict[str, List[str]]:
    succ: Dict[str, List[str]] = {n: [] for n in node_ids}
    for source, target in sorted(edges):
        succ[source].append(target)
    return succ


def _find_back_edges(node_ids: List[str], succ: Dict[str, List[str]]) -> Set[Tuple[str, str]]:
    on_stack: Set[str] = set()
    visited: Set[str] = set()
    back: Set[Tuple[str, str]] = set()

    for root in node_ids:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        frames: List[Tuple[str, int]] = [(root, 0)]
        while frames:
            node, index = frames[-1]
            targets = succ[node]
            if index >= len(targets):
                frames.pop()
                on_stack.discard(node)
                continue
            frames[-1] = (node, index + 1)
            target = targets[index]
            if target in on_stack:
                back.add((node, target))
            elif target not in visited:
                visited.add(target)
                on_stack.add(target)
                frames.append((target, 0))
    return back


def _assign_layers(node_ids: List[str], dag_edges: Set[Tuple[str, str]]) -> Dict[str, int]:
    succ = _successors(node_ids, dag_edges)
    indegree = {n: 0 for n in node_ids}
    for _, target in dag_edges:
        indegree[target] += 1

    layer = {n: 0 for n in node_ids}
    ready = [n for n in node_ids if indegree[n] == 0]
    heapq.heapify(ready)
    while ready:
        node = heapq.heappop(ready)
        for target in succ[node]:
            layer[target] = max(layer[target], layer[node] + 1)
            indegree[target] -= 1
            if indegree[target] == 0:
                heapq.heappush(ready, target)
    return layer


def _order_layers(
    layer_of: Dict[str, int],
    dag_edges: Set[Tuple[str, str]],
) -> List[List[str]]:
    depth = max(layer_of.values(), default=-1) + 1
    layers: List[List[str]] = [[] for _ in range(depth)]
    for node_id in sorted(layer_of):
        layers[layer_of[node_id]].append(node_id)

    preds: Dict[str, List[str]] = {n: [] for n in layer_of}
    for source, target in dag_edges:
        preds[target].append(source)

    index: Dict[str, int] = {n: i for i, n in enumerate(layers[0])} if layers else {}
    for rank in range(1, depth):
        def barycenter(node_id: str) -> Tuple[float, str]:
            slots = [index[p] for p in preds[node_id]]
            return (sum(slots) / len(slots) if slots else 0.0, node_id)

        layers[rank].sort(key=barycenter)
        index.update({n: i for i, n in enumerate(layers[rank])})
    return layers


def _place(
    layers: List[List[str]],
    sizes: Dict[str, LayoutNode],
    direction: FlowDirection,
    options: LayoutOptions,
) -> Dict[str, Position]:
    horizontal = direction == FlowDirection.LEFT_RIGHT

    def flow_size(n: LayoutNode) -> float:
        return n.width if horizontal else n.height

    def cross_size(n: LayoutNode) -> float:
        return n.height if horizontal else n.width

    spans = [
        sum(cross_size(sizes[n]) for n in layer) + options.node_gap * (len(layer) - 1)
        for layer in layers
    ]
    widest = max(spans, default=0.0)

    positions: Dict[str, Position] = {}
    flow = 0.0
    for layer, span in zip(layers, spans):
        cross = (widest - span) / 2
        for node_id in layer:
            node = sizes[node_id]
            if horizontal:
                positions[node_id] = Position(x=flow, y=cross)
            else:
                positions[node_id] = Position(x=cross, y=flow)
            cross += cross_size(node) + options.node_gap
        flow += max(flow_size(sizes[n]) for n in layer) + options.layer_gap
    return positions


# ============================================================================
# Public API
# ============================================================================


def compute_layout(
    nodes: Iterable[LayoutNode],
    edges: Iterable[Tuple[str, str]],
    direction: Union[FlowDirection, str] = FlowDirection.TOP_BOTTOM,
    options: Optional[LayoutOptions] = None,
) -> LayoutResult:
    """Assign a position to every node.

    Edges whose endpoints are not among ``nodes`` are ignored.

    Raises:
        ValueError: If ``direction`` is not a FlowDirection value.
    """
    direction = FlowDirection(direction)
    options = options or LayoutOptions.from_config()

    sizes = {n.id: n for n in nodes}
    node_ids = sorted(sizes)
    edge_set = {(s, t) for s, t in edges if s in sizes and t in sizes}

    back_edges = _find_back_edges(node_ids, _successors(node_ids, edge_set))
    dag_edges = edge_set - back_edges
    layers = _order_layers(_assign_layers(node_ids, dag_edges), dag_edges)
    positions = _place(layers, sizes, direction, options)

    logger.debug(
        f"Layout: {len(node_ids)} nodes in {len(layers)} layers "
        f"({len(back_edges)} back-edges, {direction.value})"
    )
    return LayoutResult(positions=positions, layers=layers, back_edges=sorted(back_edges))


async def compute_layout_async(
    nodes: Iterable[LayoutNode],
    edges: Iterable[Tuple[str, str]],
    direction: Union[FlowDirection, str] = FlowDirection.TOP_BOTTOM,
    options: Optional[LayoutOptions] = None,
) -> LayoutResult:
    """Yield to the event loop once, then lay out."""
    nodes = list(nodes)
    edges = list(edges)
    await asyncio.sleep(0)
    return compute_layout(nodes, edges, direction, options)


def workflow_layout_input(workflow: Workflow) -> Tuple[List[LayoutNode], List[Tuple[str, str]]]:
    nodes = [LayoutNode(id=n.id, width=n.width, height=n.height) for n in workflow.nodes]
    edges = [(e.source, e.target) for e in workflow.edges]
    return nodes, edges


def apply_layout(
    workflow: Workflow,
    direction: Union[FlowDirection, str, None] = None,
    options: Optional[LayoutOptions] = None,
) -> Workflow:
    """Return a snapshot with laid-out positions and ``direction`` recorded."""
    direction = FlowDirection(direction or workflow.direction)
    nodes, edges = workflow_layout_input(workflow)
    result = compute_layout(nodes, edges, direction, options)
    laid_out = workflow.with_positions(result.positions)
    return laid_out.model_copy(update={"direction": direction})
