"""
Workflow Data Models — workflow snapshots, node records and edges.

These are the serializable data structures that describe a
user-designed workflow graph. Snapshots are immutable: every mutator
returns a new ``Workflow`` or raises ``GraphReferenceError`` and leaves
the original untouched.

Two invariants hold for snapshots produced by the mutators:

* ``node.config.kind == node.kind`` for every node (enforced on
  construction).
* Both endpoints of every edge exist, and self-loops only appear on
  kinds that declare a self-referential port.

Snapshots built directly (e.g. from untrusted JSON) may still carry
dangling edges; ``validate_workflow`` reports them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from flowstudio.errors import GraphReferenceError
from flowstudio.workflow.node_kinds import (
    NodeConfig,
    NodeConfigBase,
    NodeKind,
    default_config,
    get_kind_spec,
)

# Edge source handles
HANDLE_SUCCESS = "success"
HANDLE_ERROR = "error"
HANDLE_THEN = "then"
HANDLE_ELSE = "else"
HANDLE_DEFAULT = "default"
CASE_HANDLE_PREFIX = "case:"

# Transition target meaning "stop here"; never materialized as a node.
END_TARGET = "END"

# Canvas size of a node without layout hints.
DEFAULT_NODE_WIDTH = 200.0
DEFAULT_NODE_HEIGHT = 100.0


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FlowDirection(str, Enum):
    """Primary flow axis of the layered layout."""
    TOP_BOTTOM = "TB"
    LEFT_RIGHT = "LR"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Position(_Frozen):
    x: float = 0
    y: float = 0


# ============================================================================
# Routing: expression half of a branching transition
# ============================================================================


class ConditionalRouting(_Frozen):
    """``next: { if, then, else }``; targets live on ``then``/``else`` edges."""
    type: Literal["conditional"] = "conditional"
    condition: str


class SwitchRouting(_Frozen):
    """``next: { match, cases, default }``; targets on ``case:*``/``default`` edges."""
    type: Literal["switch"] = "switch"
    expression: str


class FunctionRouting(_Frozen):
    """``next: (ctx) => ...``; opaque source, no static targets."""
    type: Literal["function"] = "function"
    source: str


Routing = Annotated[
    Union[ConditionalRouting, SwitchRouting, FunctionRouting],
    Field(discriminator="type"),
]


def case_handle(value: str) -> str:
    return f"{CASE_HANDLE_PREFIX}{value}"


# ============================================================================
# Nodes & edges
# ============================================================================


class NodeRecord(_Frozen):
    """A single node placed on the workflow canvas.

    ``config`` holds the kind-specific parameters; ``extra_fields`` keeps
    DSL fields this version does not understand so they survive a
    parse → generate round trip.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    kind: NodeKind
    label: str = ""
    position: Position = Field(default_factory=Position)
    width: float = DEFAULT_NODE_WIDTH
    height: float = DEFAULT_NODE_HEIGHT
    config: NodeConfig
    routing: Optional[Routing] = None
    orphan_tolerant: bool = False
    extra_fields: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fill_config(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("config") is None and "kind" in data:
            data = dict(data)
            data["config"] = default_config(NodeKind(data["kind"]))
        return data

    @model_validator(mode="after")
    def _check_config_kind(self) -> "NodeRecord":
        if self.config.kind != self.kind.value:
            raise ValueError(
                f"Node '{self.id}' has kind '{self.kind.value}' "
                f"but its config is '{self.config.kind}'"
            )
        return self

    @property
    def display_label(self) -> str:
        return self.label or self.id

    @property
    def is_terminal(self) -> bool:
        return get_kind_spec(self.kind).is_terminal

    @property
    def allows_self_loop(self) -> bool:
        return get_kind_spec(self.kind).allows_self_loop


class EdgeRecord(_Frozen):
    """A directed edge between two node records.

    ``source_handle`` names the transition on the source node that the
    edge encodes (``None`` for the plain ``next`` transition).
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    source: str
    target: str
    source_handle: Optional[str] = None
    label: str = ""


def edge_id_for(source: str, target: str, handle: Optional[str] = None) -> str:
    """Deterministic edge id used by the parser."""
    if handle:
        return f"{source}:{handle}->{target}"
    return f"{source}->{target}"


# ============================================================================
# Workflow snapshot
# ============================================================================


class Workflow(_Frozen):
    """A complete, immutable workflow graph snapshot."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Untitled Workflow"
    description: str = ""
    context: Dict[str, Any] = Field(default_factory=dict)
    environment_id: Optional[str] = None
    start: Optional[str] = None
    direction: FlowDirection = FlowDirection.TOP_BOTTOM
    imports: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    nodes: Tuple[NodeRecord, ...] = ()
    edges: Tuple[EdgeRecord, ...] = ()
    created_at: str = Field(default_factory=_utc_now)
    updated_at: str = Field(default_factory=_utc_now)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "Workflow":
        seen = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id: {node.id}")
            seen.add(node.id)
        edge_ids = [e.id for e in self.edges]
        if len(edge_ids) != len(set(edge_ids)):
            raise ValueError("Duplicate edge ids")
        return self

    # ── Accessors ──

    def touch(self) -> "Workflow":
        """Return a copy with a fresh ``updated_at`` timestamp."""
        return self.model_copy(update={"updated_at": _utc_now()})

    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> Optional[NodeRecord]:
        """Find a node record by ID."""
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def get_edge(self, edge_id: str) -> Optional[EdgeRecord]:
        for e in self.edges:
            if e.id == edge_id:
                return e
        return None

    def get_edges_from(self, node_id: str) -> List[EdgeRecord]:
        """Get all edges originating from a node."""
        return [e for e in self.edges if e.source == node_id]

    def get_edges_to(self, node_id: str) -> List[EdgeRecord]:
        """Get all edges pointing to a node."""
        return [e for e in self.edges if e.target == node_id]

    def get_start_node(self) -> Optional[NodeRecord]:
        return self.get_node(self.start) if self.start else None

    def get_end_nodes(self) -> List[NodeRecord]:
        """Find all terminal nodes."""
        return [n for n in self.nodes if n.is_terminal]

    # ── Mutators ──

    def add_node(self, node: NodeRecord) -> "Workflow":
        if self.get_node(node.id) is not None:
            raise GraphReferenceError(f"Node already exists: {node.id}")
        return self._replace(nodes=self.nodes + (node,))

    def update_node(self, node_id: str, **changes: Any) -> "Workflow":
        """Replace fields of a node.

        Changing ``kind`` without passing a ``config`` resets the config
        to the new kind's defaults. Renaming (``id``) is not supported.
        """
        node = self._require_node(node_id)
        if "id" in changes and changes["id"] != node_id:
            raise GraphReferenceError(f"Node ids are immutable: {node_id}")
        data = node.model_dump()
        data.update(changes)
        if "kind" in changes and "config" not in changes:
            data["config"] = default_config(NodeKind(changes["kind"]))
        if isinstance(data.get("config"), NodeConfigBase):
            data["config"] = data["config"].model_dump()
        updated = NodeRecord.model_validate(data)
        if not updated.allows_self_loop and any(
            e.source == node_id and e.target == node_id for e in self.edges
        ):
            raise GraphReferenceError(
                f"Kind '{updated.kind.value}' does not allow the self-loop on {node_id}"
            )
        nodes = tuple(updated if n.id == node_id else n for n in self.nodes)
        return self._replace(nodes=nodes)

    def remove_node(self, node_id: str) -> "Workflow":
        """Remove a node and every edge touching it."""
        self._require_node(node_id)
        nodes = tuple(n for n in self.nodes if n.id != node_id)
        edges = tuple(e for e in self.edges if node_id not in (e.source, e.target))
        start = None if self.start == node_id else self.start
        return self._replace(nodes=nodes, edges=edges, start=start)

    def add_edge(self, edge: EdgeRecord) -> "Workflow":
        if self.get_edge(edge.id) is not None:
            raise GraphReferenceError(f"Edge already exists: {edge.id}")
        source = self._require_node(edge.source)
        self._require_node(edge.target)
        if edge.source == edge.target and not source.allows_self_loop:
            raise GraphReferenceError(
                f"Kind '{source.kind.value}' has no self-referential port: {edge.source}"
            )
        return self._replace(edges=self.edges + (edge,))

    def connect(
        self,
        source: str,
        target: str,
        source_handle: Optional[str] = None,
        label: str = "",
    ) -> "Workflow":
        """Add an edge with a deterministic id."""
        return self.add_edge(EdgeRecord(
            id=edge_id_for(source, target, source_handle),
            source=source,
            target=target,
            source_handle=source_handle,
            label=label,
        ))

    def remove_edge(self, edge_id: str) -> "Workflow":
        if self.get_edge(edge_id) is None:
            raise GraphReferenceError(f"Unknown edge: {edge_id}")
        return self._replace(edges=tuple(e for e in self.edges if e.id != edge_id))

    def with_start(self, node_id: Optional[str]) -> "Workflow":
        if node_id is not None:
            self._require_node(node_id)
        return self._replace(start=node_id)

    def with_positions(self, positions: Dict[str, Position]) -> "Workflow":
        nodes = tuple(
            n.model_copy(update={"position": positions[n.id]}) if n.id in positions else n
            for n in self.nodes
        )
        return self._replace(nodes=nodes)

    # ── Comparison ──

    def is_equivalent(self, other: "Workflow") -> bool:
        """Semantic equality: same metadata, nodes, configs, edges and start.

        Node/edge ordering, edge ids and timestamps are ignored.
        """
        return self._structure() == other._structure()

    def _structure(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "context": self.context,
            "environment_id": self.environment_id,
            "start": self.start,
            "direction": self.direction,
            "nodes": {n.id: n.model_dump(exclude={"id"}) for n in self.nodes},
            "edges": sorted(
                (e.source, e.target, e.source_handle or "", e.label) for e in self.edges
            ),
        }

    # ── Internals ──

    def _require_node(self, node_id: str) -> NodeRecord:
        node = self.get_node(node_id)
        if node is None:
            raise GraphReferenceError(f"Unknown node: {node_id}")
        return node

    def _replace(self, **update: Any) -> "Workflow":
        update["updated_at"] = _utc_now()
        return self.model_copy(update=update)


def build_workflow(
    nodes: Iterable[NodeRecord],
    edges: Iterable[EdgeRecord] = (),
    **fields: Any,
) -> Workflow:
    """Convenience constructor used by the parser and tests."""
    return Workflow(nodes=tuple(nodes), edges=tuple(edges), **fields)
