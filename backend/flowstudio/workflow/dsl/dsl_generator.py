"""
DSL Generator — Workflow snapshot → workflow module source.

Output is canonical so that equal graphs render byte-identically:

* nodes in topological order with the smallest id first among ready
  nodes (cycles are broken at the smallest remaining id);
* config fields in their declared per-kind order, optional fields only
  when they differ from the default;
* mapping keys sorted;
* ``_meta`` only when the graph carries layout or edge-label data.

The generator never raises on a structurally broken graph. Problems
(dangling edges, missing start node, leaves of non-terminal kinds,
conflicting transitions) are returned as warnings next to best-effort
source text.
"""

from __future__ import annotations

import heapq
import json
import re
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Dict, List, Optional, Sequence, Tuple

from flowstudio.config import get_studio_config
from flowstudio.workflow.node_kinds import NodeKind
from flowstudio.workflow.workflow_model import (
    CASE_HANDLE_PREFIX,
    DEFAULT_NODE_HEIGHT,
    DEFAULT_NODE_WIDTH,
    END_TARGET,
    HANDLE_DEFAULT,
    HANDLE_ELSE,
    HANDLE_ERROR,
    HANDLE_SUCCESS,
    HANDLE_THEN,
    ConditionalRouting,
    EdgeRecord,
    FlowDirection,
    FunctionRouting,
    NodeRecord,
    SwitchRouting,
    Workflow,
    edge_id_for,
)

logger = getLogger(__name__)

INDENT = "  "

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")

BRANCH_HANDLES = (HANDLE_THEN, HANDLE_ELSE, HANDLE_DEFAULT)


@dataclass
class GeneratedDSL:
    code: str
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Raw:
    """Source text emitted verbatim (references, functions)."""
    text: str


class Block(dict):
    """Mapping rendered in insertion order instead of sorted."""


# ============================================================================
# Value rendering
# ============================================================================


def render_key(key: str) -> str:
    return key if _IDENTIFIER_RE.match(key) else quote_string(key)


def quote_string(text: str) -> str:
    """Single-quoted literal, or a template literal for multi-line text."""
    if "\n" in text:
        body = (
            text.replace("\\", "\\\\")
            .replace("`", "\\`")
            .replace("${", "\\${")
            .replace("\r", "\\r")
        )
        return f"`{body}`"
    out = []
    for ch in text:
        if ch == "\\":
            out.append("\\\\")
        elif ch == "'":
            out.append("\\'")
        elif ch == "\t":
            out.append("\\t")
        elif ch == "\r":
            out.append("\\r")
        elif ord(ch) < 0x20:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    return "'" + "".join(out) + "'"


def render_number(value: Any) -> str:
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return "null"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def render_value(value: Any, depth: int) -> str:
    """Render a value whose key sits at ``depth`` indentation levels."""
    if isinstance(value, Raw):
        return value.text
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return render_number(value)
    if isinstance(value, str):
        return quote_string(value)
    if isinstance(value, dict):
        if not value:
            return "{}"
        inner = INDENT * (depth + 1)
        lines = [
            f"{inner}{render_key(str(k))}: {render_value(value[k], depth + 1)},"
            for k in (list(value) if isinstance(value, Block) else sorted(value, key=str))
        ]
        return "{\n" + "\n".join(lines) + "\n" + INDENT * depth + "}"
    if isinstance(value, (list, tuple)):
        if not value:
            return "[]"
        if all(not isinstance(v, (dict, list, tuple)) for v in value):
            return "[" + ", ".join(render_value(v, depth) for v in value) + "]"
        inner = INDENT * (depth + 1)
        lines = [f"{inner}{render_value(v, depth + 1)}," for v in value]
        return "[\n" + "\n".join(lines) + "\n" + INDENT * depth + "]"
    # Unknown objects (e.g. from hand-built extra_fields) degrade to JSON.
    return json.dumps(value, default=str)


def render_tools(tools: Sequence[str]) -> Raw:
    items = [f"Tools.{t}" if _IDENTIFIER_RE.match(t) else quote_string(t) for t in tools]
    return Raw("[" + ", ".join(items) + "]")


# ============================================================================
# Ordering
# ============================================================================


def canonical_node_order(workflow: Workflow) -> List[str]:
    """Topological order, lexicographic among ready nodes.

    Edges with unknown endpoints are ignored. When only nodes on cycles
    remain, the smallest remaining id is emitted next.
    """
    ids = {n.id for n in workflow.nodes}
    succ: Dict[str, List[str]] = {n: [] for n in ids}
    indegree = {n: 0 for n in ids}
    for e in workflow.edges:
        if e.source in ids and e.target in ids and e.source != e.target:
            succ[e.source].append(e.target)
            indegree[e.target] += 1

    order: List[str] = []
    remaining = set(ids)
    ready = [n for n in ids if indegree[n] == 0]
    heapq.heapify(ready)
    while remaining:
        if not ready:
            ready = [min(remaining)]
        node = heapq.heappop(ready)
        if node not in remaining:
            continue
        remaining.discard(node)
        order.append(node)
        for target in succ[node]:
            indegree[target] -= 1
            if indegree[target] == 0 and target in remaining:
                heapq.heappush(ready, target)
    return order


# ============================================================================
# Generator
# ============================================================================


class _Generator:

    def __init__(self, workflow: Workflow, dsl_module: str):
        self.workflow = workflow
        self.dsl_module = dsl_module
        self.warnings: List[str] = []
        self.node_ids = set(workflow.node_ids())

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def generate(self) -> str:
        wf = self.workflow
        if wf.start is None or wf.start not in self.node_ids:
            self.warn("No start node found" if wf.start is None else f"Start node '{wf.start}' does not exist")

        edges_by_source: Dict[str, List[EdgeRecord]] = {}
        for e in wf.edges:
            if e.source not in self.node_ids or e.target not in self.node_ids:
                self.warn(f"Edge '{e.id}' ({e.source} -> {e.target}) references a missing node; skipped")
                continue
            edges_by_source.setdefault(e.source, []).append(e)

        node_blocks = []
        for node_id in canonical_node_order(wf):
            node = wf.get_node(node_id)
            node_blocks.append(self._node_block(node, edges_by_source.get(node_id, [])))

        lines = [self._header(), "", "export default defineWorkflow({"]
        lines.append(f"{INDENT}id: {quote_string(wf.id)},")
        lines.append(f"{INDENT}name: {quote_string(wf.name)},")
        if wf.description:
            lines.append(f"{INDENT}description: {quote_string(wf.description)},")
        if wf.environment_id:
            lines.append(f"{INDENT}environment: {quote_string(wf.environment_id)},")
        lines.append(f"{INDENT}context: {render_value(wf.context, 1)},")
        lines.append("")
        if node_blocks:
            lines.append(f"{INDENT}nodes: {{")
            lines.append("\n\n".join(node_blocks))
            lines.append(f"{INDENT}}},")
        else:
            lines.append(f"{INDENT}nodes: {{}},")
        if wf.start is not None:
            lines.append("")
            lines.append(f"{INDENT}start: {quote_string(wf.start)},")
        meta = self._meta()
        if meta:
            lines.append("")
            lines.append(f"{INDENT}_meta: {render_value(meta, 1)},")
        lines.append("});")
        return "\n".join(lines) + "\n"

    # ── Header ──

    def _header(self) -> str:
        uses_tools = any(
            n.kind == NodeKind.AGENT and n.config.tools for n in self.workflow.nodes
        )
        imports = {m: list(names) for m, names in self.workflow.imports.items()}
        dsl_names = imports.pop(self.dsl_module, [])
        required = ["defineWorkflow"] + (["Tools"] if uses_tools else [])
        dsl_names = required + sorted(n for n in dsl_names if n not in required)

        statements = _import_statements(self.dsl_module, dsl_names)
        for module in sorted(imports):
            statements.extend(_import_statements(module, imports[module]))
        return "\n".join(statements)

    # ── Nodes ──

    def _node_block(self, node: NodeRecord, edges: List[EdgeRecord]) -> str:
        fields: List[Tuple[str, Any]] = [("kind", node.kind.value)]
        if node.label:
            fields.append(("label", node.label))
        for name, value in node.config.dsl_fields().items():
            if name == "tools":
                value = render_tools(value)
            fields.append((name, value))
        for name in sorted(node.extra_fields):
            fields.append((name, node.extra_fields[name]))
        if node.orphan_tolerant:
            fields.append(("orphanTolerant", True))
        fields.extend(self._transitions(node, edges))

        if not edges and node.routing is None and not node.is_terminal:
            self.warn(f"node {node.id} has no outgoing edge and is not a terminal kind")

        inner = INDENT * 3
        body = "\n".join(f"{inner}{render_key(k)}: {render_value(v, 3)}," for k, v in fields)
        return f"{INDENT * 2}{render_key(node.id)}: {{\n{body}\n{INDENT * 2}}},"

    def _transitions(self, node: NodeRecord, edges: List[EdgeRecord]) -> List[Tuple[str, Any]]:
        by_handle: Dict[Optional[str], List[EdgeRecord]] = {}
        cases: Dict[str, EdgeRecord] = {}
        for e in sorted(edges, key=lambda e: (e.source_handle or "", e.target)):
            handle = e.source_handle
            if handle and handle.startswith(CASE_HANDLE_PREFIX):
                value = handle[len(CASE_HANDLE_PREFIX):]
                if value in cases:
                    self.warn(f"node {node.id} has several edges for case '{value}'; keeping '{cases[value].target}'")
                else:
                    cases[value] = e
                continue
            if handle not in (None, HANDLE_SUCCESS, HANDLE_ERROR) + BRANCH_HANDLES:
                self.warn(f"Edge '{e.id}' has unknown source handle '{handle}'; skipped")
                continue
            by_handle.setdefault(handle, []).append(e)

        out: List[Tuple[str, Any]] = []
        routing = node.routing
        plain = by_handle.get(None, [])

        if isinstance(routing, ConditionalRouting):
            self._drop_plain(node, plain, "conditional")
            self._drop_branch(node, by_handle, cases, (HANDLE_DEFAULT,), include_cases=True)
            out.append(("next", Block({
                "if": routing.condition,
                "then": self._branch_target(node, by_handle, HANDLE_THEN),
                "else": self._branch_target(node, by_handle, HANDLE_ELSE),
            })))
        elif isinstance(routing, SwitchRouting):
            self._drop_plain(node, plain, "switch")
            self._drop_branch(node, by_handle, cases, (HANDLE_THEN, HANDLE_ELSE))
            out.append(("next", Block({
                "match": routing.expression,
                "cases": {value: e.target for value, e in cases.items()},
                "default": self._branch_target(node, by_handle, HANDLE_DEFAULT),
            })))
        elif isinstance(routing, FunctionRouting):
            self._drop_plain(node, plain, "function")
            self._drop_branch(node, by_handle, cases, BRANCH_HANDLES, include_cases=True)
            out.append(("next", Raw(routing.source)))
        else:
            self._drop_branch(node, by_handle, cases, BRANCH_HANDLES, include_cases=True)
            if plain:
                if len(plain) > 1:
                    self.warn(
                        f"node {node.id} has {len(plain)} plain outgoing edges; "
                        f"only '{plain[0].target}' is emitted"
                    )
                out.append(("next", plain[0].target))

        for handle, key in ((HANDLE_SUCCESS, "onSuccess"), (HANDLE_ERROR, "onError")):
            handled = by_handle.get(handle, [])
            if handled:
                if len(handled) > 1:
                    self.warn(f"node {node.id} has several '{handle}' edges; only '{handled[0].target}' is emitted")
                out.append((key, handled[0].target))
        return out

    def _branch_target(self, node: NodeRecord, by_handle, handle: str) -> str:
        targets = by_handle.get(handle, [])
        if len(targets) > 1:
            self.warn(f"node {node.id} has several '{handle}' edges; only '{targets[0].target}' is emitted")
        return targets[0].target if targets else END_TARGET

    def _drop_plain(self, node: NodeRecord, plain: List[EdgeRecord], routing: str) -> None:
        if plain:
            self.warn(f"node {node.id} has plain edges alongside {routing} routing; plain edges skipped")

    def _drop_branch(self, node, by_handle, cases, handles, include_cases: bool = False) -> None:
        dropped = [h for h in handles if by_handle.get(h)]
        if include_cases and cases:
            dropped.append("case")
        if dropped:
            self.warn(
                f"node {node.id} has branch edges ({', '.join(dropped)}) without matching routing; skipped"
            )

    # ── Metadata ──

    def _meta(self) -> Dict[str, Any]:
        wf = self.workflow
        meta: Dict[str, Any] = {}
        if wf.direction != FlowDirection.TOP_BOTTOM:
            meta["direction"] = wf.direction.value

        nodes: Dict[str, Any] = {}
        for n in wf.nodes:
            entry: Dict[str, Any] = {}
            if n.position.x or n.position.y:
                entry["x"] = n.position.x
                entry["y"] = n.position.y
            if n.width != DEFAULT_NODE_WIDTH:
                entry["width"] = n.width
            if n.height != DEFAULT_NODE_HEIGHT:
                entry["height"] = n.height
            if entry:
                nodes[n.id] = entry
        if nodes:
            meta["nodes"] = nodes

        labels = {
            edge_id_for(e.source, e.target, e.source_handle): {"label": e.label}
            for e in wf.edges
            if e.label and e.source in self.node_ids and e.target in self.node_ids
        }
        if labels:
            meta["edges"] = labels
        return meta


def _import_statements(module: str, names: Sequence[str]) -> List[str]:
    quoted = quote_string(module)
    if not names:
        return [f"import {quoted};"]
    default = [n[len("default as "):] for n in names if n.startswith("default as ")]
    namespaces = [n for n in names if n.startswith("* as ")]
    named = [n for n in names if not n.startswith(("default as ", "* as "))]

    statements = []
    clause = []
    if default:
        clause.append(default[0])
    if named:
        clause.append("{ " + ", ".join(named) + " }")
    if clause:
        statements.append(f"import {', '.join(clause)} from {quoted};")
    for ns in namespaces:
        statements.append(f"import {ns} from {quoted};")
    return statements


def generate_workflow(workflow: Workflow, dsl_module: Optional[str] = None) -> GeneratedDSL:
    """Render a workflow as DSL source. Never raises on graph problems."""
    generator = _Generator(workflow, dsl_module or get_studio_config().dsl_module)
    code = generator.generate()
    logger.info(
        f"Generated DSL for workflow '{workflow.id}': {len(workflow.nodes)} nodes, "
        f"{len(generator.warnings)} warnings"
    )
    return GeneratedDSL(code=code, warnings=generator.warnings)
