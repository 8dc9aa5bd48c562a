"""
DSL Parser — workflow module source → Workflow snapshot.

Accepted shape::

    import { defineWorkflow, Tools } from '@flowstudio/dsl';

    export default defineWorkflow({
      id: 'demo',
      name: 'Demo',
      context: {},
      nodes: {
        fetch: { kind: 'http', url: '...', next: 'notify' },
        notify: { kind: 'command', command: 'echo done' },
      },
      start: 'fetch',
    });

A bare object literal may replace the ``defineWorkflow(...)`` call.

Transitions are node fields and become edges:

    next / then          plain edge (string), conditional ``{if, then, else}``,
                         switch ``{match, cases, default}`` or an arrow function
    onSuccess / onError  ``success`` / ``error`` handled edges

Recoverable problems (unknown fields, kinds and targets, duplicate keys)
are reported as warnings; malformed source raises ``ParseError`` and no
partial workflow is returned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from flowstudio.errors import ParseError
from flowstudio.workflow.dsl.dsl_lexer import (
    EOF,
    IDENT,
    NUMBER,
    PUNCT,
    STRING,
    TEMPLATE,
    Lexer,
    Token,
)
from flowstudio.workflow.node_kinds import NodeKind, build_config, config_field_names, resolve_kind
from flowstudio.workflow.workflow_model import (
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
    Position,
    SwitchRouting,
    Workflow,
    build_workflow,
    case_handle,
    edge_id_for,
)

logger = getLogger(__name__)

# Node fields that are not part of the kind config
TRANSITION_FIELDS = ("next", "then", "onSuccess", "onError")
NODE_META_FIELDS = ("kind", "type", "label", "orphanTolerant")

WORKFLOW_FIELDS = ("id", "name", "description", "environment", "context", "nodes", "start", "_meta")


# ============================================================================
# Literal values
# ============================================================================


@dataclass(frozen=True)
class Reference:
    """Identifier or dotted path used as a value (``Tools.Read``)."""
    path: str


@dataclass(frozen=True)
class ArrowFunction:
    """Arrow function kept verbatim as source text."""
    source: str


class ObjectLiteral(dict):
    """Parsed ``{...}``; remembers the token of each key."""

    def __init__(self) -> None:
        super().__init__()
        self.locations: Dict[str, Token] = {}


def to_plain(value: Any) -> Any:
    """Strip parser-only value types (references, functions) to plain data."""
    if isinstance(value, Reference):
        return value.path
    if isinstance(value, ArrowFunction):
        return value.source
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value


@dataclass
class ParsedWorkflow:
    workflow: Workflow
    warnings: List[str] = field(default_factory=list)


# ============================================================================
# Syntax
# ============================================================================


class _Syntax:
    """Recursive-descent reader over the token stream."""

    def __init__(self, source: str, warnings: List[str]):
        self.source = source
        self.lexer = Lexer(source)
        self.tokens = self.lexer.tokenize()
        self.index = 0
        self.warnings = warnings

    # ── Token helpers ──

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def peek(self, offset: int = 1) -> Token:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != EOF:
            self.index += 1
        return token

    def error(self, message: str, token: Optional[Token] = None) -> ParseError:
        token = token or self.current
        return ParseError(message, token.line, token.column)

    def expect_punct(self, value: str) -> Token:
        token = self.current
        if not token.is_punct(value):
            raise self.error(f"Expected '{value}' but found {self.describe(token)}")
        return self.advance()

    def skip_punct(self, value: str) -> bool:
        if self.current.is_punct(value):
            self.advance()
            return True
        return False

    @staticmethod
    def describe(token: Token) -> str:
        if token.kind == EOF:
            return "end of input"
        if token.kind in (STRING, TEMPLATE):
            return "string literal"
        return f"'{token.value}'"

    # ── Module level ──

    def parse_module(self) -> Tuple[Dict[str, List[str]], ObjectLiteral]:
        imports: Dict[str, List[str]] = {}
        exported: Optional[ObjectLiteral] = None

        while self.current.kind != EOF:
            token = self.current
            if token.is_punct(";"):
                self.advance()
            elif token.is_ident("import"):
                module, names = self.parse_import()
                bucket = imports.setdefault(module, [])
                bucket.extend(n for n in names if n not in bucket)
            elif token.is_ident("export") and self.peek().is_ident("default"):
                if exported is not None:
                    raise self.error("Multiple default exports", token)
                self.advance()
                self.advance()
                exported = self.parse_export_value()
                self.skip_punct(";")
            else:
                raise self.error(f"Unexpected {self.describe(token)} at module level", token)

        if exported is None:
            raise ParseError("No default export found (expected 'export default defineWorkflow({...})')")
        return imports, exported

    def parse_import(self) -> Tuple[str, List[str]]:
        self.advance()  # import
        if self.current.kind == STRING:
            # Side-effect import
            module = self.advance().value
            self.skip_punct(";")
            return module, []

        names: List[str] = []
        if self.current.is_ident("type"):
            self.advance()
        if self.current.kind == IDENT and not self.current.is_ident("from"):
            names.append(f"default as {self.advance().value}")
            self.skip_punct(",")
        if self.skip_punct("*"):
            if not self.current.is_ident("as"):
                raise self.error("Expected 'as' after '*' in import")
            self.advance()
            names.append(f"* as {self.expect_ident()}")
        elif self.skip_punct("{"):
            while not self.current.is_punct("}"):
                name = self.expect_ident()
                if self.current.is_ident("as"):
                    self.advance()
                    name = f"{name} as {self.expect_ident()}"
                names.append(name)
                if not self.skip_punct(","):
                    break
            self.expect_punct("}")

        if not self.current.is_ident("from"):
            raise self.error(f"Expected 'from' but found {self.describe(self.current)}")
        self.advance()
        if self.current.kind != STRING:
            raise self.error("Expected module name string after 'from'")
        module = self.advance().value
        self.skip_punct(";")
        return module, names

    def expect_ident(self) -> str:
        token = self.current
        if token.kind != IDENT:
            raise self.error(f"Expected identifier but found {self.describe(token)}")
        return self.advance().value

    def parse_export_value(self) -> ObjectLiteral:
        token = self.current
        if token.is_punct("{"):
            return self.parse_object()
        if token.kind == IDENT and self.peek().is_punct("("):
            if token.value != "defineWorkflow":
                raise self.error(
                    f"Default export must call defineWorkflow(), not {token.value}()", token
                )
            self.advance()
            self.expect_punct("(")
            if self.current.is_punct(")"):
                raise self.error("defineWorkflow() requires an argument")
            if not self.current.is_punct("{"):
                raise self.error("defineWorkflow() argument must be an object literal")
            value = self.parse_object()
            self.skip_punct(",")
            self.expect_punct(")")
            return value
        raise self.error("Default export must be defineWorkflow({...}) or an object literal", token)

    # ── Values ──

    def parse_value(self) -> Any:
        token = self.current

        if token.kind in (STRING, TEMPLATE):
            self.advance()
            return token.value
        if token.kind == NUMBER:
            self.advance()
            return _number(token.value)
        if token.is_punct("-") and self.peek().kind == NUMBER:
            self.advance()
            return -_number(self.advance().value)
        if token.is_punct("{"):
            return self.parse_object()
        if token.is_punct("["):
            return self.parse_array()
        if token.is_punct("("):
            if self._is_arrow_params():
                return self.parse_arrow(token)
            raise self.error("Parenthesized expressions are not supported", token)
        if token.kind == IDENT:
            if token.value == "async" and (self.peek().is_punct("(") or self.peek().kind == IDENT):
                return self.parse_arrow(token)
            if self.peek().is_punct("=>"):
                return self.parse_arrow(token)
            return self.parse_reference()
        raise self.error(f"Unexpected {self.describe(token)}", token)

    def parse_object(self) -> ObjectLiteral:
        self.expect_punct("{")
        result = ObjectLiteral()
        while not self.current.is_punct("}"):
            key_token = self.current
            if key_token.kind in (IDENT, STRING, NUMBER):
                key = key_token.value
                self.advance()
            else:
                raise self.error(f"Expected property name but found {self.describe(key_token)}")
            self.expect_punct(":")
            value = self.parse_value()
            if key in result:
                self.warnings.append(
                    f"Duplicate key '{key}' (line {key_token.line}); the last value wins"
                )
                del result[key]
            result[key] = value
            result.locations[key] = key_token
            if not self.skip_punct(","):
                break
        self.expect_punct("}")
        return result

    def parse_array(self) -> List[Any]:
        self.expect_punct("[")
        items: List[Any] = []
        while not self.current.is_punct("]"):
            items.append(self.parse_value())
            if not self.skip_punct(","):
                break
        self.expect_punct("]")
        return items

    def parse_reference(self) -> Any:
        name = self.advance().value
        if name in ("true", "false"):
            return name == "true"
        if name in ("null", "undefined"):
            return None
        parts = [name]
        while self.current.is_punct(".") and self.peek().kind == IDENT:
            self.advance()
            parts.append(self.advance().value)
        return Reference(".".join(parts))

    def _is_arrow_params(self) -> bool:
        depth = 0
        for offset in range(len(self.tokens) - self.index):
            token = self.peek(offset)
            if token.kind == EOF:
                return False
            if token.is_punct("("):
                depth += 1
            elif token.is_punct(")"):
                depth -= 1
                if depth == 0:
                    return self.peek(offset + 1).is_punct("=>")
        return False

    def parse_arrow(self, start: Token) -> ArrowFunction:
        # Parameters
        while not self.current.is_punct("=>"):
            if self.current.kind == EOF:
                raise self.error("Unterminated arrow function", start)
            self.advance()
        self.advance()

        end = self.current.end
        if self.current.is_punct("{"):
            end = self._skip_balanced()
        else:
            depth = 0
            while self.current.kind != EOF:
                token = self.current
                if token.kind == PUNCT and token.value in "([{":
                    depth += 1
                elif token.kind == PUNCT and token.value in ")]}":
                    if depth == 0:
                        break
                    depth -= 1
                elif token.is_punct(",") and depth == 0:
                    break
                end = token.end
                self.advance()
        return ArrowFunction(self.source[start.start:end].strip())

    def _skip_balanced(self) -> int:
        opening = self.current
        depth = 0
        while self.current.kind != EOF:
            token = self.advance()
            if token.kind == PUNCT and token.value in "([{":
                depth += 1
            elif token.kind == PUNCT and token.value in ")]}":
                depth -= 1
                if depth == 0:
                    return token.end
        raise self.error("Unbalanced braces in function body", opening)


def _number(text: str) -> Any:
    value = float(text)
    if value.is_integer() and "." not in text and "e" not in text.lower():
        return int(text)
    return value


# ============================================================================
# Semantics
# ============================================================================


class _WorkflowBuilder:
    """Turns the exported object literal into a Workflow."""

    def __init__(self, syntax: _Syntax, warnings: List[str]):
        self.syntax = syntax
        self.warnings = warnings
        self.nodes: Dict[str, NodeRecord] = {}
        self.edges: Dict[str, EdgeRecord] = {}

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def build(self, literal: ObjectLiteral, imports: Dict[str, List[str]]) -> Workflow:
        for key in literal:
            if key not in WORKFLOW_FIELDS:
                self.warn(f"Unknown workflow field '{key}' ignored")

        meta = literal.get("_meta")
        meta = meta if isinstance(meta, dict) else {}
        nodes_literal = literal.get("nodes")
        if nodes_literal is None:
            nodes_literal = ObjectLiteral()
        if not isinstance(nodes_literal, dict):
            raise self.syntax.error("'nodes' must be an object literal", literal.locations["nodes"])

        node_layout = meta.get("nodes") if isinstance(meta.get("nodes"), dict) else {}
        kept: Dict[str, ObjectLiteral] = {}
        for node_id, body in nodes_literal.items():
            node = self._build_node(node_id, body, nodes_literal.locations[node_id], node_layout)
            if node is not None:
                self.nodes[node_id] = node
                kept[node_id] = body

        edge_meta = meta.get("edges") if isinstance(meta.get("edges"), dict) else {}
        for node_id, body in kept.items():
            self._build_transitions(node_id, body, edge_meta)

        start = literal.get("start")
        if start is not None and not isinstance(start, str):
            self.warn("'start' must be a node id string; ignored")
            start = None
        if start is not None and start not in self.nodes:
            self.warn(f"Start node '{start}' is not defined")

        direction = FlowDirection.TOP_BOTTOM
        if "direction" in meta:
            try:
                direction = FlowDirection(meta["direction"])
            except ValueError:
                self.warn(f"Unknown layout direction '{meta['direction']}' ignored")

        workflow_id = _string_field(literal, "id", "")
        if not workflow_id:
            self.warn("Workflow has no id")
        context = to_plain(literal.get("context") or {})
        if not isinstance(context, dict):
            self.warn("'context' must be an object literal; ignored")
            context = {}

        return build_workflow(
            self.nodes.values(),
            self.edges.values(),
            id=workflow_id,
            name=_string_field(literal, "name", workflow_id or "Untitled Workflow"),
            description=_string_field(literal, "description", ""),
            context=context,
            environment_id=literal.get("environment") if isinstance(literal.get("environment"), str) else None,
            start=start,
            direction=direction,
            imports={module: tuple(names) for module, names in imports.items()},
        )

    # ── Nodes ──

    def _build_node(
        self,
        node_id: str,
        body: Any,
        location: Token,
        node_layout: Dict[str, Any],
    ) -> Optional[NodeRecord]:
        if not isinstance(body, dict):
            self.warn(f"Could not parse node '{node_id}': expected an object literal")
            return None

        tag = body.get("kind")
        if "type" in body:
            if tag is None:
                tag = body["type"]
            elif body["type"] != tag:
                self.warn(f"Node '{node_id}' declares both kind '{tag}' and type '{body['type']}'; using kind")
        if tag is None:
            self.warn(f"Node '{node_id}' is missing 'kind'; skipped")
            return None
        kind = resolve_kind(tag) if isinstance(tag, str) else None
        if kind is None:
            self.warn(f"Unknown node kind '{tag}' on node '{node_id}'; skipped")
            return None

        known = set(config_field_names(kind))
        fields: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in body.items():
            if key in NODE_META_FIELDS or key in TRANSITION_FIELDS:
                continue
            if key in known:
                fields[key] = _config_value(key, value)
            else:
                self.warn(f"Unknown field '{key}' on node '{node_id}' ({kind.value}) preserved")
                extra[key] = to_plain(value)

        try:
            config = build_config(kind, fields)
        except ValidationError as e:
            problem = e.errors()[0]
            where = ".".join(str(p) for p in problem["loc"])
            field_token = location
            if isinstance(body, ObjectLiteral) and problem["loc"]:
                field_token = body.locations.get(str(problem["loc"][0]), location)
            raise self.syntax.error(
                f"Invalid value for '{where}' on node '{node_id}': {problem['msg']}",
                field_token,
            ) from e

        layout = node_layout.get(node_id)
        layout = layout if isinstance(layout, dict) else {}
        label = body.get("label", "")
        return NodeRecord(
            id=node_id,
            kind=kind,
            label=label if isinstance(label, str) else "",
            position=Position(x=_coord(layout.get("x")), y=_coord(layout.get("y"))),
            width=_coord(layout.get("width"), DEFAULT_NODE_WIDTH),
            height=_coord(layout.get("height"), DEFAULT_NODE_HEIGHT),
            config=config,
            orphan_tolerant=body.get("orphanTolerant") is True,
            extra_fields=extra,
        )

    # ── Transitions ──

    def _build_transitions(self, node_id: str, body: Dict[str, Any], edge_meta: Dict[str, Any]) -> None:
        node = self.nodes[node_id]
        if "next" in body and "then" in body:
            self.warn(f"Node '{node_id}' has both 'next' and 'then'; using 'next'")
        primary = body["next"] if "next" in body else body.get("then")

        routing = None
        if isinstance(primary, str):
            self._connect(node_id, primary, None, edge_meta)
        elif isinstance(primary, ArrowFunction):
            routing = FunctionRouting(source=primary.source)
        elif isinstance(primary, dict):
            routing = self._build_branch(node_id, primary, edge_meta)
        elif primary is not None:
            self.warn(f"Unrecognized transition on node '{node_id}'; ignored")

        for key, handle in (("onSuccess", HANDLE_SUCCESS), ("onError", HANDLE_ERROR)):
            target = body.get(key)
            if target is None:
                continue
            if isinstance(target, str):
                self._connect(node_id, target, handle, edge_meta)
            else:
                self.warn(f"'{key}' on node '{node_id}' must be a node id; ignored")

        if routing is not None:
            self.nodes[node_id] = node.model_copy(update={"routing": routing})

    def _build_branch(self, node_id: str, branch: Dict[str, Any], edge_meta: Dict[str, Any]):
        if "if" in branch:
            for key, handle in (("then", HANDLE_THEN), ("else", HANDLE_ELSE)):
                self._connect(node_id, _target(branch.get(key)), handle, edge_meta)
            return ConditionalRouting(condition=str(to_plain(branch["if"]) or ""))

        if "match" in branch:
            cases = branch.get("cases") or {}
            if not isinstance(cases, dict):
                self.warn(f"Switch 'cases' on node '{node_id}' must be an object literal; ignored")
                cases = {}
            for value, target in cases.items():
                self._connect(node_id, _target(target), case_handle(str(value)), edge_meta)
            self._connect(node_id, _target(branch.get("default")), HANDLE_DEFAULT, edge_meta)
            return SwitchRouting(expression=str(to_plain(branch["match"]) or ""))

        self.warn(f"Unrecognized transition object on node '{node_id}'; ignored")
        return None

    def _connect(
        self,
        source: str,
        target: str,
        handle: Optional[str],
        edge_meta: Dict[str, Any],
    ) -> None:
        if target == END_TARGET:
            return
        if target not in self.nodes:
            self.warn(f"Unknown transition target '{target}' from node '{source}'; edge dropped")
            return
        if source == target and not self.nodes[source].allows_self_loop:
            self.warn(
                f"Node '{source}' ({self.nodes[source].kind.value}) cannot transition to itself; edge dropped"
            )
            return
        edge_id = edge_id_for(source, target, handle)
        meta = edge_meta.get(edge_id)
        label = meta.get("label", "") if isinstance(meta, dict) else ""
        self.edges[edge_id] = EdgeRecord(
            id=edge_id,
            source=source,
            target=target,
            source_handle=handle,
            label=label if isinstance(label, str) else "",
        )


def _target(value: Any) -> str:
    return value if isinstance(value, str) else END_TARGET


def _string_field(literal: Dict[str, Any], key: str, default: str) -> str:
    value = literal.get(key)
    return value if isinstance(value, str) else default


def _coord(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def _config_value(key: str, value: Any) -> Any:
    if key == "tools" and isinstance(value, list):
        # Tools.Read → Read
        return [v.path.split(".")[-1] if isinstance(v, Reference) else to_plain(v) for v in value]
    return to_plain(value)


# ============================================================================
# Public API
# ============================================================================


def parse_workflow(source: str) -> ParsedWorkflow:
    """Parse DSL source into a Workflow.

    Raises:
        ParseError: On malformed source; carries line/column when known.
    """
    warnings: List[str] = []
    syntax = _Syntax(source, warnings)
    imports, literal = syntax.parse_module()
    workflow = _WorkflowBuilder(syntax, warnings).build(literal, imports)

    logger.info(
        f"Parsed workflow '{workflow.id}': {len(workflow.nodes)} nodes, "
        f"{len(workflow.edges)} edges, {len(warnings)} warnings"
    )
    return ParsedWorkflow(workflow=workflow, warnings=warnings)
