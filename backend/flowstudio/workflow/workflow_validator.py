"""
Workflow Validator — structural and semantic checks over a snapshot.

Checks run in a fixed order and append to one issue list:

    1. edges      both endpoints exist; self-loops only on loop kinds
    2. nodes      per-kind required fields and value ranges
    3. start      a start node exists, every other node is entered by
                  an edge (or tolerated as an orphan), reachability
    4. cycles     each back-edge cycle is surfaced as a warning; a
                  negative reporting cap falls back to the default
    5. metadata   workflow id and node id style

``valid`` is False iff any issue has severity ``error``. The validator
never raises; it is safe to run on graphs straight from untrusted input.
"""

from __future__ import annotations

import re
from collections import deque
from logging import getLogger
from typing import Callable, Dict, List, Literal, Optional, Set

from pydantic import BaseModel

from flowstudio.config import get_studio_config
from flowstudio.workflow.cycle_detector import DEFAULT_MAX_CYCLES, find_cycles
from flowstudio.workflow.node_kinds import AGENT_MODELS, HTTP_METHODS, NodeKind
from flowstudio.workflow.workflow_model import EdgeRecord, NodeRecord, Workflow

logger = getLogger(__name__)

_WORKFLOW_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$", re.IGNORECASE)
_NODE_ID_RE = re.compile(r"^[a-z][a-z0-9_]*$", re.IGNORECASE)


class ValidationIssue(BaseModel):
    severity: Literal["error", "warning"]
    code: str
    message: str
    path: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    issues: List[ValidationIssue] = []

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    def codes(self) -> List[str]:
        return [i.code for i in self.issues]


class _Issues:
    def __init__(self) -> None:
        self.items: List[ValidationIssue] = []

    def error(self, code: str, message: str, path: Optional[str] = None) -> None:
        self.items.append(ValidationIssue(severity="error", code=code, message=message, path=path))

    def warning(self, code: str, message: str, path: Optional[str] = None) -> None:
        self.items.append(ValidationIssue(severity="warning", code=code, message=message, path=path))


def _blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


# ============================================================================
# Per-kind checks
# ============================================================================


def _check_trigger(node: NodeRecord, issues: _Issues, path: str) -> None:
    for field in node.config.custom_fields:
        if not field.get("id"):
            issues.error("MISSING_FIELD_ID", "Custom field must have an id", f"{path}.customFields")
        if not field.get("name"):
            issues.error("MISSING_FIELD_NAME", "Custom field must have a name", f"{path}.customFields")


def _check_agent(node: NodeRecord, issues: _Issues, path: str) -> None:
    cfg = node.config
    if _blank(cfg.role):
        issues.error("MISSING_ROLE", "Agent node must have a role", f"{path}.role")
    if _blank(cfg.prompt):
        issues.error("MISSING_PROMPT", "Agent node must have a prompt", f"{path}.prompt")
    if cfg.model not in AGENT_MODELS:
        issues.error(
            "INVALID_MODEL",
            f"Invalid model: {cfg.model}. Must be one of {', '.join(AGENT_MODELS)}",
            f"{path}.model",
        )
    if cfg.max_turns is not None and cfg.max_turns < 1:
        issues.error("INVALID_MAX_TURNS", "maxTurns must be at least 1", f"{path}.maxTurns")
    if cfg.temperature is not None and not 0 <= cfg.temperature <= 1:
        issues.error("INVALID_TEMPERATURE", "temperature must be between 0 and 1", f"{path}.temperature")


def _check_command(node: NodeRecord, issues: _Issues, path: str) -> None:
    if _blank(node.config.command):
        issues.error("MISSING_COMMAND", "Command node must have a command", f"{path}.command")
    if node.config.timeout is not None and node.config.timeout < 0:
        issues.error("INVALID_TIMEOUT", "timeout must be non-negative", f"{path}.timeout")


def _check_slash_command(node: NodeRecord, issues: _Issues, path: str) -> None:
    if _blank(node.config.command):
        issues.error("MISSING_COMMAND", "Slash command node must have a command", f"{path}.command")


def _check_eval(node: NodeRecord, issues: _Issues, path: str) -> None:
    if _blank(node.config.code):
        issues.error("MISSING_CODE", "Eval node must have code", f"{path}.code")


def _check_http(node: NodeRecord, issues: _Issues, path: str) -> None:
    cfg = node.config
    if _blank(cfg.url):
        issues.error("MISSING_URL", "HTTP node must have a url", f"{path}.url")
    if not cfg.method:
        issues.error("MISSING_METHOD", "HTTP node must have a method", f"{path}.method")
    elif cfg.method not in HTTP_METHODS:
        issues.error("INVALID_METHOD", f"Invalid HTTP method: {cfg.method}", f"{path}.method")
    if cfg.timeout is not None and cfg.timeout < 0:
        issues.error("INVALID_TIMEOUT", "timeout must be non-negative", f"{path}.timeout")


def _check_llm(node: NodeRecord, issues: _Issues, path: str) -> None:
    if _blank(node.config.prompt):
        issues.error("MISSING_PROMPT", "LLM node must have a prompt", f"{path}.prompt")
    if _blank(node.config.model):
        issues.error("MISSING_MODEL", "LLM node must have a model", f"{path}.model")


def _check_dynamic_agent(node: NodeRecord, issues: _Issues, path: str) -> None:
    if _blank(node.config.model_expression):
        issues.error(
            "MISSING_MODEL_EXPRESSION",
            "Dynamic agent node must have a modelExpression",
            f"{path}.modelExpression",
        )
    if _blank(node.config.prompt_expression):
        issues.error(
            "MISSING_PROMPT_EXPRESSION",
            "Dynamic agent node must have a promptExpression",
            f"{path}.promptExpression",
        )


def _check_dynamic_command(node: NodeRecord, issues: _Issues, path: str) -> None:
    if _blank(node.config.command_expression):
        issues.error(
            "MISSING_COMMAND_EXPRESSION",
            "Dynamic command node must have a commandExpression",
            f"{path}.commandExpression",
        )


def _check_project_update(node: NodeRecord, issues: _Issues, path: str) -> None:
    cfg = node.config
    if _blank(cfg.token):
        issues.error("MISSING_TOKEN", "Project update node must have a token", f"{path}.token")
    if _blank(cfg.project_owner):
        issues.error("MISSING_PROJECT_OWNER", "Project update node must have a projectOwner", f"{path}.projectOwner")
    if cfg.project_number < 1:
        issues.error(
            "INVALID_PROJECT_NUMBER",
            "Project update node must have a valid projectNumber",
            f"{path}.projectNumber",
        )


def _check_checkout(node: NodeRecord, issues: _Issues, path: str) -> None:
    cfg = node.config
    if not cfg.use_issue_context:
        if _blank(cfg.owner):
            issues.error(
                "MISSING_OWNER",
                "Repository checkout node must have owner when not using issue context",
                f"{path}.owner",
            )
        if _blank(cfg.repo):
            issues.error(
                "MISSING_REPO",
                "Repository checkout node must have repo when not using issue context",
                f"{path}.repo",
            )
    if _blank(cfg.ref):
        issues.error("MISSING_REF", "Repository checkout node must have a ref", f"{path}.ref")


def _check_end(node: NodeRecord, issues: _Issues, path: str) -> None:
    pass


_KIND_CHECKS: Dict[NodeKind, Callable[[NodeRecord, _Issues, str], None]] = {
    NodeKind.TRIGGER: _check_trigger,
    NodeKind.AGENT: _check_agent,
    NodeKind.COMMAND: _check_command,
    NodeKind.SLASH_COMMAND: _check_slash_command,
    NodeKind.EVAL: _check_eval,
    NodeKind.HTTP: _check_http,
    NodeKind.LLM: _check_llm,
    NodeKind.DYNAMIC_AGENT: _check_dynamic_agent,
    NodeKind.DYNAMIC_COMMAND: _check_dynamic_command,
    NodeKind.EXTERNAL_PROJECT_UPDATE: _check_project_update,
    NodeKind.REPOSITORY_CHECKOUT: _check_checkout,
    NodeKind.END: _check_end,
}

_unchecked = [k.value for k in NodeKind if k not in _KIND_CHECKS]
if _unchecked:
    raise RuntimeError(f"Node kinds without validation rules: {_unchecked}")


# ============================================================================
# Phases
# ============================================================================


def _check_edges(workflow: Workflow, issues: _Issues) -> List[EdgeRecord]:
    nodes = {n.id: n for n in workflow.nodes}
    valid: List[EdgeRecord] = []
    for e in workflow.edges:
        ok = True
        for end, node_id in (("source", e.source), ("target", e.target)):
            if node_id not in nodes:
                issues.error(
                    "DANGLING_EDGE",
                    f"Edge '{e.id}' {end} references unknown node '{node_id}'",
                    f"edges.{e.id}.{end}",
                )
                ok = False
        if ok and e.source == e.target and not nodes[e.source].allows_self_loop:
            issues.error(
                "INVALID_SELF_LOOP",
                f"Node '{e.source}' ({nodes[e.source].kind.value}) cannot connect to itself",
                f"edges.{e.id}",
            )
            ok = False
        if ok:
            valid.append(e)
    return valid


def _check_start(workflow: Workflow, edges: List[EdgeRecord], issues: _Issues) -> None:
    if not workflow.nodes:
        issues.error("NO_NODES", "Workflow must have at least one node", "nodes")
    if not workflow.start:
        if workflow.nodes:
            issues.error("MISSING_START", "Workflow must specify a start node", "start")
        return
    if workflow.get_node(workflow.start) is None:
        issues.error("INVALID_START", f"Start node '{workflow.start}' does not exist", "start")
        return

    entered: Set[str] = {e.target for e in edges if e.source != e.target}
    succ: Dict[str, List[str]] = {}
    for e in edges:
        succ.setdefault(e.source, []).append(e.target)

    reachable = {workflow.start}
    queue = deque([workflow.start])
    while queue:
        for target in succ.get(queue.popleft(), []):
            if target not in reachable:
                reachable.add(target)
                queue.append(target)

    for node in workflow.nodes:
        if node.id == workflow.start:
            continue
        if node.id not in entered:
            if not node.orphan_tolerant:
                issues.error(
                    "ORPHAN_NODE",
                    f"Node '{node.id}' has no incoming edge and is not the start node",
                    f"nodes.{node.id}",
                )
        elif node.id not in reachable:
            issues.warning(
                "UNREACHABLE_NODE",
                f"Node '{node.id}' is not reachable from the start node",
                f"nodes.{node.id}",
            )


def _check_cycles(edges: List[EdgeRecord], max_cycles: int, issues: _Issues) -> None:
    if max_cycles < 0:
        issues.warning(
            "INVALID_CYCLE_LIMIT",
            f"Cycle reporting cap must be non-negative, got {max_cycles}; using {DEFAULT_MAX_CYCLES}",
        )
        max_cycles = DEFAULT_MAX_CYCLES
    report = find_cycles(((e.source, e.target) for e in edges), max_cycles)
    for cycle in report.cycles:
        issues.warning(
            "CYCLE_DETECTED",
            f"Cycle detected: {' -> '.join(cycle)}",
            f"nodes.{cycle[0]}",
        )
    if report.truncated:
        issues.warning(
            "CYCLE_LIMIT_REACHED",
            f"More than {max_cycles} cycles found; only the first {max_cycles} are reported",
        )


def _check_metadata(workflow: Workflow, issues: _Issues) -> None:
    if _blank(workflow.id):
        issues.error("MISSING_ID", "Workflow must have an id", "id")
    elif not _WORKFLOW_ID_RE.match(workflow.id):
        issues.warning(
            "INVALID_ID",
            "Workflow id must start with a letter or digit and contain only "
            "letters, digits, hyphens and underscores",
            "id",
        )
    for node in workflow.nodes:
        if not _NODE_ID_RE.match(node.id):
            issues.warning(
                "INVALID_NODE_NAME",
                f"Node id '{node.id}' should start with a letter and contain only letters, digits and underscores",
                f"nodes.{node.id}",
            )


# ============================================================================
# Public API
# ============================================================================


def validate_workflow(workflow: Workflow, max_cycles: Optional[int] = None) -> ValidationResult:
    """Run every check and collect the issues in order."""
    if max_cycles is None:
        max_cycles = get_studio_config().max_reported_cycles
    issues = _Issues()

    edges = _check_edges(workflow, issues)
    for node in workflow.nodes:
        _KIND_CHECKS[node.kind](node, issues, f"nodes.{node.id}")
    _check_start(workflow, edges, issues)
    _check_cycles(edges, max_cycles, issues)
    _check_metadata(workflow, issues)

    valid = not any(i.severity == "error" for i in issues.items)
    logger.debug(
        f"Validated workflow '{workflow.id}': valid={valid}, {len(issues.items)} issues"
    )
    return ValidationResult(valid=valid, issues=issues.items)
