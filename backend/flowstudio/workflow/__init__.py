"""
Workflow Graph — model, analysis and the DSL compiler.

Architecture:
    node_kinds         — closed set of node kinds + per-kind config models
    workflow_model     — immutable Workflow / NodeRecord / EdgeRecord snapshots
    cycle_detector     — back-edge cycle enumeration
    layout_engine      — layered node positioning
    workflow_validator — structural and per-kind checks
    dsl/               — DSL lexer, parser and generator
"""

from flowstudio.workflow.node_kinds import (
    NodeKind,
    KindSpec,
    get_kind_spec,
    list_kind_specs,
    resolve_kind,
)
from flowstudio.workflow.workflow_model import (
    Workflow,
    NodeRecord,
    EdgeRecord,
    Position,
    FlowDirection,
    ConditionalRouting,
    SwitchRouting,
    FunctionRouting,
    build_workflow,
)
from flowstudio.workflow.cycle_detector import CycleReport, find_cycles, find_workflow_cycles
from flowstudio.workflow.layout_engine import (
    LayoutNode,
    LayoutOptions,
    LayoutResult,
    compute_layout,
    compute_layout_async,
    apply_layout,
)
from flowstudio.workflow.workflow_validator import (
    ValidationIssue,
    ValidationResult,
    validate_workflow,
)
from flowstudio.workflow.dsl import (
    GeneratedDSL,
    ParsedWorkflow,
    generate_workflow,
    parse_workflow,
)

__all__ = [
    "NodeKind",
    "KindSpec",
    "get_kind_spec",
    "list_kind_specs",
    "resolve_kind",
    "Workflow",
    "NodeRecord",
    "EdgeRecord",
    "Position",
    "FlowDirection",
    "ConditionalRouting",
    "SwitchRouting",
    "FunctionRouting",
    "build_workflow",
    "CycleReport",
    "find_cycles",
    "find_workflow_cycles",
    "LayoutNode",
    "LayoutOptions",
    "LayoutResult",
    "compute_layout",
    "compute_layout_async",
    "apply_layout",
    "ValidationIssue",
    "ValidationResult",
    "validate_workflow",
    "GeneratedDSL",
    "ParsedWorkflow",
    "generate_workflow",
    "parse_workflow",
]
