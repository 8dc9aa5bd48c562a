"""Workflow DSL — parse module source into a Workflow and generate it back."""

from flowstudio.workflow.dsl.dsl_parser import ParsedWorkflow, parse_workflow
from flowstudio.workflow.dsl.dsl_generator import GeneratedDSL, generate_workflow

__all__ = ["ParsedWorkflow", "parse_workflow", "GeneratedDSL", "generate_workflow"]
