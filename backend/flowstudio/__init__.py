"""
FlowStudio — workflow graph compiler, layout engine and execution tracker.

Packages:
    workflow/   — graph model, node kinds, cycles, layout, validation, DSL
    execution/  — execution events, reducer, service client, tracker
    config/     — StudioConfig and environment defaults
"""

__version__ = "0.1.0"
