"""
Error taxonomy shared by the compiler, the graph model and the
execution tracker.

Validation problems are never raised; they are reported as
``ValidationIssue`` values by ``validate_workflow``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StudioError(Exception):
    """Base class for all FlowStudio errors."""


class ParseError(StudioError):
    """Malformed DSL source. No partial graph is returned."""

    def __init__(
        self,
        message: str,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ) -> None:
        self.message = message
        self.line = line
        self.column = column
        if line is not None:
            message = f"{message} (line {line}, column {column})"
        super().__init__(message)


class GraphReferenceError(StudioError):
    """A graph mutation referenced a missing (or duplicate) node or edge."""


class StreamError(StudioError):
    """Transport failure on the execution event channel."""


class CommandError(StudioError):
    """The execution service rejected a start/pause/resume/cancel request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}
