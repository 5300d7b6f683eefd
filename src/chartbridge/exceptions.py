"""Exception hierarchy for chartbridge.

Every error raised by the engine derives from ChartbridgeError and carries:
- code:    stable machine-readable identifier (NOT_FOUND, VALIDATION_ERROR, ...)
- message: human-readable description
- detail:  optional extra context (dict / list / None)

Callers (CLI, MCP tools) only need to catch ChartbridgeError.
"""

from __future__ import annotations

from typing import Any


class ChartbridgeError(Exception):
    """Base class for all engine errors."""

    code = "CHARTBRIDGE_ERROR"

    def __init__(self, message: str, code: str | None = None, detail: Any = None):
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(message)


class NotFoundError(ChartbridgeError):
    """A patient or encounter does not exist in the system of record."""

    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", identifier: str | None = None):
        self.resource = resource
        self.identifier = identifier
        if identifier:
            message = f"{resource} with identifier '{identifier}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)


class ValidationError(ChartbridgeError):
    """Input rejected before any work was attempted."""

    code = "VALIDATION_ERROR"
