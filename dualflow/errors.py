# dualflow/errors.py
"""
Error types raised by the dualflow library.

Hierarchy
─────────

    DualflowError (base)
    ├── GraphError          - malformed flow-graph input
    ├── CatalogueError      - malformed catalogue text (carries a SourceLoc)
    └── InvariantViolation  - internal consistency failure in the engine

The correlation engine itself has no recoverable-error taxonomy.  A source
or sink pair whose members live in different routines simply matches
nothing; it is never reported as an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True, slots=True)
class SourceLoc:
    """A position inside a catalogue file (1-based line/column, 0 = unknown)."""

    file: str = "<string>"
    line: int = 0
    col: int = 0

    def __str__(self) -> str:
        if self.line:
            return f"{self.file}:{self.line}:{self.col}"
        return self.file


class DualflowError(Exception):
    """Base class for every error raised by dualflow."""


class GraphError(DualflowError):
    """Raised when a flow graph is inconsistent or cannot be decoded."""


class CatalogueError(DualflowError):
    """Raised when catalogue text cannot be mapped onto pair declarations."""

    def __init__(self, message: str, loc: Optional[SourceLoc] = None) -> None:
        super().__init__(message)
        self.message = message
        self.loc = loc

    def __str__(self) -> str:
        if self.loc is not None:
            return f"{self.loc}: {self.message}"
        return self.message


class InvariantViolation(DualflowError):
    """Raised when a quadruple would break routine alignment."""


__all__ = [
    "SourceLoc",
    "DualflowError",
    "GraphError",
    "CatalogueError",
    "InvariantViolation",
]
