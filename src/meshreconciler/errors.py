"""
Error Taxonomy
==============
Every failure raised by the import and reconcile stages derives from
ReconcileError and names the stage and the offending identifier (block id,
set id, node or element id) instead of a raw collaborator error.

Fatal by definition:
    FormatError, BadConnectivity, DatabaseError, AmbiguousMatch, NoMatch.

UnresolvedCorrespondence is only raised when an unmatched node blocks a
required dead-element resolution; plain misses are counted, not raised.
"""
from __future__ import annotations

from typing import Optional, Union

Identifier = Union[int, str, None]


class ReconcileError(Exception):
    """Base class for all meshreconciler errors."""

    def __init__(self, message: str, stage: str = "", identifier: Identifier = None) -> None:
        self.stage = stage
        self.identifier = identifier
        self.detail = message
        super().__init__(self._format(message, stage, identifier))

    @staticmethod
    def _format(message: str, stage: str, identifier: Identifier) -> str:
        prefix = f"[{stage}] " if stage else ""
        suffix = f" (id={identifier})" if identifier is not None else ""
        return f"{prefix}{message}{suffix}"


class FormatError(ReconcileError):
    """Required variable/attribute missing, or wrong declared type or arity."""


class BadConnectivity(ReconcileError):
    """A file-local node index falls outside the valid node-handle range."""


class DatabaseError(ReconcileError):
    """A mesh database operation failed."""


class UnresolvedCorrespondence(ReconcileError):
    """A source node has no canonical match where one is required."""

    def __init__(
        self,
        message: str,
        stage: str = "",
        identifier: Identifier = None,
        missing_nodes: Optional[list[int]] = None,
    ) -> None:
        self.missing_nodes = list(missing_nodes or [])
        super().__init__(message, stage, identifier)


class AmbiguousMatch(ReconcileError):
    """More than one canonical element matches a dead source element."""

    def __init__(
        self,
        message: str,
        stage: str = "",
        identifier: Identifier = None,
        candidates: Optional[list[int]] = None,
    ) -> None:
        self.candidates = list(candidates or [])
        super().__init__(message, stage, identifier)


class NoMatch(ReconcileError):
    """No canonical element matches a dead source element."""
