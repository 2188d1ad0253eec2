"""Errors raised by the condition parser."""

from __future__ import annotations

from declutter.errors import DeclutterError


class ConditionSyntaxError(DeclutterError):
    """Raised when condition text cannot be parsed.

    Attributes:
        message: Human-readable description of the problem.
        position: Zero-based character offset where the problem was detected.
    """

    def __init__(self, message: str, position: int) -> None:
        super().__init__(f"{message} (at position {position})")
        self.message = message
        self.position = position
