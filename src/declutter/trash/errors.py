"""Undo-specific errors; each is terminal for the call that raised it."""

from declutter.errors import DeclutterError


class UndoError(DeclutterError):
    """Base exception for undo failures."""


class NotFoundError(UndoError):
    """Raised when no undo entry has the requested id."""


class AlreadyRestoredError(UndoError):
    """Raised when the entry was already restored."""


class ExpiredError(UndoError):
    """Raised when the undo window has passed or the staged file was purged."""
