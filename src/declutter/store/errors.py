"""Persistent store errors."""

from declutter.errors import DeclutterError


class StoreError(DeclutterError):
    """Raised when a store transaction fails; the transaction has been rolled back."""
