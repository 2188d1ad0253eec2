"""Exception hierarchy shared across Declutter components."""

from __future__ import annotations

import errno
from pathlib import Path

# Windows sharing / lock violations surfaced through OSError.winerror.
_WINDOWS_LOCK_ERRORS = {32, 33}
_POSIX_LOCK_ERRORS = {errno.EBUSY, errno.ETXTBSY}


class DeclutterError(Exception):
    """Base exception for Declutter failures."""


class FileOperationError(DeclutterError):
    """Raised when a filesystem move, copy, or delete cannot be performed.

    Attributes:
        path: Path the failing operation was applied to.
    """

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path

    @classmethod
    def from_os_error(cls, exc: OSError, path: Path, verb: str) -> "FileOperationError":
        """Translate an ``OSError`` into the matching Declutter error type.

        Args:
            exc: Original operating-system error.
            path: Path involved in the failing operation.
            verb: Short description of the attempted operation.

        Returns:
            FileOperationError: ``FileLockedError`` for sharing violations, otherwise
            a plain ``FileOperationError``.
        """
        message = f"Unable to {verb} {path}: {exc.strerror or exc}"
        if is_lock_error(exc):
            return FileLockedError(message, path)
        return cls(message, path)


class FileLockedError(FileOperationError):
    """Raised when a file is held open by another process; safe to retry."""


class ServiceError(DeclutterError):
    """Base exception for command-surface lookups."""


class FolderNotFoundError(ServiceError):
    """Raised when a watched folder id is unknown."""


class RuleNotFoundError(ServiceError):
    """Raised when a rule id is unknown within a folder."""


class DuplicateFolderError(ServiceError):
    """Raised when a folder path is already watched."""


class DeletionNotFoundError(ServiceError):
    """Raised when no deletion is scheduled under the given id."""


def is_lock_error(exc: OSError) -> bool:
    """Return True when ``exc`` reports a transient lock or sharing violation."""
    winerror = getattr(exc, "winerror", None)
    if winerror in _WINDOWS_LOCK_ERRORS:
        return True
    return exc.errno in _POSIX_LOCK_ERRORS


__all__ = [
    "DeclutterError",
    "FileOperationError",
    "FileLockedError",
    "ServiceError",
    "FolderNotFoundError",
    "RuleNotFoundError",
    "DuplicateFolderError",
    "DeletionNotFoundError",
    "is_lock_error",
]
