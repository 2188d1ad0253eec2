"""Safe-delete staging and undo."""

from .errors import AlreadyRestoredError, ExpiredError, NotFoundError, UndoError
from .service import DEFAULT_RETENTION_DAYS, STAGING_DIRNAME, TrashService

__all__ = [
    "TrashService",
    "STAGING_DIRNAME",
    "DEFAULT_RETENTION_DAYS",
    "UndoError",
    "NotFoundError",
    "AlreadyRestoredError",
    "ExpiredError",
]
