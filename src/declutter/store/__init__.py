"""Local persistent store: activity log, file index, undo history, rule metadata."""

from .database import DEFAULT_DB_NAME, PRUNE_BATCH_SIZE, Store, StoreTransaction
from .errors import StoreError
from .models import (
    ActivityEntry,
    FileIndexEntry,
    PruneReport,
    RuleExecutionStats,
    RuleMetadata,
    StorageStats,
    UndoEntry,
)

__all__ = [
    "Store",
    "StoreTransaction",
    "StoreError",
    "DEFAULT_DB_NAME",
    "PRUNE_BATCH_SIZE",
    "ActivityEntry",
    "FileIndexEntry",
    "PruneReport",
    "RuleExecutionStats",
    "RuleMetadata",
    "StorageStats",
    "UndoEntry",
]
