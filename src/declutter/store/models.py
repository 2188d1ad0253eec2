"""Immutable snapshots of store rows handed to callers."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ActivityResult = Literal["success", "failure"]


class StoreRecord(BaseModel):
    """Shared configuration for store snapshots."""

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ActivityEntry(StoreRecord):
    """Audit record of an action.

    Attributes:
        id: Monotonic sequence number.
        timestamp: When the action completed or failed.
        folder_id: Owning watched folder, if any.
        file_path: Path the action applied to.
        file_name: Bare file name.
        action: ``move``, ``delete``, ``schedule_delete``, ``cancel_delete``,
            ``undo`` or ``purge``.
        rule_id: Originating rule id; None for manual actions.
        rule_name: Originating rule name; None for manual actions.
        result: ``success`` or ``failure``.
        detail: Failure description or extra context.
        destination: Target path for moves and staging.
    """

    id: int
    timestamp: datetime
    folder_id: Optional[str] = None
    file_path: str
    file_name: str
    action: str
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    result: ActivityResult
    detail: Optional[str] = None
    destination: Optional[str] = None


class FileIndexEntry(StoreRecord):
    """Tracked file and its pending action.

    Attributes:
        id: Row identifier; also the scheduled-deletion id.
        path: Absolute file path.
        folder_id: Owning watched folder.
        size: Size in bytes at the last observation.
        first_seen: First observation time; basis of the deletion due date.
        last_modified: File modification time at the last observation.
        pending_action: ``delete`` when a deletion is scheduled.
        due_at: When the scheduled deletion becomes eligible.
        rule_id: Rule that scheduled the pending action.
        rule_name: Name of that rule.
        exempt: The user cancelled or undid an action on this file; rules skip it.
    """

    id: int
    path: str
    folder_id: str
    size: int
    first_seen: datetime
    last_modified: datetime
    pending_action: Optional[str] = None
    due_at: Optional[datetime] = None
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    exempt: bool = False


class UndoEntry(StoreRecord):
    """Safe-delete record.

    Attributes:
        id: Identifier used by the undo command.
        original_path: Where the file lived before staging.
        staged_path: Current location inside trash staging.
        action: Action that staged the file.
        folder_id: Owning watched folder, if any.
        rule_name: Originating rule name, if any.
        created_at: Staging time.
        expires_at: After this moment the entry can no longer be undone.
        restored: True once the file was moved back.
        restored_at: Restore time.
        purged_at: When the staged file was permanently deleted.
    """

    id: str
    original_path: str
    staged_path: str
    action: str
    folder_id: Optional[str] = None
    rule_name: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    restored: bool = False
    restored_at: Optional[datetime] = None
    purged_at: Optional[datetime] = None


class RuleMetadata(StoreRecord):
    """Creation and trigger bookkeeping for a rule."""

    rule_id: str
    folder_id: str
    created_at: datetime
    last_triggered_at: Optional[datetime] = None
    trigger_count: int = 0


class RuleExecutionStats(BaseModel):
    """Per-rule execution summary derived from the activity log.

    Attributes:
        rule_id: Rule identifier.
        rule_name: Most recent name recorded for the rule.
        last_run: Most recent successful execution.
        runs_since: Successful executions since the requested cut-off.
    """

    rule_id: str
    rule_name: Optional[str] = None
    last_run: Optional[datetime] = None
    runs_since: int = 0


class StorageStats(BaseModel):
    """Database and trash staging footprint."""

    database_path: str
    database_bytes: int
    trash_bytes: int
    trash_files: int
    row_counts: Dict[str, int] = Field(default_factory=dict)


class PruneReport(BaseModel):
    """Rows removed by a size-cap enforcement pass."""

    activity_rows: int = 0
    archived_undo_rows: int = 0
    active_undo_rows: int = 0
    staged_paths: list[str] = Field(default_factory=list)
    vacuumed: bool = False

    @property
    def total(self) -> int:
        return self.activity_rows + self.archived_undo_rows + self.active_undo_rows


__all__ = [
    "ActivityResult",
    "ActivityEntry",
    "FileIndexEntry",
    "UndoEntry",
    "RuleMetadata",
    "RuleExecutionStats",
    "StorageStats",
    "PruneReport",
]
