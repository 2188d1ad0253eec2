"""SQLAlchemy table definitions for the local activity and tracking database."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Store timestamps as naive UTC and hand back timezone-aware values."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; pass an aware UTC value.")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for store tables."""


class ActivityRow(Base):
    """Append-only audit record of an executed (or failed) action."""

    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    folder_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    file_path: Mapped[str] = mapped_column(Text)
    file_name: Mapped[str] = mapped_column(Text)
    action: Mapped[str] = mapped_column(String(32))
    rule_id: Mapped[Optional[str]] = mapped_column(String(64))
    rule_name: Mapped[Optional[str]] = mapped_column(Text)
    result: Mapped[str] = mapped_column(String(16))
    detail: Mapped[Optional[str]] = mapped_column(Text)
    destination: Mapped[Optional[str]] = mapped_column(Text)


class FileIndexRow(Base):
    """Tracked file with its pending-action state."""

    __tablename__ = "file_index"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    path: Mapped[str] = mapped_column(Text, unique=True)
    folder_id: Mapped[str] = mapped_column(String(64), index=True)
    size: Mapped[int] = mapped_column(Integer, default=0)
    first_seen: Mapped[datetime] = mapped_column(UTCDateTime)
    last_modified: Mapped[datetime] = mapped_column(UTCDateTime)
    pending_action: Mapped[Optional[str]] = mapped_column(String(16))
    due_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, index=True)
    rule_id: Mapped[Optional[str]] = mapped_column(String(64))
    rule_name: Mapped[Optional[str]] = mapped_column(Text)
    exempt: Mapped[bool] = mapped_column(Boolean, default=False)


class UndoRow(Base):
    """Safe-delete record pointing at a staged file."""

    __tablename__ = "undo_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    original_path: Mapped[str] = mapped_column(Text)
    staged_path: Mapped[str] = mapped_column(Text)
    action: Mapped[str] = mapped_column(String(32))
    folder_id: Mapped[Optional[str]] = mapped_column(String(64))
    rule_name: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    restored: Mapped[bool] = mapped_column(Boolean, default=False)
    restored_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    purged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)


class RuleMetadataRow(Base):
    """Creation and trigger bookkeeping for a rule."""

    __tablename__ = "rule_metadata"

    rule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    folder_id: Mapped[str] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    trigger_count: Mapped[int] = mapped_column(Integer, default=0)


class LeaseRow(Base):
    """Named claim on a job that must not run in two processes at once."""

    __tablename__ = "task_lease"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str] = mapped_column(String(64))
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime)


TABLE_NAMES = ("activity_log", "file_index", "undo_history", "rule_metadata")

__all__ = [
    "Base",
    "UTCDateTime",
    "ActivityRow",
    "FileIndexRow",
    "UndoRow",
    "RuleMetadataRow",
    "LeaseRow",
    "TABLE_NAMES",
]
