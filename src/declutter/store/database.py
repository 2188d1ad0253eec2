"""Transactional access layer over the SQLite store.

Every unit of work runs inside ``Store.transaction()``, which opens a
``BEGIN IMMEDIATE`` transaction so writers are serialized across the monitor
worker, the deletion scheduler, and command handlers. Callers receive
immutable snapshots, never live rows.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional
from uuid import uuid4

from sqlalchemy import and_, case, create_engine, delete, event, func, or_, select, update
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import StoreError
from .models import (
    ActivityEntry,
    ActivityResult,
    FileIndexEntry,
    PruneReport,
    RuleExecutionStats,
    RuleMetadata,
    StorageStats,
    UndoEntry,
)
from .schema import (
    TABLE_NAMES,
    ActivityRow,
    Base,
    FileIndexRow,
    LeaseRow,
    RuleMetadataRow,
    UndoRow,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_DB_NAME = "declutter.db"
PRUNE_BATCH_SIZE = 500
EXECUTED_ACTIONS = ("move", "delete", "schedule_delete")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _on_connect(dbapi_connection, connection_record) -> None:
    # Let the begin hook own transaction boundaries instead of pysqlite.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def _on_begin(connection) -> None:
    connection.exec_driver_sql("BEGIN IMMEDIATE")


class StoreTransaction:
    """Operations bound to one open transaction."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ---- Activity log ----

    def append_activity(
        self,
        action: str,
        file_path: str | Path,
        *,
        result: ActivityResult = "success",
        folder_id: str | None = None,
        rule_id: str | None = None,
        rule_name: str | None = None,
        detail: str | None = None,
        destination: str | Path | None = None,
        timestamp: datetime | None = None,
    ) -> ActivityEntry:
        """Append an audit record and return its snapshot."""
        row = ActivityRow(
            timestamp=timestamp or _utcnow(),
            folder_id=folder_id,
            file_path=str(file_path),
            file_name=Path(file_path).name,
            action=action,
            rule_id=rule_id,
            rule_name=rule_name,
            result=result,
            detail=detail,
            destination=str(destination) if destination is not None else None,
        )
        self._session.add(row)
        self._session.flush()
        return ActivityEntry.model_validate(row)

    def get_activity_log(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        folder_id: str | None = None,
    ) -> list[ActivityEntry]:
        """Return a newest-first page of activity entries."""
        stmt = select(ActivityRow).order_by(ActivityRow.timestamp.desc(), ActivityRow.id.desc())
        if folder_id is not None:
            stmt = stmt.where(ActivityRow.folder_id == folder_id)
        stmt = stmt.limit(limit).offset(offset)
        return [ActivityEntry.model_validate(row) for row in self._session.scalars(stmt)]

    def count_activity(self, folder_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(ActivityRow)
        if folder_id is not None:
            stmt = stmt.where(ActivityRow.folder_id == folder_id)
        return int(self._session.scalar(stmt) or 0)

    def prune_activity(self, before: datetime) -> int:
        """Delete activity entries older than ``before``."""
        outcome = self._session.execute(delete(ActivityRow).where(ActivityRow.timestamp < before))
        return int(outcome.rowcount or 0)

    # ---- File index ----

    def _file_row(self, path: str | Path) -> Optional[FileIndexRow]:
        return self._session.scalars(
            select(FileIndexRow).where(FileIndexRow.path == str(path))
        ).first()

    def get_file(self, path: str | Path) -> Optional[FileIndexEntry]:
        row = self._file_row(path)
        return FileIndexEntry.model_validate(row) if row is not None else None

    def upsert_file(
        self,
        path: str | Path,
        folder_id: str,
        *,
        size: int,
        last_modified: datetime,
        now: datetime | None = None,
    ) -> tuple[FileIndexEntry, bool]:
        """Record an observation of ``path``.

        ``first_seen`` is set only when the entry is created, so the deletion due
        date of a tracked file never moves.

        Returns:
            tuple[FileIndexEntry, bool]: Snapshot and whether the entry was created.
        """
        row = self._file_row(path)
        created = row is None
        if row is None:
            row = FileIndexRow(
                path=str(path),
                folder_id=folder_id,
                size=size,
                first_seen=now or _utcnow(),
                last_modified=last_modified,
                exempt=False,
            )
            self._session.add(row)
        else:
            row.folder_id = folder_id
            row.size = size
            row.last_modified = last_modified
        self._session.flush()
        return FileIndexEntry.model_validate(row), created

    def schedule_deletion(
        self,
        path: str | Path,
        *,
        due_at: datetime,
        rule_id: str | None,
        rule_name: str | None,
    ) -> bool:
        """Mark a tracked file for deletion at ``due_at``.

        Returns:
            bool: False when a deletion was already pending for the file.

        Raises:
            StoreError: If the file is not tracked.
        """
        row = self._file_row(path)
        if row is None:
            raise StoreError(f"Cannot schedule deletion for untracked file {path}.")
        if row.pending_action == "delete":
            return False
        row.pending_action = "delete"
        row.due_at = due_at
        row.rule_id = rule_id
        row.rule_name = rule_name
        self._session.flush()
        return True

    def mark_exempt(
        self,
        path: str | Path,
        folder_id: str,
        *,
        size: int,
        last_modified: datetime,
        now: datetime | None = None,
    ) -> FileIndexEntry:
        """Track ``path`` with no pending action and exclude it from rule matching."""
        self.upsert_file(path, folder_id, size=size, last_modified=last_modified, now=now)
        row = self._file_row(path)
        if row is None:
            raise StoreError(f"Index entry for {path} vanished while marking it exempt.")
        row.pending_action = None
        row.due_at = None
        row.exempt = True
        self._session.flush()
        return FileIndexEntry.model_validate(row)

    def remove_file(self, path: str | Path) -> bool:
        outcome = self._session.execute(delete(FileIndexRow).where(FileIndexRow.path == str(path)))
        return bool(outcome.rowcount)

    def remove_files_for_folder(self, folder_id: str) -> int:
        outcome = self._session.execute(
            delete(FileIndexRow).where(FileIndexRow.folder_id == folder_id)
        )
        return int(outcome.rowcount or 0)

    def get_file_entries(self, folder_id: str | None = None) -> list[FileIndexEntry]:
        stmt = select(FileIndexRow).order_by(FileIndexRow.id)
        if folder_id is not None:
            stmt = stmt.where(FileIndexRow.folder_id == folder_id)
        return [FileIndexEntry.model_validate(row) for row in self._session.scalars(stmt)]

    def get_pending_deletions(self, folder_id: str | None = None) -> list[FileIndexEntry]:
        """Return files with a pending deletion, soonest due first."""
        stmt = (
            select(FileIndexRow)
            .where(FileIndexRow.pending_action == "delete")
            .order_by(FileIndexRow.due_at, FileIndexRow.id)
        )
        if folder_id is not None:
            stmt = stmt.where(FileIndexRow.folder_id == folder_id)
        return [FileIndexEntry.model_validate(row) for row in self._session.scalars(stmt)]

    def get_due_deletions(self, now: datetime) -> list[FileIndexEntry]:
        """Return pending deletions whose due time is at or before ``now``."""
        stmt = (
            select(FileIndexRow)
            .where(
                FileIndexRow.pending_action == "delete",
                FileIndexRow.due_at <= now,
                FileIndexRow.exempt.is_(False),
            )
            .order_by(FileIndexRow.due_at, FileIndexRow.id)
        )
        return [FileIndexEntry.model_validate(row) for row in self._session.scalars(stmt)]

    def get_deletion(self, entry_id: int) -> Optional[FileIndexEntry]:
        row = self._session.get(FileIndexRow, entry_id)
        if row is None or row.pending_action != "delete":
            return None
        return FileIndexEntry.model_validate(row)

    def cancel_scheduled_deletion(self, entry_id: int) -> Optional[FileIndexEntry]:
        """Clear the pending deletion of entry ``entry_id`` without touching the file.

        The entry is marked exempt so the same rule does not reschedule it.

        Returns:
            Optional[FileIndexEntry]: Updated snapshot, or None when nothing was pending.
        """
        row = self._session.get(FileIndexRow, entry_id)
        if row is None or row.pending_action != "delete":
            return None
        row.pending_action = None
        row.due_at = None
        row.exempt = True
        self._session.flush()
        return FileIndexEntry.model_validate(row)

    # ---- Undo history ----

    def insert_undo(
        self,
        *,
        original_path: str | Path,
        staged_path: str | Path,
        action: str,
        created_at: datetime,
        expires_at: datetime,
        folder_id: str | None = None,
        rule_name: str | None = None,
        undo_id: str | None = None,
    ) -> UndoEntry:
        row = UndoRow(
            id=undo_id or uuid4().hex,
            original_path=str(original_path),
            staged_path=str(staged_path),
            action=action,
            folder_id=folder_id,
            rule_name=rule_name,
            created_at=created_at,
            expires_at=expires_at,
            restored=False,
        )
        self._session.add(row)
        self._session.flush()
        return UndoEntry.model_validate(row)

    def get_undo(self, undo_id: str) -> Optional[UndoEntry]:
        row = self._session.get(UndoRow, undo_id)
        return UndoEntry.model_validate(row) if row is not None else None

    def list_undo(self, *, include_inactive: bool = False) -> list[UndoEntry]:
        """Return undo entries newest first; restored and purged ones only on request."""
        stmt = select(UndoRow).order_by(UndoRow.created_at.desc())
        if not include_inactive:
            stmt = stmt.where(UndoRow.restored.is_(False), UndoRow.purged_at.is_(None))
        return [UndoEntry.model_validate(row) for row in self._session.scalars(stmt)]

    def claim_restore(self, undo_id: str, now: datetime) -> bool:
        """Mark a live, unexpired entry restored before its file is moved back.

        The update is conditional, so of two processes racing on the same
        entry (or a restore racing a purge) exactly one wins.

        Returns:
            bool: False when the entry is missing, restored, purged, or expired.
        """
        outcome = self._session.execute(
            update(UndoRow)
            .where(
                UndoRow.id == undo_id,
                UndoRow.restored.is_(False),
                UndoRow.purged_at.is_(None),
                UndoRow.expires_at >= now,
            )
            .values(restored=True, restored_at=now)
            .execution_options(synchronize_session=False)
        )
        return bool(outcome.rowcount)

    def release_restore(self, undo_id: str) -> None:
        """Undo ``claim_restore`` after the file could not be moved back."""
        self._session.execute(
            update(UndoRow)
            .where(UndoRow.id == undo_id, UndoRow.restored.is_(True))
            .values(restored=False, restored_at=None)
            .execution_options(synchronize_session=False)
        )

    def claim_purge(self, undo_id: str, now: datetime) -> bool:
        """Archive a live entry before its staged file is deleted.

        Returns:
            bool: False when the entry was restored or purged in the meantime.
        """
        outcome = self._session.execute(
            update(UndoRow)
            .where(
                UndoRow.id == undo_id,
                UndoRow.restored.is_(False),
                UndoRow.purged_at.is_(None),
            )
            .values(purged_at=now)
            .execution_options(synchronize_session=False)
        )
        return bool(outcome.rowcount)

    def release_purge(self, undo_id: str) -> None:
        self._session.execute(
            update(UndoRow)
            .where(UndoRow.id == undo_id, UndoRow.purged_at.is_not(None))
            .values(purged_at=None)
            .execution_options(synchronize_session=False)
        )

    def expired_undo(self, now: datetime) -> list[UndoEntry]:
        """Return live (not restored, not purged) entries whose expiry has passed."""
        stmt = (
            select(UndoRow)
            .where(
                UndoRow.restored.is_(False),
                UndoRow.purged_at.is_(None),
                UndoRow.expires_at < now,
            )
            .order_by(UndoRow.expires_at)
        )
        return [UndoEntry.model_validate(row) for row in self._session.scalars(stmt)]

    def prune_archived_undo(self, before: datetime) -> int:
        """Delete restored or purged undo records that were closed before ``before``."""
        outcome = self._session.execute(
            delete(UndoRow).where(
                or_(
                    and_(UndoRow.purged_at.is_not(None), UndoRow.purged_at < before),
                    and_(UndoRow.restored.is_(True), UndoRow.restored_at < before),
                )
            )
        )
        return int(outcome.rowcount or 0)

    # ---- Rule metadata ----

    def ensure_rule_metadata(self, rule_id: str, folder_id: str, now: datetime) -> RuleMetadata:
        row = self._session.get(RuleMetadataRow, rule_id)
        if row is None:
            row = RuleMetadataRow(
                rule_id=rule_id, folder_id=folder_id, created_at=now, trigger_count=0
            )
            self._session.add(row)
        else:
            row.folder_id = folder_id
        self._session.flush()
        return RuleMetadata.model_validate(row)

    def touch_rule(self, rule_id: str, folder_id: str, now: datetime) -> None:
        """Record that ``rule_id`` just executed its action."""
        row = self._session.get(RuleMetadataRow, rule_id)
        if row is None:
            row = RuleMetadataRow(
                rule_id=rule_id, folder_id=folder_id, created_at=now, trigger_count=0
            )
            self._session.add(row)
        row.last_triggered_at = now
        row.trigger_count = (row.trigger_count or 0) + 1
        self._session.flush()

    def get_rule_metadata(self, rule_id: str) -> Optional[RuleMetadata]:
        row = self._session.get(RuleMetadataRow, rule_id)
        return RuleMetadata.model_validate(row) if row is not None else None

    def delete_rule_metadata(self, rule_id: str) -> bool:
        outcome = self._session.execute(
            delete(RuleMetadataRow).where(RuleMetadataRow.rule_id == rule_id)
        )
        return bool(outcome.rowcount)

    def get_rule_execution_stats(
        self, since: datetime, folder_id: str | None = None
    ) -> list[RuleExecutionStats]:
        """Summarise successful rule executions recorded in the activity log."""
        recent = func.sum(case((ActivityRow.timestamp >= since, 1), else_=0))
        stmt = (
            select(ActivityRow.rule_id, func.max(ActivityRow.timestamp), recent)
            .where(
                ActivityRow.rule_id.is_not(None),
                ActivityRow.result == "success",
                ActivityRow.action.in_(EXECUTED_ACTIONS),
            )
            .group_by(ActivityRow.rule_id)
        )
        if folder_id is not None:
            stmt = stmt.where(ActivityRow.folder_id == folder_id)
        stats: list[RuleExecutionStats] = []
        for rule_id, last_run, runs_since in self._session.execute(stmt):
            stats.append(
                RuleExecutionStats(rule_id=rule_id, last_run=last_run, runs_since=int(runs_since or 0))
            )
        return stats

    # ---- Leases ----

    def acquire_lease(self, name: str, holder: str, now: datetime, ttl: timedelta) -> bool:
        """Claim job ``name`` for ``holder`` until ``now + ttl``.

        A lease held by another holder is honored until it expires, so a
        process that died mid-job blocks the job for at most ``ttl``.

        Returns:
            bool: True when ``holder`` now owns the lease.
        """
        row = self._session.get(LeaseRow, name)
        if row is None:
            row = LeaseRow(name=name, holder=holder, acquired_at=now, expires_at=now + ttl)
            self._session.add(row)
        elif row.holder != holder and row.expires_at > now:
            return False
        else:
            row.holder = holder
            row.acquired_at = now
            row.expires_at = now + ttl
        self._session.flush()
        return True

    def release_lease(self, name: str, holder: str) -> bool:
        outcome = self._session.execute(
            delete(LeaseRow).where(LeaseRow.name == name, LeaseRow.holder == holder)
        )
        return bool(outcome.rowcount)

    # ---- Maintenance ----

    def row_counts(self) -> dict[str, int]:
        tables = (ActivityRow, FileIndexRow, UndoRow, RuleMetadataRow)
        return {
            model.__tablename__: int(
                self._session.scalar(select(func.count()).select_from(model)) or 0
            )
            for model in tables
        }

    def delete_oldest_activity(self, batch_size: int = PRUNE_BATCH_SIZE) -> int:
        oldest = (
            select(ActivityRow.id)
            .order_by(ActivityRow.timestamp, ActivityRow.id)
            .limit(batch_size)
        )
        outcome = self._session.execute(delete(ActivityRow).where(ActivityRow.id.in_(oldest)))
        return int(outcome.rowcount or 0)

    def delete_oldest_archived_undo(self, batch_size: int = PRUNE_BATCH_SIZE) -> int:
        oldest = (
            select(UndoRow.id)
            .where(or_(UndoRow.restored.is_(True), UndoRow.purged_at.is_not(None)))
            .order_by(UndoRow.created_at)
            .limit(batch_size)
        )
        outcome = self._session.execute(delete(UndoRow).where(UndoRow.id.in_(oldest)))
        return int(outcome.rowcount or 0)

    def delete_oldest_active_undo(self, batch_size: int = PRUNE_BATCH_SIZE) -> list[str]:
        """Drop the oldest live undo records and return their staged paths."""
        rows = list(
            self._session.scalars(
                select(UndoRow)
                .where(UndoRow.restored.is_(False), UndoRow.purged_at.is_(None))
                .order_by(UndoRow.created_at)
                .limit(batch_size)
            )
        )
        staged = [row.staged_path for row in rows]
        for row in rows:
            self._session.delete(row)
        self._session.flush()
        return staged


class Store:
    """Handle on the local SQLite database.

    Components share one ``Store`` and never hold rows; each call below runs in
    its own transaction, and ``transaction()`` groups several operations
    atomically.
    """

    def __init__(self, db_path: Path, *, timeout: float = 30.0) -> None:
        """Open (and create if needed) the database at ``db_path``.

        Args:
            db_path: SQLite database file.
            timeout: Seconds to wait for a competing writer before failing.

        Raises:
            StoreError: If the schema cannot be created.
        """
        self._path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._engine: Engine = create_engine(
            URL.create("sqlite", database=str(db_path)),
            connect_args={"check_same_thread": False, "timeout": timeout},
        )
        event.listen(self._engine, "connect", _on_connect)
        event.listen(self._engine, "begin", _on_begin)
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Unable to initialise database at {db_path}: {exc}") from exc
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Run a block of operations atomically.

        Raises:
            StoreError: If the database rejects any statement or the commit;
                all changes from the block are rolled back.
        """
        session = self._sessions()
        try:
            yield StoreTransaction(session)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            LOGGER.error("Store transaction rolled back: %s", exc)
            raise StoreError(f"Database operation failed: {exc}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        self._engine.dispose()

    # ---- Single-operation shortcuts ----

    def append_activity(self, action: str, file_path: str | Path, **fields) -> ActivityEntry:
        with self.transaction() as tx:
            return tx.append_activity(action, file_path, **fields)

    def get_activity_log(
        self, *, limit: int = 50, offset: int = 0, folder_id: str | None = None
    ) -> list[ActivityEntry]:
        with self.transaction() as tx:
            return tx.get_activity_log(limit=limit, offset=offset, folder_id=folder_id)

    def count_activity(self, folder_id: str | None = None) -> int:
        with self.transaction() as tx:
            return tx.count_activity(folder_id)

    def get_file(self, path: str | Path) -> Optional[FileIndexEntry]:
        with self.transaction() as tx:
            return tx.get_file(path)

    def upsert_file(
        self, path: str | Path, folder_id: str, *, size: int, last_modified: datetime
    ) -> tuple[FileIndexEntry, bool]:
        with self.transaction() as tx:
            return tx.upsert_file(path, folder_id, size=size, last_modified=last_modified)

    def remove_file(self, path: str | Path) -> bool:
        with self.transaction() as tx:
            return tx.remove_file(path)

    def remove_files_for_folder(self, folder_id: str) -> int:
        with self.transaction() as tx:
            return tx.remove_files_for_folder(folder_id)

    def get_file_entries(self, folder_id: str | None = None) -> list[FileIndexEntry]:
        with self.transaction() as tx:
            return tx.get_file_entries(folder_id)

    def get_pending_deletions(self, folder_id: str | None = None) -> list[FileIndexEntry]:
        with self.transaction() as tx:
            return tx.get_pending_deletions(folder_id)

    def get_due_deletions(self, now: datetime) -> list[FileIndexEntry]:
        with self.transaction() as tx:
            return tx.get_due_deletions(now)

    def cancel_scheduled_deletion(self, entry_id: int) -> Optional[FileIndexEntry]:
        with self.transaction() as tx:
            return tx.cancel_scheduled_deletion(entry_id)

    def get_undo(self, undo_id: str) -> Optional[UndoEntry]:
        with self.transaction() as tx:
            return tx.get_undo(undo_id)

    def list_undo(self, *, include_inactive: bool = False) -> list[UndoEntry]:
        with self.transaction() as tx:
            return tx.list_undo(include_inactive=include_inactive)

    def expired_undo(self, now: datetime) -> list[UndoEntry]:
        with self.transaction() as tx:
            return tx.expired_undo(now)

    def ensure_rule_metadata(
        self, rule_id: str, folder_id: str, now: datetime | None = None
    ) -> RuleMetadata:
        with self.transaction() as tx:
            return tx.ensure_rule_metadata(rule_id, folder_id, now or _utcnow())

    def get_rule_metadata(self, rule_id: str) -> Optional[RuleMetadata]:
        with self.transaction() as tx:
            return tx.get_rule_metadata(rule_id)

    def delete_rule_metadata(self, rule_id: str) -> bool:
        with self.transaction() as tx:
            return tx.delete_rule_metadata(rule_id)

    def get_rule_execution_stats(
        self, since: datetime, folder_id: str | None = None
    ) -> list[RuleExecutionStats]:
        with self.transaction() as tx:
            return tx.get_rule_execution_stats(since, folder_id)

    def prune_activity(self, before: datetime) -> int:
        with self.transaction() as tx:
            return tx.prune_activity(before)

    def prune_archived_undo(self, before: datetime) -> int:
        with self.transaction() as tx:
            return tx.prune_archived_undo(before)

    def acquire_lease(self, name: str, holder: str, now: datetime, ttl: timedelta) -> bool:
        with self.transaction() as tx:
            return tx.acquire_lease(name, holder, now, ttl)

    def release_lease(self, name: str, holder: str) -> bool:
        with self.transaction() as tx:
            return tx.release_lease(name, holder)

    # ---- Size accounting ----

    def file_bytes(self) -> int:
        """Return the on-disk size of the database including its WAL file."""
        total = 0
        for suffix in ("", "-wal"):
            candidate = Path(f"{self._path}{suffix}")
            if candidate.exists():
                total += candidate.stat().st_size
        return total

    def used_bytes(self) -> int:
        """Return bytes occupied by live pages (excluding the free list)."""
        try:
            with self._engine.connect() as conn:
                page_count = conn.exec_driver_sql("PRAGMA page_count").scalar() or 0
                free_pages = conn.exec_driver_sql("PRAGMA freelist_count").scalar() or 0
                page_size = conn.exec_driver_sql("PRAGMA page_size").scalar() or 0
        except SQLAlchemyError as exc:
            raise StoreError(f"Unable to measure database size: {exc}") from exc
        return int(page_count - free_pages) * int(page_size)

    def enforce_size_limit(
        self,
        max_bytes: int,
        *,
        measure: Callable[[], int] | None = None,
    ) -> PruneReport:
        """Delete the oldest prunable rows until the database fits ``max_bytes``.

        Tables are drained in priority order: activity log first, then restored
        or purged undo records, and live undo records last. Staged files whose
        records were dropped are reported so the caller can delete them.

        Args:
            max_bytes: Size cap; zero or negative disables enforcement.
            measure: Callable returning the current size, defaulting to ``used_bytes``.

        Returns:
            PruneReport: Counts of removed rows per tier.
        """
        report = PruneReport()
        if max_bytes <= 0:
            return report
        size = measure or self.used_bytes
        if size() <= max_bytes:
            return report

        while size() > max_bytes:
            with self.transaction() as tx:
                removed = tx.delete_oldest_activity()
            if not removed:
                break
            report.activity_rows += removed

        while size() > max_bytes:
            with self.transaction() as tx:
                removed = tx.delete_oldest_archived_undo()
            if not removed:
                break
            report.archived_undo_rows += removed

        while size() > max_bytes:
            with self.transaction() as tx:
                staged = tx.delete_oldest_active_undo()
            if not staged:
                break
            report.active_undo_rows += len(staged)
            report.staged_paths.extend(staged)

        if report.total:
            LOGGER.info(
                "Storage cap pruned %d activity, %d archived undo, %d live undo rows",
                report.activity_rows,
                report.archived_undo_rows,
                report.active_undo_rows,
            )
            self.vacuum()
            report.vacuumed = True
        return report

    def vacuum(self) -> None:
        """Checkpoint the WAL and rebuild the database file to reclaim space."""
        raw = self._engine.raw_connection()
        try:
            cursor = raw.cursor()
            cursor.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            cursor.execute("VACUUM")
            cursor.close()
        except sqlite3.Error as exc:
            raise StoreError(f"VACUUM failed: {exc}") from exc
        finally:
            raw.close()

    def get_stats(self, trash_dir: Path | None = None) -> StorageStats:
        """Return database size, trash staging footprint, and per-table row counts."""
        with self.transaction() as tx:
            counts = tx.row_counts()
        trash_bytes = 0
        trash_files = 0
        if trash_dir is not None and trash_dir.exists():
            for dirpath, _dirnames, filenames in os.walk(trash_dir):
                for name in filenames:
                    try:
                        trash_bytes += (Path(dirpath) / name).stat().st_size
                    except OSError:
                        continue
                    trash_files += 1
        return StorageStats(
            database_path=str(self._path),
            database_bytes=self.file_bytes(),
            trash_bytes=trash_bytes,
            trash_files=trash_files,
            row_counts={name: counts.get(name, 0) for name in TABLE_NAMES},
        )


__all__ = ["Store", "StoreTransaction", "DEFAULT_DB_NAME", "PRUNE_BATCH_SIZE"]
