"""Safe-delete staging, undo, and purge of expired entries."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional
from uuid import uuid4

from declutter.errors import FileOperationError
from declutter.fsops import relocate, snapshot
from declutter.locks import KeyedLock
from declutter.store import Store, StoreError, UndoEntry

from .errors import AlreadyRestoredError, ExpiredError, NotFoundError, UndoError

LOGGER = logging.getLogger(__name__)

STAGING_DIRNAME = "trash_staging"
DEFAULT_RETENTION_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrashService:
    """Move files into a staging area instead of deleting them.

    ``undo`` and ``purge_expired`` claim an entry in the store before touching
    its file, so an entry is either restored or purged, never both, even when
    the two run in different processes.
    """

    def __init__(
        self,
        store: Store,
        staging_dir: Path,
        *,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the service.

        Args:
            store: Shared persistent store.
            staging_dir: Directory receiving staged files.
            retention_days: Days an entry stays restorable.
            clock: Source of aware UTC timestamps.
        """
        self._store = store
        self._staging_dir = staging_dir
        self._retention = timedelta(days=retention_days)
        self._clock = clock
        self._path_locks = KeyedLock()

    @property
    def staging_dir(self) -> Path:
        return self._staging_dir

    def set_retention_days(self, days: int) -> None:
        self._retention = timedelta(days=days)

    # ---- Public API ----

    def safe_delete(
        self,
        path: Path,
        *,
        folder_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        rule_name: Optional[str] = None,
        action: str = "delete",
        now: Optional[datetime] = None,
    ) -> UndoEntry:
        """Stage ``path`` in the trash and record an undo entry.

        The undo record, the activity entry, and removal of the file's index
        entry commit together; if that commit fails the file is moved back.

        Args:
            path: File to delete.
            folder_id: Owning watched folder, if any.
            rule_id: Rule that triggered the deletion, if any.
            rule_name: Name of that rule.
            action: Action name recorded on the undo entry.
            now: Override for the current time.

        Returns:
            UndoEntry: The new undo record.

        Raises:
            FileOperationError: If the file cannot be staged; the index entry is
                left in place for a later retry.
            StoreError: If the records cannot be written.
        """
        now = now or self._clock()
        undo_id = uuid4().hex
        staged = self._staging_dir / f"{undo_id}_{path.name}"
        with self._path_locks.hold(str(path)):
            if not path.exists():
                raise FileOperationError(f"{path} no longer exists.", path)
            try:
                self._staging_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise FileOperationError.from_os_error(exc, self._staging_dir, "create") from exc
            relocate(path, staged)
            try:
                with self._store.transaction() as tx:
                    entry = tx.insert_undo(
                        undo_id=undo_id,
                        original_path=path,
                        staged_path=staged,
                        action=action,
                        created_at=now,
                        expires_at=now + self._retention,
                        folder_id=folder_id,
                        rule_name=rule_name,
                    )
                    tx.append_activity(
                        action,
                        path,
                        folder_id=folder_id,
                        rule_id=rule_id,
                        rule_name=rule_name,
                        destination=staged,
                        timestamp=now,
                    )
                    tx.remove_file(path)
                    if rule_id is not None and folder_id is not None:
                        tx.touch_rule(rule_id, folder_id, now)
            except StoreError:
                self._move_back(staged, path)
                raise
        LOGGER.info("Staged %s as %s (undo id %s)", path, staged, undo_id)
        return entry

    def undo(self, undo_id: str, *, now: Optional[datetime] = None) -> UndoEntry:
        """Restore a staged file to its original location.

        The entry is claimed in the store before the file moves, so a restore
        racing a purge (or a second restore) in any process sees the claim and
        backs off.

        Args:
            undo_id: Identifier returned by ``safe_delete``.
            now: Override for the current time.

        Returns:
            UndoEntry: The entry, now marked restored.

        Raises:
            NotFoundError: If no entry has ``undo_id``.
            AlreadyRestoredError: If the entry was restored before.
            ExpiredError: If the undo window has passed or the file was purged.
            FileOperationError: If the original directory is gone or the original
                path is occupied; nothing is changed in that case.
        """
        now = now or self._clock()
        entry = self._restorable(self._store.get_undo(undo_id), undo_id, now)
        original = Path(entry.original_path)
        staged = Path(entry.staged_path)
        if not original.parent.is_dir():
            raise FileOperationError(
                f"Cannot restore {original}: directory {original.parent} no longer exists.",
                original,
            )
        if original.exists():
            raise FileOperationError(
                f"Cannot restore {original}: a file with that name already exists.", original
            )
        if not staged.exists():
            raise FileOperationError(f"Staged file {staged} is missing.", staged)

        with self._path_locks.hold(str(original)):
            with self._store.transaction() as tx:
                claimed = tx.claim_restore(undo_id, now)
            if not claimed:
                self._restorable(self._store.get_undo(undo_id), undo_id, now)
                raise UndoError(f"Undo entry {undo_id} is being processed elsewhere.")
            try:
                relocate(staged, original)
            except FileOperationError:
                self._release_claim(undo_id, purge=False)
                raise
            current = snapshot(original)
            try:
                with self._store.transaction() as tx:
                    tx.append_activity(
                        "undo",
                        original,
                        folder_id=entry.folder_id,
                        rule_name=entry.rule_name,
                        detail=f"Restored from {staged.name}",
                        timestamp=now,
                    )
                    if entry.folder_id is not None and current is not None:
                        tx.mark_exempt(
                            original,
                            entry.folder_id,
                            size=current.size,
                            last_modified=current.modified_at,
                            now=now,
                        )
            except StoreError:
                self._move_back(original, staged)
                self._release_claim(undo_id, purge=False)
                raise
        LOGGER.info("Restored %s from undo entry %s", original, undo_id)
        return entry.model_copy(update={"restored": True, "restored_at": now})

    def purge_expired(self, *, now: Optional[datetime] = None) -> int:
        """Permanently delete staged files whose undo window has passed.

        Records are archived (``purged_at``) rather than removed, so a later undo
        reports ``ExpiredError`` instead of ``NotFoundError``. Each entry is
        claimed before its file is deleted; entries restored in the meantime
        are skipped.

        Returns:
            int: Number of entries purged.
        """
        now = now or self._clock()
        purged = 0
        for entry in self._store.expired_undo(now):
            with self._store.transaction() as tx:
                claimed = tx.claim_purge(entry.id, now)
            if not claimed:
                continue
            staged = Path(entry.staged_path)
            try:
                staged.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("Unable to purge staged file %s: %s", staged, exc)
                self._release_claim(entry.id, purge=True)
                continue
            self._store.append_activity(
                "purge",
                entry.original_path,
                folder_id=entry.folder_id,
                rule_name=entry.rule_name,
                detail="Undo window expired",
                timestamp=now,
            )
            purged += 1
        if purged:
            LOGGER.info("Purged %d expired trash entries", purged)
        return purged

    def discard_staged(self, staged_paths: Iterable[str]) -> int:
        """Delete staged files whose undo records were dropped by the size cap."""
        removed = 0
        for raw in staged_paths:
            path = Path(raw)
            try:
                path.unlink(missing_ok=True)
                removed += 1
            except OSError as exc:
                LOGGER.warning("Unable to remove staged file %s: %s", path, exc)
        return removed

    def list_entries(self, *, include_inactive: bool = False) -> list[UndoEntry]:
        return self._store.list_undo(include_inactive=include_inactive)

    # ---- Internal helpers ----

    def _restorable(self, entry: Optional[UndoEntry], undo_id: str, now: datetime) -> UndoEntry:
        if entry is None:
            raise NotFoundError(f"No undo entry with id {undo_id}.")
        if entry.restored:
            raise AlreadyRestoredError(f"Undo entry {undo_id} was already restored.")
        if entry.purged_at is not None or now > entry.expires_at:
            raise ExpiredError(f"Undo entry {undo_id} expired at {entry.expires_at.isoformat()}.")
        return entry

    def _release_claim(self, undo_id: str, *, purge: bool) -> None:
        try:
            with self._store.transaction() as tx:
                if purge:
                    tx.release_purge(undo_id)
                else:
                    tx.release_restore(undo_id)
        except StoreError as exc:
            LOGGER.error("Unable to release claim on undo entry %s: %s", undo_id, exc)

    def _move_back(self, current: Path, original: Path) -> None:
        try:
            relocate(current, original)
        except FileOperationError as exc:
            LOGGER.error("Unable to roll back %s to %s: %s", current, original, exc)


__all__ = ["TrashService", "STAGING_DIRNAME", "DEFAULT_RETENTION_DAYS"]
