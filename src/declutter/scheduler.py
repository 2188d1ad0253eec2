"""Timed work: due-deletion passes, storage maintenance, and the periodic driver."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

from declutter.config import DeclutterConfig
from declutter.errors import FileOperationError
from declutter.store import PruneReport, Store, StoreError
from declutter.trash import TrashService

LOGGER = logging.getLogger(__name__)

ConfigProvider = Callable[[], DeclutterConfig]

DELETION_LEASE = "deletion_pass"
LEASE_TTL = timedelta(minutes=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeletionScheduler:
    """Safe-delete files whose scheduled deletion time has passed.

    Only one pass runs at a time, across threads and across processes sharing
    the store: a thread guard covers this process and a lease row in the
    store covers the others. A request arriving while a pass is in flight is
    coalesced into it and reports ``None``.
    """

    def __init__(
        self,
        store: Store,
        trash: TrashService,
        config_provider: ConfigProvider,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Shared persistent store.
            trash: Safe-delete service used to stage due files.
            config_provider: Returns the current configuration snapshot.
            clock: Source of aware UTC timestamps.
        """
        self._store = store
        self._trash = trash
        self._config_provider = config_provider
        self._clock = clock
        self._guard = threading.Lock()
        self._holder = f"{os.getpid()}-{uuid4().hex[:12]}"
        self._last_daily_run: Optional[date] = None

    @property
    def in_flight(self) -> bool:
        return self._guard.locked()

    @property
    def last_daily_run(self) -> Optional[date]:
        return self._last_daily_run

    def run_pass(self, now: Optional[datetime] = None) -> Optional[int]:
        """Delete every due file once.

        Entries whose file has vanished, or whose folder is no longer
        configured, are dropped from the index. Entries of disabled folders are
        kept for later.

        Args:
            now: Override for the current time.

        Returns:
            Optional[int]: Number of files staged for deletion, or None when a
            pass was already running here or in another process.
        """
        if not self._guard.acquire(blocking=False):
            LOGGER.debug("Deletion pass already in flight; request coalesced")
            return None
        try:
            now = now or self._clock()
            if not self._store.acquire_lease(DELETION_LEASE, self._holder, now, LEASE_TTL):
                LOGGER.debug("Deletion pass running in another process; request coalesced")
                return None
            try:
                return self._run(now)
            finally:
                self._release_lease()
        finally:
            self._guard.release()

    def run_now(self) -> Optional[int]:
        return self.run_pass()

    def tick(self, now: Optional[datetime] = None) -> Optional[int]:
        """Periodic hook honoring the configured daily deletion hour.

        Without a configured hour every tick runs a pass. Otherwise at most one
        pass runs per local calendar day, at the first tick at or after that
        hour.

        Returns:
            Optional[int]: Result of the pass, or None when no pass ran.
        """
        now = now or self._clock()
        hour = self._config_provider().settings.deletion_time_hour
        if hour is None:
            return self.run_pass(now)

        local = now.astimezone()
        if local.hour < hour or self._last_daily_run == local.date():
            return None
        result = self.run_pass(now)
        if result is not None:
            self._last_daily_run = local.date()
        return result

    def _run(self, now: datetime) -> int:
        config = self._config_provider()
        folders = {folder.id: folder for folder in config.folders}
        deleted = 0
        for entry in self._store.get_due_deletions(now):
            path = Path(entry.path)
            folder = folders.get(entry.folder_id)
            if folder is None or not path.exists():
                self._store.remove_file(path)
                continue
            if not folder.enabled:
                continue
            try:
                self._trash.safe_delete(
                    path,
                    folder_id=folder.id,
                    rule_id=entry.rule_id,
                    rule_name=entry.rule_name,
                    now=now,
                )
            except FileOperationError as exc:
                LOGGER.warning("Scheduled deletion of %s failed: %s", path, exc)
                self._record_failure(entry.folder_id, path, entry.rule_id, entry.rule_name, exc)
                continue
            except StoreError as exc:
                LOGGER.error("Scheduled deletion of %s could not be recorded: %s", path, exc)
                continue
            deleted += 1
        if deleted:
            LOGGER.info("Deletion pass removed %d file(s)", deleted)
        return deleted

    def _release_lease(self) -> None:
        try:
            self._store.release_lease(DELETION_LEASE, self._holder)
        except StoreError as exc:
            LOGGER.error("Unable to release the deletion lease; it expires on its own: %s", exc)

    def _record_failure(
        self,
        folder_id: str,
        path: Path,
        rule_id: Optional[str],
        rule_name: Optional[str],
        error: Exception,
    ) -> None:
        try:
            self._store.append_activity(
                "delete",
                path,
                result="failure",
                folder_id=folder_id,
                rule_id=rule_id,
                rule_name=rule_name,
                detail=str(error),
            )
        except StoreError as exc:
            LOGGER.error("Unable to record failure for %s: %s", path, exc)


@dataclass(slots=True)
class MaintenanceReport:
    """Work done by one maintenance pass."""

    purged: int = 0
    activity_pruned: int = 0
    archived_undo_pruned: int = 0
    index_dropped: int = 0
    storage: PruneReport = field(default_factory=PruneReport)


class MaintenanceTask:
    """Retention and size-cap housekeeping for the store and trash staging."""

    def __init__(
        self,
        store: Store,
        trash: TrashService,
        config_provider: ConfigProvider,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._trash = trash
        self._config_provider = config_provider
        self._clock = clock

    def run(self, now: Optional[datetime] = None) -> MaintenanceReport:
        """Purge expired undo entries, apply retention, and enforce the size cap."""
        now = now or self._clock()
        settings = self._config_provider().settings
        cutoff = now - timedelta(days=settings.log_retention_days)

        report = MaintenanceReport()
        report.purged = self._trash.purge_expired(now=now)
        report.activity_pruned = self._store.prune_activity(cutoff)
        report.archived_undo_pruned = self._store.prune_archived_undo(cutoff)
        for entry in self._store.get_file_entries():
            if not Path(entry.path).exists():
                self._store.remove_file(entry.path)
                report.index_dropped += 1
        report.storage = self.enforce_storage()
        LOGGER.debug(
            "Maintenance: purged=%d activity=%d archived=%d index=%d",
            report.purged,
            report.activity_pruned,
            report.archived_undo_pruned,
            report.index_dropped,
        )
        return report

    def enforce_storage(self) -> PruneReport:
        """Apply ``settings.max_storage_mb`` and delete staged files that lost their record."""
        max_mb = self._config_provider().settings.max_storage_mb
        report = self._store.enforce_size_limit(max_mb * 1024 * 1024)
        if report.staged_paths:
            self._trash.discard_staged(report.staged_paths)
        return report


class PeriodicTask:
    """Daemon thread calling ``func`` every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, func: Callable[[], object]) -> None:
        self._name = name
        self._interval = interval
        self._func = func
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        self._interval = value

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self._func()
            except Exception:
                LOGGER.exception("Periodic task %s failed", self._name)


__all__ = [
    "DELETION_LEASE",
    "LEASE_TTL",
    "DeletionScheduler",
    "MaintenanceReport",
    "MaintenanceTask",
    "PeriodicTask",
]
