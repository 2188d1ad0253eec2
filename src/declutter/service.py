"""Application facade wiring the engine together behind a narrow command surface."""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Mapping, Optional, Sequence
from uuid import uuid4

from watchdog.observers import Observer

from declutter.conditions import Condition, parse, serialize, validate
from declutter.conditions import test_condition as _test_condition
from declutter.config import ConfigError, ConfigManager, DeclutterConfig
from declutter.errors import (
    DeletionNotFoundError,
    DuplicateFolderError,
    FileLockedError,
    FolderNotFoundError,
    RuleNotFoundError,
    ServiceError,
)
from declutter.fsops import is_within, path_key
from declutter.locks import KeyedLock
from declutter.rules import Rule, RuleApplier, RuleOutcome, WatchedFolder
from declutter.scheduler import DeletionScheduler, MaintenanceReport, MaintenanceTask, PeriodicTask
from declutter.store import (
    DEFAULT_DB_NAME,
    ActivityEntry,
    FileIndexEntry,
    PruneReport,
    RuleExecutionStats,
    RuleMetadata,
    StorageStats,
    Store,
    StoreError,
    UndoEntry,
)
from declutter.trash import STAGING_DIRNAME, TrashService
from declutter.watch import FolderMonitor, ReadyFile

LOGGER = logging.getLogger(__name__)

STATS_WINDOW = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeclutterService:
    """Own the store, trash, applier, monitor, and timers for one data directory.

    The configuration is an immutable snapshot replaced wholesale on every
    change, so background threads always read a consistent document.
    """

    def __init__(
        self,
        manager: ConfigManager | None = None,
        *,
        config: DeclutterConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        observer_factory: Callable[[], object] = Observer,
    ) -> None:
        """Initialize the service.

        Args:
            manager: Configuration manager; its directory holds all state.
            config: Preloaded configuration (loaded from ``manager`` when omitted).
            clock: Source of aware UTC timestamps.
            monotonic: Monotonic clock for debounce timing.
            observer_factory: Factory for the watchdog observer.
        """
        self._manager = manager or ConfigManager()
        self._config = config if config is not None else self._manager.load()
        self._config_lock = threading.RLock()
        self._config_stamp = self._config_file_stamp()
        self._clock = clock

        data_dir = self._manager.data_dir
        data_dir.mkdir(parents=True, exist_ok=True)
        self._data_dir = data_dir

        settings = self._config.settings
        watch = self._config.watch
        self._store = Store(data_dir / DEFAULT_DB_NAME)
        self._trash = TrashService(
            self._store,
            data_dir / STAGING_DIRNAME,
            retention_days=settings.undo_retention_days,
            clock=clock,
        )
        self._applier = RuleApplier(
            self._store,
            self._trash,
            conflict_resolution=settings.conflict_resolution,
            folder_lookup=self.folder_for_path,
            clock=clock,
        )
        self._scheduler = DeletionScheduler(self._store, self._trash, self.config, clock=clock)
        self._maintenance = MaintenanceTask(self._store, self._trash, self.config, clock=clock)
        self._monitor = FolderMonitor(
            self._on_file_ready,
            debounce_seconds=watch.debounce_seconds,
            tick_seconds=watch.tick_seconds,
            ignore_roots=[data_dir],
            observer_factory=observer_factory,
            clock=monotonic,
        )
        self._deletion_timer = PeriodicTask(
            "declutter-deletions", settings.scan_interval_minutes * 60, self._scheduler.tick
        )
        self._maintenance_timer = PeriodicTask(
            "declutter-maintenance",
            watch.maintenance_interval_minutes * 60,
            self._maintenance.run,
        )
        self._config_timer = PeriodicTask(
            "declutter-config", watch.config_poll_seconds, self.refresh_config
        )
        self._path_locks = KeyedLock()
        self._running = False

    # ------------------------------------------------------------------ #
    # Accessors                                                          #
    # ------------------------------------------------------------------ #

    def config(self) -> DeclutterConfig:
        """Return the current configuration snapshot."""
        with self._config_lock:
            return self._config

    @property
    def manager(self) -> ConfigManager:
        return self._manager

    @property
    def store(self) -> Store:
        return self._store

    @property
    def trash(self) -> TrashService:
        return self._trash

    @property
    def scheduler(self) -> DeletionScheduler:
        return self._scheduler

    @property
    def monitor(self) -> FolderMonitor:
        return self._monitor

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def is_running(self) -> bool:
        return self._running

    def folder_for_path(self, path: Path) -> Optional[WatchedFolder]:
        """Return the enabled watched folder that would observe ``path``."""
        best: Optional[WatchedFolder] = None
        for folder in self.config().folders:
            if not folder.enabled:
                continue
            if folder.recursive:
                inside = is_within(path, folder.root)
            else:
                inside = path_key(path.parent) == path_key(folder.root)
            if inside and (best is None or len(folder.path) > len(best.path)):
                best = folder
        return best

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Run maintenance and an initial scan, then start watching and the timers."""
        if self._running:
            return
        try:
            self._maintenance.run()
        except StoreError as exc:
            LOGGER.error("Startup maintenance failed: %s", exc)
        self.scan_all()
        self._monitor.start(self.config().folders)
        self._deletion_timer.start()
        self._maintenance_timer.start()
        self._config_timer.start()
        self._running = True
        self._scheduler.tick()

    def stop(self) -> None:
        """Stop the timers and the monitor; in-progress work finishes first."""
        if not self._running:
            return
        self._deletion_timer.stop()
        self._maintenance_timer.stop()
        self._config_timer.stop()
        self._monitor.stop()
        self._running = False

    def close(self) -> None:
        self.stop()
        self._store.close()

    def __enter__(self) -> "DeclutterService":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Conditions                                                         #
    # ------------------------------------------------------------------ #

    def parse_condition(self, text: str) -> Condition:
        return parse(text)

    def serialize_condition(self, condition: Condition) -> str:
        return serialize(condition)

    def validate_condition_text(self, text: str) -> None:
        validate(text)

    def test_condition(self, text: str, name: str) -> bool:
        """Parse ``text`` and evaluate it against a sample file name."""
        return _test_condition(parse(text), name)

    # ------------------------------------------------------------------ #
    # Folders                                                            #
    # ------------------------------------------------------------------ #

    def list_folders(self) -> List[WatchedFolder]:
        return list(self.config().folders)

    def get_folder(self, folder_id: str) -> WatchedFolder:
        """Return the folder with ``folder_id``.

        Raises:
            FolderNotFoundError: If no folder has that id.
        """
        folder = self.config().find_folder(folder_id)
        if folder is None:
            raise FolderNotFoundError(f"No watched folder with id {folder_id}.")
        return folder

    def add_folder(
        self,
        path: str | Path,
        *,
        recursive: bool = False,
        whitelist: Sequence[str] = (),
        enabled: bool = True,
    ) -> WatchedFolder:
        """Start watching a directory.

        Raises:
            ServiceError: If the path is not an existing directory.
            DuplicateFolderError: If an enabled folder already watches the path.
        """
        candidate = Path(os.path.expanduser(str(path)))
        if not candidate.is_dir():
            raise ServiceError(f"{candidate} is not an existing directory.")
        folder = WatchedFolder(
            path=str(candidate.resolve()),
            recursive=recursive,
            whitelist=list(whitelist),
            enabled=enabled,
        )
        with self._config_lock:
            folders = list(self._config.folders)
            if enabled:
                self._ensure_unique_path(folders, folder)
            folders.append(folder)
            self._commit_folders(folders)
        LOGGER.info("Watching %s (id %s)", folder.path, folder.id)
        return folder

    def remove_folder(self, folder_id: str) -> WatchedFolder:
        """Stop watching a folder and forget its index entries and rule metadata."""
        with self._config_lock:
            folder = self.get_folder(folder_id)
            folders = [item for item in self._config.folders if item.id != folder_id]
            self._commit_folders(folders)
        self._store.remove_files_for_folder(folder_id)
        for rule in folder.rules:
            self._store.delete_rule_metadata(rule.id)
        LOGGER.info("Stopped watching %s", folder.path)
        return folder

    def set_folder_enabled(self, folder_id: str, enabled: bool) -> WatchedFolder:
        with self._config_lock:
            folder = self.get_folder(folder_id)
            updated = folder.model_copy(update={"enabled": enabled})
            if enabled:
                others = [item for item in self._config.folders if item.id != folder_id]
                self._ensure_unique_path(others, updated)
            return self._replace_folder(updated)

    def set_folder_recursive(self, folder_id: str, recursive: bool) -> WatchedFolder:
        with self._config_lock:
            folder = self.get_folder(folder_id)
            return self._replace_folder(folder.model_copy(update={"recursive": recursive}))

    def set_folder_whitelist(self, folder_id: str, patterns: Sequence[str]) -> WatchedFolder:
        with self._config_lock:
            folder = self.get_folder(folder_id)
            return self._replace_folder(folder.model_copy(update={"whitelist": list(patterns)}))

    # ------------------------------------------------------------------ #
    # Rules                                                              #
    # ------------------------------------------------------------------ #

    def list_rules(self, folder_id: str) -> List[Rule]:
        return list(self.get_folder(folder_id).rules)

    def get_rule(self, folder_id: str, rule_id: str) -> Rule:
        """Return a rule by id.

        Raises:
            FolderNotFoundError: If the folder is unknown.
            RuleNotFoundError: If the folder has no such rule.
        """
        rule = self.get_folder(folder_id).find_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"No rule with id {rule_id} in folder {folder_id}.")
        return rule

    def add_rule(self, folder_id: str, rule: Rule, *, position: Optional[int] = None) -> Rule:
        """Insert ``rule`` at ``position`` (appended when None)."""
        with self._config_lock:
            folder = self.get_folder(folder_id)
            if folder.find_rule(rule.id) is not None:
                rule = rule.model_copy(update={"id": uuid4().hex})
            rules = list(folder.rules)
            if position is None:
                rules.append(rule)
            else:
                rules.insert(max(0, position), rule)
            self._replace_folder(folder.model_copy(update={"rules": rules}))
        self._store.ensure_rule_metadata(rule.id, folder_id, self._clock())
        return rule

    def update_rule(self, folder_id: str, rule_id: str, **changes: Any) -> Rule:
        """Apply field changes to a rule and revalidate it.

        Passing ``condition`` without ``condition_text`` replaces the condition
        tree and re-derives its text.

        Raises:
            pydantic.ValidationError: If the changed rule is invalid.
        """
        with self._config_lock:
            folder = self.get_folder(folder_id)
            current = self.get_rule(folder_id, rule_id)
            data = current.model_dump()
            if "condition" in changes and "condition_text" not in changes:
                data.pop("condition_text", None)
            data.update(changes)
            data["id"] = rule_id
            updated = Rule.model_validate(data)
            rules = [updated if rule.id == rule_id else rule for rule in folder.rules]
            self._replace_folder(folder.model_copy(update={"rules": rules}))
        return updated

    def delete_rule(self, folder_id: str, rule_id: str) -> Rule:
        with self._config_lock:
            folder = self.get_folder(folder_id)
            removed = self.get_rule(folder_id, rule_id)
            rules = [rule for rule in folder.rules if rule.id != rule_id]
            self._replace_folder(folder.model_copy(update={"rules": rules}))
        self._store.delete_rule_metadata(rule_id)
        return removed

    def reorder_rules(self, folder_id: str, rule_ids: Sequence[str]) -> List[Rule]:
        """Set rule priority to the order of ``rule_ids``.

        Raises:
            ServiceError: If ``rule_ids`` is not a permutation of the folder's rules.
        """
        with self._config_lock:
            folder = self.get_folder(folder_id)
            by_id = {rule.id: rule for rule in folder.rules}
            if sorted(rule_ids) != sorted(by_id) or len(set(rule_ids)) != len(rule_ids):
                raise ServiceError("Rule order must list every rule of the folder exactly once.")
            rules = [by_id[rule_id] for rule_id in rule_ids]
            self._replace_folder(folder.model_copy(update={"rules": rules}))
        return rules

    def copy_rules(self, source_folder_id: str, target_folder_id: str) -> List[Rule]:
        """Append copies of every rule of one folder to another, with fresh ids."""
        now = self._clock()
        with self._config_lock:
            source = self.get_folder(source_folder_id)
            target = self.get_folder(target_folder_id)
            copies = [rule.model_copy(update={"id": uuid4().hex}) for rule in source.rules]
            rules = list(target.rules) + copies
            self._replace_folder(target.model_copy(update={"rules": rules}))
        for rule in copies:
            self._store.ensure_rule_metadata(rule.id, target_folder_id, now)
        return copies

    def get_rule_metadata(self, rule_id: str) -> Optional[RuleMetadata]:
        return self._store.get_rule_metadata(rule_id)

    def get_rule_execution_stats(
        self, folder_id: Optional[str] = None, *, since: Optional[datetime] = None
    ) -> List[RuleExecutionStats]:
        """Return last-run time and run count over the past week for each executed rule."""
        since = since or self._clock() - STATS_WINDOW
        names = {rule.id: rule.name for folder in self.config().folders for rule in folder.rules}
        stats = self._store.get_rule_execution_stats(since, folder_id)
        return [
            item.model_copy(update={"rule_name": names.get(item.rule_id, item.rule_name)})
            for item in stats
        ]

    # ------------------------------------------------------------------ #
    # Scans and deletions                                                #
    # ------------------------------------------------------------------ #

    def scan_all(self) -> int:
        """Apply rules to every file of every enabled folder; returns actions taken."""
        total = 0
        for folder in self.config().folders:
            if folder.enabled:
                total += self._scan(folder)
        return total

    def scan_folder(self, folder_id: str) -> int:
        """Apply rules to every file of one folder; returns actions taken."""
        return self._scan(self.get_folder(folder_id))

    def get_scheduled_deletions(self, folder_id: Optional[str] = None) -> List[FileIndexEntry]:
        return self._store.get_pending_deletions(folder_id)

    def cancel_scheduled_deletion(self, entry_id: int) -> FileIndexEntry:
        """Keep a file that was scheduled for deletion.

        Raises:
            DeletionNotFoundError: If nothing is scheduled under ``entry_id``.
        """
        with self._store.transaction() as tx:
            entry = tx.cancel_scheduled_deletion(entry_id)
            if entry is None:
                raise DeletionNotFoundError(f"No scheduled deletion with id {entry_id}.")
            tx.append_activity(
                "cancel_delete",
                entry.path,
                folder_id=entry.folder_id,
                timestamp=self._clock(),
            )
        return entry

    def run_deletions_now(self) -> Optional[int]:
        return self._scheduler.run_now()

    # ------------------------------------------------------------------ #
    # Undo, log, storage                                                 #
    # ------------------------------------------------------------------ #

    def list_undo(self, *, include_inactive: bool = False) -> List[UndoEntry]:
        return self._trash.list_entries(include_inactive=include_inactive)

    def undo(self, undo_id: str) -> UndoEntry:
        return self._trash.undo(undo_id)

    def get_activity_log(
        self, limit: int = 50, offset: int = 0, folder_id: Optional[str] = None
    ) -> List[ActivityEntry]:
        return self._store.get_activity_log(limit=limit, offset=offset, folder_id=folder_id)

    def get_storage_stats(self) -> StorageStats:
        return self._store.get_stats(self._trash.staging_dir)

    def enforce_storage(self) -> PruneReport:
        return self._maintenance.enforce_storage()

    def run_maintenance(self) -> MaintenanceReport:
        return self._maintenance.run()

    # ------------------------------------------------------------------ #
    # Settings document                                                  #
    # ------------------------------------------------------------------ #

    def export_config(self, destination: Path) -> Path:
        return self._manager.export_to(destination)

    def import_config(self, source: Path) -> DeclutterConfig:
        """Replace the settings document and apply it to the running engine."""
        self._manager.import_from(source)
        return self.reload_config()

    def reload_config(self, cli_overrides: Mapping[str, Any] | None = None) -> DeclutterConfig:
        """Reload the settings document from disk and apply it."""
        with self._config_lock:
            self._config_stamp = self._config_file_stamp()
            config = self._manager.load(cli_overrides=cli_overrides)
            self._config = config
        self._apply_settings(config)
        return config

    def refresh_config(self) -> bool:
        """Apply the settings file if another process changed it since the last read.

        The running daemon calls this on a timer, so folder and rule edits made
        through a separate CLI invocation reach the monitor and the scheduler.
        An unreadable file is logged and the current snapshot stays in effect.

        Returns:
            bool: True when a changed document was loaded and applied.
        """
        with self._config_lock:
            if self._config_file_stamp() == self._config_stamp:
                return False
            try:
                self.reload_config()
            except ConfigError as exc:
                LOGGER.warning("Ignoring invalid settings file %s: %s", self._manager.config_path, exc)
                return False
        LOGGER.info("Applied settings changed on disk at %s", self._manager.config_path)
        return True

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _config_file_stamp(self) -> Optional[tuple[int, int, int]]:
        # Settings writes replace the file, so the inode changes on every save.
        try:
            stat = self._manager.config_path.stat()
        except OSError:
            return None
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def _ensure_unique_path(self, folders: Iterable[WatchedFolder], folder: WatchedFolder) -> None:
        key = path_key(folder.path)
        for other in folders:
            if other.enabled and other.id != folder.id and path_key(other.path) == key:
                raise DuplicateFolderError(f"{folder.path} is already watched (id {other.id}).")

    def _replace_folder(self, updated: WatchedFolder) -> WatchedFolder:
        folders = [updated if item.id == updated.id else item for item in self._config.folders]
        self._commit_folders(folders)
        return updated

    def _commit_folders(self, folders: List[WatchedFolder]) -> None:
        config = DeclutterConfig(
            settings=self._config.settings,
            watch=self._config.watch,
            logging=self._config.logging,
            folders=folders,
        )
        self._manager.save_folders(folders)
        self._config_stamp = self._config_file_stamp()
        self._config = config
        if self._running:
            self._monitor.sync(config.folders)

    def _apply_settings(self, config: DeclutterConfig) -> None:
        settings = config.settings
        self._trash.set_retention_days(settings.undo_retention_days)
        self._applier.conflict_resolution = settings.conflict_resolution
        self._deletion_timer.interval = settings.scan_interval_minutes * 60
        self._maintenance_timer.interval = config.watch.maintenance_interval_minutes * 60
        self._config_timer.interval = config.watch.config_poll_seconds
        if self._running:
            self._monitor.sync(config.folders)

    def _scan(self, folder: WatchedFolder) -> int:
        root = folder.root
        if not root.is_dir():
            LOGGER.warning("Skipping scan of missing folder %s", root)
            return 0
        changed = 0
        for path in self._iter_files(folder):
            outcome = self._process(folder, path, final_attempt=True)
            if outcome is not None and outcome.changed:
                changed += 1
        LOGGER.info("Scan of %s took %d action(s)", root, changed)
        return changed

    def _iter_files(self, folder: WatchedFolder) -> Iterator[Path]:
        root = folder.root
        if not folder.recursive:
            try:
                entries = sorted(root.iterdir())
            except OSError as exc:
                LOGGER.warning("Unable to list %s: %s", root, exc)
                return
            for entry in entries:
                if entry.is_file():
                    yield entry
            return

        data_key = path_key(self._data_dir)
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                name for name in dirnames if path_key(os.path.join(dirpath, name)) != data_key
            )
            for name in sorted(filenames):
                yield Path(dirpath) / name

    def _process(
        self, folder: WatchedFolder, path: Path, *, final_attempt: bool
    ) -> Optional[RuleOutcome]:
        with self._path_locks.hold(path_key(path)):
            try:
                return self._applier.apply(folder, path, final_attempt=final_attempt)
            except StoreError as exc:
                LOGGER.error("Unable to process %s: %s", path, exc)
                return None

    def _on_file_ready(self, folder: WatchedFolder, ready: ReadyFile) -> None:
        watch = self.config().watch
        final = ready.attempt >= watch.locked_retry_attempts
        try:
            self._process(folder, ready.path, final_attempt=final)
        except FileLockedError as exc:
            delay = min(
                watch.locked_retry_initial_seconds * (2**ready.attempt),
                watch.locked_retry_max_seconds,
            )
            LOGGER.debug("%s is locked (%s); retrying in %.1fs", ready.path, exc, delay)
            self._monitor.defer(ready, delay)


__all__ = ["DeclutterService", "STATS_WINDOW"]
