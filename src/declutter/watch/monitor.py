"""Filesystem monitor feeding debounced file-ready signals to a handler."""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from declutter.fsops import is_within, path_key
from declutter.rules import WatchedFolder

from .debounce import DebounceTracker, ReadyFile

LOGGER = logging.getLogger(__name__)

ReadyHandler = Callable[[WatchedFolder, ReadyFile], None]
_QueueItem = Optional[tuple[str, int, ReadyFile]]


@dataclass(slots=True)
class _Registration:
    folder: WatchedFolder
    generation: int
    watch: object | None = None


class FolderMonitor:
    """Watch enabled folders and deliver each stable file to ``handler``.

    A tick thread sweeps the debounce arena and queues ready files; a single
    worker thread drains the queue, so the handler never runs concurrently
    with itself. Reconfiguring a folder bumps its generation and queued files
    from an older generation are dropped.
    """

    def __init__(
        self,
        handler: ReadyHandler,
        *,
        debounce_seconds: float = 3.0,
        tick_seconds: float = 0.5,
        ignore_roots: Iterable[Path] = (),
        tracker: DebounceTracker | None = None,
        observer_factory: Callable[[], object] = Observer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the monitor.

        Args:
            handler: Callable invoked on the worker thread for each ready file.
            debounce_seconds: Quiet period before a file counts as stable.
            tick_seconds: Interval between debounce sweeps.
            ignore_roots: Directories whose events are ignored (the data dir).
            tracker: Debounce arena; built from ``debounce_seconds`` when omitted.
            observer_factory: Factory for the watchdog observer.
            clock: Monotonic clock shared with the tracker.
        """
        self._handler = handler
        self._tracker = tracker if tracker is not None else DebounceTracker(debounce_seconds)
        self._tick_seconds = max(0.05, tick_seconds)
        self._ignore_roots = [Path(root) for root in ignore_roots]
        self._observer_factory = observer_factory
        self._clock = clock
        self._registrations: Dict[str, _Registration] = {}
        self._lock = threading.RLock()
        self._queue: queue.Queue[_QueueItem] = queue.Queue()
        self._stop_event = threading.Event()
        self._observer: object | None = None
        self._threads: list[threading.Thread] = []
        self._generation = 0

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    @property
    def tracker(self) -> DebounceTracker:
        return self._tracker

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self, folders: Iterable[WatchedFolder]) -> None:
        """Start the observer, tick and worker threads.

        Raises:
            RuntimeError: If the monitor is already running.
        """
        with self._lock:
            if self._observer is not None:
                raise RuntimeError("FolderMonitor is already running.")
            self._stop_event.clear()
            observer = self._observer_factory()
            self._observer = observer
            for folder in folders:
                if folder.enabled:
                    self._register(folder)
            observer.start()  # type: ignore[attr-defined]
            self._threads = [
                threading.Thread(target=self._tick_loop, name="declutter-tick", daemon=True),
                threading.Thread(target=self._worker_loop, name="declutter-worker", daemon=True),
            ]
            for thread in self._threads:
                thread.start()
        LOGGER.info("Monitoring %d folder(s)", len(self._registrations))

    def stop(self, timeout: float = 5.0) -> None:
        """Stop watching and wait for the worker to finish its current file."""
        with self._lock:
            observer = self._observer
            self._observer = None
            self._registrations.clear()
        self._stop_event.set()
        if observer is not None:
            observer.stop()  # type: ignore[attr-defined]
            observer.join(timeout=timeout)  # type: ignore[attr-defined]
        self._queue.put(None)
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def sync(self, folders: Iterable[WatchedFolder]) -> None:
        """Reconcile watches with a new folder configuration.

        Folders whose path or recursion changed are rescheduled and lose their
        pending files; rule edits on an unchanged folder apply to files still
        pending.
        """
        wanted = {folder.id: folder for folder in folders if folder.enabled}
        with self._lock:
            if self._observer is None:
                return
            for folder_id in list(self._registrations):
                current = self._registrations[folder_id]
                replacement = wanted.get(folder_id)
                if (
                    replacement is None
                    or path_key(replacement.path) != path_key(current.folder.path)
                    or replacement.recursive != current.folder.recursive
                ):
                    self._unregister(folder_id)
                else:
                    current.folder = replacement
            for folder_id, folder in wanted.items():
                if folder_id not in self._registrations:
                    self._register(folder)

    # ------------------------------------------------------------------ #
    # Event intake                                                       #
    # ------------------------------------------------------------------ #

    def notify(self, folder_id: str, path: Path) -> None:
        """Record raw activity on ``path`` reported for ``folder_id``."""
        if self._ignored(path):
            return
        self._tracker.observe(folder_id, path, self._clock())

    def forget(self, path: Path) -> None:
        self._tracker.cancel(path)

    def defer(self, ready: ReadyFile, delay: float) -> None:
        """Re-queue a file that could not be processed yet."""
        self._tracker.defer(ready, self._clock(), delay)

    def sweep(self) -> int:
        """Queue every file that has become stable; returns the number queued."""
        ready = self._tracker.sweep(self._clock())
        queued = 0
        with self._lock:
            for item in ready:
                registration = self._registrations.get(item.folder_id)
                if registration is None:
                    continue
                self._queue.put((item.folder_id, registration.generation, item))
                queued += 1
        return queued

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _register(self, folder: WatchedFolder) -> None:
        self._generation += 1
        registration = _Registration(folder=folder, generation=self._generation)
        handler = _FolderEventHandler(self, folder)
        try:
            registration.watch = self._observer.schedule(  # type: ignore[union-attr]
                handler, folder.path, recursive=folder.recursive
            )
        except OSError as exc:
            LOGGER.warning("Unable to watch %s: %s", folder.path, exc)
            return
        self._registrations[folder.id] = registration

    def _unregister(self, folder_id: str) -> None:
        registration = self._registrations.pop(folder_id, None)
        if registration is None:
            return
        if registration.watch is not None and self._observer is not None:
            try:
                self._observer.unschedule(registration.watch)  # type: ignore[attr-defined]
            except (KeyError, OSError) as exc:
                LOGGER.debug("Unable to unschedule %s: %s", registration.folder.path, exc)
        dropped = self._tracker.cancel_folder(folder_id)
        if dropped:
            LOGGER.debug("Dropped %d pending file(s) for %s", dropped, registration.folder.path)

    def _ignored(self, path: Path) -> bool:
        return any(is_within(path, root) for root in self._ignore_roots)

    def _tick_loop(self) -> None:
        while not self._stop_event.wait(self._tick_seconds):
            try:
                self.sweep()
            except Exception:  # pragma: no cover - keep ticking after unexpected errors
                LOGGER.exception("Debounce sweep failed")

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            folder_id, generation, ready = item
            with self._lock:
                registration = self._registrations.get(folder_id)
                folder = registration.folder if registration else None
                current = registration is not None and registration.generation == generation
            if folder is None or not current:
                continue
            try:
                self._handler(folder, ready)
            except Exception:
                LOGGER.exception("Failed to process %s", ready.path)


class _FolderEventHandler(FileSystemEventHandler):
    """Forward watchdog events for one folder into the monitor."""

    def __init__(self, monitor: FolderMonitor, folder: WatchedFolder) -> None:
        self._monitor = monitor
        self._folder_id = folder.id
        self._root = folder.root

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle a filesystem create event."""
        if not event.is_directory:
            self._monitor.notify(self._folder_id, _event_path(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle a filesystem modify event."""
        if not event.is_directory:
            self._monitor.notify(self._folder_id, _event_path(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle a filesystem delete event."""
        if not event.is_directory:
            self._monitor.forget(_event_path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:  # pragma: no cover - watchdog-specific
        """Handle a filesystem move event."""
        if event.is_directory:
            return
        self._monitor.forget(_event_path(event.src_path))
        destination = _event_path(getattr(event, "dest_path", "") or "")
        if destination.name and is_within(destination, self._root):
            self._monitor.notify(self._folder_id, destination)


def _event_path(raw: str | bytes) -> Path:
    return Path(os.fsdecode(raw))


__all__ = ["FolderMonitor", "ReadyHandler"]
