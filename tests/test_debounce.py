"""Tests for the debounce arena behind the folder monitor."""

from __future__ import annotations

from pathlib import Path

from declutter.fsops import FileSnapshot
from declutter.watch import DebounceTracker, ReadyFile

PATH = Path("/inbox/movie.mkv")


class FakeDisk:
    """In-memory stat and lock probe for a handful of paths."""

    def __init__(self) -> None:
        self.files: dict[Path, FileSnapshot] = {}
        self.locked: set[Path] = set()

    def write(self, path: Path, size: int, mtime_ns: int) -> None:
        self.files[path] = FileSnapshot(size=size, mtime_ns=mtime_ns)

    def stat(self, path: Path) -> FileSnapshot | None:
        return self.files.get(path)

    def is_locked(self, path: Path) -> bool:
        return path in self.locked


def _tracker(disk: FakeDisk, debounce: float = 3.0) -> DebounceTracker:
    return DebounceTracker(debounce, stat=disk.stat, lock_probe=disk.is_locked)


def test_burst_of_writes_is_delivered_once_after_quiet_period() -> None:
    disk = FakeDisk()
    tracker = _tracker(disk)
    for step, size in enumerate((100, 200, 300)):
        disk.write(PATH, size, mtime_ns=step)
        tracker.observe("f1", PATH, now=float(step))

    assert tracker.sweep(4.9) == []
    assert tracker.sweep(5.0) == [ReadyFile(folder_id="f1", path=PATH)]
    assert tracker.sweep(10.0) == []
    assert PATH not in tracker


def test_silent_growth_restarts_the_timer() -> None:
    disk = FakeDisk()
    tracker = _tracker(disk)
    disk.write(PATH, 100, mtime_ns=1)
    tracker.observe("f1", PATH, now=0.0)
    disk.write(PATH, 150, mtime_ns=2)

    assert tracker.sweep(3.0) == []
    assert tracker.sweep(5.9) == []
    assert [item.path for item in tracker.sweep(6.0)] == [PATH]


def test_locked_file_stays_pending_until_released() -> None:
    disk = FakeDisk()
    tracker = _tracker(disk)
    disk.write(PATH, 100, mtime_ns=1)
    disk.locked.add(PATH)
    tracker.observe("f1", PATH, now=0.0)

    assert tracker.sweep(3.0) == []
    assert PATH in tracker

    disk.locked.clear()
    assert tracker.sweep(5.0) == []
    assert [item.path for item in tracker.sweep(6.0)] == [PATH]


def test_vanished_file_is_dropped() -> None:
    disk = FakeDisk()
    tracker = _tracker(disk)
    disk.write(PATH, 100, mtime_ns=1)
    tracker.observe("f1", PATH, now=0.0)
    del disk.files[PATH]

    assert tracker.sweep(3.0) == []
    assert len(tracker) == 0


def test_observing_a_missing_file_removes_it() -> None:
    disk = FakeDisk()
    tracker = _tracker(disk)
    disk.write(PATH, 1, mtime_ns=1)
    tracker.observe("f1", PATH, now=0.0)
    del disk.files[PATH]

    tracker.observe("f1", PATH, now=1.0)

    assert PATH not in tracker


def test_cancel_and_cancel_folder() -> None:
    disk = FakeDisk()
    tracker = _tracker(disk)
    other = Path("/downloads/a.zip")
    third = Path("/downloads/b.zip")
    for path in (PATH, other, third):
        disk.write(path, 1, mtime_ns=1)
    tracker.observe("f1", PATH, now=0.0)
    tracker.observe("f2", other, now=0.0)
    tracker.observe("f2", third, now=0.0)

    assert tracker.cancel(PATH)
    assert not tracker.cancel(PATH)
    assert tracker.cancel_folder("f2") == 2
    assert len(tracker) == 0


def test_deferred_file_waits_for_backoff_and_counts_attempts() -> None:
    disk = FakeDisk()
    tracker = _tracker(disk)
    disk.write(PATH, 100, mtime_ns=1)

    tracker.defer(ReadyFile(folder_id="f1", path=PATH, attempt=0), now=10.0, delay=8.0)

    assert tracker.sweep(13.0) == []
    assert tracker.sweep(18.0) == [ReadyFile(folder_id="f1", path=PATH, attempt=1)]


def test_defer_ignores_files_that_are_gone() -> None:
    tracker = _tracker(FakeDisk())

    tracker.defer(ReadyFile(folder_id="f1", path=PATH), now=0.0, delay=1.0)

    assert len(tracker) == 0
