"""Tests for the deletion scheduler, maintenance task, and periodic driver."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from declutter.config import DeclutterConfig, GeneralSettings
from declutter.rules import DeleteAction, Rule, RuleApplier, WatchedFolder
from declutter.scheduler import (
    DELETION_LEASE,
    LEASE_TTL,
    DeletionScheduler,
    MaintenanceTask,
    PeriodicTask,
)
from declutter.store import Store
from declutter.trash import TrashService

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class Harness:
    """Store, trash, and a mutable config shared by scheduler tests."""

    def __init__(self, tmp_path: Path) -> None:
        self.store = Store(tmp_path / "state" / "declutter.db")
        self.trash = TrashService(self.store, tmp_path / "state" / "trash_staging")
        self.root = tmp_path / "downloads"
        self.root.mkdir()
        self.rule = Rule(
            name="stale installers",
            condition_text="*.zip",
            action=DeleteAction(after_days=5),
        )
        self.folder = WatchedFolder(path=str(self.root), rules=[self.rule])
        self.config = DeclutterConfig(
            settings=GeneralSettings(deletion_time_hour=None), folders=[self.folder]
        )
        self.applier = RuleApplier(self.store, self.trash)

    def provider(self) -> DeclutterConfig:
        return self.config

    def schedule(self, name: str) -> Path:
        path = self.root / name
        path.write_text("zip", encoding="utf-8")
        self.applier.apply(self.folder, path, now=NOW)
        return path


@pytest.fixture()
def harness(tmp_path: Path):
    instance = Harness(tmp_path)
    yield instance
    instance.store.close()


def test_file_is_deleted_exactly_at_due_time(harness: Harness) -> None:
    target = harness.schedule("setup.zip")
    scheduler = DeletionScheduler(harness.store, harness.trash, harness.provider)
    due = NOW + timedelta(days=5)

    assert scheduler.run_pass(due - timedelta(seconds=1)) == 0
    assert target.exists()

    assert scheduler.run_pass(due) == 1
    assert not target.exists()
    assert harness.store.get_file(target) is None
    [undo] = harness.store.list_undo()
    assert undo.original_path == str(target)
    assert undo.rule_name == "stale installers"


def test_missing_file_is_dropped_from_schedule(harness: Harness) -> None:
    target = harness.schedule("setup.zip")
    target.unlink()
    scheduler = DeletionScheduler(harness.store, harness.trash, harness.provider)

    assert scheduler.run_pass(NOW + timedelta(days=6)) == 0
    assert harness.store.get_pending_deletions() == []


def test_disabled_folder_keeps_its_pending_deletions(harness: Harness) -> None:
    target = harness.schedule("setup.zip")
    harness.config = harness.config.model_copy(
        update={"folders": [harness.folder.model_copy(update={"enabled": False})]}
    )
    scheduler = DeletionScheduler(harness.store, harness.trash, harness.provider)

    assert scheduler.run_pass(NOW + timedelta(days=6)) == 0
    assert target.exists()
    assert len(harness.store.get_pending_deletions()) == 1


def test_unknown_folder_entries_are_dropped(harness: Harness) -> None:
    target = harness.schedule("setup.zip")
    harness.config = harness.config.model_copy(update={"folders": []})
    scheduler = DeletionScheduler(harness.store, harness.trash, harness.provider)

    assert scheduler.run_pass(NOW + timedelta(days=6)) == 0
    assert target.exists()
    assert harness.store.get_pending_deletions() == []


def test_concurrent_pass_is_coalesced(harness: Harness) -> None:
    entered = threading.Event()
    release = threading.Event()

    def slow_provider() -> DeclutterConfig:
        entered.set()
        release.wait(timeout=5.0)
        return harness.config

    scheduler = DeletionScheduler(harness.store, harness.trash, slow_provider)
    results: list[object] = []
    worker = threading.Thread(target=lambda: results.append(scheduler.run_pass(NOW)))
    worker.start()
    try:
        assert entered.wait(timeout=5.0)
        assert scheduler.in_flight
        assert scheduler.run_pass(NOW) is None
    finally:
        release.set()
        worker.join(timeout=5.0)

    assert results == [0]
    assert not scheduler.in_flight


def test_pass_in_another_process_is_coalesced(tmp_path: Path, harness: Harness) -> None:
    target = harness.schedule("setup.zip")
    due = NOW + timedelta(days=5)
    entered = threading.Event()
    release = threading.Event()

    def slow_provider() -> DeclutterConfig:
        entered.set()
        release.wait(timeout=5.0)
        return harness.config

    first = DeletionScheduler(harness.store, harness.trash, slow_provider)
    other_store = Store(tmp_path / "state" / "declutter.db")
    other_trash = TrashService(other_store, tmp_path / "state" / "trash_staging")
    second = DeletionScheduler(other_store, other_trash, harness.provider)
    results: list[object] = []
    worker = threading.Thread(target=lambda: results.append(first.run_pass(due)))
    worker.start()
    try:
        assert entered.wait(timeout=5.0)
        assert not second.in_flight
        assert second.run_pass(due) is None
        assert target.exists()
    finally:
        release.set()
        worker.join(timeout=5.0)

    try:
        assert results == [1]
        assert not target.exists()
        assert second.run_pass(due) == 0
        assert len(other_store.list_undo()) == 1
    finally:
        other_store.close()


def test_stale_lease_from_dead_process_is_taken_over(harness: Harness) -> None:
    target = harness.schedule("setup.zip")
    due = NOW + timedelta(days=5)
    assert harness.store.acquire_lease(DELETION_LEASE, "crashed-worker", due, LEASE_TTL)
    scheduler = DeletionScheduler(harness.store, harness.trash, harness.provider)

    assert scheduler.run_pass(due) is None
    assert target.exists()

    assert scheduler.run_pass(due + LEASE_TTL + timedelta(seconds=1)) == 1
    assert not target.exists()


def test_tick_runs_once_per_day_after_configured_hour(harness: Harness) -> None:
    harness.config = harness.config.model_copy(
        update={"settings": GeneralSettings(deletion_time_hour=3)}
    )
    scheduler = DeletionScheduler(harness.store, harness.trash, harness.provider)
    early = datetime(2024, 6, 10, 2, 30).astimezone()
    on_time = datetime(2024, 6, 10, 3, 0).astimezone()
    later = datetime(2024, 6, 10, 18, 0).astimezone()
    next_day = datetime(2024, 6, 11, 3, 5).astimezone()

    assert scheduler.tick(early) is None
    assert scheduler.tick(on_time) == 0
    assert scheduler.last_daily_run == on_time.date()
    assert scheduler.tick(later) is None
    assert scheduler.tick(next_day) == 0


def test_tick_without_hour_runs_every_time(harness: Harness) -> None:
    scheduler = DeletionScheduler(harness.store, harness.trash, harness.provider)

    assert scheduler.tick(NOW) == 0
    assert scheduler.tick(NOW + timedelta(minutes=5)) == 0


def test_maintenance_applies_retention_and_drops_stale_index(harness: Harness) -> None:
    gone = harness.schedule("gone.zip")
    gone.unlink()
    harness.store.append_activity("move", "/old.txt", timestamp=NOW - timedelta(days=45))
    harness.store.append_activity("move", "/new.txt", timestamp=NOW)
    staged = harness.root / "trash-me.txt"
    staged.write_text("x", encoding="utf-8")
    harness.trash.safe_delete(staged, now=NOW - timedelta(days=10))
    task = MaintenanceTask(harness.store, harness.trash, harness.provider)

    report = task.run(NOW)

    assert report.purged == 1
    assert report.activity_pruned == 1
    assert report.index_dropped == 1
    assert report.storage.total == 0
    assert harness.store.get_file(gone) is None


def test_periodic_task_invokes_function_until_stopped() -> None:
    calls = threading.Event()
    task = PeriodicTask("test-periodic", 0.01, calls.set)

    task.start()
    try:
        assert task.running
        assert calls.wait(timeout=5.0)
    finally:
        task.stop()

    assert not task.running
