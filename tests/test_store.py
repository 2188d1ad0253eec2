"""Tests for the SQLite-backed store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from declutter.store import Store, StoreError

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def store(tmp_path: Path):
    handle = Store(tmp_path / "declutter.db")
    yield handle
    handle.close()


def _track(store: Store, path: str, folder_id: str = "f1", *, now: datetime = NOW):
    with store.transaction() as tx:
        entry, _created = tx.upsert_file(path, folder_id, size=10, last_modified=now, now=now)
    return entry


def _schedule(store: Store, path: str, due_at: datetime) -> None:
    with store.transaction() as tx:
        tx.schedule_deletion(path, due_at=due_at, rule_id="r1", rule_name="old files")


# ---- Activity log ----


def test_activity_log_is_newest_first_with_id_tiebreak(store: Store) -> None:
    store.append_activity("move", "/a/one.txt", timestamp=NOW - timedelta(minutes=5))
    store.append_activity("move", "/a/two.txt", timestamp=NOW)
    store.append_activity("delete", "/a/three.txt", timestamp=NOW)

    names = [entry.file_name for entry in store.get_activity_log()]

    assert names == ["three.txt", "two.txt", "one.txt"]


def test_activity_log_pagination_and_folder_filter(store: Store) -> None:
    for index in range(5):
        store.append_activity(
            "move",
            f"/a/{index}.txt",
            folder_id="f1" if index % 2 == 0 else "f2",
            timestamp=NOW + timedelta(seconds=index),
        )

    page = store.get_activity_log(limit=2, offset=1)
    only_f2 = store.get_activity_log(folder_id="f2")

    assert [entry.file_name for entry in page] == ["3.txt", "2.txt"]
    assert [entry.file_name for entry in only_f2] == ["3.txt", "1.txt"]
    assert store.count_activity() == 5
    assert store.count_activity("f1") == 3


def test_activity_ids_are_monotonic(store: Store) -> None:
    first = store.append_activity("move", "/a.txt", timestamp=NOW)
    second = store.append_activity("move", "/b.txt", timestamp=NOW)

    assert second.id > first.id


def test_prune_activity_drops_entries_before_cutoff(store: Store) -> None:
    store.append_activity("move", "/old.txt", timestamp=NOW - timedelta(days=40))
    store.append_activity("move", "/new.txt", timestamp=NOW)

    assert store.prune_activity(NOW - timedelta(days=30)) == 1
    assert [entry.file_name for entry in store.get_activity_log()] == ["new.txt"]


def test_naive_timestamps_are_rejected(store: Store) -> None:
    with pytest.raises(StoreError):
        store.append_activity("move", "/a.txt", timestamp=datetime(2024, 1, 1))


def test_failed_transaction_rolls_back(store: Store) -> None:
    with pytest.raises(StoreError):
        with store.transaction() as tx:
            tx.append_activity("move", "/a.txt", timestamp=NOW)
            tx.append_activity("move", "/b.txt", timestamp=datetime(2024, 1, 1))

    assert store.get_activity_log() == []


# ---- File index ----


def test_upsert_keeps_first_seen(store: Store) -> None:
    first = _track(store, "/inbox/a.zip", now=NOW)
    second = _track(store, "/inbox/a.zip", now=NOW + timedelta(days=2))

    assert first.id == second.id
    assert second.first_seen == NOW


def test_due_deletions_are_inclusive_and_skip_exempt(store: Store) -> None:
    _track(store, "/inbox/a.zip")
    _track(store, "/inbox/b.zip")
    _schedule(store, "/inbox/a.zip", NOW)
    _schedule(store, "/inbox/b.zip", NOW + timedelta(days=1))

    assert [entry.path for entry in store.get_due_deletions(NOW - timedelta(seconds=1))] == []
    assert [entry.path for entry in store.get_due_deletions(NOW)] == ["/inbox/a.zip"]
    assert len(store.get_pending_deletions()) == 2


def test_schedule_deletion_is_idempotent(store: Store) -> None:
    _track(store, "/inbox/a.zip")
    with store.transaction() as tx:
        assert tx.schedule_deletion("/inbox/a.zip", due_at=NOW, rule_id="r1", rule_name="x")
        assert not tx.schedule_deletion(
            "/inbox/a.zip", due_at=NOW + timedelta(days=9), rule_id="r1", rule_name="x"
        )

    entry = store.get_file("/inbox/a.zip")
    assert entry is not None and entry.due_at == NOW


def test_scheduling_untracked_file_fails(store: Store) -> None:
    with pytest.raises(StoreError):
        with store.transaction() as tx:
            tx.schedule_deletion("/nowhere.zip", due_at=NOW, rule_id=None, rule_name=None)


def test_cancel_scheduled_deletion_sets_exempt(store: Store) -> None:
    entry = _track(store, "/inbox/a.zip")
    _schedule(store, "/inbox/a.zip", NOW)

    cancelled = store.cancel_scheduled_deletion(entry.id)

    assert cancelled is not None
    assert cancelled.pending_action is None and cancelled.exempt
    assert store.get_due_deletions(NOW + timedelta(days=30)) == []
    assert store.cancel_scheduled_deletion(entry.id) is None


def test_remove_files_for_folder(store: Store) -> None:
    _track(store, "/one/a.txt", "f1")
    _track(store, "/two/b.txt", "f2")

    assert store.remove_files_for_folder("f1") == 1
    assert [entry.path for entry in store.get_file_entries()] == ["/two/b.txt"]


# ---- Rule metadata and stats ----


def test_rule_metadata_lifecycle(store: Store) -> None:
    created = store.ensure_rule_metadata("r1", "f1", NOW)
    with store.transaction() as tx:
        tx.touch_rule("r1", "f1", NOW + timedelta(hours=1))

    metadata = store.get_rule_metadata("r1")

    assert created.trigger_count == 0
    assert metadata is not None
    assert metadata.created_at == NOW
    assert metadata.trigger_count == 1
    assert metadata.last_triggered_at == NOW + timedelta(hours=1)
    assert store.delete_rule_metadata("r1")
    assert store.get_rule_metadata("r1") is None


def test_rule_execution_stats_count_successes_since_cutoff(store: Store) -> None:
    since = NOW - timedelta(days=7)
    store.append_activity("move", "/a", rule_id="r1", folder_id="f1", timestamp=NOW - timedelta(days=9))
    store.append_activity("move", "/b", rule_id="r1", folder_id="f1", timestamp=NOW)
    store.append_activity("move", "/c", rule_id="r1", folder_id="f1", result="failure", timestamp=NOW)
    store.append_activity("undo", "/d", rule_id="r1", folder_id="f1", timestamp=NOW)
    store.append_activity("delete", "/e", rule_id="r2", folder_id="f2", timestamp=NOW)

    stats = {item.rule_id: item for item in store.get_rule_execution_stats(since)}
    scoped = store.get_rule_execution_stats(since, folder_id="f2")

    assert stats["r1"].runs_since == 1
    assert stats["r1"].last_run == NOW
    assert stats["r2"].runs_since == 1
    assert [item.rule_id for item in scoped] == ["r2"]


# ---- Undo and storage ----


def test_expired_and_archived_undo(store: Store) -> None:
    with store.transaction() as tx:
        tx.insert_undo(
            undo_id="old",
            original_path="/a",
            staged_path="/trash/old_a",
            action="delete",
            created_at=NOW - timedelta(days=10),
            expires_at=NOW - timedelta(days=3),
        )
        tx.insert_undo(
            undo_id="new",
            original_path="/b",
            staged_path="/trash/new_b",
            action="delete",
            created_at=NOW,
            expires_at=NOW + timedelta(days=7),
        )

    assert [entry.id for entry in store.expired_undo(NOW)] == ["old"]
    with store.transaction() as tx:
        tx.claim_purge("old", NOW - timedelta(days=40))

    assert store.expired_undo(NOW) == []
    assert store.prune_archived_undo(NOW - timedelta(days=30)) == 1
    assert store.get_undo("old") is None
    assert store.get_undo("new") is not None


def test_size_cap_prunes_activity_before_undo(store: Store) -> None:
    for index in range(3):
        store.append_activity("move", f"/{index}.txt", timestamp=NOW + timedelta(seconds=index))
    with store.transaction() as tx:
        tx.insert_undo(
            undo_id="live",
            original_path="/x",
            staged_path="/trash/live_x",
            action="delete",
            created_at=NOW,
            expires_at=NOW + timedelta(days=7),
        )

    # One unit of fixed overhead so only an empty log and undo table fit under the cap.
    def rows() -> int:
        with store.transaction() as tx:
            counts = tx.row_counts()
        return 1 + counts["activity_log"] + counts["undo_history"]

    report = store.enforce_size_limit(1, measure=rows)

    assert report.activity_rows == 3
    assert report.archived_undo_rows == 0
    assert report.active_undo_rows == 1
    assert report.staged_paths == ["/trash/live_x"]
    assert report.vacuumed


def test_size_cap_is_noop_under_limit(store: Store) -> None:
    store.append_activity("move", "/a.txt", timestamp=NOW)

    report = store.enforce_size_limit(10, measure=lambda: 5)

    assert report.total == 0
    assert not report.vacuumed
    assert store.count_activity() == 1


def test_stats_report_rows_and_trash(tmp_path: Path, store: Store) -> None:
    trash_dir = tmp_path / "trash"
    trash_dir.mkdir()
    (trash_dir / "x_a.txt").write_bytes(b"12345")
    store.append_activity("move", "/a.txt", timestamp=NOW)

    stats = store.get_stats(trash_dir)

    assert stats.trash_files == 1
    assert stats.trash_bytes == 5
    assert stats.row_counts["activity_log"] == 1
    assert stats.database_bytes > 0


def _insert_live_undo(store: Store, undo_id: str = "u1") -> None:
    with store.transaction() as tx:
        tx.insert_undo(
            undo_id=undo_id,
            original_path="/a",
            staged_path=f"/trash/{undo_id}_a",
            action="delete",
            created_at=NOW,
            expires_at=NOW + timedelta(days=7),
        )


def test_restore_claim_is_exclusive_across_connections(tmp_path: Path, store: Store) -> None:
    _insert_live_undo(store)
    other = Store(tmp_path / "declutter.db")
    try:
        with other.transaction() as tx:
            assert tx.claim_restore("u1", NOW)
        with store.transaction() as tx:
            assert not tx.claim_restore("u1", NOW)
            assert not tx.claim_purge("u1", NOW)
        with other.transaction() as tx:
            tx.release_restore("u1")
        with store.transaction() as tx:
            assert tx.claim_purge("u1", NOW + timedelta(days=8))
    finally:
        other.close()

    entry = store.get_undo("u1")
    assert entry is not None
    assert not entry.restored
    assert entry.purged_at == NOW + timedelta(days=8)


def test_restore_claim_refuses_expired_entry(store: Store) -> None:
    _insert_live_undo(store)

    with store.transaction() as tx:
        assert not tx.claim_restore("u1", NOW + timedelta(days=7, seconds=1))
        assert not tx.claim_restore("missing", NOW)


def test_lease_blocks_other_holder_until_expiry(tmp_path: Path, store: Store) -> None:
    ttl = timedelta(minutes=30)
    other = Store(tmp_path / "declutter.db")
    try:
        assert store.acquire_lease("job", "a", NOW, ttl)
        assert not other.acquire_lease("job", "b", NOW + timedelta(minutes=10), ttl)
        # Re-entry by the same holder extends the lease.
        assert store.acquire_lease("job", "a", NOW + timedelta(minutes=20), ttl)
        assert not other.acquire_lease("job", "b", NOW + timedelta(minutes=40), ttl)
        # A stale lease is taken over.
        assert other.acquire_lease("job", "b", NOW + timedelta(minutes=51), ttl)
        assert not store.release_lease("job", "a")
        assert other.release_lease("job", "b")
        assert store.acquire_lease("job", "a", NOW + timedelta(minutes=52), ttl)
    finally:
        other.close()
