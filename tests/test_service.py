"""Tests for the service facade behind the command surface."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from declutter.config import ConfigManager, DeclutterConfig, WatchSettings
from declutter.errors import (
    DeletionNotFoundError,
    DuplicateFolderError,
    FolderNotFoundError,
    RuleNotFoundError,
    ServiceError,
)
from declutter.rules import DeleteAction, MoveAction, Rule
from declutter.service import DeclutterService

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def service(tmp_path: Path):
    manager = ConfigManager(config_path=tmp_path / "home" / ".declutter" / "config.yaml", env={})
    instance = DeclutterService(manager, clock=lambda: NOW)
    yield instance
    instance.close()


def _inbox(tmp_path: Path, name: str = "inbox") -> Path:
    path = tmp_path / name
    path.mkdir(parents=True, exist_ok=True)
    return path


def _rule(name: str, condition: str = "*", **extra) -> Rule:
    return Rule(name=name, condition_text=condition, action=DeleteAction(after_days=3), **extra)


def test_add_folder_persists_and_rejects_duplicates(tmp_path: Path, service: DeclutterService) -> None:
    inbox = _inbox(tmp_path)

    folder = service.add_folder(inbox, recursive=True, whitelist=["*.keep"])

    assert folder.path == str(inbox.resolve())
    reloaded = service.manager.load()
    assert [item.id for item in reloaded.folders] == [folder.id]
    assert reloaded.folders[0].whitelist == ["*.keep"]
    with pytest.raises(DuplicateFolderError):
        service.add_folder(inbox)


def test_add_folder_requires_existing_directory(tmp_path: Path, service: DeclutterService) -> None:
    with pytest.raises(ServiceError):
        service.add_folder(tmp_path / "missing")


def test_disabled_duplicate_is_allowed_but_cannot_be_enabled(
    tmp_path: Path, service: DeclutterService
) -> None:
    inbox = _inbox(tmp_path)
    service.add_folder(inbox)
    twin = service.add_folder(inbox, enabled=False)

    with pytest.raises(DuplicateFolderError):
        service.set_folder_enabled(twin.id, True)


def test_unknown_ids_raise_not_found(service: DeclutterService, tmp_path: Path) -> None:
    folder = service.add_folder(_inbox(tmp_path))

    with pytest.raises(FolderNotFoundError):
        service.get_folder("nope")
    with pytest.raises(RuleNotFoundError):
        service.get_rule(folder.id, "nope")


def test_rule_crud_and_reorder(tmp_path: Path, service: DeclutterService) -> None:
    folder = service.add_folder(_inbox(tmp_path))
    first = service.add_rule(folder.id, _rule("first", "*.pdf"))
    second = service.add_rule(folder.id, _rule("second", "*.zip"))
    top = service.add_rule(folder.id, _rule("top"), position=0)

    assert [rule.name for rule in service.list_rules(folder.id)] == ["top", "first", "second"]
    assert service.get_rule_metadata(first.id) is not None

    service.reorder_rules(folder.id, [second.id, first.id, top.id])
    assert [rule.name for rule in service.list_rules(folder.id)] == ["second", "first", "top"]

    with pytest.raises(ServiceError):
        service.reorder_rules(folder.id, [second.id, first.id])
    with pytest.raises(ServiceError):
        service.reorder_rules(folder.id, [second.id, second.id, top.id])

    service.delete_rule(folder.id, top.id)
    assert [rule.id for rule in service.list_rules(folder.id)] == [second.id, first.id]
    assert service.get_rule_metadata(top.id) is None


def test_update_rule_revalidates(tmp_path: Path, service: DeclutterService) -> None:
    folder = service.add_folder(_inbox(tmp_path))
    rule = service.add_rule(folder.id, _rule("logs", "*.log"))

    updated = service.update_rule(
        folder.id,
        rule.id,
        condition_text="*.log or *.tmp",
        action={"type": "move", "destination": str(tmp_path / "old-logs")},
    )

    assert updated.id == rule.id
    assert updated.condition_text == "*.log OR *.tmp"
    assert isinstance(updated.action, MoveAction)
    with pytest.raises(ValidationError):
        service.update_rule(folder.id, rule.id, condition_text="*.log AND")
    assert service.get_rule(folder.id, rule.id).condition_text == "*.log OR *.tmp"


def test_copy_rules_assigns_fresh_ids(tmp_path: Path, service: DeclutterService) -> None:
    source = service.add_folder(_inbox(tmp_path, "a"))
    target = service.add_folder(_inbox(tmp_path, "b"))
    original = service.add_rule(source.id, _rule("shared", "*.iso"))

    [copy] = service.copy_rules(source.id, target.id)

    assert copy.id != original.id
    assert copy.name == "shared"
    assert [rule.id for rule in service.list_rules(target.id)] == [copy.id]


def test_remove_folder_forgets_index_and_metadata(tmp_path: Path, service: DeclutterService) -> None:
    inbox = _inbox(tmp_path)
    folder = service.add_folder(inbox)
    rule = service.add_rule(folder.id, _rule("zips", "*.zip"))
    (inbox / "a.zip").write_text("x", encoding="utf-8")
    service.scan_folder(folder.id)

    service.remove_folder(folder.id)

    assert service.list_folders() == []
    assert service.get_scheduled_deletions() == []
    assert service.get_rule_metadata(rule.id) is None


def test_scan_counts_actions_and_skips_unmatched(tmp_path: Path, service: DeclutterService) -> None:
    inbox = _inbox(tmp_path)
    folder = service.add_folder(inbox)
    service.add_rule(
        folder.id,
        Rule(name="pdfs", condition_text="*.pdf", action=MoveAction(destination=str(tmp_path / "pdfs"))),
    )
    (inbox / "a.pdf").write_text("1", encoding="utf-8")
    (inbox / "b.pdf").write_text("2", encoding="utf-8")
    (inbox / "notes.txt").write_text("3", encoding="utf-8")

    assert service.scan_folder(folder.id) == 2
    assert sorted(path.name for path in (tmp_path / "pdfs").iterdir()) == ["a.pdf", "b.pdf"]
    assert (inbox / "notes.txt").exists()
    logged = service.store.count_activity()
    assert service.scan_all() == 0
    assert service.store.count_activity() == logged


def test_non_recursive_scan_ignores_subdirectories(tmp_path: Path, service: DeclutterService) -> None:
    inbox = _inbox(tmp_path)
    (inbox / "nested").mkdir()
    (inbox / "nested" / "deep.zip").write_text("x", encoding="utf-8")
    folder = service.add_folder(inbox)
    service.add_rule(folder.id, _rule("zips", "*.zip"))

    assert service.scan_folder(folder.id) == 0

    service.set_folder_recursive(folder.id, True)
    assert service.scan_folder(folder.id) == 1


def test_cancel_scheduled_deletion_logs_activity(tmp_path: Path, service: DeclutterService) -> None:
    inbox = _inbox(tmp_path)
    folder = service.add_folder(inbox)
    service.add_rule(folder.id, _rule("zips", "*.zip"))
    (inbox / "a.zip").write_text("x", encoding="utf-8")
    service.scan_folder(folder.id)
    [pending] = service.get_scheduled_deletions(folder.id)

    cancelled = service.cancel_scheduled_deletion(pending.id)

    assert cancelled.exempt
    assert service.get_scheduled_deletions() == []
    assert service.get_activity_log(limit=1)[0].action == "cancel_delete"
    with pytest.raises(DeletionNotFoundError):
        service.cancel_scheduled_deletion(pending.id)
    assert service.scan_folder(folder.id) == 0


def test_immediate_delete_then_undo(tmp_path: Path, service: DeclutterService) -> None:
    inbox = _inbox(tmp_path)
    folder = service.add_folder(inbox)
    service.add_rule(
        folder.id, Rule(name="tmp", condition_text="*.tmp", action=DeleteAction(after_days=0))
    )
    target = inbox / "scratch.tmp"
    target.write_text("x", encoding="utf-8")

    assert service.scan_folder(folder.id) == 1
    [entry] = service.list_undo()
    service.undo(entry.id)

    assert target.exists()
    assert service.list_undo() == []
    assert service.scan_folder(folder.id) == 0


def test_rule_stats_use_current_names(tmp_path: Path, service: DeclutterService) -> None:
    inbox = _inbox(tmp_path)
    folder = service.add_folder(inbox)
    rule = service.add_rule(folder.id, _rule("zips", "*.zip"))
    (inbox / "a.zip").write_text("x", encoding="utf-8")
    service.scan_folder(folder.id)
    service.update_rule(folder.id, rule.id, name="installers")

    [stats] = service.get_rule_execution_stats()

    assert stats.rule_id == rule.id
    assert stats.rule_name == "installers"
    assert stats.runs_since == 1


def test_folder_for_path_prefers_longest_root(tmp_path: Path, service: DeclutterService) -> None:
    outer = service.add_folder(_inbox(tmp_path, "outer"), recursive=True)
    inner = service.add_folder(_inbox(tmp_path, "outer/inner"))

    assert service.folder_for_path(Path(inner.path) / "a.txt") == inner
    assert service.folder_for_path(Path(inner.path) / "sub" / "a.txt") == outer
    assert service.folder_for_path(tmp_path / "elsewhere.txt") is None


def test_import_and_export_round_trip(tmp_path: Path, service: DeclutterService) -> None:
    folder = service.add_folder(_inbox(tmp_path))
    service.add_rule(folder.id, _rule("zips", "*.zip"))
    exported = service.export_config(tmp_path / "backup.yaml")
    service.remove_folder(folder.id)
    exported_text = exported.read_text(encoding="utf-8").replace(
        "undo_retention_days: 7", "undo_retention_days: 2"
    )
    exported.write_text(exported_text, encoding="utf-8")

    config = service.import_config(exported)

    assert [item.id for item in config.folders] == [folder.id]
    assert config.settings.undo_retention_days == 2
    assert service.list_rules(folder.id)[0].name == "zips"


def test_rescanning_scheduled_files_logs_nothing_new(tmp_path: Path, service: DeclutterService) -> None:
    inbox = _inbox(tmp_path)
    folder = service.add_folder(inbox)
    service.add_rule(folder.id, _rule("zips", "*.zip"))
    (inbox / "setup.zip").write_text("x", encoding="utf-8")

    assert service.scan_all() == 1
    logged = service.store.count_activity()
    pending = service.get_scheduled_deletions()

    assert service.scan_all() == 0
    assert service.scan_folder(folder.id) == 0
    assert service.store.count_activity() == logged
    assert service.get_scheduled_deletions() == pending


class FakeObserver:
    """Watchdog observer stand-in recording the scheduled watches."""

    def __init__(self) -> None:
        self.scheduled: dict[int, tuple[str, bool]] = {}
        self._next = 0

    def schedule(self, handler, path: str, recursive: bool = False) -> int:
        self._next += 1
        self.scheduled[self._next] = (path, recursive)
        return self._next

    def unschedule(self, watch: int) -> None:
        self.scheduled.pop(watch)

    def start(self) -> None:
        return None

    def stop(self) -> None:
        return None

    def join(self, timeout: float | None = None) -> None:
        return None


def test_running_service_picks_up_edits_from_another_process(tmp_path: Path) -> None:
    config_path = tmp_path / "home" / ".declutter" / "config.yaml"
    ConfigManager(config_path=config_path, env={}).save(
        DeclutterConfig(watch=WatchSettings(config_poll_seconds=3600))
    )
    observer = FakeObserver()
    daemon = DeclutterService(
        ConfigManager(config_path=config_path, env={}),
        clock=lambda: NOW,
        observer_factory=lambda: observer,
    )
    editor = DeclutterService(ConfigManager(config_path=config_path, env={}), clock=lambda: NOW)
    inbox = _inbox(tmp_path)
    try:
        daemon.start()
        assert not daemon.refresh_config()

        folder = editor.add_folder(inbox)
        rule = editor.add_rule(folder.id, _rule("zips", "*.zip"))

        assert daemon.refresh_config()
        assert [item.id for item in daemon.list_folders()] == [folder.id]
        assert [item.id for item in daemon.list_rules(folder.id)] == [rule.id]
        assert list(observer.scheduled.values()) == [(folder.path, False)]
        assert not daemon.refresh_config()

        editor.remove_folder(folder.id)

        assert daemon.refresh_config()
        assert daemon.list_folders() == []
        assert observer.scheduled == {}
    finally:
        daemon.close()
        editor.close()


def test_own_writes_and_invalid_edits_do_not_trigger_reload(
    tmp_path: Path, service: DeclutterService
) -> None:
    service.add_folder(_inbox(tmp_path))

    assert not service.refresh_config()

    service.manager.config_path.write_text("settings: [unclosed\n", encoding="utf-8")

    assert not service.refresh_config()
    assert len(service.list_folders()) == 1
