"""Tests for rule models and the first-match-wins rule applier."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from declutter.conditions import AlwaysCondition, AndCondition, GlobCondition, NotCondition
from declutter.errors import FileLockedError
from declutter.rules import DeleteAction, MoveAction, Rule, RuleApplier, WatchedFolder
from declutter.store import Store
from declutter.trash import TrashService

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _write(path: Path, content: str = "data") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _move_rule(name: str, condition: str, destination: Path, **extra) -> Rule:
    return Rule(
        name=name, condition_text=condition, action=MoveAction(destination=str(destination)), **extra
    )


def _delete_rule(name: str, condition: str, after_days: int = 0, **extra) -> Rule:
    return Rule(
        name=name, condition_text=condition, action=DeleteAction(after_days=after_days), **extra
    )


@pytest.fixture()
def engine(tmp_path: Path):
    store = Store(tmp_path / "state" / "declutter.db")
    trash = TrashService(store, tmp_path / "state" / "trash_staging", clock=lambda: NOW)
    applier = RuleApplier(store, trash, clock=lambda: NOW)
    yield store, trash, applier
    store.close()


def _folder(root: Path, rules: list[Rule], **extra) -> WatchedFolder:
    root.mkdir(parents=True, exist_ok=True)
    return WatchedFolder(path=str(root), rules=rules, **extra)


# ---- Models ----


def test_condition_text_is_canonicalized() -> None:
    rule = _delete_rule("pdfs", "*.pdf and not draft*")

    assert rule.condition_text == "*.pdf AND NOT draft*"
    assert rule.tree == AndCondition(
        conditions=(
            GlobCondition(pattern="*.pdf"),
            NotCondition(condition=GlobCondition(pattern="draft*")),
        )
    )


def test_condition_tree_alone_derives_text() -> None:
    rule = Rule(
        name="logs",
        condition={"type": "glob", "pattern": "*.log"},
        action={"type": "delete", "after_days": 3},
    )

    assert rule.condition_text == "*.log"
    assert isinstance(rule.action, DeleteAction)
    assert rule.action.after_days == 3


def test_condition_text_wins_over_tree() -> None:
    rule = Rule(
        name="mixed",
        condition={"type": "glob", "pattern": "*.log"},
        condition_text="*.txt",
        action={"type": "delete"},
    )

    assert rule.tree == GlobCondition(pattern="*.txt")


def test_missing_condition_matches_everything() -> None:
    rule = Rule(name="all", action={"type": "delete"})

    assert rule.condition_text == "*"
    assert rule.tree == AlwaysCondition()


def test_invalid_condition_text_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _delete_rule("broken", "*.pdf AND")


def test_move_destination_must_be_absolute() -> None:
    with pytest.raises(ValidationError):
        MoveAction(destination="relative/dir")


def test_negative_delete_days_are_rejected() -> None:
    with pytest.raises(ValidationError):
        DeleteAction(after_days=-1)


# ---- Applier ----


def test_first_matching_rule_wins(tmp_path: Path, engine) -> None:
    store, _trash, applier = engine
    pdfs, everything = tmp_path / "pdfs", tmp_path / "everything"
    folder = _folder(
        tmp_path / "inbox",
        [_move_rule("pdfs", "*.pdf", pdfs), _move_rule("catch-all", "*", everything)],
    )
    source = _write(folder.root / "report.pdf")

    outcome = applier.apply(folder, source)

    assert outcome is not None
    assert outcome.rule.name == "pdfs"
    assert (pdfs / "report.pdf").exists()
    assert not source.exists()
    assert store.get_file(source) is None


def test_reordering_rules_changes_the_winner(tmp_path: Path, engine) -> None:
    _store, _trash, applier = engine
    pdfs, everything = tmp_path / "pdfs", tmp_path / "everything"
    rules = [_move_rule("pdfs", "*.pdf", pdfs), _move_rule("catch-all", "*", everything)]
    folder = _folder(tmp_path / "inbox", list(reversed(rules)))
    source = _write(folder.root / "report.pdf")

    outcome = applier.apply(folder, source)

    assert outcome is not None and outcome.rule.name == "catch-all"
    assert (everything / "report.pdf").exists()


def test_rule_whitelist_skips_only_that_rule(tmp_path: Path, engine) -> None:
    store, _trash, applier = engine
    folder = _folder(
        tmp_path / "inbox",
        [
            _move_rule("archive", "*.pdf", tmp_path / "archive", whitelist=["keep*"]),
            _delete_rule("purge", "*.pdf"),
        ],
    )
    source = _write(folder.root / "keep-me.pdf")

    outcome = applier.apply(folder, source)

    assert outcome is not None
    assert outcome.rule.name == "purge"
    assert outcome.action == "delete"
    assert not source.exists()
    assert outcome.destination is not None and outcome.destination.exists()
    assert len(store.list_undo()) == 1


def test_folder_whitelist_exempts_from_every_rule(tmp_path: Path, engine) -> None:
    store, _trash, applier = engine
    folder = _folder(tmp_path / "inbox", [_delete_rule("purge", "*")], whitelist=["*.keep"])
    source = _write(folder.root / "notes.keep")

    assert applier.apply(folder, source) is None
    assert source.exists()
    assert store.get_file(source) is not None


def test_move_rule_ignores_files_inside_its_destination(tmp_path: Path, engine) -> None:
    _store, _trash, applier = engine
    root = tmp_path / "inbox"
    folder = _folder(root, [_move_rule("sort", "*", root / "sorted")], recursive=True)
    already_sorted = _write(root / "sorted" / "a.txt")

    assert applier.select_rule(folder, already_sorted) is None
    assert applier.apply(folder, already_sorted) is None
    assert already_sorted.exists()


def test_match_subdirectories_uses_relative_path(tmp_path: Path, engine) -> None:
    _store, _trash, applier = engine
    root = tmp_path / "inbox"
    by_path = _delete_rule("docs", "docs/*.pdf", match_subdirectories=True)
    by_name = _delete_rule("docs-name", "docs/*.pdf")
    nested = _write(root / "docs" / "q1.pdf")

    assert applier.select_rule(_folder(root, [by_name], recursive=True), nested) is None
    assert applier.select_rule(_folder(root, [by_path], recursive=True), nested) == by_path


def test_disabled_rules_are_skipped(tmp_path: Path, engine) -> None:
    _store, _trash, applier = engine
    folder = _folder(tmp_path / "inbox", [_delete_rule("off", "*", enabled=False)])
    source = _write(folder.root / "a.txt")

    assert applier.apply(folder, source) is None
    assert source.exists()


def test_delayed_delete_is_scheduled_once(tmp_path: Path, engine) -> None:
    store, _trash, applier = engine
    folder = _folder(tmp_path / "inbox", [_delete_rule("old", "*.zip", after_days=5)])
    source = _write(folder.root / "setup.zip")

    first = applier.apply(folder, source)
    second = applier.apply(folder, source, now=NOW + timedelta(hours=1))

    assert first is not None and first.changed
    assert second is not None and not second.changed
    entry = store.get_file(source)
    assert entry is not None
    assert entry.pending_action == "delete"
    assert entry.due_at == NOW + timedelta(days=5)
    scheduled = [item for item in store.get_activity_log() if item.action == "schedule_delete"]
    assert len(scheduled) == 1
    assert source.exists()


def test_immediate_delete_stages_file_in_trash(tmp_path: Path, engine) -> None:
    store, trash, applier = engine
    folder = _folder(tmp_path / "inbox", [_delete_rule("tmp", "*.tmp")])
    source = _write(folder.root / "scratch.tmp")

    outcome = applier.apply(folder, source)

    assert outcome is not None and outcome.action == "delete"
    assert not source.exists()
    assert outcome.destination is not None and outcome.destination.exists()
    assert outcome.destination.parent == trash.staging_dir
    assert store.get_file(source) is None
    [undo] = store.list_undo()
    assert undo.rule_name == "tmp"


def test_move_records_activity_and_rule_metadata(tmp_path: Path, engine) -> None:
    store, _trash, applier = engine
    rule = _move_rule("images", "*.png", tmp_path / "images")
    folder = _folder(tmp_path / "inbox", [rule])
    source = _write(folder.root / "shot.png")

    applier.apply(folder, source)

    [entry] = store.get_activity_log()
    assert entry.action == "move"
    assert entry.result == "success"
    assert entry.rule_name == "images"
    assert entry.destination == str(tmp_path / "images" / "shot.png")
    metadata = store.get_rule_metadata(rule.id)
    assert metadata is not None
    assert metadata.trigger_count == 1
    assert metadata.last_triggered_at == NOW


def test_move_into_another_watched_folder_indexes_destination(tmp_path: Path, engine) -> None:
    store, trash, _applier = engine
    target = _folder(tmp_path / "sorted", [])
    applier = RuleApplier(store, trash, clock=lambda: NOW, folder_lookup=lambda path: target)
    folder = _folder(tmp_path / "inbox", [_move_rule("sort", "*", target.root)])
    source = _write(folder.root / "a.txt")

    applier.apply(folder, source)

    moved = store.get_file(target.root / "a.txt")
    assert moved is not None
    assert moved.folder_id == target.id


def test_name_conflicts_append_a_number(tmp_path: Path, engine) -> None:
    _store, _trash, applier = engine
    destination = tmp_path / "archive"
    _write(destination / "report.pdf", "existing")
    folder = _folder(tmp_path / "inbox", [_move_rule("archive", "*", destination)])
    source = _write(folder.root / "report.pdf", "new")

    outcome = applier.apply(folder, source)

    assert outcome is not None
    assert outcome.destination == destination / "report (1).pdf"
    assert (destination / "report.pdf").read_text(encoding="utf-8") == "existing"


def test_skip_conflict_strategy_logs_a_failure(tmp_path: Path, engine) -> None:
    store, trash, _applier = engine
    applier = RuleApplier(store, trash, conflict_resolution="skip", clock=lambda: NOW)
    destination = tmp_path / "archive"
    _write(destination / "report.pdf")
    folder = _folder(tmp_path / "inbox", [_move_rule("archive", "*", destination)])
    source = _write(folder.root / "report.pdf")

    outcome = applier.apply(folder, source)

    assert outcome is not None and outcome.failed
    assert source.exists()
    [entry] = store.get_activity_log()
    assert entry.result == "failure"


def test_locked_file_raises_until_final_attempt(
    tmp_path: Path, engine, monkeypatch: pytest.MonkeyPatch
) -> None:
    store, _trash, applier = engine
    folder = _folder(tmp_path / "inbox", [_move_rule("sort", "*", tmp_path / "out")])
    source = _write(folder.root / "busy.txt")

    def _locked(*_args, **_kwargs):
        raise FileLockedError(f"Unable to move {source}: busy", source)

    monkeypatch.setattr("declutter.rules.applier.move_into", _locked)

    with pytest.raises(FileLockedError):
        applier.apply(folder, source, final_attempt=False)
    assert store.get_activity_log() == []

    outcome = applier.apply(folder, source, final_attempt=True)

    assert outcome is not None and outcome.failed
    [entry] = store.get_activity_log()
    assert entry.result == "failure"
    assert "busy" in (entry.detail or "")


def test_vanished_file_is_dropped_from_index(tmp_path: Path, engine) -> None:
    store, _trash, applier = engine
    folder = _folder(tmp_path / "inbox", [_delete_rule("purge", "*", after_days=3)])
    source = _write(folder.root / "temp.txt")
    applier.apply(folder, source)
    source.unlink()

    assert applier.apply(folder, source) is None
    assert store.get_file(source) is None


def test_exempt_files_are_not_reactioned(tmp_path: Path, engine) -> None:
    store, _trash, applier = engine
    folder = _folder(tmp_path / "inbox", [_delete_rule("purge", "*")])
    source = _write(folder.root / "precious.txt")
    with store.transaction() as tx:
        tx.mark_exempt(source, folder.id, size=4, last_modified=NOW, now=NOW)

    assert applier.apply(folder, source) is None
    assert source.exists()
