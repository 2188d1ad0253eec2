"""First-match-wins rule evaluation and action execution for a single file."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from declutter.conditions import evaluate, glob_match
from declutter.errors import FileLockedError, FileOperationError
from declutter.fsops import is_within, move_into, relocate, snapshot
from declutter.store import Store, StoreError
from declutter.trash import TrashService

from .models import DeleteAction, MoveAction, Rule, WatchedFolder

LOGGER = logging.getLogger(__name__)

FolderLookup = Callable[[Path], Optional[WatchedFolder]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RuleOutcome:
    """Result of applying a folder's rules to one file.

    Attributes:
        rule: Rule that matched.
        action: ``move``, ``delete`` or ``schedule_delete``.
        path: File the rule matched.
        destination: Final path for moves, staging path for deletions.
        changed: False when nothing new happened (deletion already scheduled,
            move skipped, or the action failed).
        failed: True when the action failed and a failure entry was logged.
        detail: Failure or conflict description.
    """

    rule: Rule
    action: str
    path: Path
    destination: Optional[Path] = None
    changed: bool = True
    failed: bool = False
    detail: Optional[str] = None


def relative_candidate(folder: WatchedFolder, path: Path) -> str:
    """Return ``path`` relative to the folder root in POSIX form (or its name)."""
    try:
        return path.relative_to(folder.root).as_posix()
    except ValueError:
        return path.name


def matches_whitelist(patterns: Iterable[str], name: str, relative: str, use_relative: bool) -> bool:
    """Return True when any whitelist glob matches the name (or relative path)."""
    for pattern in patterns:
        if glob_match(pattern, name):
            return True
        if use_relative and glob_match(pattern, relative):
            return True
    return False


class RuleApplier:
    """Evaluate a folder's rules against a file and execute the first match."""

    def __init__(
        self,
        store: Store,
        trash: TrashService,
        *,
        conflict_resolution: str = "append_number",
        folder_lookup: FolderLookup | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the applier.

        Args:
            store: Shared persistent store.
            trash: Safe-delete service for immediate deletions.
            conflict_resolution: Name-collision strategy for moves.
            folder_lookup: Maps a path to the enabled watched folder containing it,
                used to index files moved into another watched folder.
            clock: Source of aware UTC timestamps.
        """
        self._store = store
        self._trash = trash
        self._conflict_resolution = conflict_resolution
        self._folder_lookup = folder_lookup
        self._clock = clock

    @property
    def conflict_resolution(self) -> str:
        return self._conflict_resolution

    @conflict_resolution.setter
    def conflict_resolution(self, value: str) -> None:
        self._conflict_resolution = value

    def select_rule(self, folder: WatchedFolder, path: Path) -> Optional[Rule]:
        """Return the first enabled, non-whitelisted rule whose condition matches.

        A whitelist hit skips only the rule being examined; evaluation moves on
        to the next rule. A move rule never matches files already inside its
        own destination.
        """
        name = path.name
        relative = relative_candidate(folder, path)
        folder_exempt = matches_whitelist(folder.whitelist, name, relative, folder.recursive)
        for rule in folder.rules:
            if not rule.enabled:
                continue
            if folder_exempt:
                continue
            if matches_whitelist(rule.whitelist, name, relative, rule.match_subdirectories):
                continue
            if isinstance(rule.action, MoveAction) and is_within(path, rule.action.destination_path):
                continue
            candidate = relative if rule.match_subdirectories else name
            if evaluate(rule.tree, candidate):
                return rule
        return None

    def apply(
        self,
        folder: WatchedFolder,
        path: Path,
        *,
        final_attempt: bool = True,
        now: Optional[datetime] = None,
    ) -> Optional[RuleOutcome]:
        """Track ``path`` and execute the action of the first matching rule.

        Args:
            folder: Watched folder owning the file.
            path: File to evaluate.
            final_attempt: When False a locked file raises ``FileLockedError`` so
                the caller can retry; when True it is logged as a failure.
            now: Override for the current time.

        Returns:
            Optional[RuleOutcome]: None when the file is gone, exempt, or matched
            no rule.

        Raises:
            FileLockedError: If the file is locked and ``final_attempt`` is False.
            StoreError: If bookkeeping could not be committed.
        """
        current = snapshot(path)
        if current is None:
            self._store.remove_file(path)
            return None

        now = now or self._clock()
        with self._store.transaction() as tx:
            entry, _created = tx.upsert_file(
                path, folder.id, size=current.size, last_modified=current.modified_at, now=now
            )
        if entry.exempt:
            return None

        rule = self.select_rule(folder, path)
        if rule is None:
            return None

        action = rule.action
        try:
            if isinstance(action, MoveAction):
                return self._move(folder, rule, action, path, now)
            if action.after_days == 0:
                undo = self._trash.safe_delete(
                    path,
                    folder_id=folder.id,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    now=now,
                )
                return RuleOutcome(
                    rule=rule, action="delete", path=path, destination=Path(undo.staged_path)
                )
            return self._schedule(folder, rule, action, path, entry.first_seen, now)
        except FileLockedError as exc:
            if not final_attempt:
                raise
            return self._record_failure(folder, rule, path, exc)
        except FileOperationError as exc:
            return self._record_failure(folder, rule, path, exc)

    def record_failure(
        self, folder: WatchedFolder, path: Path, error: Exception, rule: Rule | None = None
    ) -> None:
        """Append a failed activity entry for ``path``."""
        action = "unknown"
        if rule is not None:
            action = "move" if isinstance(rule.action, MoveAction) else "delete"
        try:
            self._store.append_activity(
                action,
                path,
                result="failure",
                folder_id=folder.id,
                rule_id=rule.id if rule else None,
                rule_name=rule.name if rule else None,
                detail=str(error),
            )
        except StoreError as exc:
            LOGGER.error("Unable to record failure for %s: %s", path, exc)

    # ---- Actions ----

    def _move(
        self,
        folder: WatchedFolder,
        rule: Rule,
        action: MoveAction,
        path: Path,
        now: datetime,
    ) -> RuleOutcome:
        result = move_into(path, action.destination_path, self._conflict_resolution)
        if result.skipped or result.destination is None:
            self._store.append_activity(
                "move",
                path,
                result="failure",
                folder_id=folder.id,
                rule_id=rule.id,
                rule_name=rule.name,
                detail=result.note,
            )
            return RuleOutcome(
                rule=rule, action="move", path=path, changed=False, failed=True, detail=result.note
            )

        destination = result.destination
        target_folder = self._folder_lookup(destination) if self._folder_lookup else None
        moved = snapshot(destination)
        try:
            with self._store.transaction() as tx:
                tx.remove_file(path)
                if target_folder is not None and moved is not None:
                    tx.upsert_file(
                        destination,
                        target_folder.id,
                        size=moved.size,
                        last_modified=moved.modified_at,
                        now=now,
                    )
                tx.append_activity(
                    "move",
                    path,
                    folder_id=folder.id,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    destination=destination,
                    detail=result.note,
                    timestamp=now,
                )
                tx.touch_rule(rule.id, folder.id, now)
        except StoreError:
            try:
                relocate(destination, path)
            except FileOperationError as exc:
                LOGGER.error("Unable to roll back move %s -> %s: %s", path, destination, exc)
            raise
        LOGGER.info("Rule %r moved %s -> %s", rule.name, path, destination)
        return RuleOutcome(
            rule=rule, action="move", path=path, destination=destination, detail=result.note
        )

    def _schedule(
        self,
        folder: WatchedFolder,
        rule: Rule,
        action: DeleteAction,
        path: Path,
        first_seen: datetime,
        now: datetime,
    ) -> RuleOutcome:
        due_at = first_seen + timedelta(days=action.after_days)
        with self._store.transaction() as tx:
            scheduled = tx.schedule_deletion(path, due_at=due_at, rule_id=rule.id, rule_name=rule.name)
            if scheduled:
                tx.append_activity(
                    "schedule_delete",
                    path,
                    folder_id=folder.id,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    detail=f"Due {due_at.isoformat()}",
                    timestamp=now,
                )
                tx.touch_rule(rule.id, folder.id, now)
        if scheduled:
            LOGGER.info("Rule %r scheduled %s for deletion at %s", rule.name, path, due_at)
        return RuleOutcome(rule=rule, action="schedule_delete", path=path, changed=scheduled)

    def _record_failure(
        self, folder: WatchedFolder, rule: Rule, path: Path, error: Exception
    ) -> RuleOutcome:
        LOGGER.warning("Rule %r failed on %s: %s", rule.name, path, error)
        self.record_failure(folder, path, error, rule)
        action = "move" if isinstance(rule.action, MoveAction) else "delete"
        return RuleOutcome(
            rule=rule, action=action, path=path, changed=False, failed=True, detail=str(error)
        )


__all__ = [
    "RuleApplier",
    "RuleOutcome",
    "relative_candidate",
    "matches_whitelist",
]
