"""Filesystem primitives: stat snapshots, conflict-aware moves, lock probing."""

from __future__ import annotations

import errno
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from declutter.errors import FileOperationError, is_lock_error

LOGGER = logging.getLogger(__name__)

CONFLICT_STRATEGIES = ("append_number", "timestamp", "skip")


@dataclass(slots=True, frozen=True)
class FileSnapshot:
    """Size and modification time of a file at one instant.

    Attributes:
        size: Size in bytes.
        mtime_ns: Modification time in nanoseconds since the epoch.
    """

    size: int
    mtime_ns: int

    @property
    def modified_at(self) -> datetime:
        return datetime.fromtimestamp(self.mtime_ns / 1_000_000_000, tz=timezone.utc)


@dataclass(slots=True)
class MoveResult:
    """Outcome of ``move_into``.

    Attributes:
        source: Original path.
        destination: Final path, or None when the move was skipped.
        conflict: Whether the preferred name was already taken.
        skipped: True when the conflict strategy declined the move.
        note: Human-readable description of the conflict handling.
    """

    source: Path
    destination: Optional[Path]
    conflict: bool = False
    skipped: bool = False
    note: Optional[str] = None


def snapshot(path: Path) -> Optional[FileSnapshot]:
    """Return the current size/mtime of a regular file, or None if it is gone."""
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    except OSError as exc:
        LOGGER.debug("Unable to stat %s: %s", path, exc)
        return None
    if not path.is_file():
        return None
    return FileSnapshot(size=stat.st_size, mtime_ns=stat.st_mtime_ns)


def is_locked(path: Path) -> bool:
    """Return True when another process holds ``path`` open exclusively."""
    try:
        with path.open("rb"):
            return False
    except OSError as exc:
        return is_lock_error(exc)


def resolve_destination(source: Path, candidate: Path, strategy: str) -> MoveResult:
    """Pick a free destination name for ``source`` near ``candidate``.

    Strategies:
        ``append_number``: ``report.pdf`` becomes ``report (1).pdf``, ``report (2).pdf``...
        ``timestamp``: ``report-20240131-142500.pdf``, then numbered if still taken.
        ``skip``: give up and report the conflict.

    Args:
        source: File being moved.
        candidate: Preferred destination path.
        strategy: One of ``CONFLICT_STRATEGIES``; unknown values fall back to
            ``append_number``.

    Returns:
        MoveResult: Destination (None when skipped) and conflict metadata.
    """
    normalized = (strategy or "append_number").lower()
    if normalized not in CONFLICT_STRATEGIES:
        normalized = "append_number"

    if not candidate.exists() or candidate == source:
        return MoveResult(source=source, destination=candidate)

    if normalized == "skip":
        note = f"Skipped move of {source} because {candidate} already exists."
        return MoveResult(source=source, destination=None, conflict=True, skipped=True, note=note)

    base = candidate
    if normalized == "timestamp":
        suffix = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        base = candidate.with_name(f"{candidate.stem}-{suffix}{candidate.suffix}")

    final = base
    counter = 1
    while final.exists():
        final = base.with_name(f"{base.stem} ({counter}){base.suffix}")
        counter += 1

    note = f"Resolved name conflict for {source} -> {final} using '{normalized}'."
    return MoveResult(source=source, destination=final, conflict=True, note=note)


def relocate(source: Path, target: Path) -> Path:
    """Move ``source`` to the exact path ``target``.

    Uses an atomic rename when both paths share a volume and falls back to
    copy-then-delete across volumes. ``target`` must not exist.

    Raises:
        FileOperationError: If the move cannot be completed; ``FileLockedError``
            when the file is held open by another process.
    """
    if target.exists():
        raise FileOperationError(f"Destination {target} already exists.", target)
    try:
        os.rename(source, target)
        return target
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise FileOperationError.from_os_error(exc, source, "move") from exc

    try:
        shutil.copy2(source, target)
    except OSError as exc:
        _discard(target)
        raise FileOperationError.from_os_error(exc, source, "copy") from exc
    try:
        source.unlink()
    except OSError as exc:
        _discard(target)
        raise FileOperationError.from_os_error(exc, source, "remove") from exc
    return target


def move_into(source: Path, directory: Path, strategy: str = "append_number") -> MoveResult:
    """Move ``source`` into ``directory``, creating it and resolving name conflicts.

    Raises:
        FileOperationError: If the directory cannot be created or the move fails.
    """
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FileOperationError.from_os_error(exc, directory, "create") from exc

    result = resolve_destination(source, directory / source.name, strategy)
    if result.skipped or result.destination is None:
        return result
    relocate(source, result.destination)
    return result


def path_key(path: str | Path) -> str:
    """Return a comparison key for paths (case-folded where the OS is)."""
    return os.path.normcase(os.path.normpath(str(path)))


def is_within(path: Path, directory: Path) -> bool:
    """Return True when ``path`` lies inside ``directory`` at any depth."""
    parent = path_key(path.parent)
    root = path_key(directory)
    return parent == root or parent.startswith(root.rstrip(os.sep) + os.sep)


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        LOGGER.warning("Unable to remove partial copy %s: %s", path, exc)


__all__ = [
    "CONFLICT_STRATEGIES",
    "FileSnapshot",
    "MoveResult",
    "snapshot",
    "is_locked",
    "resolve_destination",
    "relocate",
    "move_into",
    "path_key",
    "is_within",
]
