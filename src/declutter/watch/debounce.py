"""Debounce arena promoting raw filesystem activity to stable file-ready signals.

Each observed path moves through ``Pending -> Stable -> Delivered``. A raw
create/modify event (re)enters ``Pending`` with the current size and mtime; a
periodic ``sweep`` delivers the path once both have stayed unchanged for the
debounce interval. Files still held open by another process stay pending.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from declutter.fsops import FileSnapshot, is_locked, snapshot

StatFn = Callable[[Path], Optional[FileSnapshot]]
LockProbe = Callable[[Path], bool]


@dataclass(slots=True)
class PendingState:
    """Per-path debounce state.

    Attributes:
        folder_id: Watched folder that reported the path.
        size: Size at the last observation.
        mtime_ns: Modification time at the last observation.
        since: Monotonic time the current size/mtime were first seen.
        attempt: Delivery attempt number; raised when a locked file is retried.
        not_before: Monotonic time before which the path is not delivered.
    """

    folder_id: str
    size: int
    mtime_ns: int
    since: float
    attempt: int = 0
    not_before: float = 0.0


@dataclass(slots=True, frozen=True)
class ReadyFile:
    """File that has been stable for the debounce interval."""

    folder_id: str
    path: Path
    attempt: int = 0


class DebounceTracker:
    """Arena of ``path -> PendingState`` swept by a single periodic tick."""

    def __init__(
        self,
        debounce_seconds: float,
        *,
        stat: StatFn = snapshot,
        lock_probe: LockProbe = is_locked,
    ) -> None:
        self._debounce = debounce_seconds
        self._stat = stat
        self._lock_probe = lock_probe
        self._pending: Dict[Path, PendingState] = {}
        self._lock = threading.Lock()

    @property
    def debounce_seconds(self) -> float:
        return self._debounce

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._pending

    def observe(self, folder_id: str, path: Path, now: float) -> None:
        """Record raw activity on ``path``, resetting its quiet period."""
        current = self._stat(path)
        with self._lock:
            if current is None:
                self._pending.pop(path, None)
                return
            self._pending[path] = PendingState(
                folder_id=folder_id,
                size=current.size,
                mtime_ns=current.mtime_ns,
                since=now,
            )

    def defer(self, ready: ReadyFile, now: float, delay: float) -> None:
        """Put a delivered file back into the arena for another attempt after ``delay``."""
        current = self._stat(ready.path)
        if current is None:
            return
        with self._lock:
            self._pending[ready.path] = PendingState(
                folder_id=ready.folder_id,
                size=current.size,
                mtime_ns=current.mtime_ns,
                since=now,
                attempt=ready.attempt + 1,
                not_before=now + delay,
            )

    def cancel(self, path: Path) -> bool:
        """Forget ``path`` (deleted or renamed away)."""
        with self._lock:
            return self._pending.pop(path, None) is not None

    def cancel_folder(self, folder_id: str) -> int:
        """Forget every pending path reported by ``folder_id``."""
        with self._lock:
            doomed = [path for path, state in self._pending.items() if state.folder_id == folder_id]
            for path in doomed:
                del self._pending[path]
        return len(doomed)

    def sweep(self, now: float) -> List[ReadyFile]:
        """Promote quiet, unchanged, unlocked paths and return them for delivery."""
        with self._lock:
            due = [
                (path, state)
                for path, state in self._pending.items()
                if now >= state.not_before and now - state.since >= self._debounce
            ]

        ready: List[ReadyFile] = []
        for path, state in due:
            current = self._stat(path)
            locked = current is not None and self._lock_probe(path)
            with self._lock:
                if self._pending.get(path) is not state:
                    continue
                if current is None:
                    del self._pending[path]
                    continue
                if (current.size, current.mtime_ns) != (state.size, state.mtime_ns):
                    state.size = current.size
                    state.mtime_ns = current.mtime_ns
                    state.since = now
                    continue
                if locked:
                    state.since = now
                    continue
                del self._pending[path]
            ready.append(ReadyFile(folder_id=state.folder_id, path=path, attempt=state.attempt))
        return ready


__all__ = ["PendingState", "ReadyFile", "DebounceTracker"]
