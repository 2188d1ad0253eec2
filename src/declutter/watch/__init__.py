"""Filesystem monitoring with debounced delivery."""

from .debounce import DebounceTracker, PendingState, ReadyFile
from .monitor import FolderMonitor, ReadyHandler

__all__ = [
    "DebounceTracker",
    "PendingState",
    "ReadyFile",
    "FolderMonitor",
    "ReadyHandler",
]
