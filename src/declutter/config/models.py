"""Configuration models describing Declutter settings."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from declutter.rules.models import WatchedFolder, path_key


class DeclutterBaseModel(BaseModel):
    """Shared configuration for Declutter Pydantic models."""

    model_config = ConfigDict(extra="forbid")


class GeneralSettings(DeclutterBaseModel):
    """Scheduling, retention, and storage settings.

    Attributes:
        scan_interval_minutes: Minutes between periodic deletion-scheduler ticks.
        deletion_time_hour: Local hour (0-23) for the daily bulk deletion sweep;
            ``None`` runs a pass on every tick.
        log_retention_days: Activity log entries older than this are pruned.
        max_storage_mb: Cap on the database size; 0 disables the cap.
        undo_retention_days: Grace period during which safe-deleted files can be restored.
        conflict_resolution: Strategy when a move destination already holds the name.
    """

    scan_interval_minutes: int = Field(default=5, ge=1)
    deletion_time_hour: Optional[int] = Field(default=3, ge=0, le=23)
    log_retention_days: int = Field(default=30, ge=1)
    max_storage_mb: int = Field(default=2048, ge=0)
    undo_retention_days: int = Field(default=7, ge=1)
    conflict_resolution: Literal["append_number", "timestamp", "skip"] = "append_number"


class WatchSettings(DeclutterBaseModel):
    """Filesystem monitor timing.

    Attributes:
        debounce_seconds: Quiet period a file must stay unchanged before delivery.
        tick_seconds: Interval between debounce sweeps.
        locked_retry_attempts: Attempts before a locked file is logged as failed.
        locked_retry_initial_seconds: First backoff delay for locked files.
        locked_retry_max_seconds: Ceiling for the exponential backoff.
        maintenance_interval_minutes: Minutes between maintenance passes.
        config_poll_seconds: Interval at which a running service checks the settings
            file for edits made by other processes.
    """

    debounce_seconds: float = Field(default=3.0, gt=0)
    tick_seconds: float = Field(default=0.5, gt=0)
    locked_retry_attempts: int = Field(default=5, ge=0)
    locked_retry_initial_seconds: float = Field(default=2.0, gt=0)
    locked_retry_max_seconds: float = Field(default=60.0, gt=0)
    maintenance_interval_minutes: int = Field(default=60, ge=1)
    config_poll_seconds: float = Field(default=2.0, gt=0)


class LoggingSettings(DeclutterBaseModel):
    """Runtime logging configuration.

    Attributes:
        level: Logging verbosity level.
        max_size_mb: Maximum log size before rotation.
        backup_count: Number of historical log files to retain.
    """

    level: str = "WARNING"
    max_size_mb: int = 10
    backup_count: int = 5


class DeclutterConfig(DeclutterBaseModel):
    """Top-level settings document.

    Attributes:
        settings: Scheduling, retention, and storage settings.
        watch: Filesystem monitor timing.
        logging: Logging configuration.
        folders: Watched folders with their ordered rule sets.
    """

    settings: GeneralSettings = Field(default_factory=GeneralSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    folders: List[WatchedFolder] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_enabled_paths(self) -> "DeclutterConfig":
        seen: set[str] = set()
        ids: set[str] = set()
        for folder in self.folders:
            if folder.id in ids:
                raise ValueError(f"Duplicate folder id {folder.id!r}.")
            ids.add(folder.id)
            if not folder.enabled:
                continue
            key = path_key(folder.path)
            if key in seen:
                raise ValueError(f"Folder {folder.path} is watched more than once.")
            seen.add(key)
        return self

    def find_folder(self, folder_id: str) -> Optional[WatchedFolder]:
        """Return the folder with ``folder_id`` or None."""
        for folder in self.folders:
            if folder.id == folder_id:
                return folder
        return None


__all__ = [
    "DeclutterBaseModel",
    "GeneralSettings",
    "WatchSettings",
    "LoggingSettings",
    "DeclutterConfig",
]
