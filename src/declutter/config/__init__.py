"""Configuration management for Declutter."""

from __future__ import annotations

import codecs
import os
import textwrap
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from declutter.rules.models import WatchedFolder

from .exceptions import ConfigError
from .models import (
    DeclutterConfig,
    GeneralSettings,
    LoggingSettings,
    WatchSettings,
)
from .resolver import ENV_PREFIX, env_overrides_from, resolve_with_precedence

DEFAULT_CONFIG_PATH = Path("~/.declutter/config.yaml")
_CONFIG_HEADER = textwrap.dedent(
    """\
    # Declutter configuration file
    # Generated automatically; manage via `declutter folders`, `declutter rules`,
    # `declutter config set`, or `declutter config edit`.
    """
)
_BOMS = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


class ConfigManager:
    """Load and persist the settings document, applying precedence rules."""

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._config_path = (config_path or DEFAULT_CONFIG_PATH).expanduser()
        self._env = env if env is not None else os.environ

    @property
    def config_path(self) -> Path:
        """Return the resolved configuration path."""
        return self._config_path

    @property
    def data_dir(self) -> Path:
        """Return the directory holding the database, trash staging, and logs."""
        return self._config_path.parent

    def load(
        self,
        *,
        cli_overrides: Mapping[str, Any] | None = None,
        include_env: bool = True,
        ensure_file: bool = True,
        env_overrides: Mapping[str, str] | None = None,
    ) -> DeclutterConfig:
        """Load configuration data from disk, applying precedence rules.

        Args:
            cli_overrides: Dotted-key overrides supplied on the command line.
            include_env: Whether ``DECLUTTER__`` environment variables apply.
            ensure_file: Create a default document first when none exists.
            env_overrides: Explicit environment mapping used instead of ``os.environ``.

        Returns:
            DeclutterConfig: Validated configuration.

        Raises:
            ConfigError: If the document cannot be parsed or validated.
        """
        if ensure_file:
            self.ensure_exists()

        file_data = self._read_file()
        env_data: Mapping[str, str] | None
        if include_env:
            env_data = env_overrides if env_overrides is not None else self._env
        else:
            env_data = None

        return resolve_with_precedence(
            defaults=DeclutterConfig(),
            file_overrides=file_data,
            env_overrides=env_overrides_from(env_data) if env_data else None,
            cli_overrides=cli_overrides,
        )

    def load_file_overrides(self) -> dict[str, Any]:
        """Return raw overrides stored on disk."""
        return self._read_file()

    def save(self, config: DeclutterConfig | Mapping[str, Any]) -> None:
        """Persist configuration data to disk."""
        data = self._coerce_to_dict(config)
        self._write_file(data, include_header=True)

    def save_folders(self, folders: Iterable[WatchedFolder]) -> None:
        """Rewrite only the ``folders`` section, leaving other file values untouched.

        Environment and CLI overrides active in the running process are never
        written back this way.
        """
        data = self._read_file()
        data["folders"] = [folder.model_dump(mode="json") for folder in folders]
        self._write_file(data, include_header=True)

    def ensure_exists(self) -> Path:
        """Create a configuration file with defaults if one does not exist."""
        path = self._config_path
        if path.exists():
            return path

        self._write_file(DeclutterConfig().model_dump(mode="json"), include_header=True)
        return path

    def read_text(self) -> str:
        """Return the current configuration file contents."""
        if not self._config_path.exists():
            return ""
        return self._config_path.read_text(encoding="utf-8")

    def export_to(self, destination: Path) -> Path:
        """Write the stored settings document (without overrides) to ``destination``."""
        data = self._read_file() if self._config_path.exists() else DeclutterConfig().model_dump(
            mode="json"
        )
        destination = destination.expanduser()
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return destination

    def import_from(self, source: Path) -> DeclutterConfig:
        """Replace the settings document with the contents of ``source``.

        The file may be UTF-8 or UTF-16 and may start with a byte-order mark, as
        editors on Windows commonly produce.

        Raises:
            ConfigError: If the file cannot be read, parsed, or validated. The
                existing document is left untouched in that case.
        """
        try:
            raw = source.expanduser().read_bytes()
        except OSError as exc:
            raise ConfigError(f"Unable to read {source}: {exc}") from exc

        data = self._parse_yaml(_decode_document(raw), origin=str(source))
        config = resolve_with_precedence(defaults=DeclutterConfig(), file_overrides=data)
        self._write_file(config.model_dump(mode="json"), include_header=True)
        return config

    # Internal helpers -------------------------------------------------

    def _coerce_to_dict(self, value: DeclutterConfig | Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(value, DeclutterConfig):
            return value.model_dump(mode="json")
        return dict(value)

    def _read_file(self) -> dict[str, Any]:
        if not self._config_path.exists():
            return {}
        return self._parse_yaml(
            _decode_document(self._config_path.read_bytes()), origin=str(self._config_path)
        )

    def _parse_yaml(self, text: str, *, origin: str) -> dict[str, Any]:
        try:
            raw = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Failed to parse configuration file {origin}: {exc}") from exc

        if not isinstance(raw, dict):
            raise ConfigError("Configuration file must contain a mapping at the top level.")

        return raw

    def _write_file(self, data: Mapping[str, Any], *, include_header: bool = False) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        serialized = yaml.safe_dump(dict(data), sort_keys=False, allow_unicode=True)
        header = _CONFIG_HEADER if include_header else ""
        stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        timestamp = f"# Last updated: {stamp}\n"
        tmp_path = self._config_path.with_suffix(".yaml.tmp")
        tmp_path.write_text(header + timestamp + serialized, encoding="utf-8")
        os.replace(tmp_path, self._config_path)


def _decode_document(raw: bytes) -> str:
    for bom, encoding in _BOMS:
        if raw.startswith(bom):
            return raw.decode(encoding)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigError(f"Configuration file is not valid UTF-8: {exc}") from exc


__all__ = [
    "ConfigManager",
    "DEFAULT_CONFIG_PATH",
    "ENV_PREFIX",
    "DeclutterConfig",
    "GeneralSettings",
    "WatchSettings",
    "LoggingSettings",
    "resolve_with_precedence",
    "env_overrides_from",
    "ConfigError",
]
