"""Merge the settings document with environment and command-line overrides.

Watched folders belong to the settings document: they change through the
folder and rule commands and are written back with ``save_folders``. The
environment and the command line may therefore tune ``settings``, ``watch``
and ``logging`` only. An override touching ``folders`` is rejected, since the
next folder save would otherwise persist it.
"""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from copy import deepcopy
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .exceptions import ConfigError
from .models import DeclutterConfig

ENV_PREFIX = "DECLUTTER__"
DOCUMENT_ONLY_KEYS = frozenset({"folders"})


def resolve_with_precedence(
    *,
    defaults: DeclutterConfig,
    file_overrides: Mapping[str, Any] | None = None,
    env_overrides: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> DeclutterConfig:
    """Merge configuration sources: defaults < file < environment < CLI.

    Args:
        defaults: Baseline configuration.
        file_overrides: Mapping read from the settings document.
        env_overrides: Nested mapping, usually from ``env_overrides_from``.
        cli_overrides: Mapping whose keys may use dotted paths.

    Returns:
        DeclutterConfig: Validated, merged configuration.

    Raises:
        ConfigError: If a source is malformed, an override targets the folder
            list, or the merged result is invalid.
    """
    merged = defaults.model_dump(mode="python")
    for source_name, source in (
        ("file", file_overrides),
        ("environment", env_overrides),
        ("cli", cli_overrides),
    ):
        if source is None:
            continue
        layer = _expand(source, source_name=source_name)
        if source_name != "file":
            _reject_document_keys(layer, source_name)
        merged = _merge(merged, layer)

    try:
        return DeclutterConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration values: {_describe(exc)}") from exc


def env_overrides_from(env: Mapping[str, str], *, prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """Collect ``DECLUTTER__SECTION__KEY`` variables into a nested mapping.

    Values are parsed as YAML so numbers, booleans and ``null`` keep their
    types; a value that is not valid YAML is kept as the raw string.

    Raises:
        ConfigError: If two variables disagree on whether a key is a section.
    """
    overrides: dict[str, Any] = {}
    for key, raw_value in env.items():
        if not key.startswith(prefix):
            continue
        path = [segment.lower() for segment in key[len(prefix) :].split("__") if segment]
        if not path:
            continue
        try:
            value: Any = yaml.safe_load(raw_value)
        except yaml.YAMLError:
            value = raw_value
        _place(overrides, path, value, source_name="environment")
    return overrides


def _expand(source: Mapping[str, Any], *, source_name: str) -> dict[str, Any]:
    if not isinstance(source, MappingABC):
        raise ConfigError(f"{source_name.capitalize()} overrides must be a mapping.")

    expanded: dict[str, Any] = {}
    for key, value in source.items():
        if not isinstance(key, str):
            raise ConfigError(f"{source_name.capitalize()} override keys must be strings.")
        if isinstance(value, MappingABC):
            value = _expand(value, source_name=source_name)
        _place(expanded, key.split("."), value, source_name=source_name)
    return expanded


def _place(target: dict[str, Any], path: list[str], value: Any, *, source_name: str) -> None:
    *parents, leaf = path
    node = target
    for segment in parents:
        child = node.setdefault(segment, {})
        if not isinstance(child, dict):
            raise ConfigError(
                f"{source_name.capitalize()} override for {'.'.join(path)} "
                "conflicts with an existing value."
            )
        node = child
    current = node.get(leaf)
    if isinstance(value, dict) and isinstance(current, dict):
        node[leaf] = _merge(current, value)
    else:
        node[leaf] = value


def _merge(base: Mapping[str, Any], layer: Mapping[str, Any]) -> dict[str, Any]:
    merged = {key: deepcopy(value) for key, value in base.items()}
    for key, value in layer.items():
        current = merged.get(key)
        if isinstance(value, MappingABC) and isinstance(current, MappingABC):
            merged[key] = _merge(current, value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _reject_document_keys(layer: Mapping[str, Any], source_name: str) -> None:
    blocked = sorted(DOCUMENT_ONLY_KEYS.intersection(layer))
    if blocked:
        raise ConfigError(
            f"{source_name.capitalize()} overrides cannot set {', '.join(blocked)}; "
            "change watched folders with the folder and rule commands."
        )


def _describe(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "document"
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


__all__ = ["resolve_with_precedence", "env_overrides_from", "ENV_PREFIX", "DOCUMENT_ONLY_KEYS"]
