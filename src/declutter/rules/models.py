"""Rule, action, and watched-folder models."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from declutter.conditions import (
    AlwaysCondition,
    Condition,
    ConditionSyntaxError,
    parse,
    serialize,
    validate_condition,
)
from declutter.fsops import path_key


def _new_id() -> str:
    return uuid4().hex


def _absolute_path(value: str, *, label: str) -> str:
    text = value.strip()
    if not text:
        raise ValueError(f"{label} must not be empty.")
    expanded = os.path.expanduser(text)
    if not os.path.isabs(expanded):
        raise ValueError(f"{label} must be an absolute path, got {value!r}.")
    return os.path.normpath(expanded)


class RuleModel(BaseModel):
    """Shared configuration for rule-set models."""

    model_config = ConfigDict(extra="forbid")


class MoveAction(RuleModel):
    """Relocate matching files into ``destination``.

    Attributes:
        destination: Absolute directory path; created on first use.
    """

    type: Literal["move"] = "move"
    destination: str

    @field_validator("destination")
    @classmethod
    def _validate_destination(cls, value: str) -> str:
        return _absolute_path(value, label="Move destination")

    @property
    def destination_path(self) -> Path:
        return Path(self.destination)


class DeleteAction(RuleModel):
    """Safe-delete matching files once they have been tracked for ``after_days``.

    Attributes:
        after_days: Days after first observation before deletion; 0 deletes at once.
    """

    type: Literal["delete"] = "delete"
    after_days: int = Field(default=0, ge=0)


Action = Annotated[Union[MoveAction, DeleteAction], Field(discriminator="type")]


class Rule(RuleModel):
    """Condition/action pair evaluated in folder priority order.

    ``condition_text`` is the authoritative form: when present it is parsed and
    the tree is derived from it, then rewritten in canonical form. When only a
    tree is supplied the text is rendered from it.

    Attributes:
        id: Stable identifier.
        name: Display name, recorded in the activity log.
        description: Free-form notes.
        enabled: Disabled rules are skipped during evaluation.
        condition: Parsed condition tree.
        condition_text: Canonical condition text.
        action: Action executed when the rule matches.
        whitelist: Glob patterns exempting files from this rule only.
        match_subdirectories: Match against the folder-relative path instead of
            the bare file name.
    """

    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    enabled: bool = True
    condition: Optional[Condition] = None
    condition_text: Optional[str] = None
    action: Action
    whitelist: List[str] = Field(default_factory=list)
    match_subdirectories: bool = False

    @model_validator(mode="after")
    def _sync_condition(self) -> "Rule":
        if self.condition_text is not None:
            try:
                parsed = parse(self.condition_text)
            except ConditionSyntaxError as exc:
                raise ValueError(f"Invalid condition_text: {exc}") from exc
            self.condition = parsed
        elif self.condition is not None:
            try:
                validate_condition(self.condition)
            except ConditionSyntaxError as exc:
                raise ValueError(f"Invalid condition: {exc}") from exc
        else:
            self.condition = AlwaysCondition()
        self.condition_text = serialize(self.condition)
        return self

    @property
    def tree(self) -> Condition:
        """Return the condition tree; always populated after validation."""
        return self.condition if self.condition is not None else AlwaysCondition()


class WatchedFolder(RuleModel):
    """Directory under observation with its ordered rule set.

    Attributes:
        id: Stable identifier.
        path: Absolute directory path.
        enabled: Disabled folders are neither watched nor scanned.
        rules: Rules in priority order; the first match wins.
        whitelist: Glob patterns exempting files from every rule in the folder.
        recursive: Watch and scan subdirectories as well.
    """

    id: str = Field(default_factory=_new_id)
    path: str
    enabled: bool = True
    rules: List[Rule] = Field(default_factory=list)
    whitelist: List[str] = Field(default_factory=list)
    recursive: bool = False

    @field_validator("path")
    @classmethod
    def _validate_path(cls, value: str) -> str:
        return _absolute_path(value, label="Folder path")

    @property
    def root(self) -> Path:
        return Path(self.path)

    def find_rule(self, rule_id: str) -> Optional[Rule]:
        """Return the rule with ``rule_id`` or None."""
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None


__all__ = [
    "RuleModel",
    "MoveAction",
    "DeleteAction",
    "Action",
    "Rule",
    "WatchedFolder",
    "path_key",
]
