"""Condition tree models for the rule expression language."""

from __future__ import annotations

from typing import Annotated, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class ConditionModel(BaseModel):
    """Shared configuration for condition nodes.

    Nodes are immutable once built so a parsed tree can be shared between
    rules, the monitor thread and the scheduler without copying.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)


class GlobCondition(ConditionModel):
    """Shell-style wildcard pattern (`*` and `?`), matched case-insensitively.

    Attributes:
        pattern: Wildcard pattern text.
    """

    type: Literal["glob"] = "glob"
    pattern: str


class RegexCondition(ConditionModel):
    """Regular expression searched anywhere in the candidate.

    Attributes:
        pattern: Python regular expression source, without delimiters.
    """

    type: Literal["regex"] = "regex"
    pattern: str


class AndCondition(ConditionModel):
    """Conjunction of two or more child conditions."""

    type: Literal["and"] = "and"
    conditions: Tuple["Condition", ...] = Field(min_length=2)


class OrCondition(ConditionModel):
    """Disjunction of two or more child conditions."""

    type: Literal["or"] = "or"
    conditions: Tuple["Condition", ...] = Field(min_length=2)


class NotCondition(ConditionModel):
    """Negation of a single child condition."""

    type: Literal["not"] = "not"
    condition: "Condition"


class AlwaysCondition(ConditionModel):
    """Matches every candidate."""

    type: Literal["always"] = "always"


Condition = Annotated[
    Union[
        GlobCondition,
        RegexCondition,
        AndCondition,
        OrCondition,
        NotCondition,
        AlwaysCondition,
    ],
    Field(discriminator="type"),
]

AndCondition.model_rebuild()
OrCondition.model_rebuild()
NotCondition.model_rebuild()


__all__ = [
    "ConditionModel",
    "GlobCondition",
    "RegexCondition",
    "AndCondition",
    "OrCondition",
    "NotCondition",
    "AlwaysCondition",
    "Condition",
]
