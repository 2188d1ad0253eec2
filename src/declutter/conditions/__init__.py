"""Condition expression language: models, parser, serializer, evaluator."""

from .errors import ConditionSyntaxError
from .evaluator import evaluate, glob_match, test_condition, validate_condition
from .models import (
    AlwaysCondition,
    AndCondition,
    Condition,
    GlobCondition,
    NotCondition,
    OrCondition,
    RegexCondition,
)
from .parser import parse, serialize, validate

__all__ = [
    "AlwaysCondition",
    "AndCondition",
    "Condition",
    "ConditionSyntaxError",
    "GlobCondition",
    "NotCondition",
    "OrCondition",
    "RegexCondition",
    "evaluate",
    "glob_match",
    "parse",
    "serialize",
    "test_condition",
    "validate",
    "validate_condition",
]
