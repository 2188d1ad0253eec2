"""Pure evaluation of condition trees against file names or relative paths."""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Optional, Pattern

from .errors import ConditionSyntaxError
from .models import (
    AlwaysCondition,
    AndCondition,
    Condition,
    GlobCondition,
    NotCondition,
    OrCondition,
    RegexCondition,
)

LOGGER = logging.getLogger(__name__)


@lru_cache(maxsize=1024)
def _glob_regex(pattern: str) -> Pattern[str]:
    # Only `*` and `?` are wildcards; brackets and other characters match literally.
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


@lru_cache(maxsize=512)
def _compiled_regex(pattern: str) -> Optional[Pattern[str]]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        LOGGER.warning("Ignoring invalid regex condition /%s/: %s", pattern, exc)
        return None


def glob_match(pattern: str, candidate: str) -> bool:
    """Return True when ``candidate`` matches the wildcard ``pattern``.

    Matching is case-insensitive and covers the whole candidate; ``*`` may span
    path separators so ``docs/*.pdf`` matches nested relative paths.
    """
    return _glob_regex(pattern).fullmatch(candidate) is not None


def evaluate(condition: Condition, candidate: str) -> bool:
    """Evaluate ``condition`` against a file name or folder-relative POSIX path.

    Args:
        condition: Condition tree to evaluate.
        candidate: Bare file name or relative path, depending on the rule.

    Returns:
        bool: True when the candidate satisfies the condition.
    """
    if isinstance(condition, AlwaysCondition):
        return True
    if isinstance(condition, GlobCondition):
        return glob_match(condition.pattern, candidate)
    if isinstance(condition, RegexCondition):
        compiled = _compiled_regex(condition.pattern)
        return compiled is not None and compiled.search(candidate) is not None
    if isinstance(condition, AndCondition):
        return all(evaluate(child, candidate) for child in condition.conditions)
    if isinstance(condition, OrCondition):
        return any(evaluate(child, candidate) for child in condition.conditions)
    if isinstance(condition, NotCondition):
        return not evaluate(condition.condition, candidate)
    raise TypeError(f"Unsupported condition node: {condition!r}")


def validate_condition(condition: Condition) -> None:
    """Check that every regex inside ``condition`` compiles.

    Trees built by the parser are already validated; this covers trees loaded
    from hand-edited settings documents.

    Raises:
        ConditionSyntaxError: If a regex node does not compile.
    """
    if isinstance(condition, RegexCondition):
        try:
            re.compile(condition.pattern)
        except re.error as exc:
            raise ConditionSyntaxError(
                f"Invalid regex /{condition.pattern}/: {exc.msg}", exc.pos or 0
            ) from exc
    elif isinstance(condition, (AndCondition, OrCondition)):
        for child in condition.conditions:
            validate_condition(child)
    elif isinstance(condition, NotCondition):
        validate_condition(condition.condition)


def test_condition(condition: Condition, name: str) -> bool:
    """Preview helper: evaluate ``condition`` against a sample file name."""
    return evaluate(condition, name)


# Keep pytest from collecting the preview helper when imported into test modules.
test_condition.__test__ = False  # type: ignore[attr-defined]


__all__ = ["evaluate", "glob_match", "validate_condition", "test_condition"]
