"""Rule sets and the first-match-wins rule applier."""

from .applier import RuleApplier, RuleOutcome
from .models import Action, DeleteAction, MoveAction, Rule, WatchedFolder, path_key

__all__ = [
    "Action",
    "DeleteAction",
    "MoveAction",
    "Rule",
    "RuleApplier",
    "RuleOutcome",
    "WatchedFolder",
    "path_key",
]
