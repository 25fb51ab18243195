"""Cohort matching, idempotent scoring and ranking for the student portal."""

from .cohort import filter_matching, matches
from .ledger import ScoringConflictError, ScoringLedger
from .models import (
    ApplyResult,
    RankResult,
    Scope,
    ScoringEvent,
    ScoringHistoryRecord,
    SnapshotEntry,
    StudentProfile,
)
from .ranking import rank, student_rankings
from .rules import DEFAULT_RULES, ScoringRules, TypeRule
from .store import AppendOutcome, MongoScoringStore, ScoringStorageError, ScoringStore

__all__ = [
    "AppendOutcome",
    "ApplyResult",
    "DEFAULT_RULES",
    "MongoScoringStore",
    "RankResult",
    "Scope",
    "ScoringConflictError",
    "ScoringEvent",
    "ScoringHistoryRecord",
    "ScoringLedger",
    "ScoringRules",
    "ScoringStorageError",
    "ScoringStore",
    "SnapshotEntry",
    "StudentProfile",
    "TypeRule",
    "filter_matching",
    "matches",
    "rank",
    "student_rankings",
]
