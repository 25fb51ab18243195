import logging
from datetime import datetime
from typing import Callable

from .models import ApplyResult, ScoringEvent, ScoringHistoryRecord, utc_now
from .rules import DeltaRule
from .store import AppendOutcome, ScoringStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class ScoringConflictError(Exception):
    """The lesson's history kept changing underneath us; the caller may retry."""


class ScoringLedger:
    """Applies scoring events to a student's score exactly once per status.

    The append-only history is the source of truth: an event whose
    (studentId, type, lesson, status) already has a record is a no-op, and
    the delta of a new status is computed from the status it replaces.
    """

    def __init__(
        self,
        store: ScoringStore,
        delta_rule: DeltaRule,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.delta_rule = delta_rule
        self.max_attempts = max_attempts
        self.clock = clock

    async def apply(self, event: ScoringEvent) -> ApplyResult:
        for attempt in range(1, self.max_attempts + 1):
            last = await self.store.find_last_history(event.student_id, event.type, event.lesson)
            if last is not None and last.status == event.status:
                logger.info(
                    "Scoring already applied: student %s, %s '%s' -> %s",
                    event.student_id, event.type, event.lesson, event.status,
                )
                return ApplyResult(applied=False, previous_status=last.status, delta=0.0)

            previous_status = last.status if last is not None else None
            delta = self.delta_rule(event.type, previous_status, event.status)
            record = ScoringHistoryRecord(
                student_id=event.student_id,
                type=event.type,
                lesson=event.lesson,
                status=event.status,
                previous_status=previous_status,
                applied_at=self.clock(),
                delta=delta,
                seq=last.seq + 1 if last is not None else 1,
            )
            outcome = await self.store.append_history_and_adjust_score(record, delta)

            if outcome is AppendOutcome.APPLIED:
                logger.info(
                    "Scoring applied: student %s, %s '%s' %s -> %s (%+g points)",
                    event.student_id, event.type, event.lesson, previous_status, event.status, delta,
                )
                return ApplyResult(applied=True, previous_status=previous_status, delta=delta)
            if outcome is AppendOutcome.DUPLICATE:
                logger.info(
                    "Scoring already recorded for status %s: student %s, %s '%s'",
                    event.status, event.student_id, event.type, event.lesson,
                )
                return ApplyResult(applied=False, previous_status=event.status, delta=0.0)

            logger.info(
                "History for student %s, %s '%s' changed concurrently (attempt %d of %d)",
                event.student_id, event.type, event.lesson, attempt, self.max_attempts,
            )

        raise ScoringConflictError(
            f"Could not apply {event.type} '{event.lesson}' for student {event.student_id} "
            f"after {self.max_attempts} attempts"
        )
