"""Tests for idempotent score application."""
import asyncio

import pytest
from hypothesis import given, settings, strategies as st

from scoring import (
    DEFAULT_RULES,
    AppendOutcome,
    ScoringConflictError,
    ScoringEvent,
    ScoringLedger,
    ScoringStorageError,
)
from tests.helpers.memory_store import SAMPLE_STUDENTS, LookupGate, MemoryScoringStore


def attendance(status: str, lesson: str = "Lesson 3", student_id: int = 1) -> ScoringEvent:
    return ScoringEvent(studentId=student_id, type="attendance", lesson=lesson, status=status)


@pytest.mark.asyncio
async def test_same_event_twice_applies_once(store, ledger):
    first = await ledger.apply(attendance("attend"))
    second = await ledger.apply(attendance("attend"))

    assert first.applied is True
    assert first.previous_status is None
    assert first.delta == 10
    assert second.applied is False
    assert second.delta == 0
    assert second.previous_status == "attend"
    assert store.score_of(1) == 10
    assert len(store.history) == 1


@pytest.mark.asyncio
async def test_absent_then_attend_reverses_penalty(store, ledger):
    absent = await ledger.apply(attendance("absent"))
    attend = await ledger.apply(attendance("attend"))

    assert absent.delta == -10
    assert attend.applied is True
    assert attend.previous_status == "absent"
    assert attend.delta == 20
    assert store.score_of(1) == 10


@pytest.mark.asyncio
async def test_history_record_shape(store, ledger):
    await ledger.apply(attendance("absent"))
    await ledger.apply(attendance("attend"))

    last = store.history[-1]
    assert last["studentId"] == 1
    assert last["type"] == "attendance"
    assert last["lesson"] == "Lesson 3"
    assert last["status"] == "attend"
    assert last["previousStatus"] == "absent"
    assert isinstance(last["appliedAt"], str) and "T" in last["appliedAt"]
    assert last["seq"] == 2


@pytest.mark.asyncio
async def test_status_already_recorded_earlier_is_a_no_op(store, ledger):
    await ledger.apply(attendance("absent"))
    await ledger.apply(attendance("attend"))
    again = await ledger.apply(attendance("absent"))

    assert again.applied is False
    assert again.delta == 0
    assert store.score_of(1) == 10
    assert len(store.history) == 2


@pytest.mark.asyncio
async def test_status_is_normalized_before_deduplication(store, ledger):
    await ledger.apply(attendance("attend"))
    result = await ledger.apply(attendance("  ATTEND "))
    assert result.applied is False
    assert store.score_of(1) == 10


@pytest.mark.asyncio
async def test_lessons_and_types_are_independent(store, ledger):
    await ledger.apply(attendance("attend", lesson="Lesson 1"))
    await ledger.apply(attendance("attend", lesson="Lesson 2"))
    await ledger.apply(ScoringEvent(studentId=1, type="homework", lesson="Lesson 1", status="done"))
    await ledger.apply(attendance("attend", lesson="Lesson 1", student_id=2))

    assert store.score_of(1) == 40
    assert store.score_of(2) == 10


@pytest.mark.asyncio
async def test_concurrent_duplicates_apply_exactly_once(store, ledger):
    store.after_lookup = LookupGate(parties=5)

    results = await asyncio.wait_for(
        asyncio.gather(*(ledger.apply(attendance("attend")) for _ in range(5))),
        timeout=5,
    )

    assert sum(r.applied for r in results) == 1
    assert sum(r.delta for r in results) == 10
    assert store.score_of(1) == 10
    assert len(store.history) == 1
    # every caller saw the empty history before anyone wrote
    assert store.append_calls == 5


@pytest.mark.asyncio
async def test_concurrent_different_statuses_are_serialized(store, ledger):
    store.after_lookup = LookupGate(parties=2)

    results = await asyncio.wait_for(
        asyncio.gather(ledger.apply(attendance("absent")), ledger.apply(attendance("attend"))),
        timeout=5,
    )

    assert all(r.applied for r in results)
    assert sorted(doc["seq"] for doc in store.history) == [1, 2]
    second = max(store.history, key=lambda doc: doc["seq"])
    first = min(store.history, key=lambda doc: doc["seq"])
    assert second["previousStatus"] == first["status"]
    # the final score is the one of the last status alone
    assert store.score_of(1) == DEFAULT_RULES.delta("attendance", None, second["status"])


@pytest.mark.asyncio
async def test_lookup_failure_is_not_treated_as_first_event(store, ledger):
    store.fail_lookups = True
    with pytest.raises(ScoringStorageError):
        await ledger.apply(attendance("attend"))
    assert store.append_calls == 0
    assert store.score_of(1) == 0


@pytest.mark.asyncio
async def test_write_failure_is_reported(store, ledger):
    store.fail_writes = True
    with pytest.raises(ScoringStorageError):
        await ledger.apply(attendance("attend"))
    assert store.history == []
    assert store.score_of(1) == 0


class AlwaysStaleStore(MemoryScoringStore):
    async def append_history_and_adjust_score(self, record, delta):
        self.append_calls += 1
        return AppendOutcome.STALE


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    store = AlwaysStaleStore(students=[dict(s) for s in SAMPLE_STUDENTS])
    ledger = ScoringLedger(store, DEFAULT_RULES.delta, max_attempts=3)
    with pytest.raises(ScoringConflictError):
        await ledger.apply(attendance("attend"))
    assert store.append_calls == 3


def test_invalid_events_are_rejected():
    with pytest.raises(ValueError):
        ScoringEvent(studentId=1, type="quiz", lesson="Lesson 1", status="attend")
    with pytest.raises(ValueError):
        ScoringEvent(studentId=1, type="attendance", lesson="  ", status="attend")
    with pytest.raises(ValueError):
        ScoringEvent(studentId=1, type="attendance", lesson="Lesson 1", status="")


def test_max_attempts_must_be_positive(store):
    with pytest.raises(ValueError):
        ScoringLedger(store, DEFAULT_RULES.delta, max_attempts=0)


statuses = st.sampled_from(["attend", "late", "absent", "excused"])


@settings(max_examples=100, deadline=None)
@given(sequence=st.lists(st.tuples(st.sampled_from(["Lesson 1", "Lesson 2"]), statuses), max_size=15))
def test_replaying_history_reproduces_score(sequence):
    """Property: the stored score equals the deltas recomputed from the history alone."""
    store = MemoryScoringStore(students=[dict(s) for s in SAMPLE_STUDENTS])
    ledger = ScoringLedger(store, DEFAULT_RULES.delta)

    async def run():
        for lesson, status in sequence:
            await ledger.apply(attendance(status, lesson=lesson))

    asyncio.run(run())

    replayed = 0.0
    for doc in sorted(store.history, key=lambda d: (d["lesson"], d["seq"])):
        replayed += DEFAULT_RULES.delta(doc["type"], doc["previousStatus"], doc["status"])
    assert store.score_of(1) == replayed
    # each status lands at most once per lesson
    keys = [(d["lesson"], d["status"]) for d in store.history]
    assert len(keys) == len(set(keys))
