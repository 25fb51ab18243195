"""MongoDB access for the scoring core.

`MongoScoringStore` is the production implementation of `ScoringStore`. The
history insert and the score increment form one conditional write: unique
indexes on the history collection reject a second record for the same
status, or for the same position in a lesson's sequence. No scoring write is
attempted until those indexes are known to exist.

Without transactions a record is inserted with `pending: true`, the score is
incremented, then the flag is cleared. Readers skip pending records. A
record left pending after a failure is reported and repaired by
rebuild_scores.py.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Protocol

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from .models import ScoringHistoryRecord, SnapshotEntry, StudentProfile
from .rules import DEFAULT_RULES, ScoringRules

logger = logging.getLogger(__name__)

HISTORY_COLLECTION = "scoring_system_history"
CONDITIONS_COLLECTION = "scoring_system_conditions"
STATUS_INDEX = "uniq_student_type_lesson_status"
SEQ_INDEX = "uniq_student_type_lesson_seq"

CONTENT_COLLECTIONS = {
    "whatsapp_groups": "join_whatsapp_group",
    "quizzes": "quizzes",
    "mock_exams": "online_mock_exams",
}


class ScoringStorageError(Exception):
    """A lookup or write against the backing store failed."""


class AppendOutcome(str, Enum):
    APPLIED = "applied"
    # a record with the same (studentId, type, lesson, status) already exists
    DUPLICATE = "duplicate"
    # another record took this position in the lesson's sequence first
    STALE = "stale"


PENDING_FIELD = "pending"
NOT_PENDING = {PENDING_FIELD: {"$ne": True}}


class ScoringStore(Protocol):
    async def ensure_indexes(self) -> None: ...

    async def get_student_profile(self, student_id: int) -> Optional[StudentProfile]: ...

    async def find_last_history(self, student_id: int, event_type: str, lesson: str) -> Optional[ScoringHistoryRecord]: ...

    async def append_history_and_adjust_score(self, record: ScoringHistoryRecord, delta: float) -> AppendOutcome: ...

    async def get_all_student_score_snapshot(self) -> List[SnapshotEntry]: ...


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        logger.error("MongoDB %s failed: %s", action, exc)
        raise ScoringStorageError(f"{action} failed: {exc}") from exc


def classify_duplicate(exc: DuplicateKeyError) -> AppendOutcome:
    key_pattern = (exc.details or {}).get("keyPattern") or {}
    if "status" in key_pattern:
        return AppendOutcome.DUPLICATE
    if "seq" in key_pattern:
        return AppendOutcome.STALE
    return AppendOutcome.DUPLICATE if STATUS_INDEX in str(exc) else AppendOutcome.STALE


class MongoScoringStore:
    def __init__(self, db, client=None, use_transactions: bool = False):
        self.db = db
        self.client = client
        self.use_transactions = use_transactions
        self.indexes_ready = False
        if use_transactions and client is None:
            raise ValueError("A client is required when transactions are enabled")

    @property
    def history(self):
        return self.db[HISTORY_COLLECTION]

    async def ensure_indexes(self) -> None:
        """Create the scoring indexes; scoring writes refuse to run until this succeeds."""
        with storage_errors("index creation"):
            await self.db.students.create_index([("id", ASCENDING)])
            await self.history.create_index(
                [("studentId", ASCENDING), ("type", ASCENDING), ("lesson", ASCENDING), ("status", ASCENDING)],
                unique=True,
                name=STATUS_INDEX,
            )
            await self.history.create_index(
                [("studentId", ASCENDING), ("type", ASCENDING), ("lesson", ASCENDING), ("seq", ASCENDING)],
                unique=True,
                name=SEQ_INDEX,
            )
            await self.history.create_index([("studentId", ASCENDING), ("appliedAt", ASCENDING)])
        self.indexes_ready = True

    async def get_student_profile(self, student_id: int) -> Optional[StudentProfile]:
        with storage_errors("student lookup"):
            doc = await self.db.students.find_one({"id": student_id}, {"_id": 0})
        if not doc:
            return None
        return StudentProfile.from_document(doc)

    async def find_last_history(self, student_id: int, event_type: str, lesson: str) -> Optional[ScoringHistoryRecord]:
        with storage_errors("history lookup"):
            doc = await self.history.find_one(
                {"studentId": student_id, "type": event_type, "lesson": lesson, **NOT_PENDING},
                {"_id": 0},
                sort=[("seq", DESCENDING)],
            )
        if not doc:
            return None
        return ScoringHistoryRecord.model_validate(doc)

    async def list_history(self, student_id: int) -> List[ScoringHistoryRecord]:
        with storage_errors("history listing"):
            docs = await self.history.find({"studentId": student_id, **NOT_PENDING}, {"_id": 0}).sort(
                [("appliedAt", ASCENDING), ("seq", ASCENDING)]
            ).to_list(None)
        return [ScoringHistoryRecord.model_validate(doc) for doc in docs]

    async def append_history_and_adjust_score(self, record: ScoringHistoryRecord, delta: float) -> AppendOutcome:
        if not self.indexes_ready:
            logger.warning("Scoring indexes not confirmed, creating them before writing")
            await self.ensure_indexes()
        doc = record.to_document()
        try:
            if self.use_transactions:
                await self._append_in_transaction(doc, delta)
            else:
                await self._append_with_compensation(doc, delta)
        except DuplicateKeyError as exc:
            return classify_duplicate(exc)
        except PyMongoError as exc:
            # a concurrent transaction wrote the same lesson first
            if exc.has_error_label("TransientTransactionError"):
                logger.info("Transaction conflict for student %s: %s", record.student_id, exc)
                return AppendOutcome.STALE
            logger.error("Scoring write failed for student %s: %s", record.student_id, exc)
            raise ScoringStorageError(f"scoring write failed: {exc}") from exc
        return AppendOutcome.APPLIED

    async def _append_in_transaction(self, doc: Dict[str, Any], delta: float) -> None:
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                await self.history.insert_one(doc, session=session)
                result = await self.db.students.update_one(
                    {"id": doc["studentId"]}, {"$inc": {"score": delta}}, session=session
                )
                if result.matched_count == 0:
                    raise ScoringStorageError(f"Student {doc['studentId']} not found")

    async def _append_with_compensation(self, doc: Dict[str, Any], delta: float) -> None:
        await self.history.insert_one({**doc, PENDING_FIELD: True})
        key = {"studentId": doc["studentId"], "type": doc["type"], "lesson": doc["lesson"], "seq": doc["seq"]}
        try:
            result = await self.db.students.update_one({"id": doc["studentId"]}, {"$inc": {"score": delta}})
        except PyMongoError:
            await self._discard_pending(key)
            raise
        if result.matched_count == 0:
            await self._discard_pending(key)
            raise ScoringStorageError(f"Student {doc['studentId']} not found")
        try:
            await self.history.update_one(key, {"$unset": {PENDING_FIELD: ""}})
        except PyMongoError as exc:
            # score already moved; the record stays hidden until rebuild_scores.py settles it
            logger.error("Could not finalize scoring record %s: %s", key, exc)

    async def _discard_pending(self, key: Dict[str, Any]) -> None:
        try:
            await self.history.delete_one({**key, PENDING_FIELD: True})
        except PyMongoError as exc:
            logger.error("Pending scoring record %s left behind, run rebuild_scores.py: %s", key, exc)

    async def get_all_student_score_snapshot(self) -> List[SnapshotEntry]:
        with storage_errors("score snapshot"):
            docs = await self.db.students.find(
                {"id": {"$exists": True}},
                {"_id": 0, "id": 1, "score": 1, "main_center": 1, "course": 1, "grade": 1},
            ).sort("_id", ASCENDING).to_list(None)
        return [SnapshotEntry.from_document(doc) for doc in docs]

    async def list_scoped_content(self, kind: str) -> List[Dict[str, Any]]:
        collection = CONTENT_COLLECTIONS.get(kind)
        if collection is None:
            raise ValueError(f"Unknown content kind '{kind}'")
        with storage_errors(f"{kind} listing"):
            docs = await self.db[collection].find({}).to_list(None)
        for doc in docs:
            doc["_id"] = str(doc["_id"])
        return docs

    async def get_scoring_rules(self) -> ScoringRules:
        with storage_errors("scoring rules lookup"):
            conditions = await self.db[CONDITIONS_COLLECTION].find({}, {"_id": 0}).to_list(100)
        if not conditions:
            logger.warning("No scoring conditions stored, using default rules")
            return DEFAULT_RULES
        return ScoringRules.from_conditions(conditions)

    async def seed_scoring_rules(self, rules: ScoringRules) -> bool:
        with storage_errors("scoring rules seeding"):
            if await self.db[CONDITIONS_COLLECTION].count_documents({}) > 0:
                return False
            await self.db[CONDITIONS_COLLECTION].insert_many(rules.to_conditions())
        return True

    async def mark_lesson_attended(self, student_id: int, lesson: str, center: str = "Online") -> bool:
        """Set lessons.<lesson>.attended; returns False if it was already attended."""
        now = datetime.now(timezone.utc)
        attendance_date = now.strftime("%d/%m/%Y")
        prefix = f"lessons.{lesson}"
        with storage_errors("attendance update"):
            result = await self.db.students.update_one(
                {"id": student_id, f"{prefix}.attended": {"$ne": True}},
                {
                    "$set": {
                        f"{prefix}.lesson": lesson,
                        f"{prefix}.attended": True,
                        f"{prefix}.lastAttendance": f"{attendance_date} in {center}",
                        f"{prefix}.lastAttendanceCenter": center,
                        f"{prefix}.attendanceDate": attendance_date,
                    }
                },
            )
        return result.modified_count > 0
