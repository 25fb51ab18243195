from fastapi import FastAPI, APIRouter, HTTPException, Query, Depends, status
from fastapi.middleware.gzip import GZipMiddleware
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import logging

# Setup logging early
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
import os

from scoring import (
    DEFAULT_RULES,
    ApplyResult,
    MongoScoringStore,
    ScoringConflictError,
    ScoringEvent,
    ScoringHistoryRecord,
    ScoringLedger,
    ScoringStorageError,
    StudentProfile,
    filter_matching,
    rank,
    student_rankings,
)
from scoring.config import env_flag, env_int, get_db_name, get_mongo_url, load_env

load_env()

mongo_url = get_mongo_url()

try:
    client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=5000)
except Exception as e:
    logger.error(f"Failed to create MongoDB client: {e}")
    raise

db = client[get_db_name()]

SCORING_ENABLED = env_flag("SYSTEM_SCORING_SYSTEM", True)
SCORING_USE_TRANSACTIONS = env_flag("SCORING_USE_TRANSACTIONS", False)
SCORING_MAX_ATTEMPTS = env_int("SCORING_MAX_ATTEMPTS", 5)

scoring_store = MongoScoringStore(db, client=client, use_transactions=SCORING_USE_TRANSACTIONS)


def get_store():
    return scoring_store


app = FastAPI()
api_router = APIRouter(prefix="/api")


@app.get("/health")
async def health_check():
    return {"status": "ok"}


# Fields never sent to students with quiz / mock exam questions
HIDDEN_QUESTION_FIELDS = {"correct_answer", "correct_answers"}


class AttendRequest(BaseModel):
    lesson: str = Field(min_length=1)
    center: str = "Online"


class ScoringResponse(ApplyResult):
    message: Optional[str] = None


class AttendResponse(BaseModel):
    success: bool = True
    already_attended: bool
    scoring: ScoringResponse


class LastHistoryResponse(BaseModel):
    found: bool
    history: Optional[ScoringHistoryRecord] = None


async def _require_student(store, student_id: int) -> StudentProfile:
    try:
        student = await store.get_student_profile(student_id)
    except ScoringStorageError as exc:
        logger.exception("Student lookup failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database temporarily unavailable")
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    return student


async def _apply_event(store, event: ScoringEvent) -> ScoringResponse:
    if not SCORING_ENABLED:
        return ScoringResponse(applied=False, delta=0.0, message="Scoring system is disabled")
    try:
        rules = await store.get_scoring_rules()
        ledger = ScoringLedger(store, rules.delta, max_attempts=SCORING_MAX_ATTEMPTS)
        result = await ledger.apply(event)
    except ScoringStorageError as exc:
        logger.exception("Scoring failed for student %s: %s", event.student_id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scoring was not applied, database temporarily unavailable. Try again in a moment.",
        )
    except ScoringConflictError as exc:
        logger.warning("Scoring conflict: %s", exc)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ValueError as exc:
        # events are validated before they get here, so this is a bad rule table
        logger.exception("Scoring rules are misconfigured: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Scoring rules are misconfigured",
        )
    message = None if result.applied else "Already applied"
    return ScoringResponse(**result.model_dump(), message=message)


def _sanitize_assessment(doc: Dict[str, Any]) -> Dict[str, Any]:
    sanitized = {k: v for k, v in doc.items() if k != "questions"}
    sanitized["questions"] = [
        {k: v for k, v in question.items() if k not in HIDDEN_QUESTION_FIELDS}
        for question in (doc.get("questions") or [])
        if isinstance(question, dict)
    ]
    return sanitized


async def _matching_content(store, student_id: int, kind: str) -> List[Dict[str, Any]]:
    student = await _require_student(store, student_id)
    try:
        items = await store.list_scoped_content(kind)
    except ScoringStorageError as exc:
        logger.exception("Listing %s failed: %s", kind, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database temporarily unavailable")
    return filter_matching(items, student)


@api_router.get("/")
async def root():
    return {"message": "Student portal scoring API"}


@api_router.get("/students/{student_id}/whatsapp-groups")
async def get_student_whatsapp_groups(student_id: int, store=Depends(get_store)):
    groups = await _matching_content(store, student_id, "whatsapp_groups")
    return {
        "success": True,
        "groups": [
            {
                "_id": group["_id"],
                "title": group.get("title"),
                "link": group.get("link"),
                "course": group.get("course"),
                "courseType": group.get("courseType"),
                "center": group.get("center"),
                "gender": group.get("gender"),
            }
            for group in groups
        ],
    }


@api_router.get("/students/{student_id}/quizzes")
async def get_student_quizzes(student_id: int, store=Depends(get_store)):
    quizzes = await _matching_content(store, student_id, "quizzes")
    quizzes.sort(key=lambda q: (str(q.get("lesson") or "").strip(), q["_id"]))
    return {"success": True, "quizzes": [_sanitize_assessment(q) for q in quizzes]}


@api_router.get("/students/{student_id}/mock-exams")
async def get_student_mock_exams(student_id: int, store=Depends(get_store)):
    exams = await _matching_content(store, student_id, "mock_exams")
    return {"success": True, "mock_exams": [_sanitize_assessment(e) for e in exams]}


@api_router.post("/scoring/apply", response_model=ScoringResponse)
async def apply_scoring_event(event: ScoringEvent, store=Depends(get_store)):
    await _require_student(store, event.student_id)
    return await _apply_event(store, event)


@api_router.post("/students/{student_id}/attend", response_model=AttendResponse)
async def attend_lesson(student_id: int, payload: AttendRequest, store=Depends(get_store)):
    """Mark a lesson attended and score it; repeating the call changes nothing."""
    await _require_student(store, student_id)
    lesson = payload.lesson.strip()
    if not lesson or "." in lesson or lesson.startswith("$"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid lesson name")
    try:
        newly_attended = await store.mark_lesson_attended(student_id, lesson, payload.center)
    except ScoringStorageError as exc:
        logger.exception("Attendance update failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database temporarily unavailable")
    event = ScoringEvent(student_id=student_id, type="attendance", lesson=lesson, status="attend")
    scoring = await _apply_event(store, event)
    return AttendResponse(already_attended=not newly_attended, scoring=scoring)


@api_router.get("/scoring/student-rankings/{student_id}")
async def get_student_rankings(student_id: int, store=Depends(get_store)):
    try:
        snapshot = await store.get_all_student_score_snapshot()
    except ScoringStorageError as exc:
        logger.exception("Score snapshot failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database temporarily unavailable")
    rankings = student_rankings(snapshot, student_id)
    if rankings is None:
        raise HTTPException(status_code=404, detail="Student not found")
    return {"success": True, **rankings}


@api_router.get("/scoring/rank/{student_id}")
async def get_student_rank(
    student_id: int,
    group_by: str = Query(default="center"),
    store=Depends(get_store),
):
    try:
        snapshot = await store.get_all_student_score_snapshot()
        result = rank(snapshot, group_by, student_id)
    except ScoringStorageError as exc:
        logger.exception("Score snapshot failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database temporarily unavailable")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if result is None:
        return {"found": False}
    return {"found": True, **result.model_dump()}


@api_router.get("/scoring/history/{student_id}", response_model=List[ScoringHistoryRecord])
async def get_scoring_history(student_id: int, store=Depends(get_store)):
    try:
        return await store.list_history(student_id)
    except ScoringStorageError as exc:
        logger.exception("History listing failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database temporarily unavailable")


@api_router.get("/scoring/history/{student_id}/last", response_model=LastHistoryResponse)
async def get_last_scoring_history(
    student_id: int,
    event_type: str = Query(alias="type"),
    lesson: str = Query(),
    store=Depends(get_store),
):
    try:
        record = await store.find_last_history(student_id, event_type, lesson.strip())
    except ScoringStorageError as exc:
        logger.exception("History lookup failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database temporarily unavailable")
    return LastHistoryResponse(found=record is not None, history=record)


@api_router.get("/scoring/rules")
async def get_scoring_rules(store=Depends(get_store)):
    try:
        rules = await store.get_scoring_rules()
    except ScoringStorageError as exc:
        logger.exception("Scoring rules lookup failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database temporarily unavailable")
    return {"enabled": SCORING_ENABLED, "conditions": rules.to_conditions()}


@app.on_event("startup")
async def seed_defaults():
    try:
        # Test MongoDB connection
        await client.admin.command('ping')
        logger.info("MongoDB connection successful")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        logger.error("Please check your MONGO_URL in .env file and ensure MongoDB is accessible")
        logger.warning("Scoring indexes will be created on the first scoring write")
        return  # Don't proceed if connection fails

    try:
        # Unique history indexes are what make scoring idempotent; they must exist before any write.
        await scoring_store.ensure_indexes()
        if await scoring_store.seed_scoring_rules(DEFAULT_RULES):
            logger.info("Seeded default scoring conditions")
    except ScoringStorageError as e:
        logger.error(f"Error during database seeding: {e}")
        logger.warning("Scoring writes answer 503 until the scoring indexes can be created")


app.include_router(api_router)

_cors_origins_raw = os.environ.get("CORS_ORIGINS", "*").strip()
_cors_origins = [o.strip() for o in _cors_origins_raw.split(",") if o.strip()] if _cors_origins_raw else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=_cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1024)


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
