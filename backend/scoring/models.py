from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

EventType = Literal["attendance", "homework"]
EVENT_TYPES = ("attendance", "homework")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return utc_now().isoformat()


def normalize_status(value: str) -> str:
    return value.strip().lower()


class StudentProfile(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)
    id: int
    course: str = ""
    course_type: str = ""
    center: str = ""
    gender: str = ""

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "StudentProfile":
        """Build a profile from a `students` document (center is stored as main_center)."""
        return cls(
            id=int(doc["id"]),
            course=str(doc.get("course") or doc.get("grade") or ""),
            course_type=str(doc.get("courseType") or ""),
            center=str(doc.get("main_center") or ""),
            gender=str(doc.get("gender") or ""),
        )


class Scope(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)
    course: str = ""
    course_type: str = Field(default="", alias="courseType")
    center: str = ""
    gender: str = ""


class ScoringEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)
    student_id: int = Field(alias="studentId")
    type: EventType
    lesson: str = Field(min_length=1)
    status: str = Field(min_length=1)
    occurred_at: datetime = Field(default_factory=utc_now, alias="occurredAt")

    @field_validator("lesson")
    @classmethod
    def _strip_lesson(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("lesson must not be blank")
        return value

    @field_validator("status")
    @classmethod
    def _normalize_status(cls, value: str) -> str:
        value = normalize_status(value)
        if not value:
            raise ValueError("status must not be blank")
        return value


class ScoringHistoryRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    student_id: int = Field(alias="studentId")
    type: EventType
    lesson: str
    status: str
    previous_status: Optional[str] = Field(default=None, alias="previousStatus")
    applied_at: datetime = Field(default_factory=utc_now, alias="appliedAt")
    delta: float = 0.0
    seq: int = 1

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(by_alias=True)
        doc["appliedAt"] = self.applied_at.isoformat()
        return doc


class ApplyResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    applied: bool
    previous_status: Optional[str] = Field(default=None, alias="previousStatus")
    delta: float = 0.0


class SnapshotEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)
    student_id: int
    score: Optional[float] = None
    center: Optional[str] = None
    course: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "SnapshotEntry":
        score = doc.get("score")
        center = doc.get("main_center")
        course = doc.get("course") or doc.get("grade")
        return cls(
            student_id=int(doc["id"]),
            score=float(score) if score is not None else None,
            center=str(center) if center is not None else None,
            course=str(course) if course is not None else None,
        )


class RankResult(BaseModel):
    student_id: int
    group_key: str
    rank: int
    group_size: int
