"""Cohort matching for scoped content (WhatsApp groups, quizzes, mock exams).

A scope restricts content by course, course type, center and gender. Each
field is a wildcard when empty or set to its wildcard token, otherwise it must
equal the student's value ignoring case and surrounding whitespace.
"""
from typing import Any, Iterable, List, Mapping, Tuple

# (attribute on models, document keys on a scope, document keys on a student, wildcard)
FIELDS: Tuple[Tuple[str, Tuple[str, ...], Tuple[str, ...], str], ...] = (
    ("course", ("course",), ("course", "grade"), "all"),
    ("course_type", ("courseType", "course_type"), ("courseType", "course_type"), "all"),
    ("center", ("center",), ("main_center", "center"), "all"),
    ("gender", ("gender",), ("gender",), "both"),
)


def _clean(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().casefold()


def _read(obj: Any, attr: str, keys: Tuple[str, ...]) -> str:
    if obj is None:
        return ""
    if isinstance(obj, Mapping):
        for key in keys:
            value = obj.get(key)
            # grade is numeric on older student documents
            if key == "grade" and isinstance(value, int):
                value = str(value)
            if value:
                return _clean(value)
        return ""
    return _clean(getattr(obj, attr, ""))


def field_matches(scope_value: str, student_value: str, wildcard: str) -> bool:
    if not scope_value or scope_value == wildcard:
        return True
    return scope_value == student_value


def matches(scope: Any, student: Any) -> bool:
    """Return True when `scope` applies to `student`.

    Both arguments may be pydantic models, plain objects or Mongo documents.
    Missing or non-string fields count as empty, so this never raises.
    """
    for attr, scope_keys, student_keys, wildcard in FIELDS:
        if not field_matches(_read(scope, attr, scope_keys), _read(student, attr, student_keys), wildcard):
            return False
    return True


def filter_matching(items: Iterable[Mapping[str, Any]], student: Any) -> List[Mapping[str, Any]]:
    return [item for item in items if matches(item, student)]
