from typing import Any, Dict, List, Optional, Sequence

from .models import RankResult, SnapshotEntry

GROUP_BY_FIELDS = ("center", "course")
UNKNOWN_GROUP = "Unknown"


def group_key(entry: SnapshotEntry, group_by: str) -> str:
    value = getattr(entry, group_by)
    if value is None or not str(value).strip():
        return UNKNOWN_GROUP
    return str(value)


def build_groups(snapshot: Sequence[SnapshotEntry], group_by: str) -> Dict[str, List[SnapshotEntry]]:
    """Partition scored students by `group_by`, each group sorted by score descending.

    sorted() is stable, so equal scores keep their snapshot order and get
    distinct consecutive ranks.
    """
    if group_by not in GROUP_BY_FIELDS:
        raise ValueError(f"group_by must be one of {GROUP_BY_FIELDS}, got '{group_by}'")
    groups: Dict[str, List[SnapshotEntry]] = {}
    for entry in snapshot:
        if entry.score is None:
            continue
        groups.setdefault(group_key(entry, group_by), []).append(entry)
    return {key: sorted(members, key=lambda e: -e.score) for key, members in groups.items()}


def rank(snapshot: Sequence[SnapshotEntry], group_by: str, student_id: int) -> Optional[RankResult]:
    groups = build_groups(snapshot, group_by)
    for key, members in groups.items():
        for index, entry in enumerate(members):
            if entry.student_id == student_id:
                return RankResult(student_id=student_id, group_key=key, rank=index + 1, group_size=len(members))
    return None


def student_rankings(snapshot: Sequence[SnapshotEntry], student_id: int) -> Optional[Dict[str, Any]]:
    """Center and course standing of one student, None if not in the snapshot."""
    entry = next((e for e in snapshot if e.student_id == student_id), None)
    if entry is None:
        return None
    by_center = rank(snapshot, "center", student_id)
    by_course = rank(snapshot, "course", student_id)
    return {
        "centerRank": by_center.rank if by_center else None,
        "centerTotal": by_center.group_size if by_center else None,
        "courseRank": by_course.rank if by_course else None,
        "courseTotal": by_course.group_size if by_course else None,
        "mainCenter": group_key(entry, "center"),
        "course": group_key(entry, "course"),
    }
