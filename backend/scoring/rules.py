import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .models import normalize_status

logger = logging.getLogger(__name__)

DeltaRule = Callable[[str, Optional[str], str], float]


class TypeRule(BaseModel):
    """Points per status for one event type.

    When `apply_penalties` is false a negative status is worth nothing on its
    own: moving to it only takes back what an earlier positive status added.
    """

    points: Dict[str, float]
    apply_penalties: bool = True

    @field_validator("points")
    @classmethod
    def _normalize_keys(cls, value: Dict[str, float]) -> Dict[str, float]:
        return {normalize_status(k): float(v) for k, v in value.items()}

    def effective_points(self, status: Optional[str]) -> float:
        if status is None:
            return 0.0
        points = self.points.get(status)
        if points is None:
            logger.warning("No points configured for status '%s', scoring it as 0", status)
            return 0.0
        if not self.apply_penalties and points < 0:
            return 0.0
        return points


class ScoringRules(BaseModel):
    types: Dict[str, TypeRule] = Field(default_factory=dict)

    def delta(self, event_type: str, previous_status: Optional[str], new_status: str) -> float:
        """Points to add when a lesson moves from `previous_status` to `new_status`."""
        rule = self.types.get(event_type)
        if rule is None:
            raise ValueError(f"No scoring rule for event type '{event_type}'")
        return rule.effective_points(new_status) - rule.effective_points(previous_status)

    def to_conditions(self) -> List[Dict[str, Any]]:
        return [
            {"type": event_type, "points": dict(rule.points), "apply_penalties": rule.apply_penalties}
            for event_type, rule in self.types.items()
        ]

    @classmethod
    def from_conditions(cls, conditions: List[Mapping[str, Any]]) -> "ScoringRules":
        """Build rules from `scoring_system_conditions` documents.

        Two document shapes are read: `{type, points, apply_penalties}` as
        written by `to_conditions`, and the portal's older
        `{type, withDegree, rules: [...]}` shape. Percentage-based conditions
        (homework with degree, quizzes, mock exams) have no status table and
        are skipped.
        """
        types = {}
        for condition in conditions:
            event_type = condition.get("type")
            if not event_type:
                raise ValueError("Scoring condition is missing its type")
            if isinstance(condition.get("points"), Mapping):
                types[event_type] = TypeRule(
                    points=condition["points"],
                    apply_penalties=condition.get("apply_penalties", True),
                )
            elif isinstance(condition.get("rules"), list):
                rule = _rule_from_legacy(condition)
                if rule is not None:
                    types[event_type] = rule
            else:
                raise ValueError(f"Scoring condition for '{event_type}' has neither points nor rules")
        return cls(types=types)


# hwDone values of the older homework conditions, by status
HW_DONE_STATUSES = {"true": "done", "not completed": "not_completed", "false": "not_done"}


def _rule_from_legacy(condition: Mapping[str, Any]) -> Optional[TypeRule]:
    event_type = condition["type"]
    if event_type == "attendance":
        key_field, apply_penalties = "key", True
    elif event_type == "homework" and condition.get("withDegree") is False:
        # a homework penalty is never applied on its own, only as a reversal
        key_field, apply_penalties = "hwDone", False
    else:
        logger.debug("Skipping non status based scoring condition for '%s'", event_type)
        return None

    points = {}
    for entry in condition["rules"]:
        if not isinstance(entry, Mapping) or key_field not in entry or "points" not in entry:
            raise ValueError(f"Scoring rule for '{event_type}' needs '{key_field}' and 'points': {entry!r}")
        key = entry[key_field]
        if key_field == "hwDone":
            hw_done = str(key).strip().lower()
            if hw_done not in HW_DONE_STATUSES:
                raise ValueError(f"Unknown hwDone value {key!r} in homework scoring rule")
            key = HW_DONE_STATUSES[hw_done]
        points[str(key)] = entry["points"]
    return TypeRule(points=points, apply_penalties=apply_penalties)


DEFAULT_RULES = ScoringRules(
    types={
        "attendance": TypeRule(points={"attend": 10, "late": 5, "absent": -10}),
        "homework": TypeRule(
            points={"done": 20, "not_completed": 10, "not_done": -20},
            apply_penalties=False,
        ),
    }
)
