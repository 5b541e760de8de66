"""Value types for everything the authoring collaborator hands back.

Collaborator output is untrusted: it is parsed into these models at the boundary and
any shape or type problem becomes a StructuralDraftError. Day-range invariants are
checked later by the plan materializer, which never repairs a draft.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from services.coach_errors import StructuralDraftError

Difficulty = Literal["easy", "medium", "hard", "extreme"]
StatName = Literal["strength", "agility", "intelligence", "vitality"]

SCORE_FIELDS = ("clarity", "measurability", "achievability", "relevance", "timebound")


def _lower_or_none(value: Any) -> Any:
    if isinstance(value, str):
        cleaned = value.strip().lower()
        return cleaned or None
    return value


class DraftModel(BaseModel):
    # Collaborators answer in camelCase or snake_case; both are accepted.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class GoalAnalysis(DraftModel):
    is_valid: bool = False
    clarity: int = Field(ge=1, le=10)
    measurability: int = Field(ge=1, le=10)
    achievability: int = Field(ge=1, le=10)
    relevance: int = Field(ge=1, le=10)
    timebound: int = Field(ge=1, le=10)
    suggestions: list[str] = Field(default_factory=list)
    refined_goal: str | None = None

    def scores(self) -> dict[str, int]:
        return {name: int(getattr(self, name)) for name in SCORE_FIELDS}


class PlanPhase(DraftModel):
    number: int = Field(ge=1)
    name: str
    description: str = ""
    start_day: int
    end_day: int
    focus: list[str] = Field(default_factory=list)
    habits: list[str] = Field(default_factory=list)
    expected_outcomes: list[str] = Field(default_factory=list)


class DailyHabit(DraftModel):
    title: str = Field(min_length=1)
    description: str = ""
    category: str = "general"
    difficulty: Difficulty = "medium"
    target_value: float | None = Field(default=None, gt=0)
    metric_key: str | None = None
    xp_reward: int = Field(default=50, ge=0)
    stat_bonus: StatName | None = None

    @field_validator("difficulty", "stat_bonus", mode="before")
    @classmethod
    def normalize_choice(cls, value: Any) -> Any:
        return _lower_or_none(value)


class SuccessMetric(DraftModel):
    name: str
    description: str = ""
    target_value: float | None = None
    unit: str = ""
    measurement_frequency: str = "daily"


class MilestoneReward(DraftModel):
    xp: int | None = Field(default=None, ge=0)
    unlock: str | None = None


class PlanMilestone(DraftModel):
    index: int | None = None
    title: str = Field(min_length=1)
    description: str = ""
    target_day: int
    criteria: list[str] = Field(default_factory=list)
    reward: MilestoneReward = Field(default_factory=MilestoneReward)
    celebration_message: str | None = None


class PlanDraft(DraftModel):
    summary: str = ""
    phases: list[PlanPhase] = Field(default_factory=list)
    daily_habits: list[DailyHabit] = Field(default_factory=list)
    success_metrics: list[SuccessMetric] = Field(default_factory=list)
    milestones: list[PlanMilestone] = Field(default_factory=list)
    system_message: str | None = None


class QuestDraft(DraftModel):
    title: str = Field(min_length=1)
    description: str = ""
    quest_type: str = "general"
    difficulty: Difficulty = "medium"
    target_value: float = Field(gt=0)
    metric_key: str = Field(min_length=1)
    xp_reward: int = Field(ge=0)
    stat_bonus: StatName | None = None
    ai_reasoning: str | None = None

    @field_validator("difficulty", "stat_bonus", mode="before")
    @classmethod
    def normalize_choice(cls, value: Any) -> Any:
        return _lower_or_none(value)


def _problems(exc: ValidationError) -> list[str]:
    out: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        out.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else str(err.get("msg", "invalid")))
    return out


def parse_goal_analysis(payload: Any) -> GoalAnalysis:
    if isinstance(payload, GoalAnalysis):
        return payload
    try:
        return GoalAnalysis.model_validate(payload)
    except ValidationError as exc:
        raise StructuralDraftError("Goal analysis is malformed", problems=_problems(exc)) from exc


def parse_plan_draft(payload: Any) -> PlanDraft:
    if isinstance(payload, PlanDraft):
        return payload
    try:
        return PlanDraft.model_validate(payload)
    except ValidationError as exc:
        raise StructuralDraftError("Plan draft is malformed", problems=_problems(exc)) from exc


def parse_quest_drafts(payload: Any) -> list[QuestDraft]:
    """Accept either a bare list or an object with a ``quests`` list."""
    if isinstance(payload, dict):
        payload = payload.get("quests")
    if not isinstance(payload, list) or not payload:
        raise StructuralDraftError("Quest draft list is empty or malformed")
    drafts: list[QuestDraft] = []
    for idx, item in enumerate(payload):
        if isinstance(item, QuestDraft):
            drafts.append(item)
            continue
        try:
            drafts.append(QuestDraft.model_validate(item))
        except ValidationError as exc:
            problems = [f"quests[{idx}].{p}" for p in _problems(exc)]
            raise StructuralDraftError("Quest draft is malformed", problems=problems) from exc
    return drafts
