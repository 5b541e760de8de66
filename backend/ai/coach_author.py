"""Authoring collaborator: goal analysis, plan drafts and daily quest drafts.

Three layers:
- ``LLMCoachAuthor`` asks the configured provider for JSON and parses it into drafts.
- ``FallbackCoachAuthor`` answers deterministically when no provider is configured.
- ``ResilientCoachAuthor`` wraps either one with a timeout and a single retry.
"""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from ai.drafts import (
    GoalAnalysis,
    PlanDraft,
    QuestDraft,
    parse_goal_analysis,
    parse_plan_draft,
    parse_quest_drafts,
)
from ai.providers import AIProvider, ProviderError, get_provider
from config import settings
from services.coach_errors import CollaboratorUnavailable, StructuralDraftError
from services.user_context import UserContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CoachAuthor(ABC):
    """Contract the engine consumes. Implementations must not touch the database."""

    @abstractmethod
    async def validate_and_draft_goal(self, goal_text: str, timeline_days: int | None = None) -> GoalAnalysis:
        ...

    @abstractmethod
    async def generate_plan(self, goal_text: str, timeline_days: int, context: UserContext) -> PlanDraft:
        ...

    @abstractmethod
    async def generate_quests(self, context: UserContext, reason: str | None = None) -> list[QuestDraft]:
        ...


def _safe_json_loads(text: str) -> Any:
    payload = (text or "").strip()
    if payload.startswith("```"):
        payload = payload.strip("`")
        if payload.lower().startswith("json"):
            payload = payload[4:].strip()
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StructuralDraftError("Collaborator returned non-JSON content") from exc


GOAL_ANALYSIS_SYSTEM = """You are an expert goal analyst. Score the goal on five criteria, each an integer from 1 to 10.
Return JSON only:
{"isValid": bool, "clarity": int, "measurability": int, "achievability": int, "relevance": int,
 "timebound": int, "suggestions": [string], "refinedGoal": string or null}
Be lenient with goals that express clear intent. Reject goals that are too vague or harmful."""

PLAN_SYSTEM = """You design multi-phase personal development plans.
Return JSON only:
{"summary": string,
 "phases": [{"number": int, "name": string, "description": string, "startDay": int, "endDay": int,
             "focus": [string], "habits": [string], "expectedOutcomes": [string]}],
 "dailyHabits": [{"title": string, "description": string, "category": string,
                  "difficulty": "easy|medium|hard", "targetValue": number, "metricKey": string,
                  "xpReward": int, "statBonus": "strength|agility|intelligence|vitality"}],
 "successMetrics": [{"name": string, "description": string, "targetValue": number, "unit": string}],
 "milestones": [{"index": int, "title": string, "description": string, "targetDay": int,
                 "criteria": [string], "reward": {"xp": int, "unlock": string or null}}]}
Rules: phases start at day 1, are contiguous, and the last phase ends on the final day of the timeline.
Every milestone targetDay must fall inside a phase. Use 3-4 phases, 5-7 habits and 4-6 milestones."""

QUEST_SYSTEM = """You generate 3-5 measurable daily quests for a gamified coaching app.
Return JSON only: {"quests": [{"title": string, "description": string, "questType": string,
 "difficulty": "easy|medium|hard|extreme", "targetValue": number, "metricKey": string,
 "xpReward": int, "statBonus": "strength|agility|intelligence|vitality" or null, "aiReasoning": string}]}
Prefer metric keys the tracker understands when relevant: steps, distance_km, calories, floors,
sleep_hours, workout_minutes, gym. XP guidance: easy 20-40, medium 40-80, hard 80-150, extreme 150-300.
Diversify away from the recent quest types. Respect the difficulty adjustment from the last weekly review."""


class LLMCoachAuthor(CoachAuthor):
    def __init__(self, provider: AIProvider):
        self.provider = provider

    async def _ask(self, system: str, prompt: str, model: str, max_tokens: int) -> Any:
        result = await self.provider.chat(
            messages=[{"role": "user", "content": prompt}],
            model=model,
            system=system,
            max_tokens=max_tokens,
        )
        return _safe_json_loads(result.get("content", ""))

    async def validate_and_draft_goal(self, goal_text: str, timeline_days: int | None = None) -> GoalAnalysis:
        prompt = f'Analyze this goal: "{goal_text}"'
        if timeline_days:
            prompt += f"\nDesired timeline: {timeline_days} days."
        payload = await self._ask(GOAL_ANALYSIS_SYSTEM, prompt, self.provider.get_utility_model(), 800)
        return parse_goal_analysis(payload)

    async def generate_plan(self, goal_text: str, timeline_days: int, context: UserContext) -> PlanDraft:
        prompt = (
            f'GOAL: "{goal_text}"\n'
            f"TIMELINE: {timeline_days} days (day 1 is today)\n"
            f"USER CONTEXT: {json.dumps(context.to_dict(), ensure_ascii=True)}\n"
            "Create the complete plan now."
        )
        payload = await self._ask(PLAN_SYSTEM, prompt, self.provider.get_reasoning_model(), 3000)
        return parse_plan_draft(payload)

    async def generate_quests(self, context: UserContext, reason: str | None = None) -> list[QuestDraft]:
        lines = [f"USER CONTEXT: {json.dumps(context.to_dict(), ensure_ascii=True)}"]
        if context.recent_quest_types:
            lines.append(f"RECENT QUEST TYPES (avoid repetition): {', '.join(context.recent_quest_types)}")
        if reason:
            lines.append(f"REGENERATION REASON: {reason}")
        lines.append("Generate today's quests now.")
        payload = await self._ask(QUEST_SYSTEM, "\n".join(lines), self.provider.get_reasoning_model(), 1500)
        return parse_quest_drafts(payload)


def _scaled_xp(base: int, level: int) -> int:
    return int(base * (1 + level * 0.05))


_STAT_QUESTS: dict[str, dict[str, Any]] = {
    "strength": {
        "title": "Strength Training",
        "description": "Complete a set of strength exercises.",
        "quest_type": "physical",
        "difficulty": "medium",
        "target_value": 20,
        "metric_key": "reps",
        "xp_reward": 60,
        "stat_bonus": "strength",
    },
    "agility": {
        "title": "Speed Protocol",
        "description": "Get moving and cover some ground today.",
        "quest_type": "cardio",
        "difficulty": "medium",
        "target_value": 5000,
        "metric_key": "steps",
        "xp_reward": 50,
        "stat_bonus": "agility",
    },
    "intelligence": {
        "title": "Mental Cultivation",
        "description": "Dedicate focused time to learning.",
        "quest_type": "mental",
        "difficulty": "medium",
        "target_value": 30,
        "metric_key": "minutes",
        "xp_reward": 55,
        "stat_bonus": "intelligence",
    },
    "vitality": {
        "title": "Recovery Enhancement",
        "description": "Rest and hydrate properly.",
        "quest_type": "wellness",
        "difficulty": "easy",
        "target_value": 8,
        "metric_key": "glasses",
        "xp_reward": 30,
        "stat_bonus": "vitality",
    },
}

_GENERIC_QUESTS: list[dict[str, Any]] = [
    {
        "title": "Morning Activation",
        "description": "Begin the day with purpose. Walk 5,000 steps.",
        "quest_type": "physical",
        "difficulty": "easy",
        "target_value": 5000,
        "metric_key": "steps",
        "xp_reward": 35,
        "stat_bonus": "agility",
    },
    {
        "title": "Skill Development",
        "description": "Invest in your future. Learn for 20 minutes.",
        "quest_type": "mental",
        "difficulty": "medium",
        "target_value": 20,
        "metric_key": "minutes",
        "xp_reward": 50,
        "stat_bonus": "intelligence",
    },
    {
        "title": "Physical Training",
        "description": "Strengthen your body. Complete a 30 minute workout.",
        "quest_type": "training",
        "difficulty": "medium",
        "target_value": 30,
        "metric_key": "workout_minutes",
        "xp_reward": 60,
        "stat_bonus": "strength",
    },
    {
        "title": "Hydration Protocol",
        "description": "Drink eight glasses of water.",
        "quest_type": "wellness",
        "difficulty": "easy",
        "target_value": 8,
        "metric_key": "glasses",
        "xp_reward": 25,
        "stat_bonus": "vitality",
    },
]


class FallbackCoachAuthor(CoachAuthor):
    """Deterministic author used when no LLM provider is configured."""

    async def validate_and_draft_goal(self, goal_text: str, timeline_days: int | None = None) -> GoalAnalysis:
        trimmed = (goal_text or "").strip()
        ok = len(trimmed) >= 10 and len(trimmed.split()) >= 3
        return GoalAnalysis(
            is_valid=ok,
            clarity=7 if ok else 3,
            measurability=5,
            achievability=7,
            relevance=7,
            timebound=5,
            suggestions=[] if ok else ["Please provide a more detailed goal description"],
        )

    async def generate_plan(self, goal_text: str, timeline_days: int, context: UserContext) -> PlanDraft:
        span = max(timeline_days // 3, 1)
        bounds = [(1, span), (span + 1, span * 2), (span * 2 + 1, timeline_days)]
        names = [
            ("Foundation Phase", "Build the fundamental habits and routine."),
            ("Acceleration Phase", "Intensify efforts and push past the comfort zone."),
            ("Mastery Phase", "Consolidate gains and finish the goal."),
        ]
        phases = []
        milestones = []
        for (start, end), (name, description) in zip(bounds, names):
            if start > end:
                continue
            number = len(phases) + 1
            phases.append({
                "number": number,
                "name": name,
                "description": description,
                "start_day": start,
                "end_day": end,
                "focus": [name.split()[0].lower()],
                "habits": ["Daily check-in", "Progress tracking"],
            })
            milestones.append({
                "index": len(milestones),
                "title": f"{name} complete",
                "description": f"Finish the {name.lower()}.",
                "target_day": end,
                "criteria": ["Complete most daily quests in this phase"],
                "reward": {"xp": None, "unlock": None},
            })
        return parse_plan_draft({
            "summary": f'A {timeline_days}-day plan toward "{goal_text[:50]}".',
            "phases": phases,
            "daily_habits": [
                {
                    "title": "Core Action Block",
                    "description": "Focused time on work that advances the goal.",
                    "category": "productivity",
                    "difficulty": "medium",
                    "target_value": 60,
                    "metric_key": "minutes",
                    "xp_reward": 75,
                    "stat_bonus": "intelligence",
                },
                {
                    "title": "Physical Enhancement",
                    "description": "Move every day.",
                    "category": "physical",
                    "difficulty": "medium",
                    "target_value": 30,
                    "metric_key": "workout_minutes",
                    "xp_reward": 50,
                    "stat_bonus": "vitality",
                },
                {
                    "title": "Daily Steps",
                    "description": "Keep the legs moving.",
                    "category": "physical",
                    "difficulty": "easy",
                    "target_value": 7000,
                    "metric_key": "steps",
                    "xp_reward": 30,
                    "stat_bonus": "agility",
                },
                {
                    "title": "Recovery Protocol",
                    "description": "Rest is preparation.",
                    "category": "wellness",
                    "difficulty": "easy",
                    "target_value": 7,
                    "metric_key": "sleep_hours",
                    "xp_reward": 30,
                    "stat_bonus": "vitality",
                },
            ],
            "success_metrics": [
                {"name": "Quest completion rate", "target_value": 80, "unit": "percent"},
            ],
            "milestones": milestones,
        })

    async def generate_quests(self, context: UserContext, reason: str | None = None) -> list[QuestDraft]:
        if not context.daily_habits:
            drafts = [dict(q) for q in _GENERIC_QUESTS]
        else:
            recent = set(context.recent_quest_types) if reason else set()
            habits = sorted(
                context.daily_habits,
                key=lambda h: (h.get("category") or "general") in recent,
            )
            drafts = []
            for habit in habits[:3]:
                drafts.append({
                    "title": habit.get("title") or "Daily Habit",
                    "description": habit.get("description") or "",
                    "quest_type": habit.get("category") or "general",
                    "difficulty": habit.get("difficulty") or "medium",
                    "target_value": habit.get("target_value") or 1,
                    "metric_key": habit.get("metric_key") or "completion",
                    "xp_reward": habit.get("xp_reward") or 50,
                    "stat_bonus": habit.get("stat_bonus"),
                })
            lowest = min(context.stats.items(), key=lambda kv: kv[1])[0] if context.stats else None
            if lowest in _STAT_QUESTS:
                drafts.append(dict(_STAT_QUESTS[lowest]))

        for draft in drafts:
            draft["xp_reward"] = _scaled_xp(int(draft["xp_reward"]), context.level)
            draft["ai_reasoning"] = "Generated from the plan's daily habits" if context.daily_habits else "Default starter set"
        return parse_quest_drafts(drafts)


class ResilientCoachAuthor(CoachAuthor):
    """Bounds every collaborator call with a timeout and retries once after a backoff.

    StructuralDraftError is not retried: the draft arrived, it was just wrong.
    """

    RETRYABLE = (asyncio.TimeoutError, ProviderError, httpx.HTTPError)
    ATTEMPTS = 2

    def __init__(self, inner: CoachAuthor, timeout_seconds: float, backoff_seconds: float):
        self.inner = inner
        self.timeout_seconds = timeout_seconds
        self.backoff_seconds = backoff_seconds

    async def _call(self, what: str, factory: Callable[[], Awaitable[T]]) -> T:
        async def _attempt() -> T:
            return await asyncio.wait_for(factory(), timeout=self.timeout_seconds)

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "Collaborator %s failed (attempt %d/%d): %s",
                what, state.attempt_number, self.ATTEMPTS, exc or type(exc).__name__,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(self.RETRYABLE),
            stop=stop_after_attempt(self.ATTEMPTS),
            wait=wait_fixed(self.backoff_seconds),
            before_sleep=_log_retry,
        )
        try:
            return await retrying(_attempt)
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            logger.warning("Collaborator %s gave up after %d attempts: %s", what, self.ATTEMPTS, last_error)
            raise CollaboratorUnavailable(f"Authoring collaborator unavailable during {what}") from last_error

    async def validate_and_draft_goal(self, goal_text: str, timeline_days: int | None = None) -> GoalAnalysis:
        return await self._call("goal analysis", lambda: self.inner.validate_and_draft_goal(goal_text, timeline_days))

    async def generate_plan(self, goal_text: str, timeline_days: int, context: UserContext) -> PlanDraft:
        return await self._call("plan generation", lambda: self.inner.generate_plan(goal_text, timeline_days, context))

    async def generate_quests(self, context: UserContext, reason: str | None = None) -> list[QuestDraft]:
        return await self._call("quest generation", lambda: self.inner.generate_quests(context, reason))


def get_coach_author() -> CoachAuthor:
    provider_name = (settings.AI_PROVIDER or "").strip().lower()
    if provider_name == "fallback" or not settings.AI_API_KEY:
        inner: CoachAuthor = FallbackCoachAuthor()
    else:
        inner = LLMCoachAuthor(
            get_provider(
                provider_name,
                settings.AI_API_KEY,
                reasoning_model=settings.AI_REASONING_MODEL,
                utility_model=settings.AI_UTILITY_MODEL,
            )
        )
    return ResilientCoachAuthor(
        inner,
        timeout_seconds=settings.COLLABORATOR_TIMEOUT_SECONDS,
        backoff_seconds=settings.COLLABORATOR_RETRY_BACKOFF_SECONDS,
    )
