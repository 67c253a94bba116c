"""Coaching plan generation.

An LLM draft is requested for every plan, but the returned plan is always the
structured one built here from the analysis, so its lists are well formed
whether or not the model answered.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable

from ..core.config import settings
from ..schemas.analysis import AnalysisResult, CoachingPlan, QuizItem, Recommendation, Resource
from . import llm

logger = logging.getLogger(__name__)

Enricher = Callable[[str], Awaitable[str]]

HIGH_PRIORITY_BELOW = 70
MEDIUM_PRIORITY_BELOW = 85

COMPLETION_CRITERIA = "Complete all recommendations and score 80% or higher on the quiz"

RESOURCES = (
    Resource(
        type="video",
        title="Active Listening Techniques",
        description="Learn effective active listening skills",
        url="https://www.youtube.com/watch?v=WzZNuQwQoQY",
    ),
    Resource(
        type="article",
        title="Customer Service Best Practices",
        description="Essential tips for excellent customer service",
        url="https://www.zendesk.com/blog/customer-service-best-practices/",
    ),
)

QUIZ = (
    QuizItem(
        question="What is the most important aspect of call opening?",
        options=["Speed", "Professional greeting", "Getting to the point", "Asking questions"],
        correct_answer=1,
        explanation="A professional greeting sets the tone for the entire call",
    ),
    QuizItem(
        question="How should you handle an angry customer?",
        options=["Hang up", "Listen actively and empathize", "Argue back", "Transfer immediately"],
        correct_answer=1,
        explanation="Active listening and empathy help de-escalate situations",
    ),
)

# (category, title, description, metric that drives the priority)
RECOMMENDATION_TOPICS = (
    (
        "Communication",
        "Improve Active Listening",
        "Practice active listening techniques to better understand customer needs",
        "issue_understanding",
    ),
    (
        "Professionalism",
        "Enhance Greeting Skills",
        "Work on creating more welcoming and professional call openings",
        "call_opening",
    ),
    (
        "Problem Solving",
        "Better Issue Resolution",
        "Improve problem identification and resolution techniques",
        "resolution_quality",
    ),
)


class CoachingPlanError(RuntimeError):
    """Raised when a generated plan does not have the expected shape."""

    code = "INVALID_COACHING_PLAN"


def overall_feedback(overall_score: int) -> str:
    if overall_score >= 85:
        return "Excellent performance! Keep up the great work."
    if overall_score >= 70:
        return "Good performance with specific areas for improvement."
    return "Performance needs improvement. Focus on the recommendations below."


def priority_for(score: int) -> str:
    if score < HIGH_PRIORITY_BELOW:
        return "high"
    if score < MEDIUM_PRIORITY_BELOW:
        return "medium"
    return "low"


def build_coaching_plan(analysis: AnalysisResult) -> CoachingPlan:
    """Build the structured plan from the analysis scores."""

    metrics = analysis.metrics.model_dump()
    recommendations = [
        Recommendation(
            category=category,
            title=title,
            description=description,
            priority=priority_for(metrics[metric]),
        )
        for category, title, description, metric in RECOMMENDATION_TOPICS
    ]
    return CoachingPlan(
        generated=True,
        feedback=overall_feedback(analysis.overall_score),
        recommendations=recommendations,
        resources=[resource.model_copy() for resource in RESOURCES],
        quiz=[item.model_copy(deep=True) for item in QUIZ],
        completion_criteria=COMPLETION_CRITERIA,
    )


def validate_coaching_plan(plan: CoachingPlan) -> CoachingPlan:
    """Raise :class:`CoachingPlanError` unless every plan list is usable."""

    for field_name in ("recommendations", "resources", "quiz"):
        value = getattr(plan, field_name)
        if not isinstance(value, list):
            raise CoachingPlanError(f"Invalid coaching plan structure: {field_name} must be a list")
        if not value:
            raise CoachingPlanError(f"Invalid coaching plan structure: {field_name} is empty")

    for index, item in enumerate(plan.quiz):
        if not 0 <= item.correct_answer < len(item.options):
            raise CoachingPlanError(f"Quiz item {index} points at a missing option")
    return plan


def build_enrichment_prompt(analysis: AnalysisResult, transcript_text: str) -> str:
    return (
        "Generate a coaching plan for this call analysis: "
        f"{json.dumps(analysis.model_dump(mode='json'))}. Transcript: {transcript_text}"
    )


async def generate_coaching_plan(
    analysis: AnalysisResult,
    transcript_text: str,
    *,
    enricher: Enricher | None = None,
) -> CoachingPlan:
    """Return a validated coaching plan for the analysed call."""

    enrich = enricher or llm.generate_text
    try:
        draft = await asyncio.wait_for(
            enrich(build_enrichment_prompt(analysis, transcript_text)),
            timeout=settings.generation_timeout_seconds,
        )
    except Exception as exc:  # noqa: BLE001 - the draft is advisory only
        logger.warning("Coaching enrichment failed, using structured plan: %s", exc)
    else:
        logger.debug("Coaching enrichment returned %d characters; structured plan kept", len(draft or ""))

    plan = build_coaching_plan(analysis)
    return validate_coaching_plan(plan)
