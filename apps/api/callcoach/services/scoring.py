"""Call quality scoring.

Sentiment and politeness come from external classifiers run over the opening
sentences of the transcript; every other metric is a local keyword or
text-statistics heuristic. A classifier call that fails is replaced by a fixed
fallback value, so only an empty transcript can make scoring fail.
"""
from __future__ import annotations

import asyncio
import logging
import math
import re
from typing import Iterable, Protocol

from ..core.config import settings
from ..schemas.analysis import AnalysisFeedback, AnalysisMetrics, AnalysisResult
from ..schemas.huggingface import SentimentScore, ToxicityScore

logger = logging.getLogger(__name__)

FALLBACK_SENTIMENT = SentimentScore(positive=0.7, negative=0.3)
FALLBACK_POLITENESS = 0.8

EXCELLENT_THRESHOLD = 85
GOOD_THRESHOLD = 70
ISSUE_THRESHOLD = 70
LOW_POLITENESS = 0.7

SENTENCE_SPLIT = re.compile(r"[.!?]+")

RELEVANCE_KEYWORDS = frozenset(
    {
        "help",
        "assist",
        "support",
        "issue",
        "problem",
        "resolve",
        "fix",
        "order",
        "account",
        "service",
        "customer",
        "thank",
        "apologize",
        "understand",
        "solution",
        "process",
    }
)

# (pattern, bonus) pairs added to a base score of 60 when the pattern matches.
OPENING_SIGNALS = (
    (re.compile(r"hello|hi|good|thank you", re.IGNORECASE), 15),
    (re.compile(r"my name is|i'm|this is", re.IGNORECASE), 15),
    (re.compile(r"how can i help|what can i do|assist", re.IGNORECASE), 10),
)
UNDERSTANDING_SIGNALS = (
    (re.compile(r"issue|problem|concern|matter", re.IGNORECASE), 20),
    (re.compile(r"understand|see|look|check", re.IGNORECASE), 15),
    (re.compile(r"clarify|confirm|verify", re.IGNORECASE), 5),
)
RESOLUTION_SIGNALS = (
    (re.compile(r"resolve|fix|solve|address", re.IGNORECASE), 20),
    (re.compile(r"solution|answer|result", re.IGNORECASE), 15),
    (re.compile(r"follow|check|ensure|confirm", re.IGNORECASE), 5),
)
SIGNAL_BASE_SCORE = 60

KEY_POINT_SIGNALS = (
    (re.compile(r"hello|greeting", re.IGNORECASE), "Professional greeting"),
    (re.compile(r"issue|problem", re.IGNORECASE), "Problem identification"),
    (re.compile(r"understand|clarify", re.IGNORECASE), "Active listening"),
    (re.compile(r"resolve|fix", re.IGNORECASE), "Problem resolution"),
    (re.compile(r"thank|appreciate", re.IGNORECASE), "Gratitude expressed"),
)
DEFAULT_KEY_POINT = "Customer service interaction"
DEFAULT_RECOMMENDATION = "Continue current good practices"

# metric -> (excellent, good, needs improvement)
FEEDBACK = {
    "call_opening": (
        "Excellent call opening with professional greeting and clear introduction",
        "Good call opening, could improve introduction clarity",
        "Call opening needs improvement - add greeting and clear introduction",
    ),
    "issue_understanding": (
        "Excellent problem identification and understanding",
        "Good issue understanding, could improve clarification",
        "Issue understanding needs work - practice active listening",
    ),
    "sentiment": (
        "Excellent positive sentiment throughout the call",
        "Good sentiment, maintain positive tone",
        "Sentiment needs improvement - focus on positive language",
    ),
    "politeness": (
        "Excellent politeness and professional tone",
        "Good politeness, maintain professional language",
        "Politeness needs improvement - avoid negative language",
    ),
    "clarity": (
        "Excellent clarity and coherent communication",
        "Good clarity, could improve sentence structure",
        "Clarity needs improvement - use shorter, clearer sentences",
    ),
    "engagement": (
        "Excellent engagement with rich vocabulary",
        "Good engagement, could expand vocabulary",
        "Engagement needs improvement - use more descriptive language",
    ),
    "relevance": (
        "Excellent topic relevance throughout the call",
        "Good relevance, stay focused on customer needs",
        "Relevance needs improvement - stay on topic",
    ),
    "csat_score": (
        "Excellent customer satisfaction potential",
        "Good customer satisfaction, maintain quality",
        "Customer satisfaction needs improvement",
    ),
    "resolution_quality": (
        "Excellent problem resolution and follow-up",
        "Good resolution, could improve follow-up",
        "Resolution quality needs improvement - provide clear solutions",
    ),
}


class AnalysisError(ValueError):
    """Raised when a transcript cannot be scored."""

    code = "ANALYSIS_FAILED"


class SentimentScorer(Protocol):
    async def score(self, sentence: str) -> SentimentScore: ...


class ToxicityScorer(Protocol):
    async def score(self, sentence: str) -> ToxicityScore: ...


def round_half_up(value: float) -> int:
    """Round .5 away from zero for the non-negative scores used here."""

    return int(math.floor(value + 0.5))


def mean(values: Iterable[float]) -> float:
    items = list(values)
    return sum(items) / len(items)


def split_sentences(text: str) -> list[str]:
    """Split on runs of sentence punctuation, dropping blank pieces."""

    return [piece.strip() for piece in SENTENCE_SPLIT.split(text) if piece.strip()]


def tokenize(text: str) -> list[str]:
    return text.lower().split()


def score_clarity(text: str) -> int:
    sentences = split_sentences(text)
    if not sentences:
        return 0
    average_length = mean(len(sentence.split()) for sentence in sentences)
    score = 80
    if average_length > 20:
        score -= 10
    if average_length < 5:
        score -= 15
    if len(sentences) < 3:
        score -= 10
    return max(0, min(100, score))


def score_engagement(text: str) -> int:
    words = tokenize(text)
    if not words:
        return 0
    richness = len(set(words)) / len(words)
    score = 70
    if richness > 0.6:
        score += 15
    if len(words) > 50:
        score += 10
    if len(words) > 100:
        score += 5
    return min(100, score)


def score_relevance(text: str) -> int:
    words = tokenize(text)
    if not words:
        return 0
    relevant = sum(1 for word in words if word in RELEVANCE_KEYWORDS)
    return round_half_up(relevant / len(words) * 100)


def _signal_score(text: str, signals: tuple[tuple[re.Pattern[str], int], ...]) -> int:
    score = SIGNAL_BASE_SCORE + sum(bonus for pattern, bonus in signals if pattern.search(text))
    return min(100, score)


def score_call_opening(text: str) -> int:
    return _signal_score(text, OPENING_SIGNALS)


def score_issue_understanding(text: str) -> int:
    return _signal_score(text, UNDERSTANDING_SIGNALS)


def score_resolution_quality(text: str) -> int:
    return _signal_score(text, RESOLUTION_SIGNALS)


def feedback_for(metric: str, score: float) -> str:
    excellent, good, needs_work = FEEDBACK[metric]
    if score >= EXCELLENT_THRESHOLD:
        return excellent
    if score >= GOOD_THRESHOLD:
        return good
    return needs_work


def extract_key_points(text: str) -> list[str]:
    points = [label for pattern, label in KEY_POINT_SIGNALS if pattern.search(text)]
    return points or [DEFAULT_KEY_POINT]


def _threshold_findings(
    clarity: int,
    engagement: int,
    relevance: int,
    politeness_scores: list[float],
    messages: tuple[str, str, str, str],
) -> list[str]:
    findings: list[str] = []
    if clarity < ISSUE_THRESHOLD:
        findings.append(messages[0])
    if engagement < ISSUE_THRESHOLD:
        findings.append(messages[1])
    if relevance < ISSUE_THRESHOLD:
        findings.append(messages[2])
    if any(value < LOW_POLITENESS for value in politeness_scores):
        findings.append(messages[3])
    return findings


def identify_issues(clarity: int, engagement: int, relevance: int, politeness_scores: list[float]) -> list[str]:
    return _threshold_findings(
        clarity,
        engagement,
        relevance,
        politeness_scores,
        (
            "Communication clarity needs improvement",
            "Engagement level could be higher",
            "Stay more focused on customer needs",
            "Language politeness needs attention",
        ),
    )


def recommend(clarity: int, engagement: int, relevance: int, politeness_scores: list[float]) -> list[str]:
    recommendations = _threshold_findings(
        clarity,
        engagement,
        relevance,
        politeness_scores,
        (
            "Practice clear, concise communication",
            "Expand vocabulary and be more descriptive",
            "Stay focused on customer issues",
            "Use more polite and professional language",
        ),
    )
    return recommendations or [DEFAULT_RECOMMENDATION]


async def _sentiment_or_fallback(client: SentimentScorer, sentence: str) -> SentimentScore:
    try:
        return await client.score(sentence)
    except Exception as exc:  # noqa: BLE001 - classifier outages degrade to the fallback
        logger.warning("Sentiment scoring failed, using fallback: %s", exc)
        return FALLBACK_SENTIMENT


async def _politeness_or_fallback(client: ToxicityScorer, sentence: str) -> float:
    try:
        result = await client.score(sentence)
    except Exception as exc:  # noqa: BLE001 - classifier outages degrade to the fallback
        logger.warning("Toxicity scoring failed, using fallback: %s", exc)
        return FALLBACK_POLITENESS
    return result.politeness


async def analyze_call(
    transcript_text: str,
    *,
    sentiment: SentimentScorer,
    toxicity: ToxicityScorer,
    excerpt_sentences: int | None = None,
) -> AnalysisResult:
    """Score a transcript on the nine call-quality metrics."""

    if not transcript_text or not transcript_text.strip():
        raise AnalysisError("Transcript text is empty")
    sentences = split_sentences(transcript_text)
    if not sentences:
        raise AnalysisError("Transcript contains no scorable sentences")

    excerpt = sentences[: excerpt_sentences or settings.sentiment_excerpt_sentences]
    sentiment_scores, politeness_scores = await asyncio.gather(
        asyncio.gather(*(_sentiment_or_fallback(sentiment, sentence) for sentence in excerpt)),
        asyncio.gather(*(_politeness_or_fallback(toxicity, sentence) for sentence in excerpt)),
    )
    politeness_scores = list(politeness_scores)

    sentiment_score = round_half_up(mean(item.positive for item in sentiment_scores) * 100)
    politeness_score = round_half_up(mean(politeness_scores) * 100)
    clarity = score_clarity(transcript_text)
    engagement = score_engagement(transcript_text)
    relevance = score_relevance(transcript_text)

    satisfaction = mean((sentiment_score, politeness_score, relevance))
    metrics = AnalysisMetrics(
        call_opening=score_call_opening(transcript_text),
        issue_understanding=score_issue_understanding(transcript_text),
        sentiment=sentiment_score,
        politeness=politeness_score,
        clarity=clarity,
        engagement=engagement,
        relevance=relevance,
        csat_score=round_half_up(satisfaction),
        resolution_quality=score_resolution_quality(transcript_text),
    )

    scored: dict[str, float] = metrics.model_dump()
    scored["csat_score"] = satisfaction
    feedback = AnalysisFeedback(**{metric: feedback_for(metric, value) for metric, value in scored.items()})

    overall = round_half_up(mean((sentiment_score, politeness_score, clarity, engagement, relevance)))
    return AnalysisResult(
        overall_score=overall,
        metrics=metrics,
        feedback=feedback,
        key_points=extract_key_points(transcript_text),
        issues=identify_issues(clarity, engagement, relevance, politeness_scores),
        recommendations=recommend(clarity, engagement, relevance, politeness_scores),
    )
