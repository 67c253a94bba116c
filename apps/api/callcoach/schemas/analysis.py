"""Schemas for transcripts, call analysis, and coaching plans."""
from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, Field

Score = Annotated[int, Field(ge=0, le=100)]


class TranscriptSegment(BaseModel):
    start: float = 0.0
    end: float = 0.0
    text: str
    speaker: str = "agent"


class TranscriptResult(BaseModel):
    text: str
    segments: list[TranscriptSegment] = Field(default_factory=list)
    language: str | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)
    duration: float | None = Field(default=None, ge=0)


class AnalysisMetrics(BaseModel):
    call_opening: Score
    issue_understanding: Score
    sentiment: Score
    politeness: Score
    clarity: Score
    engagement: Score
    relevance: Score
    csat_score: Score
    resolution_quality: Score


class AnalysisFeedback(BaseModel):
    call_opening: str
    issue_understanding: str
    sentiment: str
    politeness: str
    clarity: str
    engagement: str
    relevance: str
    csat_score: str
    resolution_quality: str


class AnalysisResult(BaseModel):
    overall_score: Score
    metrics: AnalysisMetrics
    feedback: AnalysisFeedback
    key_points: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class Recommendation(BaseModel):
    category: str
    title: str
    description: str
    priority: str = Field(pattern="^(high|medium|low)$")


class Resource(BaseModel):
    type: str
    title: str
    description: str
    url: str


class QuizItem(BaseModel):
    question: str
    options: list[str]
    correct_answer: int
    explanation: str


class CoachingPlan(BaseModel):
    generated: bool = True
    feedback: str
    recommendations: list[Recommendation]
    resources: list[Resource]
    quiz: list[QuizItem]
    completion_criteria: str


class AnalyzeRequest(BaseModel):
    transcript: str = Field(min_length=1, description="Plain transcript text to score")


class CoachingRequest(BaseModel):
    analysis: AnalysisResult
    transcript: str = Field(default="", description="Transcript the analysis was computed from")
