"""Schemas for call upload, queries, and progress events."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..models.call import CallStatus, StepStatus
from .analysis import AnalysisResult, CoachingPlan, TranscriptResult


class CallError(BaseModel):
    message: str
    code: str
    timestamp: datetime
    step: str
    retry_count: int = 0


class CallMetadata(BaseModel):
    customer_id: str | None = None
    call_type: str | None = None
    priority: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None


class CallUpdateRequest(BaseModel):
    customer_id: str | None = None
    call_type: str | None = None
    priority: str | None = Field(default=None, pattern="^(low|medium|high)$")
    tags: list[str] | None = None
    notes: str | None = Field(default=None, max_length=2000)


class ProcessingStepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step: str
    status: StepStatus
    message: str
    timestamp: datetime
    duration_ms: int
    error: dict[str, Any] | None = None


class CallSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    original_name: str
    file_size: int
    mime_type: str
    status: CallStatus
    duration: float | None = None
    created_at: datetime
    updated_at: datetime


class CallDetail(CallSummary):
    user_id: str
    file_name: str
    transcript: TranscriptResult | None = None
    analysis: AnalysisResult | None = None
    coaching_plan: CoachingPlan | None = None
    error: CallError | None = None
    performance: dict[str, int] = Field(default_factory=dict)
    # ORM attribute is call_metadata; the API field is metadata.
    call_metadata: CallMetadata = Field(
        default_factory=CallMetadata,
        validation_alias=AliasChoices("call_metadata", "metadata"),
        serialization_alias="metadata",
    )
    processing_history: list[ProcessingStepOut] = Field(default_factory=list)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class CallListResponse(BaseModel):
    items: list[CallSummary]
    pagination: Pagination


class CallHistoryItem(CallSummary):
    error: CallError | None = None
    call_metadata: CallMetadata = Field(
        default_factory=CallMetadata,
        validation_alias=AliasChoices("call_metadata", "metadata"),
        serialization_alias="metadata",
    )


class HistoryStats(BaseModel):
    """Totals over all of the caller's calls."""

    total_calls: int = 0
    average_score: float | None = None
    total_duration: float = 0.0
    average_processing_time: float | None = None
    completed_calls: int = 0
    error_calls: int = 0


class CallHistoryResponse(BaseModel):
    items: list[CallHistoryItem]
    pagination: Pagination
    stats: HistoryStats


class UploadResponse(BaseModel):
    call_id: str
    message: str
    status: CallStatus


class RetryResponse(BaseModel):
    call_id: str
    message: str
    status: CallStatus


class AnalysisView(BaseModel):
    call_id: str
    status: CallStatus
    analysis: AnalysisResult
    transcript: TranscriptResult | None = None


class CoachingView(BaseModel):
    call_id: str
    status: CallStatus
    coaching_plan: CoachingPlan
    analysis: AnalysisResult | None = None


class ProcessingHistoryView(BaseModel):
    call_id: str
    status: CallStatus
    history: list[ProcessingStepOut]


class CallStats(BaseModel):
    total_calls: int
    average_score: float | None = None
    total_duration: float = 0.0
    status_breakdown: dict[str, int] = Field(default_factory=dict)
    score_distribution: dict[str, int] = Field(default_factory=dict)


class DailyTrend(BaseModel):
    date: str
    count: int
    average_score: float | None = None
    total_duration: float = 0.0
    average_processing_time: float | None = None
    completed: int = 0
    errors: int = 0


class CallTypePerformance(BaseModel):
    call_type: str | None = None
    count: int
    average_score: float | None = None
    average_processing_time: float | None = None


class CallAnalytics(BaseModel):
    """Trends over a reporting window ending now."""

    period: str
    since: datetime
    daily_trends: list[DailyTrend] = Field(default_factory=list)
    performance_by_type: list[CallTypePerformance] = Field(default_factory=list)
    quality_distribution: dict[str, int] = Field(default_factory=dict)


class ProgressEvent(BaseModel):
    """Event published to a call's topic on every pipeline transition."""

    call_id: str
    status: CallStatus
    message: str
    progress: int | None = Field(default=None, ge=0, le=100)
    payload: dict[str, Any] | None = None
