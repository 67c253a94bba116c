"""Stateless scoring and coaching endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..dependencies import get_current_user_id, get_sentiment_client, get_toxicity_client
from ..schemas.analysis import AnalysisResult, AnalyzeRequest, CoachingPlan, CoachingRequest
from ..services import coaching, scoring
from ..services.huggingface import SentimentClient, ToxicityClient

router = APIRouter()


@router.post("/analyze", response_model=AnalysisResult)
async def analyze_transcript(
    payload: AnalyzeRequest,
    _: str = Depends(get_current_user_id),
    sentiment: SentimentClient = Depends(get_sentiment_client),
    toxicity: ToxicityClient = Depends(get_toxicity_client),
) -> AnalysisResult:
    """Score a transcript without storing anything."""

    try:
        return await scoring.analyze_call(payload.transcript, sentiment=sentiment, toxicity=toxicity)
    except scoring.AnalysisError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/coaching", response_model=CoachingPlan)
async def generate_coaching(
    payload: CoachingRequest,
    _: str = Depends(get_current_user_id),
) -> CoachingPlan:
    """Build a coaching plan for an analysis result."""

    return await coaching.generate_coaching_plan(payload.analysis, payload.transcript)
