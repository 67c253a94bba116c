"""Call upload and query endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.session import get_session
from ..dependencies import get_current_user_id, get_pipeline
from ..models.call import CallStatus
from ..schemas import calls as schemas
from ..services import calls as calls_service
from ..services.pipeline import CallPipeline

router = APIRouter()


@router.post("/upload", response_model=schemas.UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_call(
    audio: UploadFile | None = File(default=None),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    pipeline: CallPipeline = Depends(get_pipeline),
) -> schemas.UploadResponse:
    """Store an audio file and start processing it in the background."""

    return await calls_service.upload_call(audio, user_id, session, pipeline)


@router.get("", response_model=schemas.CallListResponse)
async def list_calls(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status_filter: CallStatus | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=200),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.CallListResponse:
    """Return the caller's calls, newest first."""

    return await calls_service.list_calls(
        session, user_id, page=page, limit=limit, status_filter=status_filter, search=search
    )


@router.get("/history", response_model=schemas.CallHistoryResponse)
async def call_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status_filter: CallStatus | None = Query(default=None, alias="status"),
    call_type: str | None = Query(default=None, max_length=100),
    priority: Literal["low", "medium", "high"] | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    sort_by: Literal[
        "created_at", "updated_at", "original_name", "status", "duration", "file_size", "overall_score"
    ] = Query(default="created_at"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.CallHistoryResponse:
    """Search the caller's calls by metadata, date range, notes and transcript text."""

    return await calls_service.get_history(
        session,
        user_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        status_filter=status_filter,
        call_type=call_type,
        priority=priority,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )


@router.get("/stats", response_model=schemas.CallStats)
async def call_stats(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.CallStats:
    return await calls_service.get_stats(session, user_id)


@router.get("/analytics", response_model=schemas.CallAnalytics)
async def call_analytics(
    period: str = Query(default="7d"),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.CallAnalytics:
    """Daily trends, per-type performance and quality bands for a window."""

    return await calls_service.get_analytics(session, user_id, period)


@router.get("/{call_id}", response_model=schemas.CallDetail)
async def get_call(
    call_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.CallDetail:
    return await calls_service.get_call_detail(session, call_id, user_id)


@router.get("/{call_id}/analysis", response_model=schemas.AnalysisView)
async def get_call_analysis(
    call_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.AnalysisView:
    return await calls_service.get_analysis(session, call_id, user_id)


@router.get("/{call_id}/coaching", response_model=schemas.CoachingView)
async def get_call_coaching(
    call_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.CoachingView:
    return await calls_service.get_coaching(session, call_id, user_id)


@router.get("/{call_id}/processing-history", response_model=schemas.ProcessingHistoryView)
async def get_processing_history(
    call_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.ProcessingHistoryView:
    """Return the append-only audit trail for the call."""

    return await calls_service.get_processing_history(session, call_id, user_id)


@router.post("/{call_id}/retry", response_model=schemas.RetryResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_call(
    call_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    pipeline: CallPipeline = Depends(get_pipeline),
) -> schemas.RetryResponse:
    """Re-run every stage for a call left in ``error``."""

    return await calls_service.retry_call(session, pipeline, call_id, user_id)


@router.put("/{call_id}", response_model=schemas.CallDetail)
async def update_call(
    call_id: str,
    payload: schemas.CallUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> schemas.CallDetail:
    return await calls_service.update_metadata(payload, session, call_id, user_id)


@router.delete("/{call_id}")
async def delete_call(
    call_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    pipeline: CallPipeline = Depends(get_pipeline),
) -> dict[str, str]:
    await calls_service.delete_call(session, pipeline, call_id, user_id)
    return {"message": "Call deleted successfully"}
