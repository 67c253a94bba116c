"""Upload handling and call queries for the HTTP layer."""
from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

from fastapi import HTTPException, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..models.call import Call, CallStatus, InvalidStatusTransition
from ..repositories import calls as calls_repo
from ..schemas import calls as schemas
from .pipeline import CallPipeline, PipelineBusyError

logger = logging.getLogger(__name__)


async def upload_call(
    file: UploadFile | None,
    user_id: str,
    session: AsyncSession,
    pipeline: CallPipeline,
) -> schemas.UploadResponse:
    """Validate and store an audio upload, create the call, start processing."""

    if file is None or not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No audio file uploaded")

    mime_type = (file.content_type or "").split(";")[0].strip().lower()
    if mime_type not in settings.allowed_audio_types:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported audio type: {mime_type or 'unknown'}",
        )

    audio_bytes = await file.read(settings.max_upload_bytes + 1)
    if not audio_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Audio payload was empty")
    if len(audio_bytes) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Audio file exceeds {settings.max_upload_bytes} bytes",
        )

    upload_dir = Path(settings.upload_dir)
    stored_name = f"{uuid4().hex}{Path(file.filename).suffix.lower()}"
    stored_path = upload_dir / stored_name

    def _write() -> None:
        upload_dir.mkdir(parents=True, exist_ok=True)
        stored_path.write_bytes(audio_bytes)

    await asyncio.get_running_loop().run_in_executor(None, _write)

    async with session.begin():
        call = await calls_repo.create_call(
            session,
            user_id=user_id,
            file_name=stored_name,
            original_name=file.filename,
            file_path=str(stored_path),
            file_size=len(audio_bytes),
            mime_type=mime_type,
        )

    pipeline.launch(call.id)
    logger.info("Call %s uploaded by %s (%d bytes)", call.id, user_id, len(audio_bytes))
    return schemas.UploadResponse(
        call_id=call.id,
        message="Call uploaded successfully. Processing started.",
        status=call.status,
    )


async def get_owned_call(session: AsyncSession, call_id: str, user_id: str) -> Call:
    """Return the call or raise 404/403."""

    call = await calls_repo.get_by_id(session, call_id)
    if call is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call not found")
    if call.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to access this call")
    return call


async def list_calls(
    session: AsyncSession,
    user_id: str,
    *,
    page: int,
    limit: int,
    status_filter: CallStatus | None = None,
    search: str | None = None,
) -> schemas.CallListResponse:
    calls = await calls_repo.list_for_user(
        session, user_id, page=page, limit=limit, status=status_filter, search=search
    )
    total = await calls_repo.count_for_user(session, user_id, status=status_filter, search=search)
    return schemas.CallListResponse(
        items=[schemas.CallSummary.model_validate(call) for call in calls],
        pagination=schemas.Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


async def get_call_detail(session: AsyncSession, call_id: str, user_id: str) -> schemas.CallDetail:
    call = await get_owned_call(session, call_id, user_id)
    return schemas.CallDetail.model_validate(call)


async def get_analysis(session: AsyncSession, call_id: str, user_id: str) -> schemas.AnalysisView:
    """Return the stored analysis, or 400 while it has not been produced."""

    call = await get_owned_call(session, call_id, user_id)
    if call.analysis is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Call analysis not completed yet (status: {call.status.value})",
        )
    return schemas.AnalysisView(
        call_id=call.id,
        status=call.status,
        analysis=call.analysis,
        transcript=call.transcript,
    )


async def get_coaching(session: AsyncSession, call_id: str, user_id: str) -> schemas.CoachingView:
    """Return the stored coaching plan, or 400 while it has not been generated."""

    call = await get_owned_call(session, call_id, user_id)
    if not call.coaching_plan or not call.coaching_plan.get("generated"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Coaching plan not generated yet (status: {call.status.value})",
        )
    return schemas.CoachingView(
        call_id=call.id,
        status=call.status,
        coaching_plan=call.coaching_plan,
        analysis=call.analysis,
    )


async def get_processing_history(
    session: AsyncSession, call_id: str, user_id: str
) -> schemas.ProcessingHistoryView:
    call = await get_owned_call(session, call_id, user_id)
    return schemas.ProcessingHistoryView(
        call_id=call.id,
        status=call.status,
        history=[schemas.ProcessingStepOut.model_validate(step) for step in call.processing_history],
    )


async def update_metadata(
    payload: schemas.CallUpdateRequest,
    session: AsyncSession,
    call_id: str,
    user_id: str,
) -> schemas.CallDetail:
    """Merge the supplied metadata fields into the call."""

    async with session.begin():
        call = await get_owned_call(session, call_id, user_id)
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        call.call_metadata = {**(call.call_metadata or {}), **changes}
        session.add(call)

    return schemas.CallDetail.model_validate(call)


async def delete_call(session: AsyncSession, pipeline: CallPipeline, call_id: str, user_id: str) -> None:
    """Delete the call and its stored audio. Refused while processing runs."""

    async with session.begin():
        call = await get_owned_call(session, call_id, user_id)
        if pipeline.is_running(call.id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Call is still being processed",
            )
        file_path = Path(call.file_path)
        await calls_repo.delete_call(session, call)

    await asyncio.get_running_loop().run_in_executor(None, lambda: file_path.unlink(missing_ok=True))
    logger.info("Call %s deleted by %s", call_id, user_id)


async def retry_call(
    session: AsyncSession, pipeline: CallPipeline, call_id: str, user_id: str
) -> schemas.RetryResponse:
    """Restart processing for a call that ended in ``error``."""

    call = await get_owned_call(session, call_id, user_id)
    if call.status is not CallStatus.ERROR:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only failed calls can be retried (status: {call.status.value})",
        )

    try:
        await pipeline.retry(call_id)
    except (PipelineBusyError, InvalidStatusTransition) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return schemas.RetryResponse(call_id=call_id, message="Processing restarted", status=CallStatus.UPLOADED)


async def get_stats(session: AsyncSession, user_id: str) -> schemas.CallStats:
    stats = await calls_repo.stats_for_user(session, user_id)
    return schemas.CallStats(**stats)


ANALYTICS_PERIODS: dict[str, int] = {"7d": 7, "30d": 30, "90d": 90}


async def get_analytics(session: AsyncSession, user_id: str, period: str = "7d") -> schemas.CallAnalytics:
    """Summarise the caller's calls over the last 7, 30 or 90 days."""

    days = ANALYTICS_PERIODS.get(period)
    if days is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported period '{period}'. Use one of: {', '.join(ANALYTICS_PERIODS)}",
        )
    since = datetime.now(timezone.utc) - timedelta(days=days)
    analytics = await calls_repo.analytics_for_user(session, user_id, since)
    return schemas.CallAnalytics(period=period, since=since, **analytics)


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive bounds are read as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def get_history(
    session: AsyncSession,
    user_id: str,
    *,
    page: int,
    limit: int,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    status_filter: CallStatus | None = None,
    call_type: str | None = None,
    priority: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    search: str | None = None,
) -> schemas.CallHistoryResponse:
    """Filtered call history with totals over everything the caller owns."""

    start_date, end_date = _as_utc(start_date), _as_utc(end_date)
    if start_date is not None and end_date is not None and start_date > end_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start_date must not be after end_date",
        )

    calls, total = await calls_repo.history_for_user(
        session,
        user_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
        descending=sort_order == "desc",
        status=status_filter,
        call_type=call_type,
        priority=priority,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    stats = await calls_repo.history_stats_for_user(session, user_id)
    return schemas.CallHistoryResponse(
        items=[schemas.CallHistoryItem.model_validate(call) for call in calls],
        pagination=schemas.Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
        stats=schemas.HistoryStats(**stats),
    )
