"""Call record repository helpers."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.call import TERMINAL_STATUSES, Call, CallStatus, ProcessingStep, StepStatus

SCORE_BANDS: tuple[tuple[int, str], ...] = ((60, "Poor"), (80, "Fair"), (90, "Good"))
TOP_SCORE_BAND = "Excellent"


async def create_call(
    session: AsyncSession,
    *,
    user_id: str,
    file_name: str,
    original_name: str,
    file_path: str,
    file_size: int,
    mime_type: str,
    call_id: str | None = None,
) -> Call:
    """Insert a freshly uploaded call with its initial history entry."""

    call = Call(
        id=call_id or str(uuid4()),
        user_id=user_id,
        file_name=file_name,
        original_name=original_name,
        file_path=file_path,
        file_size=file_size,
        mime_type=mime_type,
        status=CallStatus.UPLOADED,
        performance={},
        call_metadata={},
        processing_history=[
            ProcessingStep(
                step="upload",
                status=StepStatus.COMPLETED,
                message="File uploaded successfully",
            )
        ],
    )
    session.add(call)
    await session.flush()
    return call


async def get_by_id(session: AsyncSession, call_id: str) -> Call | None:
    """Return a call record by identifier."""

    return await session.get(Call, call_id)


async def list_unfinished(session: AsyncSession) -> list[Call]:
    """Return every call that is neither completed nor failed."""

    stmt = select(Call).where(Call.status.not_in(list(TERMINAL_STATUSES))).order_by(Call.created_at)
    result = await session.scalars(stmt)
    return list(result)


async def append_history(
    session: AsyncSession,
    call_id: str,
    *,
    step: str,
    status: StepStatus,
    message: str,
    duration_ms: int = 0,
    error: dict[str, Any] | None = None,
) -> ProcessingStep:
    """Append one audit entry. History rows are never updated or removed."""

    entry = ProcessingStep(
        call_id=call_id,
        step=step,
        status=status,
        message=message,
        duration_ms=duration_ms,
        error=error,
    )
    session.add(entry)
    await session.flush()
    return entry


def _user_filters(user_id: str, status: CallStatus | None, search: str | None) -> list[Any]:
    filters: list[Any] = [Call.user_id == user_id]
    if status is not None:
        filters.append(Call.status == status)
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(or_(Call.original_name.ilike(pattern), Call.file_name.ilike(pattern)))
    return filters


async def list_for_user(
    session: AsyncSession,
    user_id: str,
    *,
    page: int = 1,
    limit: int = 10,
    status: CallStatus | None = None,
    search: str | None = None,
) -> list[Call]:
    """Return one page of a user's calls, newest first."""

    stmt: Select[tuple[Call]] = (
        select(Call)
        .where(*_user_filters(user_id, status, search))
        .order_by(Call.created_at.desc(), Call.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    result = await session.scalars(stmt)
    return list(result)


async def count_for_user(
    session: AsyncSession,
    user_id: str,
    *,
    status: CallStatus | None = None,
    search: str | None = None,
) -> int:
    stmt = select(func.count()).select_from(Call).where(*_user_filters(user_id, status, search))
    return int(await session.scalar(stmt) or 0)


HISTORY_SORT_COLUMNS: dict[str, Any] = {
    "created_at": Call.created_at,
    "updated_at": Call.updated_at,
    "original_name": Call.original_name,
    "status": Call.status,
    "duration": Call.duration,
    "file_size": Call.file_size,
    "overall_score": Call.analysis["overall_score"].as_float(),
}


def _history_filters(
    user_id: str,
    *,
    status: CallStatus | None = None,
    call_type: str | None = None,
    priority: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    search: str | None = None,
) -> list[Any]:
    filters = _user_filters(user_id, status, None)
    if call_type:
        filters.append(Call.call_metadata["call_type"].as_string() == call_type)
    if priority:
        filters.append(Call.call_metadata["priority"].as_string() == priority)
    if start_date is not None:
        filters.append(Call.created_at >= start_date)
    if end_date is not None:
        filters.append(Call.created_at <= end_date)
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(
            or_(
                Call.original_name.ilike(pattern),
                Call.call_metadata["notes"].as_string().ilike(pattern),
                Call.transcript["text"].as_string().ilike(pattern),
            )
        )
    return filters


async def history_for_user(
    session: AsyncSession,
    user_id: str,
    *,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    descending: bool = True,
    **filters: Any,
) -> tuple[list[Call], int]:
    """Return one filtered, sorted page of a user's calls and the match count.

    Search also looks inside the call notes and the transcript text.
    """

    where = _history_filters(user_id, **filters)
    column = HISTORY_SORT_COLUMNS[sort_by]
    stmt: Select[tuple[Call]] = (
        select(Call)
        .where(*where)
        .order_by(column.desc() if descending else column.asc(), Call.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    calls = list(await session.scalars(stmt))
    total = await session.scalar(select(func.count()).select_from(Call).where(*where))
    return calls, int(total or 0)


async def history_stats_for_user(session: AsyncSession, user_id: str) -> dict[str, Any]:
    """Totals across every call the user owns, ignoring history filters."""

    stmt = select(Call.status, Call.analysis, Call.duration, Call.performance).where(Call.user_id == user_id)
    rows = (await session.execute(stmt)).all()

    scores: list[float] = []
    processing_times: list[float] = []
    total_duration = 0.0
    completed = errors = 0
    for status, analysis, duration, performance in rows:
        call_status = CallStatus(status)
        completed += call_status is CallStatus.COMPLETED
        errors += call_status is CallStatus.ERROR
        total_duration += duration or 0.0
        overall = (analysis or {}).get("overall_score")
        if overall is not None:
            scores.append(float(overall))
        processing_time = (performance or {}).get("processing_time")
        if processing_time is not None:
            processing_times.append(float(processing_time))

    return {
        "total_calls": len(rows),
        "average_score": _average(scores),
        "total_duration": total_duration,
        "average_processing_time": _average(processing_times),
        "completed_calls": completed,
        "error_calls": errors,
    }


def score_band(score: float) -> str:
    """Map an overall score onto the reporting bands."""

    for upper, label in SCORE_BANDS:
        if score < upper:
            return label
    return TOP_SCORE_BAND


async def stats_for_user(session: AsyncSession, user_id: str) -> dict[str, Any]:
    """Aggregate totals, score averages and breakdowns for a user's calls."""

    stmt = select(Call.status, Call.analysis, Call.duration).where(Call.user_id == user_id)
    rows = (await session.execute(stmt)).all()

    status_breakdown: dict[str, int] = {}
    score_distribution: dict[str, int] = {}
    scores: list[float] = []
    total_duration = 0.0

    for status, analysis, duration in rows:
        key = CallStatus(status).value
        status_breakdown[key] = status_breakdown.get(key, 0) + 1
        if duration:
            total_duration += duration
        overall = (analysis or {}).get("overall_score")
        if overall is None:
            continue
        scores.append(float(overall))
        band = score_band(float(overall))
        score_distribution[band] = score_distribution.get(band, 0) + 1

    return {
        "total_calls": len(rows),
        "average_score": _average(scores),
        "total_duration": total_duration,
        "status_breakdown": status_breakdown,
        "score_distribution": score_distribution,
    }


async def delete_call(session: AsyncSession, call: Call) -> None:
    """Delete a call together with its processing history."""

    await session.delete(call)
    await session.flush()


async def analytics_for_user(session: AsyncSession, user_id: str, since: datetime) -> dict[str, Any]:
    """Daily trends, per-call-type performance and score bands since ``since``."""

    stmt = (
        select(Call.created_at, Call.status, Call.analysis, Call.duration, Call.performance, Call.call_metadata)
        .where(Call.user_id == user_id, Call.created_at >= since)
        .order_by(Call.created_at)
    )
    rows = (await session.execute(stmt)).all()

    daily: dict[str, dict[str, Any]] = {}
    by_type: dict[str | None, dict[str, Any]] = {}
    quality: dict[str, int] = {}

    for created_at, status, analysis, duration, performance, metadata in rows:
        overall = (analysis or {}).get("overall_score")
        processing_time = (performance or {}).get("processing_time")
        call_status = CallStatus(status)

        day = daily.setdefault(
            created_at.date().isoformat(),
            {"count": 0, "scores": [], "total_duration": 0.0, "processing_times": [], "completed": 0, "errors": 0},
        )
        day["count"] += 1
        day["total_duration"] += duration or 0.0
        day["completed"] += call_status is CallStatus.COMPLETED
        day["errors"] += call_status is CallStatus.ERROR

        call_type = (metadata or {}).get("call_type")
        group = by_type.setdefault(call_type, {"count": 0, "scores": [], "processing_times": []})
        group["count"] += 1

        if overall is not None:
            day["scores"].append(float(overall))
            group["scores"].append(float(overall))
            band = score_band(float(overall))
            quality[band] = quality.get(band, 0) + 1
        if processing_time is not None:
            day["processing_times"].append(float(processing_time))
            group["processing_times"].append(float(processing_time))

    return {
        "daily_trends": [
            {
                "date": date_key,
                "count": values["count"],
                "average_score": _average(values["scores"]),
                "total_duration": values["total_duration"],
                "average_processing_time": _average(values["processing_times"]),
                "completed": values["completed"],
                "errors": values["errors"],
            }
            for date_key, values in daily.items()
        ],
        "performance_by_type": [
            {
                "call_type": call_type,
                "count": values["count"],
                "average_score": _average(values["scores"]),
                "average_processing_time": _average(values["processing_times"]),
            }
            for call_type, values in by_type.items()
        ],
        "quality_distribution": quality,
    }


def _average(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 2) if values else None
