"""Call record, status state machine, and processing history."""
from __future__ import annotations

from datetime import datetime, timezone
import enum
from typing import Any

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType


class CallStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    GENERATING_COACHING = "generating-coaching"
    COMPLETED = "completed"
    ERROR = "error"


class StepStatus(str, enum.Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


STAGE_ORDER: tuple[CallStatus, ...] = (
    CallStatus.UPLOADED,
    CallStatus.TRANSCRIBING,
    CallStatus.TRANSCRIBED,
    CallStatus.ANALYZING,
    CallStatus.ANALYZED,
    CallStatus.GENERATING_COACHING,
    CallStatus.COMPLETED,
)
TERMINAL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.ERROR})


class InvalidStatusTransition(ValueError):
    """Raised when a call status change would break the forward-only order."""

    code = "INVALID_TRANSITION"

    def __init__(self, current: CallStatus, target: CallStatus) -> None:
        super().__init__(f"Cannot move call from '{current.value}' to '{target.value}'")
        self.current = current
        self.target = target


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    """Return True if ``current -> target`` is a legal status move.

    Forward moves advance exactly one stage. ``error`` is reachable from any
    non-terminal status and can only be left by resetting to ``uploaded``.
    """

    if target is CallStatus.ERROR:
        return current not in TERMINAL_STATUSES
    if current is CallStatus.ERROR:
        return target is CallStatus.UPLOADED
    if current is CallStatus.COMPLETED:
        return False
    return STAGE_ORDER.index(target) == STAGE_ORDER.index(current) + 1


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Call(Base):
    """One uploaded call and everything the pipeline learned about it."""

    __tablename__ = "calls"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)

    file_name: Mapped[str] = mapped_column(String, nullable=False)
    original_name: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[str] = mapped_column(String, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, nullable=False)

    status: Mapped[CallStatus] = mapped_column(
        Enum(CallStatus, name="call_status", values_callable=_enum_values),
        default=CallStatus.UPLOADED,
        nullable=False,
        index=True,
    )
    duration: Mapped[float | None] = mapped_column(Float)
    transcript: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    analysis: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    coaching_plan: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    performance: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    call_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    processing_history: Mapped[list["ProcessingStep"]] = relationship(
        "ProcessingStep",
        back_populates="call",
        order_by="ProcessingStep.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def transition_to(self, target: CallStatus) -> None:
        """Move to ``target`` or raise :class:`InvalidStatusTransition`."""

        current = CallStatus(self.status)
        if not can_transition(current, target):
            raise InvalidStatusTransition(current, target)
        self.status = target

    def reset_for_retry(self) -> None:
        """Return an errored call to ``uploaded`` and drop stale stage results.

        ``error`` is kept so the retry counter keeps accumulating; history is
        append-only and is never touched.
        """

        self.transition_to(CallStatus.UPLOADED)
        self.transcript = None
        self.analysis = None
        self.coaching_plan = None
        self.duration = None
        self.performance = {}


class ProcessingStep(Base):
    """Append-only audit entry for one stage transition."""

    __tablename__ = "call_processing_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(ForeignKey("calls.id", ondelete="CASCADE"), index=True, nullable=False)
    step: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[StepStatus] = mapped_column(
        Enum(StepStatus, name="step_status", values_callable=_enum_values), nullable=False
    )
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    call: Mapped["Call"] = relationship("Call", back_populates="processing_history")
