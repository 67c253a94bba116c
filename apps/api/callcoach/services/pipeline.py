"""Call processing pipeline: transcribe, analyze, coach.

Each stage loads the call in its own transaction, moves it to the stage's
in-progress status, records a ``started`` history entry and commits before the
work runs. The result is written in a second transaction that advances the
status again. The next stage reads its input back from the stored call, never
from memory, so a crash between stages leaves a consistent record. On the
next start :meth:`CallPipeline.recover_interrupted` marks it failed, after
which a retry restarts it.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from pathlib import Path
import time
from typing import Any, Callable, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.call import Call, CallStatus, InvalidStatusTransition, StepStatus, TERMINAL_STATUSES
from ..repositories import calls as calls_repo
from ..schemas.analysis import AnalysisResult
from ..schemas.calls import ProgressEvent
from . import coaching, scoring
from .asr import Transcriber
from .coaching import Enricher
from .notifications import NotificationChannel
from .scoring import SentimentScorer, ToxicityScorer

logger = logging.getLogger(__name__)

DEFAULT_ERROR_CODE = "PROCESSING_ERROR"
CANCELLED_ERROR_CODE = "PIPELINE_CANCELLED"
INTERRUPTED_ERROR_CODE = "PIPELINE_INTERRUPTED"

PROGRESS: Dict[CallStatus, int] = {
    CallStatus.UPLOADED: 0,
    CallStatus.TRANSCRIBING: 33,
    CallStatus.TRANSCRIBED: 66,
    CallStatus.ANALYZING: 80,
    CallStatus.ANALYZED: 90,
    CallStatus.GENERATING_COACHING: 95,
    CallStatus.COMPLETED: 100,
}

# Step charged with the failure when a run is found stranded in each status.
INTERRUPTED_STEP: Dict[CallStatus, str] = {
    CallStatus.UPLOADED: "upload",
    CallStatus.TRANSCRIBING: "transcribe",
    CallStatus.TRANSCRIBED: "analyze",
    CallStatus.ANALYZING: "analyze",
    CallStatus.ANALYZED: "coaching",
    CallStatus.GENERATING_COACHING: "coaching",
}


class PipelineBusyError(RuntimeError):
    """Raised when a call already has a live pipeline run."""

    code = "PIPELINE_BUSY"

    def __init__(self, call_id: str) -> None:
        super().__init__(f"Call {call_id} is already being processed")
        self.call_id = call_id


class CallNotFoundError(LookupError):
    """Raised when the pipeline is asked to work on a missing call."""

    code = "CALL_NOT_FOUND"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class CallPipeline:
    """Run and track one processing task per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifications: NotificationChannel,
        transcriber: Transcriber,
        sentiment: SentimentScorer,
        toxicity: ToxicityScorer,
        enricher: Enricher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifications = notifications
        self._transcriber = transcriber
        self._sentiment = sentiment
        self._toxicity = toxicity
        self._enricher = enricher
        self._tasks: Dict[str, asyncio.Task[None]] = {}

    def is_running(self, call_id: str) -> bool:
        task = self._tasks.get(call_id)
        return task is not None and not task.done()

    def get_task(self, call_id: str) -> asyncio.Task[None] | None:
        return self._tasks.get(call_id)

    def launch(self, call_id: str) -> asyncio.Task[None]:
        """Start a detached run for the call and return its task."""

        if self.is_running(call_id):
            raise PipelineBusyError(call_id)

        task = asyncio.create_task(self.run(call_id), name=f"call-pipeline:{call_id}")
        self._tasks[call_id] = task
        task.add_done_callback(lambda finished: self._forget(call_id, finished))
        return task

    def _forget(self, call_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(call_id) is task:
            del self._tasks[call_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Pipeline task for call %s ended with an error", call_id, exc_info=task.exception())

    async def retry(self, call_id: str) -> asyncio.Task[None]:
        """Restart all stages for a call that ended in ``error``."""

        if self.is_running(call_id):
            raise PipelineBusyError(call_id)

        async with self._session_factory() as session:
            call = await calls_repo.get_by_id(session, call_id)
            if call is None:
                raise CallNotFoundError(f"Call {call_id} not found")
            if call.status is not CallStatus.ERROR:
                raise InvalidStatusTransition(call.status, CallStatus.UPLOADED)

        return self.launch(call_id)

    def cancel(self, call_id: str) -> bool:
        """Request cancellation of a live run. Returns False when none is live."""

        task = self._tasks.get(call_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def drain(self) -> None:
        """Wait for every live run to finish."""

        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel live runs and wait until they have recorded their state."""

        for task in list(self._tasks.values()):
            if not task.done():
                task.cancel()
        await self.drain()

    async def recover_interrupted(self) -> list[str]:
        """Fail every unfinished call that has no live run in this process.

        A process that dies mid-pipeline leaves its calls in an in-progress
        status that nothing will advance. Moving them to ``error`` makes them
        retryable. Returns the ids that were marked.
        """

        async with self._session_factory() as session:
            stranded = [
                (call.id, CallStatus(call.status))
                for call in await calls_repo.list_unfinished(session)
                if not self.is_running(call.id)
            ]

        for call_id, status in stranded:
            logger.warning("Call %s was left %s by an interrupted run", call_id, status.value)
            await self._record_failure(
                call_id,
                INTERRUPTED_STEP[status],
                f"Processing interrupted while {status.value}",
                INTERRUPTED_ERROR_CODE,
            )
        return [call_id for call_id, _ in stranded]

    async def run(self, call_id: str) -> None:
        """Drive the call through every stage. Stage failures never propagate."""

        started = time.perf_counter()
        step = "upload"
        try:
            if not await self._prepare(call_id):
                return
            step = "transcribe"
            await self._transcribe(call_id)
            step = "analyze"
            await self._analyze(call_id)
            step = "coaching"
            await self._coach(call_id, started)
        except asyncio.CancelledError:
            logger.info("Pipeline for call %s cancelled during %s", call_id, step)
            await self._record_failure(call_id, step, "Processing cancelled", CANCELLED_ERROR_CODE)
            raise
        except Exception as exc:  # noqa: BLE001 - detached run, failures become call state
            logger.exception("Pipeline for call %s failed during %s", call_id, step)
            await self._record_failure(call_id, step, str(exc) or exc.__class__.__name__, getattr(exc, "code", None))
        else:
            logger.info("Pipeline for call %s completed in %d ms", call_id, _elapsed_ms(started))

    async def _prepare(self, call_id: str) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                call = await calls_repo.get_by_id(session, call_id)
                if call is None:
                    logger.warning("Pipeline started for unknown call %s", call_id)
                    return False
                if call.status is CallStatus.ERROR:
                    call.reset_for_retry()
                    await calls_repo.append_history(
                        session,
                        call_id,
                        step="retry",
                        status=StepStatus.COMPLETED,
                        message="Call reset for reprocessing",
                    )
                elif call.status is not CallStatus.UPLOADED:
                    logger.warning("Call %s is %s; pipeline not started", call_id, call.status.value)
                    return False

        await self._publish(call_id, CallStatus.UPLOADED, "Call uploaded successfully")
        return True

    async def _begin_stage(self, call_id: str, status: CallStatus, step: str, message: str) -> Call:
        async with self._session_factory() as session:
            async with session.begin():
                call = await self._load(session, call_id)
                call.transition_to(status)
                await calls_repo.append_history(
                    session, call_id, step=step, status=StepStatus.STARTED, message=message
                )
        logger.info("Call %s: %s started", call_id, step)
        return call

    async def _finish_stage(
        self,
        call_id: str,
        status: CallStatus,
        step: str,
        message: str,
        elapsed_ms: int,
        apply: Callable[[Call], None],
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                call = await self._load(session, call_id)
                apply(call)
                call.transition_to(status)
                await calls_repo.append_history(
                    session,
                    call_id,
                    step=step,
                    status=StepStatus.COMPLETED,
                    message=message,
                    duration_ms=elapsed_ms,
                )
        logger.info("Call %s: %s finished in %d ms", call_id, step, elapsed_ms)

    async def _transcribe(self, call_id: str) -> None:
        call = await self._begin_stage(call_id, CallStatus.TRANSCRIBING, "transcribe", "Starting transcription")
        await self._publish(call_id, CallStatus.TRANSCRIBING, "Transcribing audio...")

        stage_started = time.perf_counter()
        transcript = await self._transcriber.transcribe(Path(call.file_path))
        elapsed = _elapsed_ms(stage_started)

        def apply(record: Call) -> None:
            record.transcript = transcript.model_dump(mode="json")
            record.duration = transcript.duration
            record.performance = {**(record.performance or {}), "transcription_time": elapsed}

        await self._finish_stage(
            call_id, CallStatus.TRANSCRIBED, "transcribe", "Transcription completed successfully", elapsed, apply
        )
        await self._publish(
            call_id, CallStatus.TRANSCRIBED, "Transcription completed", payload={"transcript": transcript.text}
        )

    async def _analyze(self, call_id: str) -> None:
        call = await self._begin_stage(call_id, CallStatus.ANALYZING, "analyze", "Starting analysis")
        await self._publish(call_id, CallStatus.ANALYZING, "Analyzing call...")

        stage_started = time.perf_counter()
        transcript_text = (call.transcript or {}).get("text", "")
        analysis = await scoring.analyze_call(
            transcript_text, sentiment=self._sentiment, toxicity=self._toxicity
        )
        elapsed = _elapsed_ms(stage_started)
        analysis_data = analysis.model_dump(mode="json")

        def apply(record: Call) -> None:
            record.analysis = analysis_data
            record.performance = {**(record.performance or {}), "analysis_time": elapsed}

        await self._finish_stage(
            call_id, CallStatus.ANALYZED, "analyze", "Analysis completed successfully", elapsed, apply
        )
        await self._publish(call_id, CallStatus.ANALYZED, "Analysis completed", payload={"analysis": analysis_data})

    async def _coach(self, call_id: str, run_started: float) -> None:
        call = await self._begin_stage(
            call_id, CallStatus.GENERATING_COACHING, "coaching", "Starting coaching plan generation"
        )
        await self._publish(call_id, CallStatus.GENERATING_COACHING, "Generating coaching plan...")

        stage_started = time.perf_counter()
        if call.analysis is None:
            raise scoring.AnalysisError("Call has no stored analysis to coach from")
        analysis = AnalysisResult.model_validate(call.analysis)
        transcript_text = (call.transcript or {}).get("text", "")
        plan = await coaching.generate_coaching_plan(analysis, transcript_text, enricher=self._enricher)
        elapsed = _elapsed_ms(stage_started)
        total = _elapsed_ms(run_started)
        plan_data = plan.model_dump(mode="json")

        def apply(record: Call) -> None:
            record.coaching_plan = plan_data
            record.performance = {
                **(record.performance or {}),
                "coaching_time": elapsed,
                "processing_time": total,
            }

        await self._finish_stage(
            call_id, CallStatus.COMPLETED, "coaching", "Coaching plan generated successfully", elapsed, apply
        )
        await self._publish(
            call_id,
            CallStatus.COMPLETED,
            "Call processing completed successfully",
            payload={"coaching_plan": plan_data},
        )

    async def _record_failure(self, call_id: str, step: str, message: str, code: object) -> None:
        code = code if isinstance(code, str) and code else DEFAULT_ERROR_CODE
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    call = await calls_repo.get_by_id(session, call_id)
                    if call is None:
                        logger.warning("Call %s disappeared before its failure could be recorded", call_id)
                        return
                    previous = call.error or {}
                    await calls_repo.append_history(
                        session,
                        call_id,
                        step=step,
                        status=StepStatus.FAILED,
                        message=message,
                        error={"message": message, "code": code},
                    )
                    if call.status not in TERMINAL_STATUSES:
                        call.transition_to(CallStatus.ERROR)
                    call.error = {
                        "message": message,
                        "code": code,
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                        "step": step,
                        "retry_count": int(previous.get("retry_count", 0)) + 1,
                    }
        except SQLAlchemyError:
            logger.exception("Could not persist failure for call %s", call_id)
            return

        await self._publish(
            call_id,
            CallStatus.ERROR,
            f"Processing failed: {message}",
            payload={"error": message, "code": code, "step": step},
        )

    async def _load(self, session: AsyncSession, call_id: str) -> Call:
        call = await calls_repo.get_by_id(session, call_id)
        if call is None:
            raise CallNotFoundError(f"Call {call_id} not found")
        return call

    async def _publish(
        self,
        call_id: str,
        status: CallStatus,
        message: str,
        *,
        payload: dict[str, Any] | None = None,
    ) -> None:
        event = ProgressEvent(
            call_id=call_id,
            status=status,
            message=message,
            progress=PROGRESS.get(status),
            payload=payload,
        )
        await self._notifications.publish(call_id, event)
