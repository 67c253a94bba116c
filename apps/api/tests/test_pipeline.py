"""Tests for the call processing pipeline."""
from __future__ import annotations

import asyncio
from collections import Counter
from pathlib import Path
import random

import pytest

from callcoach.models.call import Call, CallStatus, InvalidStatusTransition, StepStatus
from callcoach.schemas.analysis import TranscriptResult
from callcoach.services import coaching
from callcoach.services.asr import TranscriptionError
from callcoach.services.huggingface import ClassificationError
from callcoach.services.pipeline import CallNotFoundError, CallPipeline, PipelineBusyError

from conftest import FakeSentiment, FakeToxicity, FakeTranscriber, RecordingSubscriber, no_enrichment


async def load_call(session_factory, call_id: str) -> Call:
    async with session_factory() as session:
        call = await session.get(Call, call_id)
        assert call is not None
        return call


def completed_steps(call: Call) -> Counter:
    return Counter(entry.step for entry in call.processing_history if entry.status is StepStatus.COMPLETED)


async def wait_for_status(recorder: RecordingSubscriber, status: str) -> None:
    for _ in range(500):
        if status in recorder.statuses:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"never saw {status}: {recorder.statuses}")


@pytest.mark.asyncio
async def test_pipeline_completes_all_stages(pipeline, channel, session_factory, make_call):
    call_id = await make_call()
    recorder = RecordingSubscriber()
    await channel.subscribe(call_id, recorder.as_subscriber())

    await pipeline.launch(call_id)

    call = await load_call(session_factory, call_id)
    assert call.status is CallStatus.COMPLETED
    assert call.error is None
    assert call.duration == 12.5
    assert call.transcript["text"].startswith("Hello, thank you for calling")

    metrics = call.analysis["metrics"]
    assert len(metrics) == 9
    assert all(0 <= value <= 100 for value in metrics.values())
    assert 0 <= call.analysis["overall_score"] <= 100

    plan = call.coaching_plan
    assert plan["generated"] is True
    assert len(plan["recommendations"]) >= 1
    assert len(plan["resources"]) >= 1
    assert len(plan["quiz"]) >= 2

    steps = completed_steps(call)
    assert steps["upload"] == 1
    assert steps["transcribe"] == 1
    assert steps["analyze"] == 1
    assert steps["coaching"] == 1
    assert {"transcription_time", "analysis_time", "coaching_time", "processing_time"} <= set(call.performance)

    assert recorder.statuses == [
        "uploaded",
        "transcribing",
        "transcribed",
        "analyzing",
        "analyzed",
        "generating-coaching",
        "completed",
    ]
    assert recorder.events[-1]["progress"] == 100
    assert recorder.events[-1]["payload"]["coaching_plan"]["generated"] is True
    assert not pipeline.is_running(call_id)


@pytest.mark.asyncio
async def test_history_starts_are_recorded_before_completions(pipeline, session_factory, make_call):
    call_id = await make_call()
    await pipeline.launch(call_id)

    call = await load_call(session_factory, call_id)
    trail = [(entry.step, entry.status) for entry in call.processing_history]
    assert trail == [
        ("upload", StepStatus.COMPLETED),
        ("transcribe", StepStatus.STARTED),
        ("transcribe", StepStatus.COMPLETED),
        ("analyze", StepStatus.STARTED),
        ("analyze", StepStatus.COMPLETED),
        ("coaching", StepStatus.STARTED),
        ("coaching", StepStatus.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_transcription_failure_stops_pipeline(pipeline, channel, transcriber, session_factory, make_call):
    transcriber.error = TranscriptionError("Transcription failed: Model not found", code="MODEL_NOT_FOUND")
    call_id = await make_call()
    recorder = RecordingSubscriber()
    await channel.subscribe(call_id, recorder.as_subscriber())

    await pipeline.launch(call_id)

    call = await load_call(session_factory, call_id)
    assert call.status is CallStatus.ERROR
    assert call.transcript is None
    assert call.analysis is None
    assert call.coaching_plan is None
    assert call.error["code"] == "MODEL_NOT_FOUND"
    assert call.error["step"] == "transcribe"
    assert call.error["retry_count"] == 1
    assert "Model not found" in call.error["message"]

    last = call.processing_history[-1]
    assert last.step == "transcribe"
    assert last.status is StepStatus.FAILED
    assert "analyze" not in {entry.step for entry in call.processing_history}

    assert recorder.statuses[-1] == "error"
    assert recorder.events[-1]["payload"]["code"] == "MODEL_NOT_FOUND"
    assert recorder.events[-1]["message"].startswith("Processing failed:")


@pytest.mark.asyncio
async def test_empty_transcript_fails_analysis(session_factory, channel, sentiment, toxicity, make_call):
    pipeline = CallPipeline(
        session_factory, channel, FakeTranscriber(text="   "), sentiment, toxicity, enricher=no_enrichment
    )
    call_id = await make_call()

    await pipeline.launch(call_id)

    call = await load_call(session_factory, call_id)
    assert call.status is CallStatus.ERROR
    assert call.error["code"] == "ANALYSIS_FAILED"
    assert call.error["step"] == "analyze"
    assert call.transcript is not None
    assert call.analysis is None


@pytest.mark.asyncio
async def test_classifier_outage_uses_fallback_scores(session_factory, channel, transcriber, make_call):
    pipeline = CallPipeline(
        session_factory,
        channel,
        transcriber,
        FakeSentiment(error=ClassificationError("503")),
        FakeToxicity(error=ClassificationError("503")),
        enricher=no_enrichment,
    )
    call_id = await make_call()

    await pipeline.launch(call_id)

    call = await load_call(session_factory, call_id)
    assert call.status is CallStatus.COMPLETED
    assert call.analysis["metrics"]["sentiment"] == 70
    assert call.analysis["metrics"]["politeness"] == 80


@pytest.mark.asyncio
async def test_invalid_coaching_plan_marks_call_failed(pipeline, session_factory, make_call, monkeypatch):
    original = coaching.build_coaching_plan

    def without_quiz(analysis):
        return original(analysis).model_copy(update={"quiz": []})

    monkeypatch.setattr(coaching, "build_coaching_plan", without_quiz)
    call_id = await make_call()

    await pipeline.launch(call_id)

    call = await load_call(session_factory, call_id)
    assert call.status is CallStatus.ERROR
    assert call.error["code"] == "INVALID_COACHING_PLAN"
    assert call.error["step"] == "coaching"
    assert call.analysis is not None
    assert call.coaching_plan is None


@pytest.mark.asyncio
async def test_retry_restarts_every_stage(pipeline, transcriber, session_factory, make_call):
    transcriber.error = TranscriptionError("Transcription failed: Service unavailable (503)")
    call_id = await make_call()
    await pipeline.launch(call_id)
    assert (await load_call(session_factory, call_id)).status is CallStatus.ERROR

    transcriber.error = None
    await (await pipeline.retry(call_id))

    call = await load_call(session_factory, call_id)
    assert call.status is CallStatus.COMPLETED
    assert call.coaching_plan["generated"] is True
    # The last failure stays on record after a successful retry.
    assert call.error["retry_count"] == 1
    steps = [(entry.step, entry.status) for entry in call.processing_history]
    assert ("transcribe", StepStatus.FAILED) in steps
    assert ("retry", StepStatus.COMPLETED) in steps
    assert completed_steps(call)["transcribe"] == 1
    assert len(transcriber.calls) == 2


@pytest.mark.asyncio
async def test_retry_count_grows_with_each_failure(pipeline, transcriber, session_factory, make_call):
    transcriber.error = TranscriptionError("Transcription failed: boom")
    call_id = await make_call()
    await pipeline.launch(call_id)
    await (await pipeline.retry(call_id))

    call = await load_call(session_factory, call_id)
    assert call.status is CallStatus.ERROR
    assert call.error["retry_count"] == 2


@pytest.mark.asyncio
async def test_retry_requires_error_status(pipeline, make_call):
    call_id = await make_call()
    await pipeline.launch(call_id)

    with pytest.raises(InvalidStatusTransition):
        await pipeline.retry(call_id)

    with pytest.raises(CallNotFoundError):
        await pipeline.retry("missing-call")


@pytest.mark.asyncio
async def test_second_run_for_same_call_is_rejected(session_factory, channel, sentiment, toxicity, make_call):
    gate = asyncio.Event()
    pipeline = CallPipeline(
        session_factory, channel, FakeTranscriber(gate=gate), sentiment, toxicity, enricher=no_enrichment
    )
    call_id = await make_call()

    task = pipeline.launch(call_id)
    assert pipeline.is_running(call_id)
    with pytest.raises(PipelineBusyError):
        pipeline.launch(call_id)

    gate.set()
    await task
    assert (await load_call(session_factory, call_id)).status is CallStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancelled_run_is_recorded_as_error(session_factory, channel, sentiment, toxicity, make_call):
    pipeline = CallPipeline(
        session_factory, channel, FakeTranscriber(gate=asyncio.Event()), sentiment, toxicity, enricher=no_enrichment
    )
    call_id = await make_call()
    recorder = RecordingSubscriber()
    await channel.subscribe(call_id, recorder.as_subscriber())

    task = pipeline.launch(call_id)
    await wait_for_status(recorder, "transcribing")
    assert pipeline.cancel(call_id) is True

    with pytest.raises(asyncio.CancelledError):
        await task

    call = await load_call(session_factory, call_id)
    assert call.status is CallStatus.ERROR
    assert call.error["code"] == "PIPELINE_CANCELLED"
    assert call.error["step"] == "transcribe"
    assert pipeline.cancel(call_id) is False


class PerCallTranscriber:
    """Echo the audio file name back after a random pause."""

    def __init__(self) -> None:
        self._random = random.Random(7)

    async def transcribe(self, audio_path: Path) -> TranscriptResult:
        await asyncio.sleep(self._random.uniform(0, 0.05))
        return TranscriptResult(
            text=f"Hello, this is the call about {audio_path.stem}. I understand the issue. I can resolve it.",
            duration=3.0,
        )


@pytest.mark.asyncio
async def test_concurrent_calls_do_not_share_state(session_factory, channel, sentiment, toxicity, make_call):
    pipeline = CallPipeline(
        session_factory, channel, PerCallTranscriber(), sentiment, toxicity, enricher=no_enrichment
    )
    call_ids = [await make_call(name=f"order{index}.wav") for index in range(5)]
    recorders = {}
    for call_id in call_ids:
        recorders[call_id] = RecordingSubscriber()
        await channel.subscribe(call_id, recorders[call_id].as_subscriber())

    await asyncio.gather(*(pipeline.launch(call_id) for call_id in call_ids))

    for index, call_id in enumerate(call_ids):
        call = await load_call(session_factory, call_id)
        assert call.status is CallStatus.COMPLETED
        assert f"order{index}" in call.transcript["text"]
        assert completed_steps(call)["coaching"] == 1
        assert {event["call_id"] for event in recorders[call_id].events} == {call_id}
        assert recorders[call_id].statuses[-1] == "completed"


@pytest.mark.asyncio
async def test_unknown_call_is_ignored(pipeline):
    await pipeline.launch("does-not-exist")
    assert not pipeline.is_running("does-not-exist")


@pytest.mark.asyncio
async def test_shutdown_cancels_live_runs(session_factory, channel, sentiment, toxicity, make_call):
    pipeline = CallPipeline(
        session_factory, channel, FakeTranscriber(gate=asyncio.Event()), sentiment, toxicity, enricher=no_enrichment
    )
    call_id = await make_call()
    recorder = RecordingSubscriber()
    await channel.subscribe(call_id, recorder.as_subscriber())
    pipeline.launch(call_id)
    await wait_for_status(recorder, "transcribing")

    await pipeline.shutdown()

    call = await load_call(session_factory, call_id)
    assert call.status is CallStatus.ERROR
    assert call.error["code"] == "PIPELINE_CANCELLED"


async def strand(session_factory, call_id: str, status: CallStatus) -> None:
    """Leave the call as a killed process would: mid-pipeline, with no task."""

    async with session_factory() as session:
        async with session.begin():
            call = await session.get(Call, call_id)
            call.status = status


@pytest.mark.asyncio
async def test_recovery_fails_calls_left_mid_pipeline(pipeline, channel, session_factory, make_call):
    finished_id = await make_call(name="finished.wav")
    await pipeline.launch(finished_id)
    stranded_id = await make_call(name="stranded.wav")
    await strand(session_factory, stranded_id, CallStatus.TRANSCRIBED)
    recorder = RecordingSubscriber()
    await channel.subscribe(stranded_id, recorder.as_subscriber())

    assert await pipeline.recover_interrupted() == [stranded_id]

    call = await load_call(session_factory, stranded_id)
    assert call.status is CallStatus.ERROR
    assert call.error["code"] == "PIPELINE_INTERRUPTED"
    assert call.error["step"] == "analyze"
    assert call.error["retry_count"] == 1
    last = call.processing_history[-1]
    assert (last.step, last.status) == ("analyze", StepStatus.FAILED)
    assert recorder.statuses == ["error"]
    assert (await load_call(session_factory, finished_id)).status is CallStatus.COMPLETED

    await (await pipeline.retry(stranded_id))

    call = await load_call(session_factory, stranded_id)
    assert call.status is CallStatus.COMPLETED
    assert completed_steps(call)["coaching"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status",
    [
        CallStatus.UPLOADED,
        CallStatus.TRANSCRIBING,
        CallStatus.ANALYZING,
        CallStatus.ANALYZED,
        CallStatus.GENERATING_COACHING,
    ],
)
async def test_recovery_handles_every_unfinished_status(pipeline, session_factory, make_call, status):
    call_id = await make_call()
    await strand(session_factory, call_id, status)

    assert await pipeline.recover_interrupted() == [call_id]
    assert (await load_call(session_factory, call_id)).status is CallStatus.ERROR
    assert await pipeline.recover_interrupted() == []


@pytest.mark.asyncio
async def test_recovery_skips_calls_with_a_live_run(session_factory, channel, sentiment, toxicity, make_call):
    gate = asyncio.Event()
    pipeline = CallPipeline(
        session_factory, channel, FakeTranscriber(gate=gate), sentiment, toxicity, enricher=no_enrichment
    )
    call_id = await make_call()
    recorder = RecordingSubscriber()
    await channel.subscribe(call_id, recorder.as_subscriber())
    task = pipeline.launch(call_id)
    await wait_for_status(recorder, "transcribing")

    assert await pipeline.recover_interrupted() == []

    gate.set()
    await task
    assert (await load_call(session_factory, call_id)).status is CallStatus.COMPLETED
