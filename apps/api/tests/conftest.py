"""Shared fixtures: a throwaway SQLite database and fake AI collaborators."""
from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from callcoach.models.base import Base
from callcoach.repositories import calls as calls_repo
from callcoach.schemas.analysis import TranscriptResult, TranscriptSegment
from callcoach.schemas.huggingface import SentimentScore, ToxicityScore
from callcoach.services.llm import LLMUnavailableError
from callcoach.services.notifications import NotificationChannel, Subscriber
from callcoach.services.pipeline import CallPipeline

SAMPLE_TRANSCRIPT = (
    "Hello, thank you for calling customer service. My name is Sarah, how can I help you today? "
    "I understand you have an issue with your order. Let me check your account and see what I can do. "
    "I see the problem now, the shipment was delayed at the warehouse. "
    "I can resolve this for you by sending a replacement with express delivery. "
    "I will follow up by email to confirm the solution. Thank you for your patience."
)


class FakeTranscriber:
    """Returns a canned transcript, optionally after a delay or a gate."""

    def __init__(
        self,
        text: str = SAMPLE_TRANSCRIPT,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.text = text
        self.error = error
        self.delay = delay
        self.gate = gate
        self.calls: list[Path] = []

    async def transcribe(self, audio_path: Path) -> TranscriptResult:
        self.calls.append(audio_path)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TranscriptResult(
            text=self.text,
            segments=[TranscriptSegment(start=0.0, end=12.5, text=self.text)],
            language="en",
            confidence=0.95,
            duration=12.5,
        )


class FakeSentiment:
    def __init__(self, positive: float = 0.9, *, error: Exception | None = None) -> None:
        self.positive = positive
        self.error = error
        self.sentences: list[str] = []

    async def score(self, sentence: str) -> SentimentScore:
        self.sentences.append(sentence)
        if self.error is not None:
            raise self.error
        return SentimentScore(positive=self.positive, negative=1 - self.positive)


class FakeToxicity:
    def __init__(self, toxic: float = 0.02, *, error: Exception | None = None) -> None:
        self.toxic = toxic
        self.error = error

    async def score(self, sentence: str) -> ToxicityScore:
        if self.error is not None:
            raise self.error
        return ToxicityScore(toxic=self.toxic)


class RecordingSubscriber:
    def __init__(self, subscriber_id: str = "recorder") -> None:
        self.subscriber_id = subscriber_id
        self.events: list[dict] = []

    async def send(self, message: dict) -> None:
        self.events.append(message)

    def as_subscriber(self) -> Subscriber:
        return Subscriber(subscriber_id=self.subscriber_id, send=self.send)

    @property
    def statuses(self) -> list[str]:
        return [event["status"] for event in self.events]


async def no_enrichment(prompt: str) -> str:
    raise LLMUnavailableError("Gemini API key is not configured")


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()


@pytest.fixture
def channel() -> NotificationChannel:
    return NotificationChannel()


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def sentiment() -> FakeSentiment:
    return FakeSentiment()


@pytest.fixture
def toxicity() -> FakeToxicity:
    return FakeToxicity()


@pytest.fixture
def pipeline(session_factory, channel, transcriber, sentiment, toxicity) -> CallPipeline:
    return CallPipeline(session_factory, channel, transcriber, sentiment, toxicity, enricher=no_enrichment)


@pytest.fixture
def make_call(session_factory, tmp_path: Path):
    """Insert an uploaded call and return its id."""

    async def _make(user_id: str = "user-1", name: str = "call.wav") -> str:
        audio = tmp_path / f"{len(list(tmp_path.iterdir()))}-{name}"
        audio.write_bytes(b"RIFF0000WAVE")
        async with session_factory() as session:
            async with session.begin():
                call = await calls_repo.create_call(
                    session,
                    user_id=user_id,
                    file_name=audio.name,
                    original_name=name,
                    file_path=str(audio),
                    file_size=audio.stat().st_size,
                    mime_type="audio/wav",
                )
        return call.id

    return _make

