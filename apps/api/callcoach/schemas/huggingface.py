"""Typed payloads returned by the Hugging Face inference endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field, RootModel


class WhisperChunk(BaseModel):
    text: str
    timestamp: tuple[float | None, float | None] | None = None


class WhisperResponse(BaseModel):
    """Body of an automatic-speech-recognition inference call."""

    text: str = ""
    chunks: list[WhisperChunk] = Field(default_factory=list)
    confidence: float | None = Field(default=None, ge=0, le=1)


class LabelScore(BaseModel):
    label: str
    score: float = Field(ge=0, le=1)


class ClassificationResponse(RootModel[list[list[LabelScore]]]):
    """Text-classification body: one list of label scores per input."""

    def label_scores(self) -> dict[str, float]:
        """Return the first input's scores keyed by lower-cased label."""

        if not self.root or not self.root[0]:
            raise ValueError("Classification response contained no labels")
        return {item.label.lower(): item.score for item in self.root[0]}


class SentimentScore(BaseModel):
    positive: float = Field(ge=0, le=1)
    negative: float = Field(ge=0, le=1)


class ToxicityScore(BaseModel):
    toxic: float = Field(default=0.0, ge=0, le=1)
    hate: float = Field(default=0.0, ge=0, le=1)
    obscene: float = Field(default=0.0, ge=0, le=1)
    threat: float = Field(default=0.0, ge=0, le=1)
    insult: float = Field(default=0.0, ge=0, le=1)

    @property
    def politeness(self) -> float:
        return 1 - max(self.toxic, self.hate, self.obscene, self.threat, self.insult)
