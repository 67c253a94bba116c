"""Speech-to-text backends: Hugging Face inference or a local faster-whisper model."""
from __future__ import annotations

import asyncio
from functools import lru_cache
import logging
import mimetypes
from pathlib import Path
from typing import Any, Protocol

import httpx

from ..core.config import Settings, settings as default_settings
from ..schemas.analysis import TranscriptResult, TranscriptSegment
from ..schemas.huggingface import WhisperChunk, WhisperResponse

logger = logging.getLogger(__name__)

WhisperModelType = Any

# Hosted Whisper does not report a score unless the endpoint adds one.
DEFAULT_HF_CONFIDENCE = 0.9


class TranscriptionError(RuntimeError):
    """Raised when audio cannot be turned into a complete transcript."""

    def __init__(self, message: str, *, code: str = "TRANSCRIPTION_FAILED") -> None:
        super().__init__(message)
        self.code = code


class Transcriber(Protocol):
    async def transcribe(self, audio_path: Path) -> TranscriptResult: ...


def _chunk_bounds(chunk: WhisperChunk) -> tuple[float, float]:
    if not chunk.timestamp:
        return 0.0, 0.0
    start, end = chunk.timestamp
    return start or 0.0, end or start or 0.0


class HuggingFaceTranscriber:
    """Send the raw audio file to a hosted Whisper model."""

    def __init__(self, *, config: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._config = config or default_settings
        self._client = client

    @property
    def url(self) -> str:
        return f"{self._config.huggingface_base_url.rstrip('/')}/{self._config.stt_model}"

    def _headers(self, audio_path: Path) -> dict[str, str]:
        content_type = mimetypes.guess_type(audio_path.name)[0] or "application/octet-stream"
        headers = {"Content-Type": content_type, "Accept": "application/json"}
        token = self._config.huggingface_token.strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _post(self, audio_bytes: bytes, headers: dict[str, str]) -> httpx.Response:
        timeout = self._config.transcription_timeout_seconds
        if self._client is not None:
            return await self._client.post(self.url, content=audio_bytes, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(self.url, content=audio_bytes, headers=headers)

    async def transcribe(self, audio_path: Path) -> TranscriptResult:
        loop = asyncio.get_running_loop()
        try:
            audio_bytes = await loop.run_in_executor(None, audio_path.read_bytes)
        except OSError as exc:
            raise TranscriptionError(f"Could not read audio file: {exc}") from exc

        try:
            response = await self._post(audio_bytes, self._headers(audio_path))
            response.raise_for_status()
            payload = WhisperResponse.model_validate(response.json())
        except httpx.TimeoutException as exc:
            raise TranscriptionError("Transcription failed: Request timed out", code="TRANSCRIPTION_TIMEOUT") from exc
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                raise TranscriptionError("Transcription failed: Model not found", code="MODEL_NOT_FOUND") from exc
            raise TranscriptionError(
                f"Transcription failed: Service unavailable ({exc.response.status_code})"
            ) from exc
        except httpx.HTTPError as exc:
            raise TranscriptionError(f"Transcription failed: {exc}") from exc
        except ValueError as exc:
            raise TranscriptionError(f"Transcription failed: unexpected response ({exc})") from exc

        text = payload.text.strip()
        if not text:
            raise TranscriptionError("Transcription returned empty text", code="EMPTY_TRANSCRIPT")

        segments: list[TranscriptSegment] = []
        for chunk in payload.chunks:
            if not chunk.text.strip():
                continue
            start, end = _chunk_bounds(chunk)
            segments.append(TranscriptSegment(start=start, end=end, text=chunk.text.strip()))
        duration = max((segment.end for segment in segments), default=None)
        if not segments:
            segments = [TranscriptSegment(start=0.0, end=duration or 0.0, text=text)]

        return TranscriptResult(
            text=text,
            segments=segments,
            language=self._config.stt_language or None,
            confidence=payload.confidence if payload.confidence is not None else DEFAULT_HF_CONFIDENCE,
            duration=duration,
        )


@lru_cache
def _load_whisper_model(name: str, device: str, compute_type: str) -> WhisperModelType:
    """Load the Whisper model once per process."""

    # faster-whisper pulls in ctranslate2; only import it when this backend is used.
    from faster_whisper import WhisperModel

    return WhisperModel(name, device=device, compute_type=compute_type)


class WhisperTranscriber:
    """Run faster-whisper in the default executor."""

    def __init__(self, *, config: Settings | None = None) -> None:
        self._config = config or default_settings

    def _run_transcription(self, audio_path: Path) -> TranscriptResult:
        model = _load_whisper_model(
            self._config.whisper_model,
            self._config.whisper_device,
            self._config.whisper_compute_type,
        )
        segments, info = model.transcribe(
            str(audio_path),
            beam_size=1,
            language=self._config.stt_language or None,
        )
        pieces = [
            TranscriptSegment(start=segment.start, end=segment.end, text=segment.text.strip())
            for segment in segments
            if segment.text and segment.text.strip()
        ]
        return TranscriptResult(
            text=" ".join(piece.text for piece in pieces).strip(),
            segments=pieces,
            language=getattr(info, "language", None),
            confidence=getattr(info, "language_probability", None),
            duration=getattr(info, "duration", None),
        )

    async def transcribe(self, audio_path: Path) -> TranscriptResult:
        if not audio_path.exists():
            raise TranscriptionError(f"Audio file not found: {audio_path}")

        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, self._run_transcription, audio_path),
                timeout=self._config.transcription_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TranscriptionError("Transcription failed: Request timed out", code="TRANSCRIPTION_TIMEOUT") from exc
        except Exception as exc:  # noqa: BLE001 - decoder and model errors surface as stage failures
            logger.exception("faster-whisper transcription failed for %s", audio_path)
            raise TranscriptionError(f"Transcription failed: {exc}") from exc

        if not result.text:
            raise TranscriptionError("Transcription returned empty text", code="EMPTY_TRANSCRIPT")
        return result


def build_transcriber(config: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> Transcriber:
    """Return the backend selected by ``stt_provider``."""

    config = config or default_settings
    provider = config.stt_provider.strip().lower()
    if provider == "whisper":
        return WhisperTranscriber(config=config)
    if provider == "huggingface":
        return HuggingFaceTranscriber(config=config, client=client)
    raise ValueError(f"Unknown speech-to-text provider: {config.stt_provider}")
