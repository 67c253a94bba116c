"""Text generation helper built on Gemini with model fallbacks."""
from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Dict, List

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from ..core.config import settings

logger = logging.getLogger(__name__)


class LLMUnavailableError(RuntimeError):
    """Raised when no configured Gemini models are available."""


def _has_api_key() -> bool:
    return bool(settings.gemini_api_key.strip())


@lru_cache
def _configured_api() -> bool:
    """Configure the Google Generative AI client once."""

    if not _has_api_key():
        raise RuntimeError("GEMINI_API_KEY is missing")

    genai.configure(api_key=settings.gemini_api_key)
    return True


_model_cache: Dict[str, genai.GenerativeModel] = {}


def _get_model(name: str) -> genai.GenerativeModel:
    """Return a cached Gemini model instance."""

    _configured_api()
    model_name = name.strip()
    if not model_name:
        raise RuntimeError("Gemini model name was empty")

    if model_name not in _model_cache:
        _model_cache[model_name] = genai.GenerativeModel(model_name)
    return _model_cache[model_name]


def candidate_models() -> List[str]:
    """Primary model first, then fallbacks, without duplicates."""

    candidates: list[str] = []
    seen: set[str] = set()
    for candidate in (settings.gemini_model, *settings.gemini_model_fallbacks):
        if candidate and candidate not in seen:
            candidates.append(candidate)
            seen.add(candidate)
    return candidates


async def generate_text(prompt: str, *, timeout: float | None = None) -> str:
    """Return Gemini's reply to ``prompt``, trying each configured model in turn."""

    if not _has_api_key():
        raise LLMUnavailableError("GEMINI_API_KEY is missing")

    loop = asyncio.get_running_loop()
    per_model_timeout = timeout or settings.generation_timeout_seconds
    last_error: Exception | None = None

    for model_name in candidate_models():
        def _run_inference(current_model: str = model_name) -> str:
            response = _get_model(current_model).generate_content(prompt)
            text = getattr(response, "text", "") or ""
            return text.strip()

        try:
            result = await asyncio.wait_for(loop.run_in_executor(None, _run_inference), per_model_timeout)
        except google_exceptions.NotFound as exc:
            logger.warning("Gemini model %s not available: %s", model_name, exc)
            _model_cache.pop(model_name, None)
            last_error = exc
            continue
        except asyncio.TimeoutError as exc:
            logger.warning("Gemini model %s timed out after %.1fs", model_name, per_model_timeout)
            last_error = exc
            continue
        except Exception as exc:  # noqa: BLE001
            logger.exception("Gemini generate_content failed for %s", model_name)
            last_error = exc
            continue

        if result:
            return result
        logger.warning("Gemini model %s returned an empty reply", model_name)

    raise LLMUnavailableError("No Gemini models responded") from last_error
