"""Sentiment and toxicity clients for the Hugging Face inference API."""
from __future__ import annotations

import logging

import httpx

from ..core.config import Settings, settings as default_settings
from ..schemas.huggingface import ClassificationResponse, SentimentScore, ToxicityScore

logger = logging.getLogger(__name__)

TOXICITY_LABELS = ("toxic", "hate", "obscene", "threat", "insult")
# toxic-bert reports hate speech as ``identity_hate``.
LABEL_ALIASES = {"identity_hate": "hate"}


class ClassificationError(RuntimeError):
    """Raised when a classification request yields no usable label scores."""


class _ClassificationClient:
    """POST a sentence to a text-classification model and return label scores."""

    def __init__(
        self,
        model: str,
        *,
        config: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or default_settings
        self._model = model
        self._client = client

    @property
    def url(self) -> str:
        return f"{self._config.huggingface_base_url.rstrip('/')}/{self._model}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._config.huggingface_token.strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _post(self, sentence: str) -> httpx.Response:
        timeout = self._config.classification_timeout_seconds
        if self._client is not None:
            return await self._client.post(
                self.url, json={"inputs": sentence}, headers=self._headers(), timeout=timeout
            )
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(self.url, json={"inputs": sentence}, headers=self._headers())

    async def classify(self, sentence: str) -> dict[str, float]:
        """Return ``{label: score}`` for the sentence."""

        try:
            response = await self._post(sentence)
            response.raise_for_status()
            payload = ClassificationResponse.model_validate(response.json())
            scores = payload.label_scores()
        except httpx.HTTPError as exc:
            raise ClassificationError(f"{self._model} request failed: {exc}") from exc
        except ValueError as exc:
            raise ClassificationError(f"{self._model} returned an unexpected payload: {exc}") from exc

        logger.debug("%s returned %d labels", self._model, len(scores))
        return {LABEL_ALIASES.get(label, label): score for label, score in scores.items()}


class SentimentClient(_ClassificationClient):
    def __init__(self, *, config: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        config = config or default_settings
        super().__init__(config.sentiment_model, config=config, client=client)

    async def score(self, sentence: str) -> SentimentScore:
        scores = await self.classify(sentence)
        return SentimentScore(positive=scores.get("positive", 0.0), negative=scores.get("negative", 0.0))


class ToxicityClient(_ClassificationClient):
    def __init__(self, *, config: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        config = config or default_settings
        super().__init__(config.toxicity_model, config=config, client=client)

    async def score(self, sentence: str) -> ToxicityScore:
        scores = await self.classify(sentence)
        return ToxicityScore(**{label: scores.get(label, 0.0) for label in TOXICITY_LABELS})
