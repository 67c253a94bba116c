"""Shared FastAPI dependencies."""
from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from .services.huggingface import SentimentClient, ToxicityClient
from .services.pipeline import CallPipeline


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Return the caller's user id from ``X-User-Id`` or reject with 401."""

    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header is required")
    return user_id


def get_pipeline(request: Request) -> CallPipeline:
    return request.app.state.pipeline


def get_sentiment_client(request: Request) -> SentimentClient:
    return request.app.state.sentiment_client


def get_toxicity_client(request: Request) -> ToxicityClient:
    return request.app.state.toxicity_client
