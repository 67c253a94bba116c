"""FastAPI application for the call coaching service."""
from __future__ import annotations

import base64
from contextlib import asynccontextmanager
import logging
import os
import warnings
from typing import AsyncIterator

warnings.filterwarnings(
    "ignore",
    message="pkg_resources is deprecated as an API",
    category=UserWarning,
    module="ctranslate2",
)

os.environ.setdefault("GRPC_VERBOSITY", "ERROR")
os.environ.setdefault("GRPC_TRACE", "")

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from .core.config import settings
from .db.session import SessionLocal, create_schema
from .routers import analysis as analysis_router
from .routers import calls as calls_router
from .routers import events as events_router
from .services.asr import build_transcriber
from .services.huggingface import SentimentClient, ToxicityClient
from .services.llm import generate_text
from .services.notifications import NotificationChannel
from .services.pipeline import CallPipeline

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

notifications = NotificationChannel()
sentiment_client = SentimentClient()
toxicity_client = ToxicityClient()
pipeline = CallPipeline(
    SessionLocal,
    notifications,
    build_transcriber(settings),
    sentiment_client,
    toxicity_client,
    enricher=generate_text,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if settings.auto_create_schema:
        await create_schema()
    if settings.recover_interrupted_calls:
        recovered = await app.state.pipeline.recover_interrupted()
        if recovered:
            logger.warning("Marked %d interrupted call(s) as failed", len(recovered))
    logger.info("Call coaching API started (env=%s)", settings.app_env)
    yield
    await app.state.pipeline.shutdown()
    logger.info("Call coaching API stopped")


app = FastAPI(title="Call Coaching API", version="0.1.0", lifespan=lifespan)
app.state.notifications = notifications
app.state.pipeline = pipeline
app.state.sentiment_client = sentiment_client
app.state.toxicity_client = toxicity_client

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(calls_router.router, prefix="/api/calls", tags=["calls"])
app.include_router(events_router.router, prefix="/api/calls", tags=["events"])
app.include_router(analysis_router.router, prefix="/api/analysis", tags=["analysis"])


FAVICON_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR4nGMAAQAABQABDQottAAAAABJRU5ErkJggg=="
)


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Simple liveness probe."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    return Response(status_code=200)


@app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
async def robots() -> PlainTextResponse:
    return PlainTextResponse("User-agent: *\nDisallow:")


@app.get("/favicon.ico", include_in_schema=False)
async def favicon() -> Response:
    return Response(content=FAVICON_BYTES, media_type="image/png")
