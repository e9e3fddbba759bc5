"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from knowledge_store.api import router as api_router
from knowledge_store.core.logging import get_logger
from knowledge_store.core.meeting_index import create_meeting_index

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the meeting index on startup and release its backend on shutdown."""
    engine = create_meeting_index()
    await engine.initialize()
    app.state.meeting_index = engine
    logger.info(f"Knowledge store ready on {engine.store.backend.kind} backend")
    try:
        yield
    finally:
        await engine.dispose()
        app.state.meeting_index = None


app = FastAPI(
    title="Meeting Knowledge Store",
    description="Versioned state store and cross-meeting index for meeting analysis results",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
