"""API router for v1 endpoints."""

from fastapi import APIRouter

from knowledge_store.api import meetings, state

router = APIRouter()

# Meeting results, cross-meeting queries and index management
router.include_router(meetings.router)

# Participant history
router.include_router(meetings.participants_router)

# Raw versioned state
router.include_router(state.router)
