"""
Tandem — Stats API

Read-only view of the engine counters.  The same numbers are broadcast to
every socket as the ``stats`` event.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Request

from tandem.schemas.stats import StatsResponse
from tandem.services.engine import MatchmakingEngine

logger = structlog.get_logger("tandem.api.stats")

router = APIRouter()


def get_engine(request: Request) -> MatchmakingEngine:
    """FastAPI dependency returning the engine attached to the app."""
    return request.app.state.engine


# ──────────────────────────────────────────────────────────────────────────────
# GET / — Current online / searching / active-session counters
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "",
    response_model=StatsResponse,
    summary="Current matchmaking counters",
)
async def get_stats(
    engine: MatchmakingEngine = Depends(get_engine),
) -> StatsResponse:
    """Return how many connections are online, how many are waiting in a
    queue, and how many two-party sessions are active."""
    stats = engine.stats()
    logger.debug("stats_read", **stats)
    return StatsResponse(**stats)
