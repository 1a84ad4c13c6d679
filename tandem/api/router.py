"""
Tandem — Main API Router

Aggregates all sub-routers under a single prefix so that ``tandem.main``
can mount the entire HTTP surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from tandem.api import stats

router = APIRouter()

router.include_router(stats.router, prefix="/stats", tags=["Stats"])
