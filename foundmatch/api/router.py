"""
FoundMatch — Main API Router

Aggregates all sub-routers under a single prefix so that ``foundmatch.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from foundmatch.api import events, matches
from foundmatch.api.admin import feedback

router = APIRouter()

router.include_router(events.router, prefix="/events", tags=["Events"])
router.include_router(matches.router, prefix="/matches", tags=["Matches"])
router.include_router(feedback.router, prefix="/admin", tags=["Admin - Feedback"])
