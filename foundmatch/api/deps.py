"""
FoundMatch — Shared API service singletons

Services are created lazily on first request so that importing the API
package never touches configuration, Redis or model weights.
"""

from __future__ import annotations

from foundmatch.services.event_publisher import EventPublisher
from foundmatch.services.feedback_service import FeedbackService
from foundmatch.services.lifecycle_service import MatchLifecycle
from foundmatch.services.matching_service import MatchingService

_lifecycle: MatchLifecycle | None = None
_feedback_service: FeedbackService | None = None
_matching_service: MatchingService | None = None
_publisher: EventPublisher | None = None


def get_lifecycle() -> MatchLifecycle:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = MatchLifecycle()
    return _lifecycle


def get_feedback_service() -> FeedbackService:
    global _feedback_service
    if _feedback_service is None:
        _feedback_service = FeedbackService(lifecycle=get_lifecycle())
    return _feedback_service


def get_publisher() -> EventPublisher:
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher


def get_matching_service() -> MatchingService:
    global _matching_service
    if _matching_service is None:
        _matching_service = MatchingService(
            lifecycle=get_lifecycle(),
            publisher=get_publisher(),
        )
    return _matching_service
