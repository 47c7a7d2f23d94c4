"""
FoundMatch — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from foundmatch.models.case import Case, Photo
from foundmatch.models.match import PhotoMatch
from foundmatch.models.feedback import MatchFeedback

__all__ = [
    "Case",
    "Photo",
    "PhotoMatch",
    "MatchFeedback",
]
