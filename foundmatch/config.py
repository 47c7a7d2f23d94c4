"""
FoundMatch — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.

Every matching policy knob (signal weights, the creation floor, radii, the
retention window) lives here as a named field rather than as a constant in the
service that uses it.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the FoundMatch engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via Unix socket or private IP
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "foundmatch_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "foundmatch"

    # ------------------------------------------------------------------ #
    # Redis – outbound match event stream
    # ------------------------------------------------------------------ #
    REDIS_URL: str
    EVENT_STREAM_KEY: str = "foundmatch:events"
    EVENT_STREAM_MAXLEN: int = 100_000

    # ------------------------------------------------------------------ #
    # Signal weights (renormalised over the signals actually present)
    # ------------------------------------------------------------------ #
    DNA_WEIGHT: float = 0.25     # embedding cosine
    HASH_WEIGHT: float = 0.20    # perceptual hash
    OCR_WEIGHT: float = 0.15     # text / identifiers
    COLOR_WEIGHT: float = 0.15   # average colour
    VISUAL_WEIGHT: float = 0.15  # colour histogram
    SHAPE_WEIGHT: float = 0.10   # silhouette descriptor

    # ------------------------------------------------------------------ #
    # Score mapping
    # ------------------------------------------------------------------ #
    HASH_MAX_DISTANCE: int = 32          # bits; at or beyond this -> 0
    MAX_COLOR_DISTANCE: float = 150.0    # RGB euclidean; at or beyond -> 0
    COMBINED_MARGIN: int = 10            # points below the max still "tied"
    LOCATION_MAX_MILES: float = 200.0    # location score reaches 0 here

    # ------------------------------------------------------------------ #
    # Match policy
    # ------------------------------------------------------------------ #
    MIN_MATCH_SCORE: int = 30
    NOTIFY_MIN_SCORE: int = 65
    MATCH_RETENTION_DAYS: int = 30
    ALERT_SIDES: str = "target"

    # ------------------------------------------------------------------ #
    # Candidate generation
    # ------------------------------------------------------------------ #
    CANDIDATE_RADIUS_MILES: float = 50.0
    CANDIDATE_MAX_AGE_DAYS: int = 180
    CANDIDATE_TOP_K: int = 50
    MAX_SCORING_WORKERS: int = 8

    # ------------------------------------------------------------------ #
    # Store retry policy
    # ------------------------------------------------------------------ #
    STORE_RETRY_ATTEMPTS: int = 5

    # ------------------------------------------------------------------ #
    # Feature extraction
    # ------------------------------------------------------------------ #
    EMBEDDING_DIM: int = 512
    EMBEDDING_WEIGHTS_PATH: str = "models/resnet18_embedding.pth"
    OCR_LANG: str = "eng"

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # ------------------------------------------------------------------ #
    # Google Cloud Platform
    # ------------------------------------------------------------------ #
    GCP_PROJECT_ID: str = ""
    GCS_BUCKET_NAME: str = ""
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = True
    GCS_MODEL_WEIGHTS_PREFIX: str = "models/"

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def alert_sides_list(self) -> list[str]:
        """Return ALERT_SIDES as a list split on commas."""
        return [s.strip() for s in self.ALERT_SIDES.split(",") if s.strip()]

    @property
    def signal_weights(self) -> dict[str, float]:
        """Base weight per sub-score name."""
        return {
            "dna": self.DNA_WEIGHT,
            "hash": self.HASH_WEIGHT,
            "ocr": self.OCR_WEIGHT,
            "color": self.COLOR_WEIGHT,
            "visual": self.VISUAL_WEIGHT,
            "shape": self.SHAPE_WEIGHT,
        }

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator(
        "DNA_WEIGHT",
        "HASH_WEIGHT",
        "OCR_WEIGHT",
        "COLOR_WEIGHT",
        "VISUAL_WEIGHT",
        "SHAPE_WEIGHT",
    )
    @classmethod
    def _weight_must_be_between_0_and_1(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Weight must be between 0 and 1, got {v}")
        return v

    @field_validator("MIN_MATCH_SCORE", "NOTIFY_MIN_SCORE")
    @classmethod
    def _score_must_be_between_0_and_100(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError(f"Score threshold must be between 0 and 100, got {v}")
        return v

    @field_validator("ALERT_SIDES")
    @classmethod
    def _alert_sides_known(cls, v: str) -> str:
        sides = {s.strip() for s in v.split(",") if s.strip()}
        if not sides or not sides <= {"source", "target"}:
            raise ValueError(
                f"ALERT_SIDES must list 'source' and/or 'target', got {v!r}"
            )
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from foundmatch.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]
