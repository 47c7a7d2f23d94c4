"""Shared pytest fixtures for FoundMatch tests."""
import io
import os

# Settings are read lazily, but foundmatch.main reads them at import time.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["GCS_BUCKET_NAME"] = ""

import uuid
from datetime import datetime, timezone

import numpy as np
import pytest
from PIL import Image, ImageDraw
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from foundmatch.config import get_settings
from foundmatch.database import Base
from foundmatch.models import Case, Photo, PhotoMatch
from foundmatch.models.match import make_pair_key
from foundmatch.schemas.features import FeatureSet, ShapeDescriptor


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ── Database ────────────────────────────────────────────────────────────────


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so that separate sessions get separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'foundmatch.db'}")

    # pysqlite/aiosqlite defer BEGIN, which breaks SAVEPOINT; emit it ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


# ── Feature sets ────────────────────────────────────────────────────────────


def make_features(
    phash: str | None = "8f3c1a2b4d5e6f70",
    color: tuple[int, int, int] | None = (120, 40, 40),
    histogram_bin: int | None = 32,
    tokens: list[str] | None = None,
    identifiers: dict | None = None,
    shape_fill: float | None = 0.5,
    embedding: list[float] | None = None,
) -> FeatureSet:
    """Build a FeatureSet with readable knobs; ``None`` drops a descriptor."""
    histogram = None
    if histogram_bin is not None:
        histogram = [0.0] * 64
        histogram[histogram_bin] = 1.0
    shape = None
    if shape_fill is not None:
        shape = ShapeDescriptor(
            grid=[shape_fill] * 32 + [0.0] * 32,
            aspect_ratio=1.0,
            edge_density=shape_fill / 2,
        )
    return FeatureSet(
        perceptual_hash=phash,
        average_color=color,
        color_histogram=histogram,
        ocr_tokens=tokens,
        identifiers=identifiers,
        shape=shape,
        embedding=embedding,
    )


@pytest.fixture
def features_factory():
    return make_features


# ── Rows ────────────────────────────────────────────────────────────────────

NYC = (40.7128, -74.0060)


@pytest.fixture
def add_case(db_session):
    async def _add(
        case_type: str = "lost",
        category: str | None = "electronics",
        location: tuple[float, float] | None = NYC,
        **kwargs,
    ) -> Case:
        case = Case(
            case_type=case_type,
            category=category,
            latitude=location[0] if location else None,
            longitude=location[1] if location else None,
            **kwargs,
        )
        db_session.add(case)
        await db_session.flush()
        return case

    return _add


@pytest.fixture
def add_photo(db_session):
    async def _add(case: Case, features: FeatureSet | None = None, **kwargs) -> Photo:
        photo = Photo(case_id=case.id, **kwargs)
        if features is not None:
            features.apply_to_photo(photo)
            photo.processing_status = kwargs.get("processing_status", "ready")
            photo.features_extracted_at = datetime.now(timezone.utc)
        db_session.add(photo)
        await db_session.flush()
        return photo

    return _add


@pytest.fixture
def add_match(db_session):
    """Insert a PhotoMatch directly, bypassing scoring."""

    async def _add(**overrides) -> PhotoMatch:
        source_photo_id = overrides.pop("source_photo_id", uuid.uuid4())
        target_photo_id = overrides.pop("target_photo_id", uuid.uuid4())
        values = {
            "source_case_id": uuid.uuid4(),
            "target_case_id": uuid.uuid4(),
            "overall_score": 72,
            "hash_score": 80,
            "color_score": 60,
            "match_type": "pattern",
            "match_details": {"weights_used": {"hash": 0.571429, "color": 0.428571}},
            "status": "pending",
            "source_user_notified": False,
            "target_user_notified": False,
        }
        values.update(overrides)
        match = PhotoMatch(
            source_photo_id=source_photo_id,
            target_photo_id=target_photo_id,
            pair_key=make_pair_key(
                source_photo_id or uuid.uuid4(), target_photo_id or uuid.uuid4()
            ),
            **values,
        )
        db_session.add(match)
        await db_session.flush()
        return match

    return _add


# ── Images ──────────────────────────────────────────────────────────────────


def make_image(
    size: tuple[int, int] = (128, 128),
    background: tuple[int, int, int] = (200, 40, 40),
    seed: int | None = None,
) -> Image.Image:
    """Solid background with a dark rectangle and circle, or seeded noise."""
    if seed is not None:
        rng = np.random.default_rng(seed)
        pixels = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
        return Image.fromarray(pixels, mode="RGB")
    image = Image.new("RGB", size, background)
    draw = ImageDraw.Draw(image)
    w, h = size
    draw.rectangle([w // 8, h // 8, w // 2, h // 2], fill=(20, 20, 20))
    draw.ellipse([w // 2, h // 2, w - w // 8, h - h // 8], fill=(240, 240, 240))
    return image


def image_bytes(image: Image.Image, fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def image_factory():
    return make_image


@pytest.fixture
def png_bytes():
    return image_bytes


# ── Redis ───────────────────────────────────────────────────────────────────


class FakeRedis:
    """Records XADD calls in memory."""

    def __init__(self):
        self.entries: list[tuple[str, dict]] = []

    async def xadd(self, key, fields, maxlen=None, approximate=True):
        self.entries.append((key, fields))
        return f"{len(self.entries)}-0"

    async def ping(self):
        return True

    @property
    def event_types(self) -> list[str]:
        return [fields["type"] for _, fields in self.entries]


@pytest.fixture
def fake_redis():
    return FakeRedis()
