"""
FoundMatch — Feature Extraction Service

Derives the FeatureSet for a photo and writes it onto the ``photos`` row:

  * perceptual hash, average colour, colour histogram, shape descriptor
    (pure PIL / numpy, see ``foundmatch.ml.image_features``)
  * OCR token set and structured identifiers (``foundmatch.ml.ocr``)
  * 512-dim visual embedding (``foundmatch.ml.embedding``)

Each descriptor is computed independently.  A failing descriptor is logged
and left out of the FeatureSet; it never fails the extraction as a whole.
Only an undecodable or unreachable image marks the photo ``failed``.
Re-extraction overwrites every FeatureSet column, so running it twice on
the same pixels yields the same row.
"""

from __future__ import annotations

import asyncio
import io
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import structlog
from google.api_core.exceptions import GoogleAPIError
from PIL import Image, ImageOps, UnidentifiedImageError
from sqlalchemy.ext.asyncio import AsyncSession

from foundmatch.config import get_settings
from foundmatch.ml import image_features
from foundmatch.ml.ocr import extract_identifiers, tokenize
from foundmatch.models.case import Photo
from foundmatch.schemas.features import FeatureSet, ShapeDescriptor
from foundmatch.utils.storage import load_photo_bytes

logger = structlog.get_logger("foundmatch.feature_extractor")

# Decoded images larger than this are downsampled before OCR / embedding.
_MAX_WORKING_SIDE = 1600


class FeatureExtractor:
    """Computes and persists photo FeatureSets.

    The OCR reader and embedding model are injected or lazily created on
    first use, because the embedding weights may still be downloading when
    the service starts.
    """

    def __init__(
        self,
        ocr_reader: Callable[[Image.Image], str] | None = None,
        embedder: Callable[[Image.Image], list[float]] | None = None,
        loader: Callable[[str], bytes] | None = None,
    ) -> None:
        self._ocr_reader = ocr_reader
        self._embedder = embedder
        self._embedder_unavailable = False
        self._loader = loader or load_photo_bytes

    # ── Lazy loaders ──────────────────────────────────────────────────────

    def _get_ocr_reader(self) -> Callable[[Image.Image], str]:
        if self._ocr_reader is None:
            from foundmatch.ml.ocr import TesseractReader

            self._ocr_reader = TesseractReader(lang=get_settings().OCR_LANG)
        return self._ocr_reader

    def _get_embedder(self) -> Callable[[Image.Image], list[float]] | None:
        if self._embedder is None and not self._embedder_unavailable:
            settings = get_settings()
            try:
                from foundmatch.ml.embedding import EmbeddingModel

                self._embedder = EmbeddingModel(
                    weights_path=settings.EMBEDDING_WEIGHTS_PATH,
                    embedding_dim=settings.EMBEDDING_DIM,
                )
            except Exception:
                # Stays unavailable until the process restarts with weights.
                logger.exception("embedding_model_unavailable")
                self._embedder_unavailable = True
        return self._embedder

    # ── Extraction ────────────────────────────────────────────────────────

    @staticmethod
    def _safe(signal: str, fn: Callable[[], Any]) -> Any | None:
        try:
            return fn()
        except Exception as exc:
            logger.warning(
                "signal_extraction_failed",
                signal=signal,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    def _ocr(self, image: Image.Image) -> tuple[list[str] | None, dict | None]:
        text = self._get_ocr_reader()(image)
        tokens = tokenize(text)
        identifiers = extract_identifiers(text)
        has_identifiers = bool(
            identifiers["license_plates"] or identifiers["serial_numbers"]
        )
        if not tokens and not has_identifiers:
            return None, None
        return tokens, (identifiers if has_identifiers else None)

    def _embed(self, image: Image.Image) -> list[float] | None:
        embedder = self._get_embedder()
        if embedder is None:
            return None
        return embedder(image)

    @staticmethod
    def decode(image_bytes: bytes) -> Image.Image:
        """Decode and orient image bytes.

        Raises
        ------
        ValueError
            If the bytes are not a readable image.
        """
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise ValueError(f"Unreadable image: {exc}") from exc
        image = ImageOps.exif_transpose(image)
        if max(image.size) > _MAX_WORKING_SIDE:
            image.thumbnail((_MAX_WORKING_SIDE, _MAX_WORKING_SIDE))
        return image

    def extract_from_image(self, image: Image.Image) -> FeatureSet:
        """Compute every descriptor that can be computed for ``image``."""
        phash = self._safe("perceptual_hash", lambda: image_features.perceptual_hash(image))
        color = self._safe("average_color", lambda: image_features.average_color(image))
        histogram = self._safe("color_histogram", lambda: image_features.color_histogram(image))
        shape = self._safe("shape", lambda: image_features.shape_descriptor(image))
        ocr = self._safe("ocr", lambda: self._ocr(image))
        embedding = self._safe("embedding", lambda: self._embed(image))

        tokens, identifiers = ocr if ocr is not None else (None, None)

        return FeatureSet(
            perceptual_hash=phash,
            average_color=tuple(color) if color is not None else None,
            color_histogram=histogram,
            ocr_tokens=tokens,
            identifiers=identifiers,
            shape=ShapeDescriptor(**shape) if shape is not None else None,
            embedding=embedding,
        )

    def extract(self, image_bytes: bytes) -> FeatureSet:
        return self.extract_from_image(self.decode(image_bytes))

    async def extract_for_photo(
        self,
        photo: Photo,
        db_session: AsyncSession,
    ) -> FeatureSet | None:
        """Extract and persist the FeatureSet of ``photo``.

        Parameters
        ----------
        photo:
            The ``Photo`` row; its ``storage_uri`` is fetched.
        db_session:
            Active session; the caller owns commit/rollback.

        Returns
        -------
        FeatureSet | None
            The stored FeatureSet, or ``None`` when the image could not be
            fetched or decoded (the photo is then marked ``failed``).
        """
        log = logger.bind(photo_id=str(photo.id), case_id=str(photo.case_id))
        log.info("feature_extraction_start")

        try:
            if not photo.storage_uri:
                raise ValueError("Photo has no storage_uri")
            image_bytes = await asyncio.to_thread(self._loader, photo.storage_uri)
            features = await asyncio.to_thread(self.extract, image_bytes)
        except (ValueError, OSError, httpx.HTTPError, GoogleAPIError) as exc:
            log.warning("feature_extraction_failed", error=str(exc))
            photo.processing_status = "failed"
            await db_session.flush()
            return None

        features.apply_to_photo(photo)
        photo.processing_status = "ready"
        photo.features_extracted_at = datetime.now(timezone.utc)
        await db_session.flush()

        log.info("feature_extraction_complete", signals=features.present)
        return features
