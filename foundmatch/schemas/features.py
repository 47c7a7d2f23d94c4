from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ShapeDescriptor(BaseModel):
    grid: list[float]
    aspect_ratio: float
    edge_density: float


class FeatureSet(BaseModel):
    """Comparable descriptors for one photo.  Any field may be absent."""

    model_config = ConfigDict(frozen=True)

    perceptual_hash: Optional[str] = Field(default=None, pattern=r"^[0-9a-f]{16}$")
    average_color: Optional[tuple[int, int, int]] = None
    color_histogram: Optional[list[float]] = None
    ocr_tokens: Optional[list[str]] = None
    identifiers: Optional[dict[str, list[str]]] = None
    shape: Optional[ShapeDescriptor] = None
    embedding: Optional[list[float]] = None

    @property
    def present(self) -> list[str]:
        return [
            name for name in (
                "perceptual_hash",
                "average_color",
                "color_histogram",
                "ocr_tokens",
                "shape",
                "embedding",
            )
            if getattr(self, name) is not None
        ]

    @property
    def is_empty(self) -> bool:
        return not self.present

    @classmethod
    def from_photo(cls, photo) -> "FeatureSet":
        """Read the stored FeatureSet columns off a ``Photo`` row."""
        return cls(
            perceptual_hash=photo.perceptual_hash,
            average_color=tuple(photo.average_color) if photo.average_color else None,
            color_histogram=photo.color_histogram,
            ocr_tokens=photo.ocr_tokens,
            identifiers=photo.identifiers,
            shape=ShapeDescriptor(**photo.shape_descriptor) if photo.shape_descriptor else None,
            embedding=photo.embedding,
        )

    def apply_to_photo(self, photo) -> None:
        """Overwrite every FeatureSet column on ``photo`` (absent -> NULL)."""
        photo.perceptual_hash = self.perceptual_hash
        photo.average_color = list(self.average_color) if self.average_color else None
        photo.color_histogram = self.color_histogram
        photo.ocr_tokens = self.ocr_tokens
        photo.identifiers = self.identifiers
        photo.shape_descriptor = self.shape.model_dump() if self.shape else None
        photo.embedding = self.embedding
