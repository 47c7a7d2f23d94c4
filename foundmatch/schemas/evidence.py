"""
FoundMatch — Match evidence structures.

``PhotoMatch.match_details`` is persisted as the JSON dump of
``MatchDetails``.  Evidence items form a closed, tagged set keyed on
``kind`` so consumers can handle each variant exhaustively.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class LicensePlateEvidence(BaseModel):
    kind: Literal["license_plate"] = "license_plate"
    value: str                      # normalised source identifier
    matched_value: str              # normalised target identifier
    similarity: int = Field(ge=0, le=100)
    exact: bool


class SerialNumberEvidence(BaseModel):
    kind: Literal["serial_number"] = "serial_number"
    value: str
    matched_value: str
    similarity: int = Field(ge=0, le=100)
    exact: bool


class TextOverlapEvidence(BaseModel):
    kind: Literal["text_overlap"] = "text_overlap"
    shared_tokens: list[str]
    jaccard: float = Field(ge=0.0, le=1.0)


MatchEvidence = Annotated[
    Union[LicensePlateEvidence, SerialNumberEvidence, TextOverlapEvidence],
    Field(discriminator="kind"),
]


class MatchedIdentifiers(BaseModel):
    license_plates: list[str] = []
    serial_numbers: list[str] = []

    @property
    def any(self) -> bool:
        return bool(self.license_plates or self.serial_numbers)


class MatchDetails(BaseModel):
    evidence: list[MatchEvidence] = []
    signals_present: list[str] = []
    weights_used: dict[str, float] = {}
    hash_distance: int | None = None
    color_distance: float | None = None
