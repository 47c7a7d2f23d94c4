"""
FoundMatch — Multi-Signal Score Aggregation

Scores one photo pair across six independent signals, each mapped to an
integer in [0, 100] or ``None`` when either photo lacks the descriptor:

  dna     cosine of the visual embeddings, clamped to [0, 1]
  hash    100 × (1 − hamming / HASH_MAX_DISTANCE), floored at 0
  ocr     100 on a verbatim identifier match, otherwise token Jaccard
          (or a near-identical identifier, whichever is higher)
  color   100 × (1 − rgb_distance / MAX_COLOR_DISTANCE), floored at 0
  visual  colour-histogram intersection
  shape   0.6 grid cosine + 0.25 aspect + 0.15 edge-density similarity

The overall score is the weighted mean of the *present* signals:

  overall = Σ_present (w_i / Σ_present w) × s_i

so a pair without OCR is not dragged towards zero.  Location proximity is
computed alongside but never enters ``overall``.

``ScoreAggregator.score`` depends only on its arguments and the weights
fixed at construction, so the same inputs always give the same result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

import structlog

from foundmatch.config import get_settings
from foundmatch.ml import image_features
from foundmatch.ml.ocr import identifier_similarity
from foundmatch.schemas.evidence import (
    LicensePlateEvidence,
    MatchDetails,
    MatchedIdentifiers,
    SerialNumberEvidence,
    TextOverlapEvidence,
)
from foundmatch.schemas.features import FeatureSet
from foundmatch.utils.geo import haversine_miles, location_score

logger = structlog.get_logger("foundmatch.scoring_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

SIGNALS: tuple[str, ...] = ("dna", "hash", "ocr", "color", "visual", "shape")

# Dominant signal -> match_type
_SIGNAL_MATCH_TYPES: dict[str, str] = {
    "dna": "embedding",
    "hash": "pattern",
    "ocr": "text",
    "color": "color",
    "visual": "visual",
    "shape": "shape",
}

# Types that collapse to "pet" when both cases are pets
_APPEARANCE_TYPES: set[str] = {"embedding", "pattern", "color", "visual", "shape"}

_COMBINED_MIN_SIGNALS = 3

# Near-identical identifiers (edit-distance similarity) still lift the OCR score
_IDENTIFIER_FUZZY_MIN = 85

Location = tuple[float, float]


@dataclass
class ScoreResult:
    """Everything the deduplicator needs to create or re-score a match."""

    sub_scores: dict[str, int | None]
    overall_score: int | None
    match_type: str | None
    details: MatchDetails
    matched_identifiers: MatchedIdentifiers = field(default_factory=MatchedIdentifiers)
    location_score: int | None = None
    distance_miles: float | None = None

    @property
    def has_signal(self) -> bool:
        return self.overall_score is not None

    def score_fields(self) -> dict:
        """Column values owned by scoring (the re-score overwrite set)."""
        return {
            "overall_score": self.overall_score,
            "dna_score": self.sub_scores.get("dna"),
            "hash_score": self.sub_scores.get("hash"),
            "ocr_score": self.sub_scores.get("ocr"),
            "color_score": self.sub_scores.get("color"),
            "visual_score": self.sub_scores.get("visual"),
            "shape_score": self.sub_scores.get("shape"),
            "match_type": self.match_type,
            "match_details": self.details.model_dump(mode="json"),
            "matched_identifiers": (
                self.matched_identifiers.model_dump()
                if self.matched_identifiers.any else None
            ),
            "location_score": self.location_score,
            "distance_miles": (
                Decimal(str(self.distance_miles))
                if self.distance_miles is not None else None
            ),
        }


def _clamp_score(value: float) -> int:
    return max(0, min(100, int(round(value))))


class ScoreAggregator:
    """Pairwise scorer with fixed, explainable weighting."""

    def __init__(
        self,
        weights: dict[str, float] | None = None,
        hash_max_distance: int | None = None,
        max_color_distance: float | None = None,
        combined_margin: int | None = None,
        location_max_miles: float | None = None,
    ) -> None:
        settings = get_settings()
        self.weights: dict[str, float] = dict(weights or settings.signal_weights)
        unknown = set(self.weights) - set(SIGNALS)
        if unknown:
            raise ValueError(f"Unknown signal weights: {sorted(unknown)}")
        self.hash_max_distance = hash_max_distance or settings.HASH_MAX_DISTANCE
        self.max_color_distance = max_color_distance or settings.MAX_COLOR_DISTANCE
        self.combined_margin = (
            combined_margin if combined_margin is not None else settings.COMBINED_MARGIN
        )
        self.location_max_miles = location_max_miles or settings.LOCATION_MAX_MILES

    # ── Individual signals ────────────────────────────────────────────────

    def hash_score(self, a: FeatureSet, b: FeatureSet) -> tuple[int | None, int | None]:
        """Return ``(score, hamming_distance)``."""
        if a.perceptual_hash is None or b.perceptual_hash is None:
            return None, None
        distance = image_features.hamming_distance(a.perceptual_hash, b.perceptual_hash)
        return _clamp_score(100 * (1 - distance / self.hash_max_distance)), distance

    def color_score(self, a: FeatureSet, b: FeatureSet) -> tuple[int | None, float | None]:
        """Return ``(score, rgb_distance)``."""
        if a.average_color is None or b.average_color is None:
            return None, None
        distance = image_features.color_distance(a.average_color, b.average_color)
        return _clamp_score(100 * (1 - distance / self.max_color_distance)), round(distance, 3)

    @staticmethod
    def visual_score(a: FeatureSet, b: FeatureSet) -> int | None:
        if a.color_histogram is None or b.color_histogram is None:
            return None
        return _clamp_score(
            100 * image_features.histogram_intersection(a.color_histogram, b.color_histogram)
        )

    @staticmethod
    def shape_score(a: FeatureSet, b: FeatureSet) -> int | None:
        if a.shape is None or b.shape is None:
            return None
        return _clamp_score(
            100 * image_features.compare_shapes(a.shape.model_dump(), b.shape.model_dump())
        )

    @staticmethod
    def dna_score(a: FeatureSet, b: FeatureSet) -> int | None:
        if a.embedding is None or b.embedding is None:
            return None
        cosine = image_features.cosine_similarity(a.embedding, b.embedding)
        return _clamp_score(100 * max(0.0, min(1.0, cosine)))

    @staticmethod
    def _has_text(fs: FeatureSet) -> bool:
        return bool(fs.ocr_tokens) or bool(fs.identifiers)

    def ocr_score(
        self, a: FeatureSet, b: FeatureSet
    ) -> tuple[int | None, list, MatchedIdentifiers]:
        """Return ``(score, evidence, matched_identifiers)``."""
        matched = MatchedIdentifiers()
        if not (self._has_text(a) and self._has_text(b)):
            return None, [], matched

        evidence: list = []
        best_fuzzy = 0

        ids_a = a.identifiers or {}
        ids_b = b.identifiers or {}
        for key, evidence_cls, bucket in (
            ("license_plates", LicensePlateEvidence, matched.license_plates),
            ("serial_numbers", SerialNumberEvidence, matched.serial_numbers),
        ):
            for value in ids_a.get(key, []):
                for other in ids_b.get(key, []):
                    similarity = identifier_similarity(value, other)
                    if similarity < _IDENTIFIER_FUZZY_MIN:
                        continue
                    exact = value == other
                    evidence.append(evidence_cls(
                        value=value,
                        matched_value=other,
                        similarity=similarity,
                        exact=exact,
                    ))
                    if exact:
                        if value not in bucket:
                            bucket.append(value)
                    else:
                        best_fuzzy = max(best_fuzzy, similarity)

        tokens_a = set(a.ocr_tokens or [])
        tokens_b = set(b.ocr_tokens or [])
        union = tokens_a | tokens_b
        shared = tokens_a & tokens_b
        jaccard = len(shared) / len(union) if union else 0.0
        if shared:
            evidence.append(TextOverlapEvidence(
                shared_tokens=sorted(shared),
                jaccard=round(jaccard, 4),
            ))

        if matched.any:
            return 100, evidence, matched
        return _clamp_score(max(jaccard * 100, best_fuzzy)), evidence, matched

    def location(
        self, a: Location | None, b: Location | None
    ) -> tuple[int | None, float | None]:
        """Return ``(location_score, distance_miles)``; informational only."""
        if a is None or b is None:
            return None, None
        distance = haversine_miles(a[0], a[1], b[0], b[1])
        return location_score(distance, self.location_max_miles), round(distance, 2)

    # ── Aggregation ───────────────────────────────────────────────────────

    def combine(self, sub_scores: dict[str, int | None]) -> tuple[int | None, dict[str, float]]:
        """Weighted mean over present signals.

        Returns
        -------
        tuple
            ``(overall_score, weights_used)`` where ``weights_used`` holds the
            renormalised weight of every present signal (summing to 1.0).
            ``(None, {})`` when no signal is present.
        """
        present = {k: v for k, v in sub_scores.items() if v is not None}
        if not present:
            return None, {}

        total = sum(self.weights.get(k, 0.0) for k in present)
        if total <= 0:
            # Every present signal is configured with zero weight.
            weights_used = {k: 1.0 / len(present) for k in present}
        else:
            weights_used = {k: self.weights.get(k, 0.0) / total for k in present}

        overall = sum(weights_used[k] * v for k, v in present.items())
        return _clamp_score(overall), {k: round(w, 6) for k, w in weights_used.items()}

    def classify(
        self,
        sub_scores: dict[str, int | None],
        matched: MatchedIdentifiers,
        pet_pair: bool = False,
    ) -> str | None:
        """Pick ``match_type`` from the dominant signal(s)."""
        present = {k: v for k, v in sub_scores.items() if v is not None}
        if not present:
            return None

        top_value = max(present.values())
        near_top = [k for k, v in present.items() if v >= top_value - self.combined_margin]
        if len(near_top) >= _COMBINED_MIN_SIGNALS:
            return "combined"

        leaders = [k for k in SIGNALS if present.get(k) == top_value]
        if matched.any and "ocr" in leaders:
            leader = "ocr"
        else:
            leader = leaders[0]

        if leader == "ocr" and matched.any:
            if matched.license_plates and matched.serial_numbers:
                return "combined"
            return "license_plate" if matched.license_plates else "serial_number"

        match_type = _SIGNAL_MATCH_TYPES[leader]
        if pet_pair and match_type in _APPEARANCE_TYPES:
            return "pet"
        return match_type

    def score(
        self,
        source: FeatureSet,
        target: FeatureSet,
        source_location: Location | None = None,
        target_location: Location | None = None,
        pet_pair: bool = False,
    ) -> ScoreResult:
        """Score ``source`` against ``target``.

        Parameters
        ----------
        source, target:
            FeatureSets of the two photos.
        source_location, target_location:
            ``(lat, lon)`` of the owning cases, or ``None``.
        pet_pair:
            Both cases are pet cases; appearance-led matches are typed ``pet``.

        Returns
        -------
        ScoreResult
            ``overall_score`` is ``None`` when no signal could be computed.
        """
        hash_value, hash_distance = self._guard("hash", self.hash_score, source, target)
        color_value, color_dist = self._guard("color", self.color_score, source, target)
        ocr_value, evidence, matched = self._guard("ocr", self.ocr_score, source, target)

        sub_scores: dict[str, int | None] = {
            "dna": self._guard("dna", self.dna_score, source, target),
            "hash": hash_value,
            "ocr": ocr_value,
            "color": color_value,
            "visual": self._guard("visual", self.visual_score, source, target),
            "shape": self._guard("shape", self.shape_score, source, target),
        }

        overall, weights_used = self.combine(sub_scores)
        match_type = self.classify(sub_scores, matched or MatchedIdentifiers(), pet_pair)
        loc_score, distance = self.location(source_location, target_location)

        details = MatchDetails(
            evidence=evidence or [],
            signals_present=[k for k in SIGNALS if sub_scores[k] is not None],
            weights_used=weights_used,
            hash_distance=hash_distance,
            color_distance=color_dist,
        )

        return ScoreResult(
            sub_scores=sub_scores,
            overall_score=overall,
            match_type=match_type,
            details=details,
            matched_identifiers=matched or MatchedIdentifiers(),
            location_score=loc_score,
            distance_miles=distance,
        )

    @staticmethod
    def _guard(signal: str, fn, source: FeatureSet, target: FeatureSet):
        """Run one comparator; incompatible descriptors count as absent."""
        try:
            return fn(source, target)
        except ValueError as exc:
            logger.warning("signal_comparison_failed", signal=signal, error=str(exc))
            if signal in ("hash", "color"):
                return None, None
            if signal == "ocr":
                return None, [], MatchedIdentifiers()
            return None

