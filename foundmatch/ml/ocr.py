"""OCR text handling for FoundMatch.

Two concerns live here:

* ``TesseractReader`` -- turns a PIL image into raw text.  pytesseract is
  an optional install (the ``ocr`` extra); when it or the tesseract binary
  is missing the reader raises and the feature extractor records the OCR
  signal as absent.
* Pure text helpers -- tokenisation into the comparable token set and
  extraction of structured identifiers (licence plates, serial numbers).
"""

from __future__ import annotations

import re

import structlog
from PIL import Image

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------
_MIN_TOKEN_LENGTH = 3
_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_NON_ALNUM_RE = re.compile(r"[^A-Z0-9]")

# US "ABC 1234", Californian "7ABC123", UK "AB12 CDE"
_PLATE_RE = re.compile(
    r"\b([A-Z]{2,3}[- ]?\d{3,4}|\d[A-Z]{3}\d{3}|[A-Z]{2}\d{2}[- ]?[A-Z]{3})\b"
)
_SERIAL_LABEL_RE = re.compile(
    r"\b(?:S/?N|SERIAL(?:\s*(?:NO\.?|NUMBER|#))?|IMEI)\s*[:#.]?\s*([A-Z0-9][A-Z0-9-]{5,})"
)
# Bare serial: at least 8 characters mixing letters and digits
_BARE_SERIAL_RE = re.compile(r"\b(?=[A-Z0-9]*\d)(?=[A-Z0-9]*[A-Z])[A-Z0-9]{8,}\b")


class TesseractReader:
    """Callable OCR reader backed by pytesseract."""

    def __init__(self, lang: str = "eng") -> None:
        self.lang = lang

    def __call__(self, image: Image.Image) -> str:
        import pytesseract

        return pytesseract.image_to_string(image.convert("RGB"), lang=self.lang)


def tokenize(text: str) -> list[str]:
    """Lower-case, punctuation-stripped, de-duplicated tokens (sorted)."""
    tokens = {
        t for t in _TOKEN_SPLIT_RE.split(text.lower())
        if len(t) >= _MIN_TOKEN_LENGTH
    }
    return sorted(tokens)


def normalize_identifier(value: str) -> str:
    """Upper-case and drop everything that is not a letter or digit."""
    return _NON_ALNUM_RE.sub("", value.upper())


def extract_identifiers(text: str) -> dict[str, list[str]]:
    """Pull licence plates and serial numbers out of raw OCR text.

    Identifiers are normalised with ``normalize_identifier``.  A string that
    qualifies as both is kept as a serial number only.

    Returns:
        ``{"license_plates": [...], "serial_numbers": [...]}`` (sorted).
    """
    upper = text.upper()

    serials: set[str] = set()
    for m in _SERIAL_LABEL_RE.finditer(upper):
        serials.add(normalize_identifier(m.group(1)))
    for m in _BARE_SERIAL_RE.finditer(upper):
        serials.add(normalize_identifier(m.group(0)))

    plates: set[str] = set()
    for m in _PLATE_RE.finditer(upper):
        plate = normalize_identifier(m.group(1))
        if plate not in serials:
            plates.add(plate)

    return {
        "license_plates": sorted(p for p in plates if p),
        "serial_numbers": sorted(s for s in serials if s),
    }


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def identifier_similarity(a: str, b: str) -> int:
    """Edit-distance similarity of two normalised identifiers, 0-100."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 0
    return round((longest - levenshtein(a, b)) / longest * 100)
