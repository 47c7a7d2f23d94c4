"""Pixel-level photo descriptors for FoundMatch.

All functions take a decoded ``PIL.Image.Image`` and return plain Python
values that can be stored directly in the JSON columns of ``photos``.

Descriptors:
    * ``perceptual_hash``  -- 64-bit DCT pHash as 16 hex characters
    * ``average_color``    -- mean (r, g, b) over a 64x64 thumbnail
    * ``color_histogram``  -- 64-bin (4x4x4) normalised RGB histogram
    * ``shape_descriptor`` -- 8x8 grid of Laplacian edge density plus the
      aspect ratio and global edge density

The comparison helpers used by the score aggregator live here too, next
to the descriptors they compare.
"""

from __future__ import annotations

import math

import numpy as np
from PIL import Image

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
HASH_SIZE = 8
HASH_BITS = HASH_SIZE * HASH_SIZE
_HASH_IMAGE_SIZE = 32

_THUMBNAIL_SIZE = 64
_HISTOGRAM_LEVELS = 4
HISTOGRAM_BINS = _HISTOGRAM_LEVELS ** 3

_SHAPE_IMAGE_SIZE = 64
SHAPE_GRID = 8
_EDGE_THRESHOLD = 30.0

# compare_shapes component weights
_SHAPE_GRID_WEIGHT = 0.60
_SHAPE_ASPECT_WEIGHT = 0.25
_SHAPE_DENSITY_WEIGHT = 0.15


def _dct_matrix(n: int) -> np.ndarray:
    """Orthonormal DCT-II basis of size ``n x n``."""
    k = np.arange(n)[:, None]
    i = np.arange(n)[None, :]
    matrix = np.sqrt(2.0 / n) * np.cos(np.pi * (2 * i + 1) * k / (2 * n))
    matrix[0, :] = np.sqrt(1.0 / n)
    return matrix


_DCT = _dct_matrix(_HASH_IMAGE_SIZE)


# ---------------------------------------------------------------------------
# Perceptual hash
# ---------------------------------------------------------------------------

def perceptual_hash(image: Image.Image) -> str:
    """Compute a 64-bit DCT perceptual hash.

    The image is reduced to 32x32 grayscale, transformed with a 2-D DCT and
    the top-left 8x8 low-frequency block is thresholded against its median.
    Small rescales, recompression and slight rotations flip few bits.

    Args:
        image: Any PIL image.

    Returns:
        16-character lower-case hex string.
    """
    gray = image.convert("L").resize(
        (_HASH_IMAGE_SIZE, _HASH_IMAGE_SIZE), Image.Resampling.LANCZOS
    )
    pixels = np.asarray(gray, dtype=np.float64)
    dct = _DCT @ pixels @ _DCT.T
    low = dct[:HASH_SIZE, :HASH_SIZE]
    bits = (low > np.median(low)).flatten()

    value = 0
    for bit in bits:
        value = (value << 1) | int(bit)
    return f"{value:016x}"


def hamming_distance(hash_a: str, hash_b: str) -> int:
    """Number of differing bits between two hex hashes of equal length."""
    if len(hash_a) != len(hash_b):
        raise ValueError(
            f"Hash length mismatch: {len(hash_a)} vs {len(hash_b)}"
        )
    return bin(int(hash_a, 16) ^ int(hash_b, 16)).count("1")


# ---------------------------------------------------------------------------
# Colour
# ---------------------------------------------------------------------------

def _thumbnail_rgb(image: Image.Image) -> np.ndarray:
    rgb = image.convert("RGB").resize(
        (_THUMBNAIL_SIZE, _THUMBNAIL_SIZE), Image.Resampling.BILINEAR
    )
    return np.asarray(rgb, dtype=np.float64).reshape(-1, 3)


def average_color(image: Image.Image) -> list[int]:
    """Mean RGB triple, each channel rounded to an int in [0, 255]."""
    pixels = _thumbnail_rgb(image)
    return [int(round(c)) for c in pixels.mean(axis=0)]


def color_histogram(image: Image.Image) -> list[float]:
    """64-bin RGB histogram (4 levels per channel), normalised to sum to 1."""
    pixels = _thumbnail_rgb(image).astype(np.int64)
    step = 256 // _HISTOGRAM_LEVELS
    quantised = np.clip(pixels // step, 0, _HISTOGRAM_LEVELS - 1)
    index = (
        quantised[:, 0] * _HISTOGRAM_LEVELS * _HISTOGRAM_LEVELS
        + quantised[:, 1] * _HISTOGRAM_LEVELS
        + quantised[:, 2]
    )
    counts = np.bincount(index, minlength=HISTOGRAM_BINS).astype(np.float64)
    counts /= counts.sum()
    return [round(float(c), 6) for c in counts]


def color_distance(color_a: list[int] | tuple, color_b: list[int] | tuple) -> float:
    """Euclidean distance between two RGB triples."""
    return math.sqrt(sum((float(a) - float(b)) ** 2 for a, b in zip(color_a, color_b)))


def color_bucket(color: list[int] | tuple) -> int:
    """Coarse 4x4x4 bucket of an RGB triple, used for candidate ranking."""
    step = 256 // _HISTOGRAM_LEVELS
    r, g, b = (min(int(c) // step, _HISTOGRAM_LEVELS - 1) for c in color)
    return r * _HISTOGRAM_LEVELS * _HISTOGRAM_LEVELS + g * _HISTOGRAM_LEVELS + b


def histogram_intersection(hist_a: list[float], hist_b: list[float]) -> float:
    """Overlap of two normalised histograms, in [0, 1]."""
    a = np.asarray(hist_a, dtype=np.float64)
    b = np.asarray(hist_b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Histogram size mismatch: {a.shape} vs {b.shape}")
    return float(np.clip(np.minimum(a, b).sum(), 0.0, 1.0))


# ---------------------------------------------------------------------------
# Shape
# ---------------------------------------------------------------------------

def shape_descriptor(image: Image.Image) -> dict:
    """Silhouette descriptor built from Laplacian edge density.

    Returns:
        ``{"grid": [64 floats], "aspect_ratio": float, "edge_density": float}``
    """
    width, height = image.size
    gray = image.convert("L").resize(
        (_SHAPE_IMAGE_SIZE, _SHAPE_IMAGE_SIZE), Image.Resampling.BILINEAR
    )
    pixels = np.asarray(gray, dtype=np.float64)
    padded = np.pad(pixels, 1, mode="edge")
    laplacian = np.abs(
        4 * pixels
        - padded[:-2, 1:-1]
        - padded[2:, 1:-1]
        - padded[1:-1, :-2]
        - padded[1:-1, 2:]
    )
    edges = (laplacian > _EDGE_THRESHOLD).astype(np.float64)

    cell = _SHAPE_IMAGE_SIZE // SHAPE_GRID
    grid = edges.reshape(SHAPE_GRID, cell, SHAPE_GRID, cell).mean(axis=(1, 3))

    return {
        "grid": [round(float(v), 6) for v in grid.flatten()],
        "aspect_ratio": round(width / height, 6) if height else 1.0,
        "edge_density": round(float(edges.mean()), 6),
    }


def _ratio_similarity(a: float, b: float) -> float:
    if a <= 0 and b <= 0:
        return 1.0
    if a <= 0 or b <= 0:
        return 0.0
    return min(a, b) / max(a, b)


def cosine_similarity(vec_a, vec_b) -> float:
    """Cosine similarity of two vectors; two all-zero vectors count as equal."""
    a = np.asarray(vec_a, dtype=np.float64)
    b = np.asarray(vec_b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vector size mismatch: {a.shape} vs {b.shape}")
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 and norm_b == 0:
        return 1.0
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def compare_shapes(shape_a: dict, shape_b: dict) -> float:
    """Similarity of two shape descriptors, in [0, 1]."""
    grid_sim = max(0.0, cosine_similarity(shape_a["grid"], shape_b["grid"]))
    aspect_sim = _ratio_similarity(shape_a["aspect_ratio"], shape_b["aspect_ratio"])
    density_sim = _ratio_similarity(shape_a["edge_density"], shape_b["edge_density"])
    combined = (
        _SHAPE_GRID_WEIGHT * grid_sim
        + _SHAPE_ASPECT_WEIGHT * aspect_sim
        + _SHAPE_DENSITY_WEIGHT * density_sim
    )
    return min(1.0, max(0.0, combined))
