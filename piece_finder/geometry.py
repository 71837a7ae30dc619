"""
Contour geometry: moment invariants, compactness and normalized rectangles.

A contour's shape signature is two rotation/scale/translation invariant
signals computed straight from its polygon:
    - 7 Hu moment invariants (distribution of the enclosed area)
    - compactness, the isoperimetric ratio perimeter² / (4π·area)

Moments come from cv2.moments, which integrates over the polygon's enclosed
area rather than its vertices, so a shape traced with a different number of
points still produces the same invariants.
"""

import logging
import math
import os
from dataclasses import dataclass
from typing import NamedTuple, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

HU_DIM = 7

# Hu magnitudes below this are float32 contour residue of a moment that is
# zero for the shape (e.g. third-order moments of a symmetric outline).
# They are snapped to zero before the log transform, which would otherwise
# turn 1e-30 vs -1e-30 into a distance of 60.
HU_ZERO_EPSILON = float(os.environ.get("HU_ZERO_EPSILON", "1e-15"))

# Polygons are rescaled to this extent before taking moments.
_MOMENT_EXTENT = 1000.0


class NormalizedRect(NamedTuple):
    """Axis-aligned rectangle in normalized image coordinates (top-left origin)."""

    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return max(self.width, 0.0) * max(self.height, 0.0)

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    def clamped(self) -> "NormalizedRect":
        """Clip the rectangle to the unit square (may become zero-sized)."""
        x = min(max(self.x, 0.0), 1.0)
        y = min(max(self.y, 0.0), 1.0)
        width = max(0.0, min(self.max_x, 1.0) - x)
        height = max(0.0, min(self.max_y, 1.0) - y)
        return NormalizedRect(x, y, width, height)

    def intersection(self, other: "NormalizedRect") -> float:
        """Area of overlap with another rectangle."""
        w = min(self.max_x, other.max_x) - max(self.x, other.x)
        h = min(self.max_y, other.max_y) - max(self.y, other.y)
        if w <= 0 or h <= 0:
            return 0.0
        return w * h

    def contained_fraction(self, other: "NormalizedRect") -> float:
        """Fraction of this rectangle's area lying inside `other`."""
        if self.area <= 0:
            return 0.0
        return self.intersection(other) / self.area

    def inset(self, fraction: float) -> "NormalizedRect":
        """Shrink by `fraction` of the width/height on every side."""
        dx = self.width * fraction
        dy = self.height * fraction
        return NormalizedRect(self.x + dx, self.y + dy,
                              self.width - 2 * dx, self.height - 2 * dy)


@dataclass(frozen=True)
class ShapeSignature:
    """Seven Hu moment invariants plus compactness for one contour."""

    hu_moments: Tuple[float, ...]
    compactness: float

    @classmethod
    def degenerate(cls) -> "ShapeSignature":
        return cls(hu_moments=(0.0,) * HU_DIM, compactness=1.0)

    @property
    def is_degenerate(self) -> bool:
        return not any(self.hu_moments)


def bounding_box(points: np.ndarray) -> NormalizedRect:
    """Bounding rectangle of a point set (zero rect when empty)."""
    pts = np.asarray(points, dtype=np.float64)
    if pts.size == 0:
        return NormalizedRect(0.0, 0.0, 0.0, 0.0)
    min_x, min_y = pts.min(axis=0)
    max_x, max_y = pts.max(axis=0)
    return NormalizedRect(float(min_x), float(min_y),
                          float(max_x - min_x), float(max_y - min_y))


def _as_cv_contour(points: np.ndarray) -> np.ndarray:
    # cv2 contour functions only take CV_32F / CV_32S point arrays
    return np.asarray(points, dtype=np.float32).reshape(-1, 1, 2)


def polygon_area(points: np.ndarray) -> float:
    """Enclosed area of a polygon (0 for fewer than 3 points)."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 3:
        return 0.0
    return float(cv2.contourArea(_as_cv_contour(pts)))


def polygon_perimeter(points: np.ndarray) -> float:
    """Closed perimeter, including the edge from the last point back to the first."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 2:
        return 0.0
    return float(cv2.arcLength(_as_cv_contour(pts), True))


def compute_compactness(points: np.ndarray) -> float:
    """
    Isoperimetric ratio perimeter² / (4π·area).

    1.0 for a circle and larger for everything else. Degenerate polygons
    (zero area) return 1.0.
    """
    area = polygon_area(points)
    if area <= 0:
        return 1.0
    perimeter = polygon_perimeter(points)
    return max(1.0, perimeter ** 2 / (4.0 * math.pi * area))


def compactness_similarity(a: float, b: float) -> float:
    """min/max ratio of two compactness values, 1.0 = identical."""
    high = max(a, b)
    if high <= 0:
        return 1.0
    return min(a, b) / high


def compute_hu_moments(points: np.ndarray) -> np.ndarray:
    """
    Compute the 7 Hu moment invariants of a polygon.

    Process:
        1. Translate to the vertex mean and rescale to a fixed extent, so
           float32 contour coordinates keep their precision at any input scale
        2. cv2.moments over the enclosed area, cv2.HuMoments from those
        3. Snap residue below HU_ZERO_EPSILON to exactly zero

    Returns:
        float64 array of length 7 (all zeros for a degenerate polygon)
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 3:
        return np.zeros(HU_DIM)

    pts = pts - pts.mean(axis=0)
    extent = float(np.abs(pts).max())
    if extent <= 0:
        return np.zeros(HU_DIM)
    pts = pts * (_MOMENT_EXTENT / extent)

    moments = cv2.moments(_as_cv_contour(pts))
    if moments["m00"] < 0:
        # Reversed winding: flip every moment back to a positive-area polygon
        moments = {key: -value for key, value in moments.items()}
    if moments["m00"] <= 1e-9:
        logger.debug(f"Zero-area polygon ({len(pts)} points), no Hu moments")
        return np.zeros(HU_DIM)

    hu = cv2.HuMoments(moments).flatten().astype(np.float64)
    hu[np.abs(hu) < HU_ZERO_EPSILON] = 0.0
    return hu


def compute_shape_signature(points: Sequence) -> ShapeSignature:
    """Build the full ShapeSignature for a polygon (degenerate below 3 points)."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 3:
        return ShapeSignature.degenerate()
    hu = compute_hu_moments(pts)
    return ShapeSignature(
        hu_moments=tuple(float(h) for h in hu),
        compactness=compute_compactness(pts),
    )


def _log_scale(hu: np.ndarray) -> np.ndarray:
    out = np.zeros_like(hu)
    nonzero = hu != 0
    out[nonzero] = np.sign(hu[nonzero]) * np.log10(np.abs(hu[nonzero]))
    return out


def moment_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Log-scale city-block distance between two Hu moment vectors.

    Each component becomes sign(h)·log10(|h|) (zero stays zero) before the
    absolute differences are summed. Lower is more similar. Vectors that
    are not 7 long are infinitely far apart.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != (HU_DIM,) or vb.shape != (HU_DIM,):
        return float("inf")
    return float(np.abs(_log_scale(va) - _log_scale(vb)).sum())


def moment_similarity(distance: float) -> float:
    """Map a Hu moment distance to 0…1 (1.0 = identical), ~0 by distance 10."""
    return math.exp(-0.5 * distance)
