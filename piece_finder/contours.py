"""
Contour type and the contour-extraction capability.

A Contour is an immutable closed polygon in normalized coordinates
(0..1, top-left origin). Extraction is behind the ContourExtractor
interface so the matching logic never depends on a particular vision
backend; OpenCVContourExtractor is the bundled implementation.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import List

import cv2
import numpy as np

from .geometry import NormalizedRect, bounding_box, polygon_area
from .preprocessing import normalize_image

logger = logging.getLogger(__name__)

# Images whose grayscale range is below this are treated as featureless
MIN_CONTRAST_RANGE = int(os.environ.get("CONTOUR_MIN_CONTRAST", "12"))


class Contour:
    """Closed polygon outline of one region, in normalized image coordinates."""

    __slots__ = ("_points",)

    def __init__(self, points):
        pts = np.array(points, dtype=np.float64).reshape(-1, 2)
        pts.setflags(write=False)
        self._points = pts

    @classmethod
    def from_pixels(cls, pixel_points: np.ndarray, width: int, height: int) -> "Contour":
        """Build from OpenCV pixel coordinates of an image of the given size."""
        pts = np.asarray(pixel_points, dtype=np.float64).reshape(-1, 2)
        return cls(pts / np.array([float(width), float(height)]))

    @property
    def points(self) -> np.ndarray:
        return self._points

    def __len__(self) -> int:
        return len(self._points)

    def __repr__(self) -> str:
        return f"Contour(n={len(self)}, bbox={self.bounding_box})"

    @property
    def bounding_box(self) -> NormalizedRect:
        return bounding_box(self._points)

    @property
    def bbox_area(self) -> float:
        return self.bounding_box.area

    @property
    def area(self) -> float:
        """Enclosed polygon area (normalized units)."""
        return polygon_area(self._points)

    def touches_edge(self, margin: float = 0.02) -> bool:
        """True if the bounding box reaches within `margin` of any image edge."""
        box = self.bounding_box
        return (box.x <= margin or box.y <= margin
                or box.max_x >= 1.0 - margin or box.max_y >= 1.0 - margin)

    def to_parent(self, region: NormalizedRect) -> "Contour":
        """Re-map a contour found inside `region` to the parent image's coordinates."""
        scale = np.array([region.width, region.height])
        offset = np.array([region.x, region.y])
        return Contour(self._points * scale + offset)

    def pixel_points(self, width: int, height: int) -> np.ndarray:
        """
        Points scaled back to pixel units for an image of the given size.

        Normalized coordinates stretch each axis by a different factor on
        non-square images. Shape invariants have to be taken from these
        points, not from the normalized ones.
        """
        return self._points * np.array([width, height], dtype=np.float64)

    def to_pixels(self, width: int, height: int) -> np.ndarray:
        """Points as an OpenCV-style int32 (N, 1, 2) array for an image of the given size."""
        px = np.round(self._points * np.array([width, height]))
        return px.astype(np.int32).reshape(-1, 1, 2)


class ContourExtractor(ABC):
    """Finds region outlines in an image."""

    @abstractmethod
    def detect(self, image_np: np.ndarray,
               contrast_adjustment: float = 2.0,
               max_count: int = 20) -> List[Contour]:
        """
        Detect top-level contours.

        Returns:
            Up to `max_count` contours ordered by bounding-box area, largest
            first. May be empty; must not raise on near-uniform images.
        """


class OpenCVContourExtractor(ContourExtractor):
    """
    Dark-on-light contour detection with OpenCV.

    Process:
        1. Grayscale and stretch contrast around the mean
        2. Otsu threshold to isolate foreground
        3. Morphological cleanup (close gaps, remove specks)
        4. External contours only, sorted by bounding-box area
    """

    def __init__(self, min_points: int = 3, kernel_size: int = 3):
        self.min_points = min_points
        self.kernel_size = kernel_size

    def detect(self, image_np: np.ndarray,
               contrast_adjustment: float = 2.0,
               max_count: int = 20) -> List[Contour]:
        image_np = normalize_image(image_np)
        h, w = image_np.shape[:2]
        if h < 2 or w < 2:
            return []

        gray = cv2.cvtColor(image_np[..., :3], cv2.COLOR_RGB2GRAY)
        if int(gray.max()) - int(gray.min()) < MIN_CONTRAST_RANGE:
            logger.debug("Near-uniform image, no contours")
            return []

        # Contrast stretch around the mean intensity
        mean = float(np.mean(gray))
        gray = cv2.addWeighted(gray, contrast_adjustment, np.zeros_like(gray), 0.0,
                               mean * (1.0 - contrast_adjustment))

        blurred = cv2.GaussianBlur(gray, (3, 3), 0)
        _, binary = cv2.threshold(blurred, 0, 255,
                                  cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)

        # Invert if Otsu selected the background
        if np.mean(binary) > 127:
            binary = cv2.bitwise_not(binary)

        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE,
                                           (self.kernel_size, self.kernel_size))
        binary = cv2.morphologyEx(binary, cv2.MORPH_CLOSE, kernel, iterations=1)
        binary = cv2.morphologyEx(binary, cv2.MORPH_OPEN, kernel, iterations=1)

        found, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL,
                                    cv2.CHAIN_APPROX_SIMPLE)

        contours = [
            Contour.from_pixels(c, w, h)
            for c in found
            if len(c) >= self.min_points
        ]
        contours.sort(key=lambda c: c.bbox_area, reverse=True)

        logger.debug(f"Detected {len(contours)} contours, keeping {min(len(contours), max_count)}")
        return contours[:max_count]
