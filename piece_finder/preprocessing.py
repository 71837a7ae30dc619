"""
Image transforms shared by reference extraction and frame matching.

Handles normalization, orientation, downsampling, cropping by normalized
rectangle, rotation, and contour masking so every stage sees consistent
uint8 RGB(A) input regardless of where the image came from.
"""

import logging
from typing import Optional, Sequence

import cv2
import numpy as np

from .errors import CroppingFailed
from .geometry import NormalizedRect

logger = logging.getLogger(__name__)

# Central 60% of a crop, used to sample piece color away from the background
CENTER_RECT = NormalizedRect(0.2, 0.2, 0.6, 0.6)


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 RGB (grayscale is expanded, alpha is kept)."""
    if image_np.dtype != np.uint8:
        if image_np.size and image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)
    if image_np.ndim == 2:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    return image_np


def to_rgb(image_np: np.ndarray) -> np.ndarray:
    """Drop an alpha channel if present."""
    image_np = normalize_image(image_np)
    if image_np.shape[2] == 4:
        return np.ascontiguousarray(image_np[..., :3])
    return image_np


def apply_orientation(image_np: np.ndarray, orientation: int = 1) -> np.ndarray:
    """
    Rotate/flip pixels so an EXIF-tagged photo is upright.

    Args:
        image_np: Image as stored by the camera.
        orientation: EXIF orientation tag (1-8). 1 means already upright.

    Returns:
        Image whose pixel rows run top to bottom as the user saw it.
    """
    if orientation in (None, 1):
        return image_np
    if orientation == 2:
        return cv2.flip(image_np, 1)
    if orientation == 3:
        return cv2.rotate(image_np, cv2.ROTATE_180)
    if orientation == 4:
        return cv2.flip(image_np, 0)
    if orientation == 5:
        return cv2.flip(cv2.rotate(image_np, cv2.ROTATE_90_CLOCKWISE), 1)
    if orientation == 6:
        return cv2.rotate(image_np, cv2.ROTATE_90_CLOCKWISE)
    if orientation == 7:
        return cv2.flip(cv2.rotate(image_np, cv2.ROTATE_90_COUNTERCLOCKWISE), 1)
    if orientation == 8:
        return cv2.rotate(image_np, cv2.ROTATE_90_COUNTERCLOCKWISE)
    logger.warning(f"Unknown EXIF orientation {orientation}, leaving image as-is")
    return image_np


def downsample(image_np: np.ndarray, max_dimension: int) -> np.ndarray:
    """Shrink so the longer side is at most `max_dimension`, preserving aspect."""
    h, w = image_np.shape[:2]
    if max(h, w) <= max_dimension:
        return image_np
    scale = max_dimension / float(max(h, w))
    new_w = max(1, int(w * scale))
    new_h = max(1, int(h * scale))
    return cv2.resize(image_np, (new_w, new_h), interpolation=cv2.INTER_AREA)


def pixel_bounds(image_np: np.ndarray, rect: NormalizedRect):
    """Convert a normalized rect to clamped (x1, y1, x2, y2) pixel bounds."""
    h, w = image_np.shape[:2]
    r = rect.clamped()
    x1 = int(np.floor(r.x * w))
    y1 = int(np.floor(r.y * h))
    x2 = int(np.floor(r.max_x * w))
    y2 = int(np.floor(r.max_y * h))
    return x1, y1, x2, y2


def crop_normalized(image_np: np.ndarray, rect: NormalizedRect) -> np.ndarray:
    """
    Crop by a normalized rectangle, clamped to the image bounds.

    Raises:
        CroppingFailed: If the clamped region has zero width or height.
    """
    x1, y1, x2, y2 = pixel_bounds(image_np, rect)
    if x2 - x1 < 1 or y2 - y1 < 1:
        raise CroppingFailed(f"Degenerate crop region {rect}")
    return image_np[y1:y2, x1:x2]


def rotate(image_np: np.ndarray, angle: float, fill: Sequence[int] = (255, 255, 255)) -> np.ndarray:
    """
    Rotate counter-clockwise by `angle` degrees, growing the canvas to fit.

    Multiples of 90° are exact pixel permutations; other angles are
    resampled with the uncovered corners filled with `fill`.
    """
    quarter = angle % 360
    if quarter == 0:
        return image_np
    if quarter == 90:
        return cv2.rotate(image_np, cv2.ROTATE_90_COUNTERCLOCKWISE)
    if quarter == 180:
        return cv2.rotate(image_np, cv2.ROTATE_180)
    if quarter == 270:
        return cv2.rotate(image_np, cv2.ROTATE_90_CLOCKWISE)

    h, w = image_np.shape[:2]
    rad = np.radians(angle)
    sin, cos = abs(np.sin(rad)), abs(np.cos(rad))
    new_w = int(np.ceil(w * cos + h * sin))
    new_h = int(np.ceil(w * sin + h * cos))

    m = cv2.getRotationMatrix2D((w / 2.0, h / 2.0), angle, 1.0)
    m[0, 2] += new_w / 2.0 - w / 2.0
    m[1, 2] += new_h / 2.0 - h / 2.0

    channels = image_np.shape[2] if image_np.ndim == 3 else 1
    border = tuple(fill)[:channels] if channels > 1 else fill[0]
    return cv2.warpAffine(image_np, m, (new_w, new_h),
                          flags=cv2.INTER_LINEAR,
                          borderMode=cv2.BORDER_CONSTANT,
                          borderValue=border)


def mask_with_contour(image_np: np.ndarray,
                      points: np.ndarray,
                      bbox: NormalizedRect,
                      background: Optional[Sequence[int]] = None) -> Optional[np.ndarray]:
    """
    Mask a crop so only the inside of its contour remains.

    Contour points are in the full image's normalized space; `bbox` is the
    region the crop was taken from and is used to map points into crop
    pixels.

    Args:
        image_np: RGB crop of `bbox`.
        points: (N, 2) contour points in full-image normalized coordinates.
        bbox: Normalized region the crop covers.
        background: RGB fill outside the contour. None produces a
            premultiplied RGBA image with a transparent background and a
            thin boundary strip erased to drop border fragments.

    Returns:
        Masked image, or None for degenerate input.
    """
    h, w = image_np.shape[:2]
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if h < 1 or w < 1 or len(pts) < 3 or bbox.width <= 0 or bbox.height <= 0:
        return None

    px = (pts[:, 0] - bbox.x) / bbox.width * w
    py = (pts[:, 1] - bbox.y) / bbox.height * h
    poly = np.round(np.stack([px, py], axis=1)).astype(np.int32).reshape(-1, 1, 2)

    mask = np.zeros((h, w), dtype=np.uint8)
    cv2.fillPoly(mask, [poly], 255)

    rgb = to_rgb(image_np)

    if background is not None:
        out = np.empty_like(rgb)
        out[:] = np.asarray(background, dtype=np.uint8)[:3]
        inside = mask > 0
        out[inside] = rgb[inside]
        return out

    trim = int(max(2, min(min(w, h) * 0.015, 4)))
    cv2.polylines(mask, [poly], isClosed=True, color=0, thickness=trim)

    alpha = mask.astype(np.float64) / 255.0
    premultiplied = (rgb.astype(np.float64) * alpha[..., None]).round().astype(np.uint8)
    return np.dstack([premultiplied, mask])
