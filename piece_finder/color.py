"""
Perceptual color extraction and comparison.

Colors are compared in CIELAB, where Euclidean distance (ΔE76) roughly
tracks perceived difference. Conversion follows the standard sRGB/D65
transform with the exact published coefficients so distances agree with
any other implementation of the same formula.

Region colors are plain arithmetic means (a box-average filter). Contour
colors average only the opaque pixels left after masking the crop with the
contour, so the surrounding background does not wash out the piece color.
References and camera candidates are sampled the same way.
"""

import logging
from typing import NamedTuple, Optional, Sequence, Tuple

import numpy as np

from .errors import CroppingFailed
from .geometry import NormalizedRect
from .preprocessing import CENTER_RECT, crop_normalized, mask_with_contour, pixel_bounds

logger = logging.getLogger(__name__)

# Fallback color for regions that degenerate to zero pixels
NEUTRAL_GREY_RGB = (128.0, 128.0, 128.0)

# D65 reference white
_WHITE_X = 0.95047
_WHITE_Y = 1.00000
_WHITE_Z = 1.08883

_RGB_TO_XYZ = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.0721750],
    [0.0193339, 0.1191920, 0.9503041],
])


class LabColor(NamedTuple):
    """CIELAB color: lightness 0–100 plus the a (green–red) and b (blue–yellow) axes."""

    l: float
    a: float
    b: float


def _linearize(c: np.ndarray) -> np.ndarray:
    return np.where(c > 0.04045, ((c + 0.055) / 1.055) ** 2.4, c / 12.92)


def _lab_f(t: np.ndarray) -> np.ndarray:
    return np.where(t > 0.008856, np.cbrt(t), (903.3 * t + 16.0) / 116.0)


def rgb_to_lab(rgb: Sequence[float]) -> LabColor:
    """
    Convert an sRGB color (0–255 per channel) to CIELAB.

    sRGB → linear RGB → XYZ (D65) → Lab. Channels outside 0–255 are
    clipped first, which keeps lightness inside [0, 100].
    """
    c = np.clip(np.asarray(rgb, dtype=np.float64)[:3], 0.0, 255.0) / 255.0
    linear = _linearize(c)

    x, y, z = _RGB_TO_XYZ @ linear
    fx, fy, fz = _lab_f(np.array([x / _WHITE_X, y / _WHITE_Y, z / _WHITE_Z]))

    lightness = float(np.clip(116.0 * fy - 16.0, 0.0, 100.0))
    return LabColor(lightness, float(500.0 * (fx - fy)), float(200.0 * (fy - fz)))


def lab_distance(a: LabColor, b: LabColor) -> float:
    """Euclidean (ΔE76) distance between two Lab colors."""
    return float(np.sqrt((a.l - b.l) ** 2 + (a.a - b.a) ** 2 + (a.b - b.b) ** 2))


def mean_rgb(image_np: np.ndarray) -> Tuple[float, float, float]:
    """Average RGB over every pixel of an image (neutral grey when empty)."""
    if image_np is None or image_np.size == 0:
        return NEUTRAL_GREY_RGB
    if image_np.ndim == 2:
        v = float(np.mean(image_np))
        return (v, v, v)
    pixels = image_np[..., :3].reshape(-1, 3).astype(np.float64)
    r, g, b = pixels.mean(axis=0)
    return (float(r), float(g), float(b))


def sample_region_rgb(image_np: np.ndarray, rect: NormalizedRect) -> Tuple[float, float, float]:
    """Average RGB inside a normalized region of an image."""
    x1, y1, x2, y2 = pixel_bounds(image_np, rect)
    patch = image_np[y1:y2, x1:x2]
    if patch.size == 0:
        logger.debug(f"Region {rect} has no pixels, using neutral grey")
        return NEUTRAL_GREY_RGB
    return mean_rgb(patch)


def sample_region(image_np: np.ndarray, rect: NormalizedRect) -> LabColor:
    """
    Dominant (box-average) color of a normalized region, as Lab.

    A region that clamps down to zero pixels yields neutral grey instead
    of failing.
    """
    return rgb_to_lab(sample_region_rgb(image_np, rect))


def opaque_mean_rgb(rgba: np.ndarray) -> Optional[Tuple[float, float, float]]:
    """
    Average RGB of the non-transparent pixels of a premultiplied RGBA image.

    Returns:
        The un-premultiplied mean, or None when every pixel has alpha 0.
    """
    if rgba is None or rgba.ndim != 3 or rgba.shape[2] < 4:
        return None

    alpha = rgba[..., 3].astype(np.float64)
    opaque = alpha > 0
    if not np.any(opaque):
        return None

    af = alpha[opaque] / 255.0
    rgb = rgba[..., :3][opaque].astype(np.float64) / af[:, None]
    rgb = np.clip(rgb, 0.0, 255.0)
    r, g, b = rgb.mean(axis=0)
    return (float(r), float(g), float(b))


def sample_opaque_region(rgba: np.ndarray) -> Optional[LabColor]:
    """Lab color of the opaque pixels of a masked image; None if fully transparent."""
    rgb = opaque_mean_rgb(rgba)
    if rgb is None:
        return None
    return rgb_to_lab(rgb)


def sample_contour_rgb(image_np: np.ndarray, points: np.ndarray,
                      bbox: NormalizedRect) -> Tuple[float, float, float]:
    """
    Average RGB of the pixels inside a contour.

    Process:
        1. Crop the contour's bounding box and mask out everything outside
           the polygon (plus a thin boundary strip)
        2. Average the remaining opaque pixels
        3. If the mask leaves nothing, average the central 60% of the crop
        4. If the box cannot be cropped, box-average it (neutral grey when
           it has no pixels at all)

    Args:
        image_np: RGB image the contour was found in.
        points: (N, 2) contour points in normalized image coordinates.
        bbox: The contour's bounding box.
    """
    try:
        crop = crop_normalized(image_np, bbox)
    except CroppingFailed as e:
        logger.debug(f"Contour color from box average: {e}")
        return sample_region_rgb(image_np, bbox)

    rgb = opaque_mean_rgb(mask_with_contour(crop, points, bbox))
    if rgb is None:
        rgb = sample_region_rgb(crop, CENTER_RECT)
    return rgb


def sample_contour(image_np: np.ndarray, points: np.ndarray, bbox: NormalizedRect) -> LabColor:
    """Lab color of the pixels inside a contour (see sample_contour_rgb)."""
    return rgb_to_lab(sample_contour_rgb(image_np, points, bbox))


def border_lightness(image_np: np.ndarray, band: float = 0.05) -> float:
    """
    Estimate background lightness from a thin band around the image border.

    Manual illustrations sit on a flat page or box fill, so the median of
    the outer band is a robust background estimate even when a piece
    reaches close to one edge.
    """
    h, w = image_np.shape[:2]
    if h == 0 or w == 0:
        return rgb_to_lab(NEUTRAL_GREY_RGB).l

    by = max(1, int(round(h * band)))
    bx = max(1, int(round(w * band)))
    rgb = image_np[..., :3] if image_np.ndim == 3 else image_np[..., None].repeat(3, axis=2)
    strips = [
        rgb[:by].reshape(-1, 3),
        rgb[-by:].reshape(-1, 3),
        rgb[:, :bx].reshape(-1, 3),
        rgb[:, -bx:].reshape(-1, 3),
    ]
    border = np.concatenate(strips).astype(np.float64)
    return rgb_to_lab(np.median(border, axis=0)).l
