"""
Reference extraction from a photographed parts list.

Turns one manual photo into one ReferenceDescriptor per piece
illustration. Piece regions are located with three strategies, tried in
order until one yields descriptors:
    1. Label grid — quantity labels ("2x") found by text recognition
       define a grid; each label's cell is the area above it
    2. Structural boxes — large rectangular outlines (parts-list
       callouts) are searched inside their borders
    3. Whole image — every piece-sized contour in the photo

Candidate contours from all regions go through a global non-maximum
suppression before descriptors are built, so detail contours nested
inside a piece outline (studs, printed markings) are dropped.
"""

import logging
import os
import re
import uuid
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .color import LabColor, border_lightness, rgb_to_lab, sample_contour_rgb
from .contours import Contour, ContourExtractor, OpenCVContourExtractor
from .embedding import Embedder, HistogramEmbedder
from .errors import CroppingFailed, EmbeddingUnavailable, NoRegionsFound
from .geometry import NormalizedRect, ShapeSignature, compute_shape_signature
from .preprocessing import apply_orientation, crop_normalized, downsample, rotate, to_rgb
from .text import TesseractTextRecognizer, TextBox, TextRecognizer

logger = logging.getLogger(__name__)

# Manual photos are downsampled to this before any analysis
REFERENCE_MAX_DIMENSION = int(os.environ.get("REFERENCE_MAX_DIMENSION", "1024"))

# Illustrations are clean line art, so contrast can be pushed harder than
# for camera frames.
REFERENCE_CONTRAST = float(os.environ.get("REFERENCE_CONTRAST", "3.0"))
REFERENCE_MAX_CONTOURS = int(os.environ.get("REFERENCE_MAX_CONTOURS", "10"))

# One embedding per rotation so real pieces match in any orientation
ROTATION_ANGLES = (0, 90, 180, 270)

# Minimum bbox area of a piece, relative to the region searched
MIN_PIECE_AREA = float(os.environ.get("REFERENCE_MIN_PIECE_AREA", "0.003"))
MIN_CELL_PIECE_AREA = float(os.environ.get("REFERENCE_MIN_CELL_PIECE_AREA", "0.01"))

# Above this (relative to the region) a contour is a page or box border
MAX_PIECE_AREA = float(os.environ.get("REFERENCE_MAX_PIECE_AREA", "0.6"))
MAX_CELL_PIECE_AREA = 0.95

# Structural boxes: large and nearly rectangular outlines
BOX_MIN_AREA = float(os.environ.get("REFERENCE_BOX_MIN_AREA", "0.08"))
BOX_RECTANGULARITY = 0.85
BOX_INSET = 0.03

EDGE_MARGIN = 0.02
BACKGROUND_LIGHTNESS_TOLERANCE = float(os.environ.get("REFERENCE_BACKGROUND_L_TOL", "6.0"))

# Drop a contour when this much of its bbox lies inside a larger kept one
NMS_CONTAINMENT = 0.5

# Labels whose centers are closer than this horizontally share a column
LABEL_COLUMN_TOLERANCE = float(os.environ.get("LABEL_COLUMN_TOLERANCE", "0.1"))
LABEL_MARGIN = 0.02

_QUANTITY_RE = re.compile(r"^\s*(\d{1,3})\s*[xX×]\s*$")


@dataclass(frozen=True, eq=False)
class ReferenceDescriptor:
    """
    One physical piece's identity for matching.

    Immutable; display_color is assigned later by the session holding
    the reference (see ReferenceSet) via with_display_color().
    """

    id: str
    signature: ShapeSignature
    color: LabColor
    embeddings: Tuple[np.ndarray, ...]
    preview: np.ndarray = field(repr=False)
    dominant_rgb: Tuple[float, float, float] = (128.0, 128.0, 128.0)
    display_color: Tuple[int, int, int] = (255, 255, 255)
    bounding_box: Optional[NormalizedRect] = None

    @property
    def hu_moments(self) -> Tuple[float, ...]:
        return self.signature.hu_moments

    @property
    def compactness(self) -> float:
        return self.signature.compactness

    def with_display_color(self, color: Sequence[int]) -> "ReferenceDescriptor":
        return replace(self, display_color=tuple(int(c) for c in color))


def parse_quantity(text: str) -> Optional[int]:
    """Parse a quantity label such as "2x", "12 x" or "3×"; None otherwise."""
    match = _QUANTITY_RE.match(text or "")
    if not match:
        return None
    quantity = int(match.group(1))
    return quantity if quantity > 0 else None


def group_label_columns(labels: Sequence[TextBox],
                        tolerance: float = LABEL_COLUMN_TOLERANCE) -> List[List[TextBox]]:
    """
    Cluster labels into columns by horizontal center, left to right.

    Within each column labels are ordered top to bottom.
    """
    ordered = sorted(labels, key=lambda t: t.box.x + t.box.width / 2)
    columns: List[List[TextBox]] = []
    last_center = None
    for label in ordered:
        center = label.box.x + label.box.width / 2
        if columns and center - last_center <= tolerance:
            columns[-1].append(label)
        else:
            columns.append([label])
        last_center = center

    for column in columns:
        column.sort(key=lambda t: t.box.y)
    return columns


def label_cells(labels: Sequence[TextBox],
                tolerance: float = LABEL_COLUMN_TOLERANCE) -> List[NormalizedRect]:
    """
    Infer one grid cell per quantity label.

    A column spans from its leftmost label (less a small margin) to the
    next column's left boundary or the image edge. Each label's cell is
    the strip above it, up to the previous label in its column or the top
    of the image.
    """
    columns = group_label_columns(labels, tolerance)
    if not columns:
        return []

    lefts = [0.0]
    for column in columns[1:]:
        left = min(t.box.x for t in column) - LABEL_MARGIN
        lefts.append(max(lefts[-1], left))
    rights = lefts[1:] + [1.0]

    cells = []
    for column, left, right in zip(columns, lefts, rights):
        top = 0.0
        for label in column:
            bottom = label.box.y
            if right - left > 0 and bottom - top > 0:
                cells.append(NormalizedRect(left, top, right - left, bottom - top))
            top = max(top, label.box.max_y)
    return cells


def suppress_nested(contours: Sequence[Contour],
                    containment: float = NMS_CONTAINMENT) -> List[Contour]:
    """
    Non-maximum suppression by bounding-box containment.

    Contours are visited largest bbox first; a contour whose bbox lies at
    least `containment` inside an already-kept bbox is dropped.
    """
    kept: List[Contour] = []
    for contour in sorted(contours, key=lambda c: c.bbox_area, reverse=True):
        box = contour.bounding_box
        if any(box.contained_fraction(k.bounding_box) >= containment for k in kept):
            continue
        kept.append(contour)
    return kept


class ReferenceExtractor:
    """
    Builds ReferenceDescriptors from a manual photo.

    Stateless between calls; safe to use from several threads at once as
    long as the injected capabilities are.
    """

    def __init__(self,
                 contour_extractor: ContourExtractor = None,
                 embedder: Embedder = None,
                 text_recognizer: TextRecognizer = None,
                 use_labels: bool = True,
                 max_dimension: int = REFERENCE_MAX_DIMENSION,
                 contrast_adjustment: float = REFERENCE_CONTRAST,
                 max_contours: int = REFERENCE_MAX_CONTOURS):
        self.contour_extractor = contour_extractor or OpenCVContourExtractor()
        self.embedder = embedder or HistogramEmbedder()
        self.text_recognizer = text_recognizer or TesseractTextRecognizer()
        self.use_labels = use_labels
        self.max_dimension = max_dimension
        self.contrast_adjustment = contrast_adjustment
        self.max_contours = max_contours

    def extract(self, image_np: np.ndarray, orientation: int = 1) -> List[ReferenceDescriptor]:
        """
        Extract one descriptor per piece illustration.

        Args:
            image_np: RGB(A) uint8 photo of the manual.
            orientation: EXIF orientation of the photo.

        Returns:
            Non-empty list of descriptors, largest piece first.

        Raises:
            NoRegionsFound: If no strategy produced a usable piece.
        """
        image = downsample(apply_orientation(to_rgb(image_np), orientation),
                           self.max_dimension)

        strategies = (
            ("label grid", self.label_grid_contours),
            ("structural boxes", self.structural_contours),
            ("whole image", self.whole_image_contours),
        )
        for name, strategy in strategies:
            contours = strategy(image)
            if not contours:
                logger.info(f"Reference strategy '{name}' found no candidate contours")
                continue

            kept = suppress_nested(contours)
            descriptors = []
            for contour in kept:
                descriptor = self.build_descriptor(image, contour)
                if descriptor is not None:
                    descriptors.append(descriptor)

            if descriptors:
                logger.info(
                    f"Reference strategy '{name}': {len(contours)} contours → "
                    f"{len(kept)} after suppression → {len(descriptors)} descriptors"
                )
                return descriptors
            logger.info(f"Reference strategy '{name}' produced no usable descriptors")

        raise NoRegionsFound()

    # --- Region strategies ---

    def label_grid_contours(self, image_np: np.ndarray) -> List[Contour]:
        """Best contour from each quantity-label cell."""
        if not self.use_labels:
            return []

        try:
            words = self.text_recognizer.recognize(image_np)
        except Exception as e:
            logger.error(f"Text recognition failed, skipping label grid: {e}")
            return []

        labels = [w for w in words if parse_quantity(w.text) is not None]
        if not labels:
            return []

        cells = label_cells(labels)
        logger.debug(f"{len(labels)} quantity labels → {len(cells)} cells")

        contours = []
        for cell in cells:
            found = self._region_candidates(image_np, cell,
                                            min_area=MIN_CELL_PIECE_AREA,
                                            max_area=MAX_CELL_PIECE_AREA)
            if found:
                contours.append(found[0])
            else:
                logger.debug(f"No acceptable contour in cell {cell}")
        return contours

    def find_structural_boxes(self, image_np: np.ndarray) -> List[NormalizedRect]:
        """Interiors of large, nearly rectangular outlines (parts-list callouts)."""
        boxes = []
        for contour in self._detect(image_np):
            box = contour.bounding_box
            if box.area < BOX_MIN_AREA:
                continue
            if contour.area / box.area < BOX_RECTANGULARITY:
                continue
            boxes.append(box.inset(BOX_INSET))
        return boxes

    def structural_contours(self, image_np: np.ndarray) -> List[Contour]:
        """Every acceptable contour inside each structural box."""
        contours = []
        for box in self.find_structural_boxes(image_np):
            contours.extend(self._region_candidates(image_np, box,
                                                    min_area=MIN_PIECE_AREA,
                                                    max_area=MAX_PIECE_AREA))
        return contours

    def whole_image_contours(self, image_np: np.ndarray) -> List[Contour]:
        """Every acceptable contour in the whole photo."""
        return self._region_candidates(image_np, NormalizedRect(0.0, 0.0, 1.0, 1.0),
                                       min_area=MIN_PIECE_AREA,
                                       max_area=MAX_PIECE_AREA)

    # --- Contour selection ---

    def _detect(self, image_np: np.ndarray) -> List[Contour]:
        return self.contour_extractor.detect(image_np,
                                             contrast_adjustment=self.contrast_adjustment,
                                             max_count=self.max_contours)

    def _region_candidates(self, image_np: np.ndarray,
                           region: NormalizedRect,
                           min_area: float,
                           max_area: float) -> List[Contour]:
        """
        Acceptable piece contours inside `region`, in parent coordinates.

        Contours close to the background lightness are rejected. Contours
        clear of the region's edges are preferred; edge-touching ones are
        only returned when nothing else qualifies (the region's own border
        usually touches every edge).
        """
        try:
            crop = crop_normalized(image_np, region)
        except CroppingFailed as e:
            logger.debug(f"Skipping region: {e}")
            return []

        background_l = border_lightness(crop)
        inner, touching = [], []
        for contour in self._detect(crop):
            if not min_area <= contour.bbox_area <= max_area:
                continue
            rgb = sample_contour_rgb(crop, contour.points, contour.bounding_box)
            if abs(rgb_to_lab(rgb).l - background_l) < BACKGROUND_LIGHTNESS_TOLERANCE:
                logger.debug("Rejecting background-colored contour")
                continue
            if contour.touches_edge(EDGE_MARGIN):
                touching.append(contour)
            else:
                inner.append(contour)

        return [c.to_parent(region) for c in (inner or touching)]

    # --- Descriptor construction ---

    def build_descriptor(self, image_np: np.ndarray,
                         contour: Contour) -> Optional[ReferenceDescriptor]:
        """
        Build a full descriptor for one piece contour.

        Returns:
            The descriptor, or None when the crop is degenerate, below the
            embedding minimum, or no rotation could be embedded.
        """
        bbox = contour.bounding_box
        try:
            crop = crop_normalized(image_np, bbox)
        except CroppingFailed as e:
            logger.warning(f"Skipping piece: {e}")
            return None

        if min(crop.shape[:2]) < self.embedder.min_size:
            logger.debug(f"Skipping piece: crop {crop.shape[1]}x{crop.shape[0]} too small")
            return None

        embeddings = []
        for angle in ROTATION_ANGLES:
            try:
                embeddings.append(self.embedder.extract(rotate(crop, angle)))
            except EmbeddingUnavailable as e:
                logger.debug(f"No embedding at {angle}°: {e}")
        if not embeddings:
            logger.warning(f"Skipping piece at {bbox}: no embeddings")
            return None

        rgb = sample_contour_rgb(image_np, contour.points, bbox)
        h, w = image_np.shape[:2]

        return ReferenceDescriptor(
            id=uuid.uuid4().hex,
            signature=compute_shape_signature(contour.pixel_points(w, h)),
            color=rgb_to_lab(rgb),
            embeddings=tuple(embeddings),
            preview=crop.copy(),
            dominant_rgb=rgb,
            bounding_box=bbox,
        )


def extract_references(image_np: np.ndarray, orientation: int = 1,
                       **kwargs) -> List[ReferenceDescriptor]:
    """Extract every piece descriptor from a manual photo (see ReferenceExtractor)."""
    return ReferenceExtractor(**kwargs).extract(image_np, orientation=orientation)


def extract_primary_reference(image_np: np.ndarray, orientation: int = 1,
                              **kwargs) -> ReferenceDescriptor:
    """Descriptor of the largest piece in a manual photo."""
    return extract_references(image_np, orientation=orientation, **kwargs)[0]
