"""
Per-frame piece detection and matching.

Orchestrates the cascaded pipeline for one camera frame:
    1. Contour extraction on a downsampled frame
    2. Color pre-filter — cheap Lab distance to every reference
    3. Shape signature + one embedding per surviving candidate
    4. Per-reference thresholds and composite scoring
    5. Best reference wins, classified as shape-only or shape-and-color

Color goes first because it is the cheapest signal and discards most
contours in a dense, multi-colored pile before the embedding step runs.
Per-candidate failures (crop or embedding) fall back to neutral values
and never abort the frame.
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .color import lab_distance, sample_contour
from .contours import Contour, ContourExtractor, OpenCVContourExtractor
from .embedding import Embedder, HistogramEmbedder, normalized_distance
from .errors import CroppingFailed, EmbeddingUnavailable
from .geometry import (NormalizedRect, ShapeSignature, compactness_similarity,
                       compute_shape_signature, moment_distance, moment_similarity)
from .preprocessing import crop_normalized, downsample, to_rgb
from .reference import ReferenceDescriptor
from .scoring import (COLOR_MATCH_THRESHOLD, COLOR_PREFILTER_THRESHOLD,
                      COMPACTNESS_THRESHOLD, DEFAULT_WEIGHTS, MOMENT_THRESHOLD,
                      SCORE_THRESHOLD, MatchType, classify_match, color_similarity,
                      compute_composite_score, embedding_similarity,
                      select_best_match, validate_weights)

logger = logging.getLogger(__name__)

# 768px keeps individual pieces at ~20-50px in a dense pile while bounding
# both contour and embedding cost.
FRAME_MAX_DIMENSION = int(os.environ.get("FRAME_MAX_DIMENSION", "768"))
FRAME_CONTRAST = float(os.environ.get("FRAME_CONTRAST", "2.0"))
FRAME_MAX_CONTOURS = int(os.environ.get("FRAME_MAX_CONTOURS", "30"))

# Accepted bbox area range (normalized): below is noise, above is merged blobs
MIN_CANDIDATE_AREA = float(os.environ.get("FRAME_MIN_CANDIDATE_AREA", "0.0005"))
MAX_CANDIDATE_AREA = float(os.environ.get("FRAME_MAX_CANDIDATE_AREA", "0.10"))


class FrameGate:
    """
    Single-slot in-flight guard.

    try_begin() claims the slot without blocking and reports whether it
    succeeded; end() frees it. A second caller never waits.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def try_begin(self) -> bool:
        return self._lock.acquire(blocking=False)

    def end(self) -> None:
        self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()


@dataclass(frozen=True)
class PieceCandidate:
    """One matched region in one frame. Discarded after the frame is drawn."""

    bounding_box: NormalizedRect
    reference_id: str
    match_type: MatchType
    score: float
    color_distance: float
    display_color: Tuple[int, int, int] = (255, 255, 255)


@dataclass(frozen=True)
class _CandidateFeatures:
    signature: ShapeSignature
    embedding: Optional[np.ndarray]


class DetectionPipeline:
    """
    Matches camera frames against a set of reference descriptors.

    The only state is an in-flight guard: while one frame is being
    processed, further calls return None immediately instead of queuing.
    """

    def __init__(self,
                 contour_extractor: ContourExtractor = None,
                 embedder: Embedder = None,
                 max_dimension: int = FRAME_MAX_DIMENSION,
                 contrast_adjustment: float = FRAME_CONTRAST,
                 max_contours: int = FRAME_MAX_CONTOURS,
                 min_area: float = MIN_CANDIDATE_AREA,
                 max_area: float = MAX_CANDIDATE_AREA,
                 moment_threshold: float = MOMENT_THRESHOLD,
                 compactness_threshold: float = COMPACTNESS_THRESHOLD,
                 score_threshold: float = SCORE_THRESHOLD,
                 color_match_threshold: float = COLOR_MATCH_THRESHOLD,
                 color_prefilter_threshold: float = COLOR_PREFILTER_THRESHOLD,
                 weights: dict = None):
        self.contour_extractor = contour_extractor or OpenCVContourExtractor()
        self.embedder = embedder or HistogramEmbedder()
        self.max_dimension = max_dimension
        self.contrast_adjustment = contrast_adjustment
        self.max_contours = max_contours
        self.min_area = min_area
        self.max_area = max_area
        self.moment_threshold = moment_threshold
        self.compactness_threshold = compactness_threshold
        self.score_threshold = score_threshold
        self.color_match_threshold = color_match_threshold
        self.color_prefilter_threshold = color_prefilter_threshold
        self.weights = validate_weights(dict(weights or DEFAULT_WEIGHTS))
        self._gate = FrameGate()

    @property
    def busy(self) -> bool:
        return self._gate.busy

    def process_frame(self, frame: np.ndarray,
                      references: Sequence[ReferenceDescriptor]
                      ) -> Optional[List[PieceCandidate]]:
        """
        Detect and classify reference pieces in one frame.

        Args:
            frame: RGB(A) uint8 camera frame.
            references: Current reference descriptors. A snapshot is taken
                up front, so later mutation of the caller's list does not
                affect this frame.

        Returns:
            None if skipped (another frame in flight, or no references);
            otherwise one PieceCandidate per matched contour, possibly empty.
        """
        snapshot = tuple(references)
        if not snapshot:
            return None
        if not self._gate.try_begin():
            logger.debug("Frame skipped: previous frame still in flight")
            return None
        try:
            return self._match_frame(frame, snapshot)
        finally:
            self._gate.end()

    def _match_frame(self, frame: np.ndarray,
                     references: Tuple[ReferenceDescriptor, ...]) -> List[PieceCandidate]:
        image = downsample(to_rgb(frame), self.max_dimension)

        contours = self.contour_extractor.detect(image,
                                                 contrast_adjustment=self.contrast_adjustment,
                                                 max_count=self.max_contours)
        if not contours:
            return []

        candidates = []
        for contour in contours:
            area = contour.bbox_area
            if not self.min_area < area < self.max_area:
                continue

            candidate = self.match_contour(image, contour, references)
            if candidate is not None:
                candidates.append(candidate)

        logger.debug(
            f"Frame: {len(contours)} contours → {len(candidates)} matches "
            f"against {len(references)} references"
        )
        return candidates

    def color_prefilter(self, image_np: np.ndarray, contour: Contour,
                        references: Sequence[ReferenceDescriptor]
                        ) -> List[Tuple[ReferenceDescriptor, float]]:
        """
        References whose dominant color is within the pre-filter distance.

        The candidate is sampled inside its contour, the same way reference
        colors are, so background around the piece does not shift it.
        """
        color = sample_contour(image_np, contour.points, contour.bounding_box)
        survivors = []
        for ref in references:
            dist = lab_distance(ref.color, color)
            if dist < self.color_prefilter_threshold:
                survivors.append((ref, dist))
        return survivors

    def _candidate_features(self, image_np: np.ndarray, contour: Contour) -> _CandidateFeatures:
        h, w = image_np.shape[:2]
        signature = compute_shape_signature(contour.pixel_points(w, h))

        embedding = None
        try:
            crop = crop_normalized(image_np, contour.bounding_box)
            embedding = self.embedder.extract(crop)
        except CroppingFailed as e:
            logger.debug(f"Candidate crop failed: {e}")
        except EmbeddingUnavailable as e:
            logger.debug(f"Candidate embedding unavailable: {e}")

        return _CandidateFeatures(signature=signature, embedding=embedding)

    def score_reference(self, features: _CandidateFeatures,
                        ref: ReferenceDescriptor,
                        color_distance: float) -> Optional[float]:
        """
        Composite score of one candidate against one reference.

        Returns:
            The score, or None if a shape gate rejects the reference.
        """
        moment_sim = moment_similarity(
            moment_distance(ref.signature.hu_moments, features.signature.hu_moments)
        )
        if moment_sim < self.moment_threshold:
            return None

        compact_sim = compactness_similarity(ref.signature.compactness,
                                             features.signature.compactness)
        if compact_sim < self.compactness_threshold:
            return None

        embed_distance = None
        if features.embedding is not None:
            try:
                raw = self.embedder.nearest_distance(features.embedding, ref.embeddings)
                embed_distance = normalized_distance(raw)
            except ValueError as e:
                logger.warning(f"Embedding comparison failed for {ref.id}: {e}")

        return compute_composite_score(
            moment_sim=moment_sim,
            compactness_sim=compact_sim,
            embedding_sim=embedding_similarity(embed_distance),
            color_sim=color_similarity(color_distance, self.color_prefilter_threshold),
            weights=self.weights,
        )

    def match_contour(self, image_np: np.ndarray, contour: Contour,
                      references: Sequence[ReferenceDescriptor]) -> Optional[PieceCandidate]:
        """Best accepted reference match for one contour, or None."""
        survivors = self.color_prefilter(image_np, contour, references)
        if not survivors:
            return None

        features = self._candidate_features(image_np, contour)

        scored = []
        for ref, color_dist in survivors:
            score = self.score_reference(features, ref, color_dist)
            if score is not None:
                scored.append((score, (ref, color_dist)))

        best = select_best_match(scored, self.score_threshold)
        if best is None:
            return None

        score, (ref, color_dist) = best
        return PieceCandidate(
            bounding_box=contour.bounding_box,
            reference_id=ref.id,
            match_type=classify_match(color_dist, self.color_match_threshold),
            score=score,
            color_distance=color_dist,
            display_color=ref.display_color,
        )
