"""
Multi-signal scoring for frame candidates.

Combines four independent signals — Hu moment similarity, compactness
similarity, embedding similarity and Lab color similarity — into one
composite score per (candidate, reference) pair. Color carries the most
weight: every shape signal suffers from the viewpoint change between a 2D
manual illustration and a 3D piece lying in a pile.

Thresholds and weights are loaded from the environment so they can be
tuned without code changes.
"""

import logging
import os
from enum import Enum
from typing import Iterable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WEIGHTS = {
    "moments":     float(os.environ.get("SCORE_MOMENT_W", "0.35")),
    "compactness": float(os.environ.get("SCORE_COMPACTNESS_W", "0.10")),
    "embedding":   float(os.environ.get("SCORE_EMBEDDING_W", "0.10")),
    "color":       float(os.environ.get("SCORE_COLOR_W", "0.45")),
}

# Minimum Hu moment similarity for a reference to stay in contention.
# Illustration-vs-real shape matching is imprecise, so this is lenient.
MOMENT_THRESHOLD = float(os.environ.get("MOMENT_THRESHOLD", "0.15"))

# Minimum compactness similarity; the 3D viewing angle changes compactness.
COMPACTNESS_THRESHOLD = float(os.environ.get("COMPACTNESS_THRESHOLD", "0.3"))

# Minimum composite score to count as a match.
SCORE_THRESHOLD = float(os.environ.get("SCORE_THRESHOLD", "0.25"))

# Maximum Lab distance for a "shape and color" classification.
COLOR_MATCH_THRESHOLD = float(os.environ.get("COLOR_MATCH_THRESHOLD", "35.0"))

# Maximum Lab distance to survive the color pre-filter. Generous: it only
# removes obviously wrong colors before the expensive work.
COLOR_PREFILTER_THRESHOLD = float(os.environ.get("COLOR_PREFILTER_THRESHOLD", "50.0"))

# Embedding similarity used when a candidate's embedding is unavailable
NEUTRAL_EMBEDDING_SIMILARITY = 0.5

_WEIGHT_TOLERANCE = 1e-6


class MatchType(Enum):
    SHAPE_ONLY = "shape_only"
    SHAPE_AND_COLOR = "shape_and_color"


def validate_weights(weights: dict) -> dict:
    """
    Check a weights dict has every signal and sums to 1.0.

    Raises:
        ValueError: On missing signals or a sum other than 1.0.
    """
    missing = set(DEFAULT_WEIGHTS) - set(weights)
    if missing:
        raise ValueError(f"Missing score weights: {sorted(missing)}")
    total = sum(weights[k] for k in DEFAULT_WEIGHTS)
    if abs(total - 1.0) > _WEIGHT_TOLERANCE:
        raise ValueError(f"Score weights must sum to 1.0, got {total:.4f}")
    return weights


def color_similarity(color_distance: float,
                     prefilter_threshold: float = COLOR_PREFILTER_THRESHOLD) -> float:
    """Linear ramp: 1.0 at distance 0, 0.0 at the pre-filter threshold."""
    if prefilter_threshold <= 0:
        return 0.0
    return max(0.0, 1.0 - color_distance / prefilter_threshold)


def embedding_similarity(normalized_distance: Optional[float]) -> float:
    """1 - distance, or the neutral similarity when no embedding was available."""
    if normalized_distance is None:
        return NEUTRAL_EMBEDDING_SIMILARITY
    return 1.0 - min(max(normalized_distance, 0.0), 1.0)


def compute_composite_score(moment_sim: float,
                            compactness_sim: float,
                            embedding_sim: float,
                            color_sim: float,
                            weights: dict = None) -> float:
    """
    Weighted sum of the four similarity signals, each in 0…1.

    Args:
        moment_sim: Hu moment similarity.
        compactness_sim: Compactness ratio similarity.
        embedding_sim: Embedding similarity (nearest rotation).
        color_sim: Color ramp similarity.
        weights: Optional override for DEFAULT_WEIGHTS (must sum to 1.0).

    Returns:
        Composite score in 0…1.
    """
    w = weights or DEFAULT_WEIGHTS
    return float(
        w["moments"] * moment_sim
        + w["compactness"] * compactness_sim
        + w["embedding"] * embedding_sim
        + w["color"] * color_sim
    )


def classify_match(color_distance: float,
                   color_match_threshold: float = COLOR_MATCH_THRESHOLD) -> MatchType:
    """Shape-and-color when the winning reference's color is close enough."""
    if color_distance <= color_match_threshold:
        return MatchType.SHAPE_AND_COLOR
    return MatchType.SHAPE_ONLY


def select_best_match(scored: Iterable[Tuple[float, T]],
                      min_score: float = SCORE_THRESHOLD) -> Optional[Tuple[float, T]]:
    """
    Pick the highest-scoring (score, item) pair at or above `min_score`.

    Ties keep the first pair encountered, so reference order decides
    between equal scores. This is an arbitrary but stable choice.
    """
    best = None
    for score, item in scored:
        if score < min_score:
            continue
        if best is None or score > best[0]:
            best = (score, item)
    return best
