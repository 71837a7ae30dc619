"""
Visual embedding capability.

An embedding is a fixed-length float32 vector with a pairwise distance.
Raw distances are on a 0..~70 scale and get normalized to [0, 1] by the
pipelines. Embedders are pluggable through the Embedder interface.

HistogramEmbedder, the bundled implementation, concatenates:
    [0:64]   — 8×8 Hue×Saturation histogram with CLAHE-equalized Value
    [64:100] — 36-bin edge direction histogram (outline orientation)
Each half is L2-normalized. The color half is rotation invariant; the
edge half is not, which is why references store one embedding per
rotation and candidates are compared against the nearest one.
"""

import logging
import math
import os
from abc import ABC, abstractmethod
from typing import Sequence

import cv2
import faiss
import numpy as np

from .errors import EmbeddingUnavailable
from .preprocessing import to_rgb

logger = logging.getLogger(__name__)

# Images smaller than this on either side cannot be embedded
MIN_EMBEDDING_SIZE = int(os.environ.get("EMBEDDING_MIN_SIZE", "20"))

# Raw distances above the cutoff normalize to 1.0
EMBEDDING_DISTANCE_CUTOFF = float(os.environ.get("EMBEDDING_DISTANCE_CUTOFF", "70.0"))

# Histogram configuration
H_BINS = int(os.environ.get("HSV_H_BINS", "8"))
S_BINS = int(os.environ.get("HSV_S_BINS", "8"))
EDGE_BINS = 36
EMBEDDING_DIM = H_BINS * S_BINS + EDGE_BINS

# Maps L2 distance between unit-norm embeddings (0..√2) onto the raw scale
EMBEDDING_DISTANCE_SCALE = float(os.environ.get("EMBEDDING_DISTANCE_SCALE", "45.0"))

# Working resolution for embedding extraction
EMBEDDING_IMAGE_SIZE = 64


def normalized_distance(raw_distance: float,
                        cutoff: float = EMBEDDING_DISTANCE_CUTOFF) -> float:
    """Map a raw embedding distance to 0…1 (lower = more similar)."""
    if not math.isfinite(raw_distance):
        return 1.0
    return min(max(raw_distance, 0.0) / cutoff, 1.0)


class Embedder(ABC):
    """Produces visual-similarity embeddings for image crops."""

    min_size = MIN_EMBEDDING_SIZE

    @abstractmethod
    def extract(self, image_np: np.ndarray) -> np.ndarray:
        """
        Embed an image.

        Raises:
            EmbeddingUnavailable: If the image is too small or extraction fails.
        """

    @abstractmethod
    def distance(self, a: np.ndarray, b: np.ndarray) -> float:
        """Raw distance between two embeddings, typically 0..70."""

    def nearest_distance(self, query: np.ndarray,
                         embeddings: Sequence[np.ndarray]) -> float:
        """Smallest raw distance from `query` to any of `embeddings` (inf if none)."""
        if len(embeddings) == 0:
            return float("inf")
        return min(self.distance(e, query) for e in embeddings)

    def check_size(self, image_np: np.ndarray) -> None:
        h, w = image_np.shape[:2]
        if min(h, w) < self.min_size:
            raise EmbeddingUnavailable(
                f"Image {w}x{h} is below the {self.min_size}px embedding minimum"
            )


def _hue_saturation_histogram(rgb: np.ndarray) -> np.ndarray:
    hsv = cv2.cvtColor(rgb, cv2.COLOR_RGB2HSV)

    # CLAHE equalization on V channel for lighting normalization
    h_ch, s_ch, v_ch = cv2.split(hsv)
    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    hsv = cv2.merge((h_ch, s_ch, clahe.apply(v_ch)))

    hist = cv2.calcHist([hsv], [0, 1], None, [H_BINS, S_BINS], [0, 180, 0, 256])
    hist = hist.flatten().astype(np.float32)
    norm = np.linalg.norm(hist)
    if norm > 0:
        hist = hist / norm
    return hist


def _edge_direction_histogram(gray: np.ndarray) -> np.ndarray:
    edges = cv2.Canny(gray, 50, 150)
    edge_mask = edges > 0
    if not np.any(edge_mask):
        return np.zeros(EDGE_BINS, dtype=np.float32)

    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
    angles = np.degrees(np.arctan2(gy[edge_mask], gx[edge_mask])) % 360

    hist, _ = np.histogram(angles, bins=EDGE_BINS, range=(0, 360))
    hist = hist.astype(np.float32)
    norm = np.linalg.norm(hist)
    if norm > 0:
        hist = hist / norm
    return hist


class HistogramEmbedder(Embedder):
    """Color + edge-orientation histogram embedding with faiss nearest search."""

    def __init__(self, distance_scale: float = EMBEDDING_DISTANCE_SCALE,
                 image_size: int = EMBEDDING_IMAGE_SIZE):
        self.distance_scale = distance_scale
        self.image_size = image_size

    @property
    def dimension(self) -> int:
        return EMBEDDING_DIM

    def extract(self, image_np: np.ndarray) -> np.ndarray:
        self.check_size(image_np)
        try:
            rgb = to_rgb(image_np)
            resized = cv2.resize(rgb, (self.image_size, self.image_size),
                                 interpolation=cv2.INTER_AREA)
            gray = cv2.cvtColor(resized, cv2.COLOR_RGB2GRAY)

            color_hist = _hue_saturation_histogram(resized)
            edge_hist = _edge_direction_histogram(gray)
        except cv2.error as e:
            raise EmbeddingUnavailable(f"Histogram extraction failed: {e}") from e

        embedding = np.concatenate([color_hist, edge_hist]) / np.sqrt(2.0)
        return embedding.astype(np.float32)

    def distance(self, a: np.ndarray, b: np.ndarray) -> float:
        va = np.asarray(a, dtype=np.float32).ravel()
        vb = np.asarray(b, dtype=np.float32).ravel()
        if va.shape != vb.shape:
            raise ValueError(
                f"Embedding dimension {va.shape[0]} doesn't match {vb.shape[0]}"
            )
        return float(np.linalg.norm(va - vb)) * self.distance_scale

    def nearest_distance(self, query: np.ndarray,
                         embeddings: Sequence[np.ndarray]) -> float:
        """
        Nearest stored embedding via an exact faiss L2 index.

        Raises:
            ValueError: If query dimensions don't match the stored embeddings.
        """
        if len(embeddings) == 0:
            return float("inf")

        stack = np.vstack([np.asarray(e, dtype=np.float32).ravel() for e in embeddings])
        q = np.asarray(query, dtype=np.float32).reshape(1, -1)
        if q.shape[1] != stack.shape[1]:
            raise ValueError(
                f"Query dimension {q.shape[1]} doesn't match "
                f"index dimension {stack.shape[1]}"
            )

        index = faiss.IndexFlatL2(stack.shape[1])
        index.add(stack)
        distances, _ = index.search(q, 1)

        # IndexFlatL2 reports squared distances
        return float(np.sqrt(max(float(distances[0][0]), 0.0))) * self.distance_scale
