"""
piece_finder — Find building-block pieces from a manual in a camera feed.

Extracts piece references from a photographed parts list, then matches
each camera frame against them using Hu moment shape signatures,
compactness, histogram embeddings (FAISS nearest rotation) and Lab color.

Modules:
    geometry       Polygon metrics, Hu moments and shape similarity
    color          RGB to CIE Lab, region, contour and opaque-pixel sampling
    preprocessing  Orientation, downsampling, cropping, rotation, masking
    contours       Contour model and OpenCV foreground contour extraction
    embedding      HSV + edge-direction histogram embeddings
    text           Quantity-label recognition (Tesseract)
    scoring        Multi-signal composite scoring and classification
    reference      Manual photo -> reference descriptors
    matching       Camera frame -> piece candidates
    session        Reference set snapshots and the background frame worker
    errors         Error types
"""

from .errors import CroppingFailed, EmbeddingUnavailable, NoRegionsFound, PieceFinderError
from .matching import DetectionPipeline, PieceCandidate
from .reference import (ReferenceDescriptor, ReferenceExtractor, extract_primary_reference,
                        extract_references)
from .scoring import MatchType
from .session import FrameThrottler, FrameWorker, ReferenceSet

__version__ = "1.0.0"
