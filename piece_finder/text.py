"""
Text-recognition capability, used to find quantity labels ("2x") on a
parts-list photo.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import List, NamedTuple

import cv2
import numpy as np
import pytesseract

from .geometry import NormalizedRect
from .preprocessing import to_rgb

logger = logging.getLogger(__name__)

OCR_MIN_CONFIDENCE = float(os.environ.get("OCR_MIN_CONFIDENCE", "40"))

# Sparse-text page segmentation: labels are scattered, not in paragraphs
OCR_CONFIG = os.environ.get("OCR_CONFIG", "--psm 11")


class TextBox(NamedTuple):
    """One recognized word and where it sits in the image."""

    text: str
    box: NormalizedRect
    confidence: float = 100.0


class TextRecognizer(ABC):
    """Recognizes short text snippets with their normalized bounding boxes."""

    @abstractmethod
    def recognize(self, image_np: np.ndarray) -> List[TextBox]:
        """Return every recognized word in the image."""


class TesseractTextRecognizer(TextRecognizer):
    """
    Tesseract OCR through pytesseract.

    The image is upscaled 2x and Otsu-binarized first; quantity labels in
    manual photos are only a few pixels tall.
    """

    def __init__(self, min_confidence: float = OCR_MIN_CONFIDENCE,
                 config: str = OCR_CONFIG,
                 upscale: float = 2.0):
        self.min_confidence = min_confidence
        self.config = config
        self.upscale = upscale

    def _prepare(self, image_np: np.ndarray) -> np.ndarray:
        gray = cv2.cvtColor(to_rgb(image_np), cv2.COLOR_RGB2GRAY)
        gray = cv2.resize(gray, None, fx=self.upscale, fy=self.upscale,
                          interpolation=cv2.INTER_CUBIC)
        _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        return binary

    def recognize(self, image_np: np.ndarray) -> List[TextBox]:
        binary = self._prepare(image_np)
        bh, bw = binary.shape[:2]

        data = pytesseract.image_to_data(binary, config=self.config,
                                         output_type=pytesseract.Output.DICT)

        boxes = []
        for i, raw in enumerate(data.get("text", [])):
            text = str(raw or "").strip()
            if not text:
                continue
            try:
                conf = float(data["conf"][i])
            except (KeyError, ValueError, TypeError):
                continue
            if conf < self.min_confidence:
                continue

            box = NormalizedRect(
                data["left"][i] / bw,
                data["top"][i] / bh,
                data["width"][i] / bw,
                data["height"][i] / bh,
            )
            boxes.append(TextBox(text, box, conf))

        logger.debug(f"OCR found {len(boxes)} words")
        return boxes
