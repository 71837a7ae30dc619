"""Shared test fixtures for piece finder tests."""

import threading
import uuid

import numpy as np
import cv2
import pytest

from piece_finder.color import rgb_to_lab
from piece_finder.contours import Contour, ContourExtractor
from piece_finder.embedding import Embedder
from piece_finder.geometry import NormalizedRect, compute_shape_signature
from piece_finder.reference import ReferenceDescriptor
from piece_finder.text import TextBox, TextRecognizer


RED = (200, 30, 30)
BLUE = (30, 30, 200)
GREEN = (30, 150, 30)

# Irregular pentagon with no mirror symmetry, so every Hu invariant is non-zero
PENTAGON = np.array([
    [0.0, 0.0],
    [1.0, 0.1],
    [1.2, 0.8],
    [0.5, 1.1],
    [-0.1, 0.6],
])


def transform(points, scale=1.0, angle=0.0, offset=(0.0, 0.0)):
    """Rotate (degrees) about the origin, scale, then translate a point set."""
    rad = np.radians(angle)
    rot = np.array([[np.cos(rad), -np.sin(rad)],
                    [np.sin(rad), np.cos(rad)]])
    pts = np.asarray(points, dtype=np.float64) @ rot.T
    return pts * scale + np.asarray(offset)


def regular_polygon(n, radius=1.0, center=(0.0, 0.0)):
    angles = np.linspace(0, 2 * np.pi, n, endpoint=False)
    return np.stack([center[0] + radius * np.cos(angles),
                     center[1] + radius * np.sin(angles)], axis=1)


class FakeContourExtractor(ContourExtractor):
    """Returns a fixed contour list, optionally blocking until released."""

    def __init__(self, contours, block=False):
        self.contours = list(contours)
        self.block = block
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def detect(self, image_np, contrast_adjustment=2.0, max_count=20):
        self.calls += 1
        self.started.set()
        if self.block:
            self.release.wait(timeout=5)
        return self.contours[:max_count]


class FakeEmbedder(Embedder):
    """Mean-color embedding: identical for any crop of a uniform image."""

    def extract(self, image_np):
        self.check_size(image_np)
        return (image_np[..., :3].reshape(-1, 3).mean(axis=0) / 255.0).astype(np.float32)

    def distance(self, a, b):
        return float(np.linalg.norm(np.asarray(a) - np.asarray(b))) * 45.0


class FakeTextRecognizer(TextRecognizer):
    """Returns preset words, or raises the preset error."""

    def __init__(self, words=(), error=None):
        self.words = list(words)
        self.error = error

    def recognize(self, image_np):
        if self.error is not None:
            raise self.error
        return list(self.words)


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = RED
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, BLUE, -1)
    return img


@pytest.fixture
def blank_image():
    """Plain white page with nothing on it."""
    return np.ones((240, 320, 3), dtype=np.uint8) * 255


@pytest.fixture
def labeled_manual_image():
    """
    600x240 parts list: three pieces in a row, each with a "2x" label
    painted below it (the label text itself comes from the fake recognizer).
    """
    img = np.ones((240, 600, 3), dtype=np.uint8) * 255
    img[40:140, 50:150] = RED
    cv2.circle(img, (300, 90), 50, BLUE, -1)
    triangle = np.array([[450, 140], [550, 140], [500, 40]], dtype=np.int32)
    cv2.fillPoly(img, [triangle], GREEN)
    return img


@pytest.fixture
def quantity_labels():
    """One "2x" label under each piece of labeled_manual_image."""
    return [
        TextBox("2x", _label_box(50)),
        TextBox("2x", _label_box(250)),
        TextBox("2x", _label_box(450)),
    ]


def _label_box(left_px):
    return NormalizedRect(left_px / 600, 160 / 240, 40 / 600, 20 / 240)


@pytest.fixture
def boxed_manual_image():
    """600x400 page with a black callout outline holding two pieces."""
    img = np.ones((400, 600, 3), dtype=np.uint8) * 255
    cv2.rectangle(img, (20, 20), (579, 379), (0, 0, 0), 4)
    img[120:220, 120:220] = RED
    cv2.circle(img, (420, 200), 50, BLUE, -1)
    return img


@pytest.fixture
def loose_pieces_image():
    """400x300 page with a circle and a triangle and no callout box."""
    img = np.ones((300, 400, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 150), 40, BLUE, -1)
    triangle = np.array([[250, 180], [310, 180], [280, 130]], dtype=np.int32)
    cv2.fillPoly(img, [triangle], GREEN)
    return img


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def make_reference():
    """Factory for reference descriptors built straight from a polygon and color."""

    def _make(points, rgb, embedding_rgb=None):
        vec = np.asarray(embedding_rgb or rgb, dtype=np.float32) / 255.0
        return ReferenceDescriptor(
            id=uuid.uuid4().hex,
            signature=compute_shape_signature(points),
            color=rgb_to_lab(rgb),
            embeddings=(vec,),
            preview=np.zeros((1, 1, 3), dtype=np.uint8),
            dominant_rgb=tuple(float(c) for c in rgb),
        )

    return _make


@pytest.fixture
def uniform_frame():
    """Factory for a 400x400 single-color camera frame."""

    def _make(rgb):
        frame = np.empty((400, 400, 3), dtype=np.uint8)
        frame[:] = rgb
        return frame

    return _make


@pytest.fixture
def pentagon_contour():
    """The pentagon, rotated 45° and at twice the reference scale, mid-frame."""
    return Contour(transform(PENTAGON, scale=0.15, angle=45.0, offset=(0.5, 0.4)))


@pytest.fixture
def pentagon_points():
    """Reference-scale pentagon."""
    return transform(PENTAGON, scale=0.075, offset=(0.1, 0.1))
