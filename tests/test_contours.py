"""Tests for the Contour type and OpenCV contour extraction."""

import numpy as np
import cv2
import pytest

from piece_finder.contours import Contour, OpenCVContourExtractor
from piece_finder.geometry import NormalizedRect, compute_hu_moments


class TestContour:
    """Tests for the normalized contour type."""

    def test_from_pixels(self):
        c = Contour.from_pixels(np.array([[[0, 0]], [[100, 0]], [[100, 50]]]), 200, 100)
        assert np.allclose(c.points, [[0.0, 0.0], [0.5, 0.0], [0.5, 0.5]])
        assert len(c) == 3

    def test_points_read_only(self):
        c = Contour([[0.1, 0.1], [0.2, 0.1], [0.2, 0.2]])
        with pytest.raises(ValueError):
            c.points[0, 0] = 0.5

    def test_source_array_not_shared(self):
        src = np.array([[0.1, 0.1], [0.2, 0.1], [0.2, 0.2]])
        c = Contour(src)
        src[0, 0] = 0.9
        assert c.points[0, 0] == pytest.approx(0.1)

    def test_bounding_box_and_area(self):
        c = Contour([[0.1, 0.2], [0.5, 0.2], [0.5, 0.6], [0.1, 0.6]])
        assert c.bounding_box == pytest.approx((0.1, 0.2, 0.4, 0.4))
        assert c.bbox_area == pytest.approx(0.16)
        assert c.area == pytest.approx(0.16)

    def test_touches_edge(self):
        inner = Contour([[0.3, 0.3], [0.6, 0.3], [0.6, 0.6]])
        edge = Contour([[0.0, 0.3], [0.6, 0.3], [0.6, 0.6]])
        assert not inner.touches_edge()
        assert edge.touches_edge()

    def test_to_parent(self):
        c = Contour([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0]])
        mapped = c.to_parent(NormalizedRect(0.5, 0.25, 0.5, 0.5))
        assert np.allclose(mapped.points, [[0.5, 0.25], [1.0, 0.25], [1.0, 0.75]])

    def test_pixel_points(self):
        c = Contour([[0.5, 0.5], [1.0, 0.25], [0.0, 1.0]])
        px = c.pixel_points(640, 480)
        assert px.dtype == np.float64
        assert np.allclose(px, [[320.0, 240.0], [640.0, 120.0], [0.0, 480.0]])

    def test_to_pixels(self):
        c = Contour([[0.5, 0.5], [1.0, 0.5], [1.0, 1.0]])
        px = c.to_pixels(200, 100)
        assert px.shape == (3, 1, 2)
        assert px.dtype == np.int32
        assert px[1, 0].tolist() == [200, 50]


class TestOpenCVContourExtractor:
    """Tests for OpenCV contour detection."""

    def test_finds_square(self, red_square_image):
        contours = OpenCVContourExtractor().detect(red_square_image)
        assert len(contours) == 1
        box = contours[0].bounding_box
        assert box == pytest.approx((0.2, 0.2, 0.6, 0.6), abs=0.02)

    def test_finds_circle(self, blue_circle_image):
        contours = OpenCVContourExtractor().detect(blue_circle_image)
        assert len(contours) == 1
        assert contours[0].area == pytest.approx(np.pi * 0.3 ** 2, rel=0.05)

    def test_uniform_image_no_contours(self, blank_image):
        assert OpenCVContourExtractor().detect(blank_image) == []

    def test_sorted_largest_first(self):
        img = np.ones((200, 300, 3), dtype=np.uint8) * 255
        img[20:50, 20:50] = (30, 30, 30)
        cv2.circle(img, (200, 100), 60, (30, 30, 200), -1)
        contours = OpenCVContourExtractor().detect(img)
        assert len(contours) == 2
        assert contours[0].bbox_area > contours[1].bbox_area

    def test_max_count(self):
        img = np.ones((100, 400, 3), dtype=np.uint8) * 255
        for i in range(5):
            x = 20 + i * 75
            img[30:30 + 10 + 5 * i, x:x + 40] = (20, 20, 20)
        contours = OpenCVContourExtractor().detect(img, max_count=3)
        assert len(contours) == 3

    def test_circle_on_wide_frame_keeps_round_invariants(self):
        """A circle in a 4:3 frame is an ellipse in normalized coordinates."""
        img = np.ones((480, 640, 3), dtype=np.uint8) * 255
        cv2.circle(img, (320, 240), 100, (30, 30, 200), -1)
        contours = OpenCVContourExtractor().detect(img)
        assert len(contours) == 1

        stretched = compute_hu_moments(contours[0].points)
        true_aspect = compute_hu_moments(contours[0].pixel_points(640, 480))
        assert stretched[1] > 1e-3
        assert true_aspect[1] < 1e-4
        assert true_aspect[0] == pytest.approx(1.0 / (2.0 * np.pi), rel=0.02)

    def test_tiny_image(self):
        assert OpenCVContourExtractor().detect(np.zeros((1, 1, 3), dtype=np.uint8)) == []
