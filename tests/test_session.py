"""Tests for the reference set, frame throttling and the background frame worker."""

import threading

import pytest

from piece_finder.errors import NoRegionsFound
from piece_finder.matching import DetectionPipeline
from piece_finder.reference import ReferenceExtractor
from piece_finder.session import (
    DISPLAY_PALETTE, FrameThrottler, FrameWorker, ReferenceSet,
)

from conftest import RED, FakeContourExtractor, FakeEmbedder, FakeTextRecognizer


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def reference(make_reference, pentagon_points):
    return make_reference(pentagon_points, RED)


@pytest.fixture
def blocking_extractor(pentagon_contour):
    extractor = FakeContourExtractor([pentagon_contour], block=True)
    yield extractor
    extractor.release.set()


@pytest.fixture
def worker_factory(blocking_extractor):
    """Build FrameWorkers whose frames block until the extractor is released."""
    workers = []

    def _make(references, **kwargs):
        pipeline = DetectionPipeline(contour_extractor=blocking_extractor,
                                     embedder=FakeEmbedder())
        extractor = ReferenceExtractor(text_recognizer=FakeTextRecognizer())
        worker = FrameWorker(references, pipeline=pipeline, extractor=extractor, **kwargs)
        workers.append(worker)
        return worker

    yield _make
    blocking_extractor.release.set()
    for worker in workers:
        worker.close()


class TestReferenceSet:
    """Tests for the snapshot-able reference collection."""

    def test_add_assigns_palette_colors(self, make_reference, pentagon_points):
        refs = ReferenceSet()
        added = refs.add([make_reference(pentagon_points, RED) for _ in range(3)])
        assert [r.display_color for r in added] == list(DISPLAY_PALETTE[:3])
        assert len(refs) == 3

    def test_palette_wraps(self, make_reference, pentagon_points):
        refs = ReferenceSet()
        added = refs.add([make_reference(pentagon_points, RED)
                          for _ in range(len(DISPLAY_PALETTE) + 1)])
        assert added[-1].display_color == DISPLAY_PALETTE[0]

    def test_snapshot_is_immutable(self, reference):
        refs = ReferenceSet()
        refs.add([reference])
        snap = refs.snapshot()
        refs.clear()
        assert len(snap) == 1
        assert refs.snapshot() == ()

    def test_remove(self, reference):
        refs = ReferenceSet()
        added = refs.add([reference])
        assert refs.remove(added[0].id)
        assert not refs.remove(added[0].id)
        assert len(refs) == 0

    def test_clear_restarts_palette(self, make_reference, pentagon_points):
        refs = ReferenceSet()
        refs.add([make_reference(pentagon_points, RED) for _ in range(2)])
        refs.clear()
        added = refs.add([make_reference(pentagon_points, RED)])
        assert added[0].display_color == DISPLAY_PALETTE[0]

    def test_generation_bumped_on_change(self, reference):
        refs = ReferenceSet()
        start = refs.generation
        added = refs.add([reference])
        assert refs.generation == start + 1
        refs.remove("missing")
        assert refs.generation == start + 1
        refs.remove(added[0].id)
        refs.clear()
        assert refs.generation == start + 3


class TestFrameThrottler:
    """Tests for frame-rate limiting."""

    def test_first_frame_accepted(self):
        assert FrameThrottler(fps=7, clock=FakeClock()).should_process()

    def test_rate_limited(self):
        clock = FakeClock()
        throttler = FrameThrottler(fps=10, clock=clock)
        assert throttler.should_process()
        clock.now = 0.05
        assert not throttler.should_process()
        clock.now = 0.1
        assert throttler.should_process()
        clock.now = 0.15
        assert not throttler.should_process()


class TestFrameWorker:
    """Tests for background frame processing."""

    def test_delivers_result(self, worker_factory, blocking_extractor,
                             reference, uniform_frame):
        refs = ReferenceSet()
        refs.add([reference])
        delivered = []
        worker = worker_factory(refs, on_result=delivered.append)

        future = worker.submit(uniform_frame(RED))
        blocking_extractor.release.set()
        candidates = future.result(timeout=5)

        assert len(candidates) == 1
        assert delivered == [candidates]
        assert not worker.busy

    def test_concurrent_submit_dropped(self, worker_factory, blocking_extractor,
                                       reference, uniform_frame):
        refs = ReferenceSet()
        refs.add([reference])
        worker = worker_factory(refs)

        first = worker.submit(uniform_frame(RED))
        assert blocking_extractor.started.wait(timeout=5)
        assert worker.busy
        assert worker.submit(uniform_frame(RED)) is None

        blocking_extractor.release.set()
        assert first.result(timeout=5) is not None
        assert blocking_extractor.calls == 1

    def test_stale_result_discarded(self, worker_factory, blocking_extractor,
                                    make_reference, pentagon_points, uniform_frame):
        refs = ReferenceSet()
        refs.add([make_reference(pentagon_points, RED)])
        delivered = []
        worker = worker_factory(refs, on_result=delivered.append)

        future = worker.submit(uniform_frame(RED))
        assert blocking_extractor.started.wait(timeout=5)
        refs.add([make_reference(pentagon_points, RED)])
        blocking_extractor.release.set()

        assert future.result(timeout=5) is None
        assert delivered == []

    def test_empty_reference_set_skipped(self, worker_factory, blocking_extractor,
                                         uniform_frame):
        delivered = []
        worker = worker_factory(ReferenceSet(), on_result=delivered.append)
        future = worker.submit(uniform_frame(RED))
        assert future.result(timeout=5) is None
        assert delivered == []
        assert blocking_extractor.calls == 0

    def test_throttled_frames_dropped(self, worker_factory, blocking_extractor,
                                      reference, uniform_frame):
        refs = ReferenceSet()
        refs.add([reference])
        clock = FakeClock()
        worker = worker_factory(refs, throttler=FrameThrottler(fps=7, clock=clock))
        blocking_extractor.release.set()

        first = worker.submit(uniform_frame(RED))
        first.result(timeout=5)
        assert worker.submit(uniform_frame(RED)) is None

        clock.now = 1.0
        assert worker.submit(uniform_frame(RED)) is not None

    def test_capture_adds_references(self, labeled_manual_image, quantity_labels):
        refs = ReferenceSet()
        extractor = ReferenceExtractor(text_recognizer=FakeTextRecognizer(quantity_labels))
        with FrameWorker(refs, extractor=extractor) as worker:
            added = worker.capture_references(labeled_manual_image).result(timeout=30)
        assert len(added) == 3
        assert len(refs) == 3
        assert [r.display_color for r in added] == list(DISPLAY_PALETTE[:3])

    def test_capture_failure_propagates(self, blank_image):
        refs = ReferenceSet()
        extractor = ReferenceExtractor(text_recognizer=FakeTextRecognizer())
        with FrameWorker(refs, extractor=extractor) as worker:
            future = worker.capture_references(blank_image)
            with pytest.raises(NoRegionsFound):
                future.result(timeout=30)
        assert len(refs) == 0

    def test_submit_does_not_block(self, worker_factory, blocking_extractor,
                                   reference, uniform_frame):
        refs = ReferenceSet()
        refs.add([reference])
        worker = worker_factory(refs)
        returned = threading.Event()

        def submit_twice():
            worker.submit(uniform_frame(RED))
            worker.submit(uniform_frame(RED))
            returned.set()

        threading.Thread(target=submit_twice).start()
        assert returned.wait(timeout=5)
        blocking_extractor.release.set()
