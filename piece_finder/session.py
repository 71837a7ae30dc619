"""
Session-level concurrency: reference snapshots and the frame worker.

A scanning session holds a ReferenceSet (mutated by the capture flow) and
a FrameWorker that runs DetectionPipeline on one background thread.
Frames arriving while one is in flight are dropped, never queued.
Results that complete after the reference set changed are discarded
instead of delivered.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np

from .matching import DetectionPipeline, FrameGate, PieceCandidate
from .reference import ReferenceDescriptor, ReferenceExtractor

logger = logging.getLogger(__name__)

# Overlay colors for telling references apart, assigned in order
DISPLAY_PALETTE = (
    (0, 217, 51),      # green
    (51, 153, 255),    # blue
    (255, 153, 0),     # orange
    (217, 51, 217),    # magenta
    (255, 217, 0),     # yellow
    (0, 217, 217),     # cyan
    (255, 77, 77),     # red
    (153, 102, 255),   # purple
)


class ReferenceSet:
    """
    Thread-safe, snapshot-able collection of reference descriptors.

    Readers get an immutable tuple, so a frame in flight never sees a
    half-applied add or remove. Every mutation bumps `generation`.
    """

    def __init__(self, palette: Tuple[Tuple[int, int, int], ...] = DISPLAY_PALETTE):
        self._lock = threading.Lock()
        self._references: Tuple[ReferenceDescriptor, ...] = ()
        self._palette = palette
        self._next_color = 0
        self._generation = 0

    def __len__(self) -> int:
        return len(self._references)

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> Tuple[ReferenceDescriptor, ...]:
        with self._lock:
            return self._references

    def add(self, descriptors: Iterable[ReferenceDescriptor]) -> List[ReferenceDescriptor]:
        """Append descriptors, assigning each the next palette color."""
        with self._lock:
            colored = []
            for descriptor in descriptors:
                color = self._palette[self._next_color % len(self._palette)]
                self._next_color += 1
                colored.append(descriptor.with_display_color(color))
            self._references = self._references + tuple(colored)
            self._generation += 1
        logger.info(f"Added {len(colored)} references ({len(self._references)} total)")
        return colored

    def remove(self, reference_id: str) -> bool:
        with self._lock:
            remaining = tuple(r for r in self._references if r.id != reference_id)
            removed = len(remaining) != len(self._references)
            if removed:
                self._references = remaining
                self._generation += 1
        return removed

    def clear(self) -> None:
        """Drop every reference and restart the palette."""
        with self._lock:
            self._references = ()
            self._next_color = 0
            self._generation += 1


class FrameThrottler:
    """Accepts at most `fps` frames per second."""

    def __init__(self, fps: float = 7.0, clock: Callable[[], float] = time.monotonic):
        self.interval = 1.0 / fps
        self._clock = clock
        self._last = None
        self._lock = threading.Lock()

    def should_process(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._last is None or now - self._last >= self.interval:
                self._last = now
                return True
            return False


ResultCallback = Callable[[List[PieceCandidate]], None]


class FrameWorker:
    """
    Runs frame matching on a single background thread.

    submit() hands a frame to the worker if it is idle and returns a
    Future; it returns None straight away when a frame is already in
    flight (or the throttler declines). Results reach `on_result` only if
    the reference set is unchanged since the frame was submitted.
    """

    def __init__(self,
                 references: ReferenceSet,
                 pipeline: DetectionPipeline = None,
                 extractor: ReferenceExtractor = None,
                 on_result: Optional[ResultCallback] = None,
                 throttler: Optional[FrameThrottler] = None):
        self.references = references
        self.pipeline = pipeline or DetectionPipeline()
        self.extractor = extractor or ReferenceExtractor()
        self.on_result = on_result
        self.throttler = throttler
        self._slot = FrameGate()
        self._frames = ThreadPoolExecutor(max_workers=1, thread_name_prefix="frame")
        self._captures = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def busy(self) -> bool:
        return self._slot.busy

    def submit(self, frame: np.ndarray) -> Optional[Future]:
        """
        Offer a frame for matching.

        Returns:
            A Future resolving to the candidate list (None if the pipeline
            skipped it or the result went stale), or None if the frame was
            dropped without being scheduled.
        """
        if self.throttler is not None and not self.throttler.should_process():
            return None
        if not self._slot.try_begin():
            return None

        generation = self.references.generation
        snapshot = self.references.snapshot()
        try:
            return self._frames.submit(self._run, frame, snapshot, generation)
        except RuntimeError:
            self._slot.end()
            raise

    def _run(self, frame: np.ndarray,
             snapshot: Tuple[ReferenceDescriptor, ...],
             generation: int) -> Optional[List[PieceCandidate]]:
        try:
            candidates = self.pipeline.process_frame(frame, snapshot)
        finally:
            self._slot.end()

        if candidates is None:
            return None
        if generation != self.references.generation:
            logger.debug("Discarding stale frame result")
            return None
        if self.on_result is not None:
            self.on_result(candidates)
        return candidates

    def capture_references(self, image_np: np.ndarray, orientation: int = 1) -> Future:
        """
        Extract references from a manual photo in the background.

        The Future resolves to the added (palette-colored) descriptors, or
        raises NoRegionsFound.
        """
        def run():
            descriptors = self.extractor.extract(image_np, orientation=orientation)
            return self.references.add(descriptors)

        return self._captures.submit(run)

    def close(self) -> None:
        self._frames.shutdown(wait=True)
        self._captures.shutdown(wait=True)
