"""
Error taxonomy for reference extraction and frame matching.

Only NoRegionsFound ever reaches a caller. EmbeddingUnavailable and
CroppingFailed are raised by the image capabilities and absorbed by the
pipelines, which log them and carry on with the next candidate.
"""


class PieceFinderError(Exception):
    """Base class for all piece_finder errors."""


class NoRegionsFound(PieceFinderError):
    """No usable piece contour was found in the image."""

    user_message = "No piece contour found in the image. Try retaking the photo."

    def __init__(self, message: str = None):
        super().__init__(message or self.user_message)


class EmbeddingUnavailable(PieceFinderError):
    """A visual embedding could not be computed for an image."""


class CroppingFailed(PieceFinderError, ValueError):
    """A normalized region degenerated to zero pixels and could not be cropped."""
