"""Exception taxonomy for the face authentication core."""

from __future__ import annotations


class FacePassError(Exception):
    """Base class for FacePass errors."""


class ModelsUnavailableError(FacePassError):
    """Models failed to load, are not loaded yet, or the detector failed at runtime.

    Fatal for the current request; a later request may retry the load.
    """


class ExtractionError(FacePassError):
    """A descriptor could not be produced from the submitted image."""

    reason = "extraction_failed"


class InvalidImageError(ExtractionError):
    """The image bytes could not be decoded or exceed the size limits."""

    reason = "invalid_image"


class NoFaceDetectedError(ExtractionError):
    """The detector found no face above the confidence threshold."""

    reason = "no_face_detected"


class DescriptorComputationFailedError(ExtractionError):
    """A face was detected but alignment or embedding failed."""

    reason = "descriptor_computation_failed"
