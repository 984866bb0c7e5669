"""Failure taxonomy for vision calls.

Each class carries a stable ``code`` (stored on the job as ``last_error``) and
whether a failed attempt of that kind is worth retrying.
"""

from __future__ import annotations


class VisionError(Exception):
    code = "vision_error"
    retryable = False


class VisionServiceUnavailable(VisionError):
    """Outage, 5xx, transport failure or the image could not be fetched."""

    code = "vision_service_unavailable"
    retryable = True


class ImageProcessingFailed(VisionError):
    """The service rejected the image (4xx) or returned an unusable payload."""

    code = "image_processing_failed"
    retryable = False


class ExtractionTimeout(VisionError):
    code = "extraction_timeout"
    retryable = True
