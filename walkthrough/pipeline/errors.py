"""
Typed errors for the media generation pipeline.

Every failure path raises a PipelineError subclass carrying a stable,
machine-readable `code`. The API layer renders these as
{"error_code": ..., "message": ...} with the matching HTTP status.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base pipeline error."""

    status_code: int = 500
    code: str = "UNKNOWN_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        return {"error_code": self.code, "message": self.message}


# ── Vision classification ────────────────────────────────────────────────────

class ClassificationError(PipelineError):
    """API_ERROR | TIMEOUT | INVALID_RESPONSE | RATE_LIMIT"""

    status_code = 502
    code = "API_ERROR"


class ImageProcessingError(PipelineError):
    status_code = 422
    code = "IMAGE_PROCESSING_ERROR"

    def __init__(self, message: str, phase: str, details: Any = None):
        super().__init__(message, details=details)
        self.phase = phase


# ── Video generation ─────────────────────────────────────────────────────────

class VideoValidationError(PipelineError):
    status_code = 400
    code = "VALIDATION_ERROR"


class VideoApiError(PipelineError):
    """VIDEO_API_ERROR | VIDEO_API_CONTRACT | VIDEO_RATE_LIMIT"""

    status_code = 502
    code = "VIDEO_API_ERROR"


class StorageError(PipelineError):
    status_code = 502
    code = "STORAGE_ERROR"


class CompositionError(PipelineError):
    """NO_CLIPS | FFMPEG_ERROR | INVALID_LOGO | PROBE_FAILED | THUMBNAIL_FAILED | IO_ERROR"""

    status_code = 500
    code = "COMPOSITION_ERROR"


class GenerationError(PipelineError):
    """NO_ROOMS | ALL_ROOMS_FAILED | CANCELLED | DATABASE_ERROR | INTERNAL_ERROR"""

    status_code = 409
    code = "GENERATION_FAILED"


class QuotaExceededError(PipelineError):
    status_code = 402
    code = "QUOTA_EXCEEDED"
