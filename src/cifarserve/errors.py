"""Error taxonomy shared by the pipeline and the HTTP layer.

Every pipeline failure is a ``ClassifierError`` carrying the HTTP status and a
short title. ``message`` is what the client sees; the underlying library
exception stays on ``__cause__`` and is only logged.
"""

from __future__ import annotations

from fastapi import status


class ClassifierError(Exception):
    """Base class for failures that map onto a structured JSON error."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "Classification failed"

    def __init__(self, message: str, *, error: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error


class InvalidUpload(ClassifierError):
    """No file, a non-image MIME type, or an oversized payload."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "File upload error"


class InvalidImage(ClassifierError):
    """The bytes are not a readable image in a supported format."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "Invalid image"


class PreprocessingFailed(ClassifierError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Invalid image"


class ModelUnavailable(ClassifierError):
    """The model cannot serve this request right now."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "Service unavailable"


class ModelNotLoaded(ModelUnavailable):
    pass


class PredictionFailed(ClassifierError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Classification failed"


class ModelLoadFailed(ClassifierError):
    """Raised at startup; the server must not begin serving."""

    error = "Model load failed"
