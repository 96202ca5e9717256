"""Exceptions raised by the background-removal core."""

from typing import Optional


class BackgroundRemovalError(Exception):
    """Base exception for the background-removal service."""


class ModelLoadError(BackgroundRemovalError):
    """Raised when model weights or preprocessor config cannot be loaded."""

    def __init__(self, message: str, model_path: Optional[str] = None):
        self.model_path = model_path
        super().__init__(message)


class ModelDownloadError(BackgroundRemovalError):
    """Raised when a model file cannot be fetched from the hub."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


class ModelNotReadyError(BackgroundRemovalError):
    """Raised when inference is requested before the model is ready."""


class ImageProcessingError(BackgroundRemovalError):
    """Per-image failure; carries the offending source when known."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


class DecodeError(ImageProcessingError):
    """Raised when a source image is unreadable or corrupt."""


class InferenceError(ImageProcessingError):
    """Raised when the model runtime fails on an image."""


class EncodeError(ImageProcessingError):
    """Raised when the RGBA result cannot be encoded as PNG."""


class DimensionMismatchError(BackgroundRemovalError):
    """Raised when a mask does not cover exactly the image's pixels."""

    def __init__(self, message: str, expected: int = 0, actual: int = 0):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class CompositeError(BackgroundRemovalError):
    """Raised when a background composite cannot be produced."""


class InvalidTransitionError(BackgroundRemovalError):
    """Raised when a queue item is moved to a status it cannot reach."""


class BatchAlreadyRunningError(BackgroundRemovalError):
    """Raised when a batch run is started while another is in progress."""
