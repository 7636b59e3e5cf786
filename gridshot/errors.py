"""Error types raised by the generation pipeline."""

from typing import Optional


class GridshotError(Exception):
    """Base class for all pipeline errors."""


class PreconditionError(GridshotError):
    """Required input is missing or invalid before any remote call is made."""


class RemoteServiceError(GridshotError):
    """The remote model call failed, was rejected, or returned something unusable."""

    def __init__(self, stage: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage
        self.message = message
        self.cause = cause


class ParseError(RemoteServiceError):
    """The analysis response could not be read as a visual script at all."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__("analyze", message, cause)


class DecodeError(GridshotError):
    """An image payload could not be decoded into a raster."""
