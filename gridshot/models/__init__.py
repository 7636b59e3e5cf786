"""Data models for grid generation."""

from .script import (
    AppModel,
    AnalysisOptions,
    ASPECT_RATIOS,
    GridArity,
    VisualScript,
    tile_count,
)
from .session import GenerationResult, Session, TileState

__all__ = [
    "AppModel",
    "AnalysisOptions",
    "ASPECT_RATIOS",
    "GridArity",
    "VisualScript",
    "tile_count",
    "GenerationResult",
    "Session",
    "TileState",
]
