"""Grid generation services."""

from .gemini_service import GeminiService, RenderOutput, UpscaleOutput, parse_visual_script
from .pipeline_service import BatchProgress, PipelineController, PipelineState
from .slicer_service import assemble_tiles, slice_image, slice_payload, tile_boxes

__all__ = [
    "GeminiService",
    "RenderOutput",
    "UpscaleOutput",
    "parse_visual_script",
    "BatchProgress",
    "PipelineController",
    "PipelineState",
    "assemble_tiles",
    "slice_image",
    "slice_payload",
    "tile_boxes",
]
