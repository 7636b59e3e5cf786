"""Generation pipeline orchestration.

This service sequences one generation run:
1. Analyze the portrait and composition reference into a visual script
2. Optionally pause so the script can be reviewed and edited
3. Render the composite grid from the script
4. Slice the composite into tiles and record a GenerationResult
5. Upscale tiles one by one (automatically, or on request)

The controller is the only writer of the session history. Every change
swaps in a whole new GenerationResult between awaits, so readers never
observe a half-applied update.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from ..config import AppConfig, get_config
from ..errors import PreconditionError, RemoteServiceError
from ..models.script import ASPECT_RATIOS, AnalysisOptions, AppModel, VisualScript
from ..models.session import GenerationResult, Session, TileState
from ..utils.image_utils import ImagePayload
from .gemini_service import GeminiService
from .slicer_service import slice_payload

logger = logging.getLogger(__name__)

DEFAULT_TILE_DESCRIPTION = "Focus on a single subject, full body or portrait as visible."
TILE_DESCRIPTION = (
    "ONE SINGLE IMAGE: {shot}. Absolutely no grids or splits. "
    "Enhance existing single frame content."
)
FALLBACK_MESSAGE = "The model returned no image; the original tile was kept"


class PipelineState(str, Enum):
    """State of the main generation run."""

    IDLE = "idle"
    ANALYZING = "analyzing"
    REVIEWING = "reviewing"
    RENDERING = "rendering"
    SLICING = "slicing"
    READY = "ready"


BUSY_STATES = frozenset({PipelineState.ANALYZING, PipelineState.RENDERING, PipelineState.SLICING})


@dataclass(frozen=True)
class BatchProgress:
    """Progress of a sequential upscale batch."""

    result_id: str
    total: int
    current: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass(frozen=True)
class _RunInputs:
    character_image: ImagePayload
    api_key: str


class PipelineController:
    """Drives analyze, render, slice and upscale for one session."""

    def __init__(
        self,
        gemini_service: Optional[GeminiService] = None,
        session: Optional[Session] = None,
        config: Optional[AppConfig] = None,
        review_before_render: Optional[bool] = None,
        auto_upscale: Optional[bool] = None,
    ):
        """
        Initialize the controller.

        Args:
            gemini_service: Optional pre-configured gateway
            session: Session to record results in (a new one if None)
            config: Configuration (global config if None)
            review_before_render: Pause after analysis for script edits
            auto_upscale: Upscale every tile as soon as a render is sliced
        """
        self.config = config or get_config()
        self.session = session if session is not None else Session()
        self._gemini = gemini_service

        self.review_before_render = (
            self.config.review_before_render if review_before_render is None else review_before_render
        )
        self.auto_upscale = self.config.auto_upscale if auto_upscale is None else auto_upscale

        self.state = PipelineState.IDLE
        self.pending_script: Optional[VisualScript] = None
        self.last_error: Optional[str] = None
        self.batch_progress: Optional[BatchProgress] = None

        self._run: Optional[_RunInputs] = None
        self._api_key: Optional[str] = None
        self._listeners: list[Callable[["PipelineController"], None]] = []

    @property
    def gemini(self) -> GeminiService:
        if self._gemini is None:
            self._gemini = GeminiService(
                api_key=self.config.google_api_key,
                analysis_model=self.config.analysis_model,
                upscale_model=self.config.upscale_model,
                request_timeout=self.config.request_timeout,
                max_input_size=self.config.max_input_size,
            )
        return self._gemini

    @property
    def history(self) -> tuple[GenerationResult, ...]:
        return self.session.history

    @property
    def status_text(self) -> str:
        """Human-readable progress line derived from the current state."""
        if self.batch_progress is not None:
            p = self.batch_progress
            return f"Upscaling tile {p.current}/{p.total}..."

        if self.state is PipelineState.ANALYZING:
            return "Analyzing portrait and reference composition..."
        if self.state is PipelineState.REVIEWING and self.pending_script is not None:
            script = self.pending_script
            return (
                f"Script ready for review ({script.grid_arity.value}, "
                f"{len(script.shots)}/{script.tile_count} shots)"
            )
        if self.state is PipelineState.RENDERING and self.pending_script is not None:
            return f"Rendering {self.pending_script.grid_arity.label.lower()} composite..."
        if self.state is PipelineState.SLICING and self.pending_script is not None:
            return f"Slicing composite into {self.pending_script.tile_count} tiles..."
        if self.state is PipelineState.READY and self.history:
            latest = self.history[0]
            done = len(latest.upscaled_tile_indices)
            return f"Ready: {latest.tile_count} tiles, {done} upscaled"
        if self.last_error:
            return self.last_error
        return ""

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def register_listener(self, callback: Callable[["PipelineController"], None]) -> None:
        """Call ``callback(controller)`` after every state or session change."""
        self._listeners.append(callback)

    def unregister_listener(self, callback: Callable[["PipelineController"], None]) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception:
                logger.exception("Pipeline listener raised")

    def _set_state(self, state: PipelineState) -> None:
        if state is not self.state:
            logger.info("Pipeline %s -> %s", self.state.value, state.value)
        self.state = state
        self._notify()

    def _fail(self, state: PipelineState, stage: str, error: Exception) -> None:
        if isinstance(error, RemoteServiceError):
            self.last_error = str(error)
        else:
            self.last_error = f"{stage} failed: {error}"
        logger.error("%s", self.last_error)
        self._set_state(state)

    def _resolve_ratio(self, aspect_ratio: Optional[str] = None) -> str:
        ratio = aspect_ratio or self.config.aspect_ratio
        if ratio not in ASPECT_RATIOS:
            raise PreconditionError(
                f"Unsupported aspect ratio '{ratio}'. Choose from: {', '.join(ASPECT_RATIOS)}"
            )
        return ratio

    def _resolve_model(self, model: Optional[AppModel] = None) -> AppModel:
        if model is None:
            return AppModel(self.config.render_model)
        if isinstance(model, AppModel):
            return model
        try:
            return AppModel.from_name(str(model))
        except ValueError as e:
            raise PreconditionError(str(e)) from e

    def _resolve_api_key(self, api_key: Optional[str] = None) -> str:
        key = (api_key or "").strip() or self._api_key or self.config.google_api_key
        if not key:
            raise PreconditionError("An API key is required to start the model")
        return key

    # ------------------------------------------------------------------
    # Main run
    # ------------------------------------------------------------------

    async def analyze(
        self,
        character_image: Optional[ImagePayload],
        reference_image: Optional[ImagePayload],
        api_key: Optional[str] = None,
        options: Optional[AnalysisOptions] = None,
    ) -> VisualScript:
        """Analyze the input pair and stop in the review state."""
        script = await self._analyze(character_image, reference_image, api_key, options)
        self._set_state(PipelineState.REVIEWING)
        return script

    async def run(
        self,
        character_image: Optional[ImagePayload],
        reference_image: Optional[ImagePayload],
        api_key: Optional[str] = None,
        options: Optional[AnalysisOptions] = None,
        model: Optional[AppModel] = None,
        aspect_ratio: Optional[str] = None,
    ) -> Optional[GenerationResult]:
        """
        Run the whole pipeline for one input pair.

        In review mode this stops after analysis and returns None; call
        ``execute`` once the script has been checked.

        Returns:
            The new GenerationResult, or None when paused for review
        """
        ratio = self._resolve_ratio(aspect_ratio)
        model = self._resolve_model(model)
        script = await self._analyze(character_image, reference_image, api_key, options)
        if self.review_before_render:
            self._set_state(PipelineState.REVIEWING)
            return None
        return await self._execute(script, model, ratio)

    def update_script(self, script: VisualScript) -> None:
        """Replace the script awaiting review."""
        if self.state is not PipelineState.REVIEWING:
            raise PreconditionError("No script is awaiting review")
        self.pending_script = script
        self._notify()

    async def execute(
        self,
        script: Optional[VisualScript] = None,
        model: Optional[AppModel] = None,
        aspect_ratio: Optional[str] = None,
        character_image: Optional[ImagePayload] = None,
        api_key: Optional[str] = None,
    ) -> GenerationResult:
        """
        Render, slice and record a script.

        Args:
            script: Script to render (defaults to the reviewed script)
            model: Image model (defaults to config)
            aspect_ratio: Render aspect ratio (defaults to config)
            character_image: Portrait (defaults to the analyzed one)
            api_key: Credential (defaults to the one used for analysis)

        Returns:
            The new GenerationResult, already prepended to the session
        """
        if self.state in BUSY_STATES:
            raise PreconditionError(f"Pipeline is busy ({self.state.value})")

        script = script or self.pending_script
        if script is None:
            raise PreconditionError("No visual script to render")
        character = character_image or (self._run.character_image if self._run else None)
        if character is None:
            raise PreconditionError("A character image is required")
        key = self._resolve_api_key(api_key or (self._run.api_key if self._run else None))
        ratio = self._resolve_ratio(aspect_ratio)
        model = self._resolve_model(model)

        self._run = _RunInputs(character_image=character, api_key=key)
        return await self._execute(script, model, ratio)

    async def _analyze(
        self,
        character_image: Optional[ImagePayload],
        reference_image: Optional[ImagePayload],
        api_key: Optional[str],
        options: Optional[AnalysisOptions],
    ) -> VisualScript:
        if self.state in BUSY_STATES:
            raise PreconditionError(f"Pipeline is busy ({self.state.value})")
        if character_image is None or reference_image is None:
            raise PreconditionError("Both a character image and a reference image are required")
        key = self._resolve_api_key(api_key)

        self.last_error = None
        self.pending_script = None
        self._set_state(PipelineState.ANALYZING)
        try:
            script = await self.gemini.analyze(character_image, reference_image, key, options)
        except Exception as e:
            self._fail(PipelineState.IDLE, "analyze", e)
            raise

        self._run = _RunInputs(character_image=character_image, api_key=key)
        self.pending_script = script
        logger.info(
            "Script: %s with %d shots", script.grid_arity.value, len(script.shots)
        )
        return script

    async def _execute(
        self,
        script: VisualScript,
        model: AppModel,
        ratio: str,
    ) -> GenerationResult:
        run = self._run

        script = script.reconciled()
        self.pending_script = script
        self.last_error = None
        recover_state = PipelineState.REVIEWING if self.review_before_render else PipelineState.IDLE

        self._set_state(PipelineState.RENDERING)
        stage = "render"
        try:
            render = await self.gemini.render(model, script, run.api_key, run.character_image, ratio)
            stage = "slice"
            self._set_state(PipelineState.SLICING)
            tiles = await slice_payload(render.image, script.grid_arity)
        except Exception as e:
            if recover_state is PipelineState.IDLE:
                self.pending_script = None
            self._fail(recover_state, stage, e)
            raise

        result = GenerationResult.create(
            composite_image=render.image,
            tiles=tiles,
            script=script,
            aspect_ratio=ratio,
            model=model,
        )
        self.session.prepend(result)
        self._api_key = run.api_key
        self.pending_script = None
        self._set_state(PipelineState.READY)
        logger.info("Generation %s ready with %d tiles", result.id, result.tile_count)

        if self.auto_upscale:
            result = await self.upscale_all(result.id)
        return result

    # ------------------------------------------------------------------
    # Tile upscales
    # ------------------------------------------------------------------

    @staticmethod
    def tile_description(result: GenerationResult, index: int) -> str:
        """Description of one tile, used as upscale context."""
        shots = result.shots
        if index < len(shots) and shots[index].strip():
            return TILE_DESCRIPTION.format(shot=shots[index])
        text = result.script_text.strip()
        if text and not text.startswith("["):
            return text
        return DEFAULT_TILE_DESCRIPTION

    def _update(self, result: GenerationResult) -> None:
        self.session.replace(result)
        self._notify()

    async def upscale_tile(
        self,
        result_id: str,
        index: int,
        api_key: Optional[str] = None,
    ) -> TileState:
        """
        Upscale one tile of a result.

        A tile that is already upscaling is left alone. Failures are
        recorded on the result and never raised.

        Args:
            result_id: GenerationResult ID
            index: Tile index in scan order
            api_key: Credential (defaults to the one used for the render)

        Returns:
            The tile's state once this call is finished
        """
        result = self.session.get(result_id)
        if not 0 <= index < result.tile_count:
            raise IndexError(f"Tile {index} out of range for {result.tile_count} tiles")
        if index in result.pending_tile_indices:
            logger.debug("Tile %d of %s is already upscaling", index, result_id)
            return TileState.UPSCALING
        key = self._resolve_api_key(api_key)

        self._update(result.with_pending(index))
        try:
            output = await self.gemini.upscale(
                result.tiles[index],
                self.tile_description(result, index),
                key,
                result.aspect_ratio,
            )
        except asyncio.CancelledError:
            self._update(self.session.get(result_id).with_unchanged(index))
            raise
        except Exception as e:
            logger.warning("Upscale of tile %d failed: %s", index + 1, e)
            self._update(self.session.get(result_id).with_failure(index, str(e)))
            return TileState.FAILED

        current = self.session.get(result_id)
        if output.fallback:
            logger.warning("Tile %d: %s", index + 1, FALLBACK_MESSAGE)
            self._update(current.with_failure(index, FALLBACK_MESSAGE))
            return TileState.FAILED

        self._update(current.with_upscaled(index, output.image))
        logger.info("Tile %d upscaled in %.1fs", index + 1, output.generation_time)
        return TileState.DONE

    async def upscale_all(self, result_id: str, api_key: Optional[str] = None) -> GenerationResult:
        """
        Upscale every tile in ascending order, one at a time.

        A failed tile is skipped and the batch continues.

        Returns:
            The result after the batch
        """
        result = self.session.get(result_id)
        key = self._resolve_api_key(api_key)

        progress = BatchProgress(result_id=result_id, total=result.tile_count)
        try:
            for index in range(result.tile_count):
                progress = replace(progress, current=index + 1)
                self.batch_progress = progress
                self._notify()

                state = await self.upscale_tile(result_id, index, api_key=key)
                if state is TileState.DONE:
                    progress = replace(progress, succeeded=progress.succeeded + 1)
                elif state is TileState.FAILED:
                    progress = replace(progress, failed=progress.failed + 1)
        finally:
            self.batch_progress = None
            self._notify()

        logger.info(
            "Batch upscale finished: %d/%d tiles, %d failed",
            progress.succeeded,
            progress.total,
            progress.failed,
        )
        return self.session.get(result_id)
