"""Generation results and the in-memory session history."""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from ..utils.image_utils import ImagePayload
from .script import AppModel, GridArity, VisualScript


class TileState(str, Enum):
    """Upscale status of one tile."""

    QUEUED = "queued"
    UPSCALING = "upscaling"
    DONE = "done"
    FAILED = "failed"


def new_result_id() -> str:
    """Generate a unique result ID."""
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class GenerationResult:
    """One completed analyze, render and slice run.

    Instances are never mutated. Upscale progress produces a new value
    through the ``with_*`` helpers, which the session swaps in whole.
    """

    composite_image: ImagePayload
    tiles: tuple[ImagePayload, ...]
    grid_arity: GridArity
    aspect_ratio: str
    script_text: str = ""
    model: AppModel = AppModel.PRO
    script: Optional[VisualScript] = None
    id: str = field(default_factory=new_result_id)
    created_at: datetime = field(default_factory=datetime.now)
    upscaled_tile_indices: frozenset[int] = frozenset()
    pending_tile_indices: frozenset[int] = frozenset()
    tile_errors: Mapping[int, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def create(
        cls,
        composite_image: ImagePayload,
        tiles: list[ImagePayload],
        script: VisualScript,
        aspect_ratio: str,
        model: AppModel = AppModel.PRO,
    ) -> "GenerationResult":
        """Build a fresh result from a committed script and its sliced render."""
        if len(tiles) != script.tile_count:
            raise ValueError(
                f"Expected {script.tile_count} tiles for {script.grid_arity.value}, got {len(tiles)}"
            )
        return cls(
            composite_image=composite_image,
            tiles=tuple(tiles),
            grid_arity=script.grid_arity,
            aspect_ratio=aspect_ratio,
            script_text=json.dumps(script.shots, ensure_ascii=False),
            model=model,
            script=script,
        )

    @property
    def tile_count(self) -> int:
        return len(self.tiles)

    @property
    def shots(self) -> list[str]:
        """Shot descriptions recovered from ``script_text``."""
        if not self.script_text.strip().startswith("["):
            return []
        try:
            shots = json.loads(self.script_text)
        except json.JSONDecodeError:
            return []
        return [str(s) for s in shots] if isinstance(shots, list) else []

    def tile_state(self, index: int) -> TileState:
        """Current upscale state of a tile."""
        if index in self.pending_tile_indices:
            return TileState.UPSCALING
        if index in self.tile_errors:
            return TileState.FAILED
        if index in self.upscaled_tile_indices:
            return TileState.DONE
        return TileState.QUEUED

    def upscaled_tiles(self) -> list[tuple[int, ImagePayload]]:
        """Upscaled tiles in index order."""
        return [(i, self.tiles[i]) for i in sorted(self.upscaled_tile_indices)]

    def with_pending(self, index: int) -> "GenerationResult":
        return replace(self, pending_tile_indices=self.pending_tile_indices | {index})

    def with_upscaled(self, index: int, tile: ImagePayload) -> "GenerationResult":
        """Swap in an upscaled tile and mark the index done."""
        tiles = list(self.tiles)
        tiles[index] = tile
        errors = {k: v for k, v in self.tile_errors.items() if k != index}
        return replace(
            self,
            tiles=tuple(tiles),
            upscaled_tile_indices=self.upscaled_tile_indices | {index},
            pending_tile_indices=self.pending_tile_indices - {index},
            tile_errors=MappingProxyType(errors),
        )

    def with_unchanged(self, index: int) -> "GenerationResult":
        """Clear the pending flag without touching the tile."""
        return replace(self, pending_tile_indices=self.pending_tile_indices - {index})

    def with_failure(self, index: int, message: str) -> "GenerationResult":
        errors = dict(self.tile_errors)
        errors[index] = message
        return replace(
            self,
            pending_tile_indices=self.pending_tile_indices - {index},
            tile_errors=MappingProxyType(errors),
        )


class Session:
    """Ordered history of generation results, most recent first.

    The history is stored as a tuple and replaced whole on every change,
    so a reader holding ``history`` never sees a partial update.
    """

    def __init__(self):
        self._history: tuple[GenerationResult, ...] = ()

    @property
    def history(self) -> tuple[GenerationResult, ...]:
        return self._history

    def __len__(self) -> int:
        return len(self._history)

    def __iter__(self):
        return iter(self._history)

    def get(self, result_id: str) -> GenerationResult:
        """Look up a result by ID."""
        for result in self._history:
            if result.id == result_id:
                return result
        raise KeyError(f"No generation result with id '{result_id}'")

    def prepend(self, result: GenerationResult) -> None:
        if any(r.id == result.id for r in self._history):
            raise ValueError(f"Duplicate generation result id '{result.id}'")
        self._history = (result,) + self._history

    def replace(self, result: GenerationResult) -> None:
        """Swap in a new version of an existing result."""
        self.get(result.id)
        self._history = tuple(result if r.id == result.id else r for r in self._history)
