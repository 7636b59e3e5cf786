"""Visual script model produced by image analysis."""

from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


class GridArity(str, Enum):
    """How many shots a composite render is partitioned into."""

    SINGLE = "single"
    GRID_2X2 = "grid2x2"
    GRID_3X3 = "grid3x3"

    @property
    def grid_size(self) -> int:
        """Number of rows (and columns) in the grid."""
        return {
            GridArity.SINGLE: 1,
            GridArity.GRID_2X2: 2,
            GridArity.GRID_3X3: 3,
        }[self]

    @property
    def tile_count(self) -> int:
        return self.grid_size * self.grid_size

    @property
    def label(self) -> str:
        """Layout name used in render directives."""
        if self is GridArity.GRID_3X3:
            return "3x3 GRID MATRIX"
        if self is GridArity.GRID_2X2:
            return "2x2 GRID MATRIX"
        return "SINGLE FRAME"

    @classmethod
    def parse(cls, value) -> "GridArity":
        """Interpret the loose layout tags returned by the analysis model.

        Unknown or empty tags fall back to a single frame.
        """
        if isinstance(value, GridArity):
            return value
        tag = str(value or "").strip().lower().replace(" ", "").replace("_", "")
        if tag in ("grid3x3", "3x3", "9-grid", "9grid", "nine", "9"):
            return cls.GRID_3X3
        if tag in ("grid2x2", "2x2", "4-grid", "4grid", "four", "4"):
            return cls.GRID_2X2
        return cls.SINGLE


def tile_count(arity: GridArity) -> int:
    """Number of tiles a render of the given arity holds."""
    return GridArity.parse(arity).tile_count


class AppModel(str, Enum):
    """Image model variants available for rendering."""

    FLASH = "gemini-2.5-flash-image"
    PRO = "gemini-3-pro-image-preview"

    @classmethod
    def from_name(cls, name: str) -> "AppModel":
        """Resolve a short name (``pro``/``flash``) or a full model id."""
        key = name.strip().lower()
        for member in cls:
            if key in (member.name.lower(), member.value):
                return member
        raise ValueError(f"Unknown model '{name}'. Choose from: pro, flash")


ASPECT_RATIOS = ("1:1", "9:16", "16:9", "3:4", "4:3")


class AnalysisOptions(BaseModel):
    """Toggles that change what the analysis step copies from the reference image."""

    clone_style: bool = Field(default=True, description="Copy lighting and photographic style")
    clone_hair: bool = Field(default=False, description="Copy hairstyle instead of keeping the portrait's")
    clone_expression: bool = Field(default=True, description="Copy facial expressions per frame")


# Substituted for fields the analysis model leaves out
SCRIPT_DEFAULTS = {
    "subject": "Detailed professional face model",
    "appearance": "luxury high-end outfit",
    "physique": "perfect anatomical proportions",
    "action": "Cinematic performance",
    "background": "studio set",
    "style": "hyper-realistic fashion photography",
    "quality": "Masterpiece, cinematic lighting, 8k, flawless anatomy",
}

PLACEHOLDER_SHOT = "Frame {number}: single cinematic shot of the subject, face clearly visible."


class VisualScript(BaseModel):
    """Character, style and per-shot plan that drives a render."""

    subject: str = SCRIPT_DEFAULTS["subject"]
    appearance: str = SCRIPT_DEFAULTS["appearance"]
    physique: str = SCRIPT_DEFAULTS["physique"]
    action: str = SCRIPT_DEFAULTS["action"]
    composition: str = ""
    background: str = SCRIPT_DEFAULTS["background"]
    style: str = SCRIPT_DEFAULTS["style"]
    quality: str = SCRIPT_DEFAULTS["quality"]
    grid_arity: GridArity = GridArity.SINGLE
    shots: list[str] = Field(default_factory=list)

    @field_validator("grid_arity", mode="before")
    @classmethod
    def _parse_arity(cls, v):
        return GridArity.parse(v)

    @property
    def tile_count(self) -> int:
        return self.grid_arity.tile_count

    def reconciled(self) -> "VisualScript":
        """Return a copy whose shot list has exactly one entry per tile.

        Extra shots are dropped from the end; missing shots are filled
        with a numbered placeholder.
        """
        count = self.tile_count
        shots = list(self.shots[:count])
        for i in range(len(shots), count):
            shots.append(PLACEHOLDER_SHOT.format(number=i + 1))
        return self.model_copy(update={"shots": shots})

    @classmethod
    def from_yaml(cls, path: Path) -> "VisualScript":
        """Load a (possibly hand-edited) script from YAML."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path) -> None:
        """Save the script to YAML for review."""
        data = self.model_dump(mode="json")
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
