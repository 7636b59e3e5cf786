"""Configuration management for the grid generator."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .models.script import ASPECT_RATIOS, AppModel


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class AppConfig(BaseModel):
    """Application-level configuration."""

    # API Keys
    google_api_key: Optional[str] = Field(
        default=None,
        description="Default Google API key for Gemini (a per-call key overrides it)",
    )

    # Directories
    output_dir: Path = Field(
        default=Path.cwd() / "output",
        description="Default output directory",
    )

    # Model settings
    analysis_model: str = Field(
        default="gemini-3-pro-preview",
        description="Gemini model for visual script analysis",
    )
    render_model: AppModel = Field(
        default=AppModel.PRO,
        description="Gemini model for composite renders",
    )
    upscale_model: AppModel = Field(
        default=AppModel.PRO,
        description="Gemini model for tile upscales",
    )
    aspect_ratio: str = Field(default="1:1", description="Default render aspect ratio")
    request_timeout: Optional[float] = Field(
        default=180.0,
        gt=0,
        description="Seconds to wait for one remote call (None disables the limit)",
    )
    max_input_size: int = Field(default=2048, ge=64, description="Longest side of images sent upstream")

    # Pipeline modes
    review_before_render: bool = Field(
        default=False,
        description="Stop after analysis so the script can be edited before rendering",
    )
    auto_upscale: bool = Field(
        default=False,
        description="Upscale every tile in order as soon as a render is sliced",
    )

    @field_validator("aspect_ratio")
    @classmethod
    def _check_ratio(cls, v: str) -> str:
        if v not in ASPECT_RATIOS:
            raise ValueError(f"aspect_ratio must be one of {', '.join(ASPECT_RATIOS)}")
        return v

    @classmethod
    def load(cls) -> "AppConfig":
        """Load configuration from environment and defaults."""
        timeout = os.environ.get("GRIDSHOT_TIMEOUT")
        return cls(
            google_api_key=os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY"),
            output_dir=Path(os.environ.get("GRIDSHOT_OUTPUT_DIR", str(cls.model_fields["output_dir"].default))),
            request_timeout=float(timeout) if timeout else cls.model_fields["request_timeout"].default,
            review_before_render=_env_flag("GRIDSHOT_REVIEW"),
            auto_upscale=_env_flag("GRIDSHOT_AUTO_UPSCALE"),
        )

    def ensure_directories(self) -> None:
        """Create necessary directories."""
        self.output_dir.mkdir(parents=True, exist_ok=True)


# Global config instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get or create global configuration."""
    global _config
    if _config is None:
        _config = AppConfig.load()
    return _config
