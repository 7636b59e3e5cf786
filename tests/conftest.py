"""Shared test fixtures."""

from io import BytesIO
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
from PIL import Image

from gridshot.config import AppConfig
from gridshot.models.script import GridArity, VisualScript
from gridshot.services.gemini_service import RenderOutput, UpscaleOutput
from gridshot.utils.image_utils import ImagePayload

# Distinct colour per cell of a 3x3 grid, in scan order
GRID_COLORS = [
    (255, 0, 0, 255),
    (0, 255, 0, 255),
    (0, 0, 255, 255),
    (255, 255, 0, 255),
    (255, 0, 255, 255),
    (0, 255, 255, 255),
    (128, 0, 0, 255),
    (0, 128, 0, 255),
    (0, 0, 128, 255),
]


def make_grid_image(size: int, n: int) -> Image.Image:
    """size x size image whose n x n cells are each a solid distinct colour."""
    arr = np.zeros((size, size, 4), dtype=np.uint8)
    cell = size // n
    for y in range(n):
        for x in range(n):
            arr[y * cell:(y + 1) * cell, x * cell:(x + 1) * cell] = GRID_COLORS[y * n + x]
    return Image.fromarray(arr, "RGBA")


def make_payload(w=64, h=64, color=(128, 128, 128, 255)) -> ImagePayload:
    return ImagePayload.from_image(Image.new("RGBA", (w, h), color))


@pytest.fixture
def solid_red_image():
    """64x64 solid red RGBA image."""
    return Image.new("RGBA", (64, 64), (255, 0, 0, 255))


@pytest.fixture
def small_test_image():
    """32x32 image with a different colour in each quadrant."""
    arr = np.zeros((32, 32, 4), dtype=np.uint8)
    # Red top-left quadrant
    arr[:16, :16] = [255, 0, 0, 255]
    # Green top-right quadrant
    arr[:16, 16:] = [0, 255, 0, 255]
    # Blue bottom-left quadrant
    arr[16:, :16] = [0, 0, 255, 255]
    # White bottom-right quadrant
    arr[16:, 16:] = [255, 255, 255, 255]
    return Image.fromarray(arr, "RGBA")


@pytest.fixture
def grid3x3_image():
    """900x900 composite with nine 300x300 coloured cells."""
    return make_grid_image(900, 3)


@pytest.fixture
def character_payload():
    return make_payload(color=(200, 150, 120, 255))


@pytest.fixture
def reference_payload():
    return make_payload(color=(40, 40, 40, 255))


@pytest.fixture
def script_2x2():
    return VisualScript(
        subject="Sharp jawline, green eyes",
        grid_arity=GridArity.GRID_2X2,
        shots=["Low angle wide shot", "Close-up, hand on chin", "Side profile walk", "Seated, legs crossed"],
    )


@pytest.fixture
def test_config(tmp_path):
    """Config with no environment key and a temporary output directory."""
    return AppConfig(google_api_key=None, output_dir=tmp_path / "output")


@pytest.fixture
def mock_gemini(script_2x2):
    """Gateway double: 2x2 script, 128x128 four-colour render, upscales go blue."""
    svc = MagicMock()
    svc.analyze = AsyncMock(return_value=script_2x2)
    svc.render = AsyncMock(
        return_value=RenderOutput(
            image=ImagePayload.from_image(make_grid_image(128, 2)),
            prompt_used="render prompt",
            model="test-model",
            generation_time=1.0,
        )
    )

    async def upscale(tile, description, api_key, aspect_ratio):
        return UpscaleOutput(
            image=make_payload(color=(0, 0, 255, 255)),
            prompt_used=description,
            generation_time=0.5,
        )

    svc.upscale = AsyncMock(side_effect=upscale)
    return svc


def fake_image_response(width=64, height=64, color=(100, 150, 200, 255)):
    """Fake google-genai response with one inline PNG part."""
    buf = BytesIO()
    Image.new("RGBA", (width, height), color).save(buf, format="PNG")

    inline_data = MagicMock()
    inline_data.data = buf.getvalue()
    inline_data.mime_type = "image/png"

    part = MagicMock()
    part.inline_data = inline_data

    content = MagicMock()
    content.parts = [part]

    candidate = MagicMock()
    candidate.content = content

    response = MagicMock()
    response.candidates = [candidate]
    return response


def fake_text_response(text):
    """Fake google-genai response carrying only text."""
    part = MagicMock()
    part.inline_data = None

    content = MagicMock()
    content.parts = [part]

    candidate = MagicMock()
    candidate.content = content

    response = MagicMock()
    response.candidates = [candidate]
    response.text = text
    return response
