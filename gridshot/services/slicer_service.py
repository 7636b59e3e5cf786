"""Slicing composite renders into individual shots.

Tiles are emitted in row-major scan order (tile 0 is top-left), which is
the same order as the shot list of the script that produced the render.
"""

import asyncio
import logging

from PIL import Image

from ..errors import DecodeError
from ..models.script import GridArity
from ..utils.image_utils import ImagePayload

logger = logging.getLogger(__name__)


def tile_boxes(width: int, height: int, arity: GridArity) -> list[tuple[int, int, int, int]]:
    """
    Compute crop boxes for every tile of a grid.

    Each tile starts at (floor(W*x/N), floor(H*y/N)) and is floor(W/N) by
    floor(H/N) pixels, so all tiles share one size and rounding never
    accumulates across the row.

    Args:
        width: Source image width
        height: Source image height
        arity: Grid partition

    Returns:
        (left, top, right, bottom) boxes in row-major order
    """
    n = GridArity.parse(arity).grid_size
    tile_w = width // n
    tile_h = height // n
    if tile_w == 0 or tile_h == 0:
        raise ValueError(f"Image {width}x{height} is too small for a {n}x{n} grid")

    boxes = []
    for y in range(n):
        for x in range(n):
            left = (width * x) // n
            top = (height * y) // n
            boxes.append((left, top, left + tile_w, top + tile_h))
    return boxes


def slice_image(image: Image.Image, arity: GridArity) -> list[Image.Image]:
    """Split an image into its grid tiles.

    A single-frame arity returns the input image itself.
    """
    arity = GridArity.parse(arity)
    if arity is GridArity.SINGLE:
        return [image]
    return [image.crop(box) for box in tile_boxes(image.width, image.height, arity)]


async def slice_payload(payload: ImagePayload, arity: GridArity) -> list[ImagePayload]:
    """
    Decode a composite render and slice it into encoded PNG tiles.

    Decoding and encoding run in a worker thread. Either every tile is
    returned or DecodeError is raised.

    Args:
        payload: Composite image
        arity: Grid partition of the composite

    Returns:
        Tiles in scan order
    """
    arity = GridArity.parse(arity)
    if arity is GridArity.SINGLE:
        return [payload]

    def work() -> list[ImagePayload]:
        image = payload.to_image()
        try:
            tiles = slice_image(image, arity)
        except ValueError as e:
            raise DecodeError(str(e)) from e
        return [ImagePayload.from_image(tile, format="PNG") for tile in tiles]

    tiles = await asyncio.to_thread(work)
    logger.info("Sliced composite into %d tiles (%s)", len(tiles), arity.value)
    return tiles


def assemble_tiles(tiles: list[Image.Image], arity: GridArity) -> Image.Image:
    """Paste tiles back into a grid, the inverse of slice_image."""
    arity = GridArity.parse(arity)
    n = arity.grid_size
    if len(tiles) != arity.tile_count:
        raise ValueError(f"Expected {arity.tile_count} tiles, got {len(tiles)}")

    tile_w, tile_h = tiles[0].size
    sheet = Image.new("RGBA", (tile_w * n, tile_h * n), (0, 0, 0, 0))
    for i, tile in enumerate(tiles):
        if tile.size != (tile_w, tile_h):
            tile = tile.resize((tile_w, tile_h), Image.Resampling.LANCZOS)
        sheet.paste(tile.convert("RGBA"), ((i % n) * tile_w, (i // n) * tile_h))
    return sheet
