"""Image payload encoding and file utilities."""

import base64
import binascii
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..errors import DecodeError

_FORMAT_MIME_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


@dataclass(frozen=True)
class ImagePayload:
    """Encoded raster image plus its MIME type.

    Every image passed between the slicer, the gateway and the session
    travels in this form, never as a bare pixel buffer.
    """

    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_image(cls, image: Image.Image, format: str = "PNG", quality: int = 95) -> "ImagePayload":
        """Encode a PIL image."""
        fmt = format.upper()
        if fmt == "JPEG" and image.mode != "RGB":
            image = flatten_alpha(image)
        buf = BytesIO()
        if fmt == "JPEG":
            image.save(buf, format=fmt, quality=quality)
        else:
            image.save(buf, format=fmt)
        return cls(data=buf.getvalue(), mime_type=_FORMAT_MIME_TYPES.get(fmt, f"image/{fmt.lower()}"))

    @classmethod
    def from_data_uri(cls, uri: str) -> "ImagePayload":
        """Parse a ``data:<mime>;base64,<data>`` URI."""
        if not uri.startswith("data:") or "," not in uri:
            raise DecodeError("Not a data URI")
        header, encoded = uri[5:].split(",", 1)
        mime_type = header.split(";")[0] or "image/png"
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Invalid base64 image data: {e}") from e
        return cls(data=data, mime_type=mime_type)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "ImagePayload":
        """Read an image file, keeping its bytes as-is."""
        path = Path(path)
        data = path.read_bytes()
        return cls(data=data, mime_type=guess_mime_type(data))

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    def to_image(self) -> Image.Image:
        """Decode into a PIL image, raising DecodeError on bad data."""
        try:
            image = Image.open(BytesIO(self.data))
            image.load()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise DecodeError(f"Could not decode {self.mime_type} image: {e}") from e
        return image

    @property
    def extension(self) -> str:
        subtype = self.mime_type.split("/")[-1]
        return "jpg" if subtype == "jpeg" else subtype

    def __repr__(self) -> str:
        return f"ImagePayload({self.mime_type}, {len(self.data)} bytes)"


def guess_mime_type(data: bytes) -> str:
    """Sniff the MIME type of encoded image bytes."""
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:3] == b"GIF":
        return "image/gif"
    return "application/octet-stream"


def flatten_alpha(image: Image.Image, background: tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    """Composite an image with transparency onto a solid RGB background."""
    if image.mode in ("RGBA", "LA", "P"):
        image = image.convert("RGBA")
        flat = Image.new("RGB", image.size, background)
        flat.paste(image, mask=image.split()[3])
        return flat
    return image.convert("RGB")


def compress_image(
    payload: ImagePayload,
    max_size: int = 2048,
    max_bytes: int = 1024 * 1024,
    quality: int = 80,
) -> ImagePayload:
    """Shrink an input image before it is sent to the remote model.

    The longest side is capped at ``max_size`` and the image is further
    scaled down so the JPEG lands near ``max_bytes``.
    """
    image = payload.to_image()
    scale = min(1.0, max_bytes / max(1, len(payload.data)))
    if scale < 1.0:
        # Byte size grows with area
        scale = scale ** 0.5
        new_size = (max(1, int(image.width * scale)), max(1, int(image.height * scale)))
        image = image.resize(new_size, Image.Resampling.LANCZOS)
    if image.width > max_size or image.height > max_size:
        image = image.copy()
        image.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
    return ImagePayload.from_image(image, format="JPEG", quality=quality)


def save_payload(payload: ImagePayload, path: Union[str, Path]) -> Path:
    """Write a payload to disk, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload.data)
    return path


def images_equal(a: Image.Image, b: Image.Image) -> bool:
    """Compare two images pixel by pixel."""
    if a.size != b.size:
        return False
    return bool(np.array_equal(np.asarray(a.convert("RGBA")), np.asarray(b.convert("RGBA"))))
