"""Image preprocessing pipeline.

Turns uploaded bytes into the model input: a float32 tensor of shape
(1, 32, 32, 3) with values mapped from [0, 255] to [-1, 1] by
``value / 127.5 - 1``. The model was trained on exactly this normalization.
"""

from __future__ import annotations

import io
import logging
from contextlib import ExitStack
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from cifarserve.errors import InvalidImage, PreprocessingFailed

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

TARGET_SIZE: tuple[int, int] = (32, 32)
INPUT_SHAPE: tuple[int, int, int] = (TARGET_SIZE[1], TARGET_SIZE[0], 3)
NORMALIZATION = "Range [-1, 1]"
SUPPORTED_FORMATS: tuple[str, ...] = ("jpeg", "jpg", "png", "webp", "gif", "bmp")

# Pillow reports multi-picture camera JPEGs as MPO.
_FORMAT_ALIASES = {"mpo": "jpeg"}

_DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError)


@dataclass(frozen=True)
class ImageMetadata:
    """Header information read from an uploaded image."""

    width: int
    height: int
    format: str
    channels: int
    size: int

    @property
    def dimensions(self) -> str:
        return f"{self.width}x{self.height}"


class NormalizedTensor:
    """Scoped handle around the model input array.

    The owner releases the backing array by leaving the ``with`` block (or
    calling ``release``). Reading a released tensor raises ``RuntimeError``.
    """

    __slots__ = ("_array",)

    def __init__(self, array: NDArray[np.float32]) -> None:
        self._array: NDArray[np.float32] | None = array

    @property
    def array(self) -> NDArray[np.float32]:
        if self._array is None:
            raise RuntimeError("Tensor has already been released")
        return self._array

    @property
    def shape(self) -> tuple[int, ...]:
        return self.array.shape

    @property
    def released(self) -> bool:
        return self._array is None

    def release(self) -> None:
        self._array = None

    def __enter__(self) -> NormalizedTensor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def validate_image(image_bytes: bytes, max_pixels: int | None = None) -> ImageMetadata:
    """Read width, height and format from the image header.

    Raises:
        InvalidImage: If the bytes are empty or unreadable, the dimensions
            cannot be determined, the format is unsupported, or the pixel
            count exceeds ``max_pixels``.
    """
    if not image_bytes:
        raise InvalidImage("Image validation failed: empty image payload")

    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            width, height = image.size
            detected = (image.format or "").lower()
            channels = len(image.getbands())
    except _DECODE_ERRORS as exc:
        logger.warning("Could not read image header: %s", exc)
        raise InvalidImage("Image validation failed: Unable to determine image dimensions") from exc

    if not width or not height:
        raise InvalidImage("Image validation failed: Unable to determine image dimensions")

    image_format = _FORMAT_ALIASES.get(detected, detected)
    if image_format not in SUPPORTED_FORMATS:
        raise InvalidImage(
            f"Image validation failed: Unsupported image format: {image_format or 'unknown'}. "
            f"Supported: {', '.join(SUPPORTED_FORMATS)}"
        )

    if max_pixels is not None and width * height > max_pixels:
        raise InvalidImage(
            f"Image validation failed: {width}x{height} exceeds the limit of {max_pixels} pixels"
        )

    return ImageMetadata(
        width=width,
        height=height,
        format=image_format,
        channels=channels or 3,
        size=len(image_bytes),
    )


def preprocess(image_bytes: bytes) -> NormalizedTensor:
    """Decode, stretch to 32x32, force RGB and normalize to [-1, 1].

    Every intermediate image is closed before returning. Ownership of the
    returned tensor passes to the caller.

    Raises:
        PreprocessingFailed: On any decode or resize error.
    """
    try:
        with ExitStack() as stack:
            image = stack.enter_context(Image.open(io.BytesIO(image_bytes)))
            if image.mode == "P":
                # Palette images resize with nearest-neighbour only.
                image = stack.enter_context(image.convert("RGBA"))

            image = stack.enter_context(image.resize(TARGET_SIZE, resample=Image.Resampling.LANCZOS))
            image = stack.enter_context(_flatten_to_rgb(image))
            if image.size != TARGET_SIZE:
                image = stack.enter_context(image.resize(TARGET_SIZE, resample=Image.Resampling.BILINEAR))

            pixels = np.asarray(image, dtype=np.float32)
    except _DECODE_ERRORS as exc:
        logger.warning("Image preprocessing failed: %s", exc)
        raise PreprocessingFailed("Image preprocessing failed: unable to decode image data") from exc

    normalized = pixels / np.float32(127.5) - np.float32(1.0)
    return NormalizedTensor(np.expand_dims(normalized, axis=0))


def denormalize(tensor: NormalizedTensor) -> NDArray[np.uint8]:
    """Invert the normalization: (v + 1) * 127.5, clamped to [0, 255]."""
    restored = (np.squeeze(tensor.array, axis=0) + 1.0) * 127.5
    return np.rint(np.clip(restored, 0, 255)).astype(np.uint8)


def render_preview(tensor: NormalizedTensor, quality: int = 90) -> bytes:
    """Encode what the model sees as a JPEG. The tensor is not released."""
    buffer = io.BytesIO()
    with Image.fromarray(denormalize(tensor)) as preview:
        preview.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def _flatten_to_rgb(image: Image.Image) -> Image.Image:
    """Drop extra channels; transparent regions become black."""
    if image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info:
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (0, 0, 0))
        background.paste(rgba, mask=rgba.getchannel("A"))
        rgba.close()
        return background
    return image.convert("RGB")
