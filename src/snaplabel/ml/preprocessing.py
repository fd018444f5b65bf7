"""Image preprocessing pipeline.

Handles decoding, EXIF orientation, color space conversion and the fixed
resize that turns an arbitrary caller image into the model's input tensor.
The resize is a plain stretch to the model size: no aspect ratio
preservation and no letterboxing.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

import numpy as np
from PIL import Image, ImageOps

from snaplabel.errors import NormalizationError

if TYPE_CHECKING:
    from numpy.typing import NDArray

ChannelOrder = Literal["RGB", "BGR"]
TensorLayout = Literal["nchw", "nhwc"]

_NATIVE_MODES = frozenset({"L", "RGB", "RGBA", "I;16", "I;16L", "I;16B"})


@dataclass(frozen=True)
class RawImage:
    """Caller-owned pixel buffer of arbitrary size and color depth.

    ``pixels`` is HxW, HxWx1, HxWx3 or HxWx4. uint8, bool and uint16 use their
    full range; floats are read as [0, 1] and other integers as 0-255, with
    values outside clipped.
    ``channel_order`` only matters for 3 and 4 channel data.
    """

    pixels: NDArray[np.generic]
    channel_order: ChannelOrder = "RGB"

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 2 else 0

    @classmethod
    def from_pil(cls, image: Image.Image) -> RawImage:
        """Copy a Pillow image into a RawImage."""
        try:
            if image.mode not in _NATIVE_MODES:
                has_alpha = "A" in image.getbands() or "transparency" in image.info
                image = image.convert("RGBA" if has_alpha else "RGB")
            pixels = np.array(image)
        except (OSError, ValueError) as exc:
            raise NormalizationError(f"Cannot read pixels from {image.mode} image: {exc}") from exc
        return cls(pixels=pixels)

    @classmethod
    def from_bytes(cls, data: bytes, max_pixels: int | None = None) -> RawImage:
        """Decode encoded image bytes (any Pillow format) into a RawImage.

        Raises:
            NormalizationError: If the bytes cannot be decoded or the image
                exceeds ``max_pixels``.
        """
        if not data:
            raise NormalizationError("Empty image data")
        try:
            with Image.open(io.BytesIO(data)) as opened:
                if max_pixels is not None and opened.width * opened.height > max_pixels:
                    raise NormalizationError(
                        f"Image has {opened.width * opened.height} pixels, limit is {max_pixels}"
                    )
                oriented = ImageOps.exif_transpose(opened)
                return cls.from_pil(oriented)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise NormalizationError(f"Cannot decode image: {exc}") from exc


@dataclass(frozen=True)
class NormalizedImage:
    """Float32 RGB tensor scaled to [0, 1] at the model's fixed input size."""

    tensor: NDArray[np.float32]
    width: int
    height: int
    layout: TensorLayout = "nchw"

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)


class ImageNormalizer:
    """Converts RawImages into the model's fixed input contract."""

    def __init__(self, layout: TensorLayout = "nchw") -> None:
        self._layout: TensorLayout = layout

    def normalize(self, image: RawImage, target_size: tuple[int, int]) -> NormalizedImage:
        """Resize ``image`` to exactly ``target_size`` (width, height) as RGB.

        Raises:
            NormalizationError: If the pixels cannot be interpreted or converted.
            ValueError: If ``target_size`` is not a pair of positive ints.
        """
        width, height = _check_target_size(target_size)
        rgb = self._to_rgb(image)

        resized = rgb.resize((width, height), Image.Resampling.BILINEAR)
        array = np.asarray(resized, dtype=np.float32) / 255.0

        if self._layout == "nchw":
            tensor = np.ascontiguousarray(array.transpose(2, 0, 1)[np.newaxis, ...])
        else:
            tensor = np.ascontiguousarray(array[np.newaxis, ...])
        return NormalizedImage(tensor=tensor, width=width, height=height, layout=self._layout)

    @staticmethod
    def _to_rgb(image: RawImage) -> Image.Image:
        pixels = image.pixels
        if pixels.ndim == 3 and pixels.shape[2] == 1:
            pixels = pixels[:, :, 0]
        if pixels.ndim not in (2, 3) or (pixels.ndim == 3 and pixels.shape[2] not in (3, 4)):
            raise NormalizationError(f"Unsupported pixel buffer shape {image.pixels.shape}")
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise NormalizationError(f"Image has no pixels ({image.width}x{image.height})")

        pixels = _to_uint8(pixels)
        if pixels.ndim == 3 and image.channel_order == "BGR":
            order = [2, 1, 0] if pixels.shape[2] == 3 else [2, 1, 0, 3]
            pixels = pixels[:, :, order]

        try:
            return Image.fromarray(np.ascontiguousarray(pixels)).convert("RGB")
        except (OSError, ValueError, TypeError) as exc:
            raise NormalizationError(f"Color conversion to RGB failed: {exc}") from exc


def _to_uint8(pixels: NDArray[np.generic]) -> NDArray[np.uint8]:
    if pixels.dtype == np.uint8:
        return pixels  # type: ignore[return-value]
    if pixels.dtype == np.bool_:
        return pixels.astype(np.uint8) * 255  # type: ignore[no-any-return]
    if pixels.dtype.kind == "u" and pixels.dtype.itemsize == 2:
        return (pixels >> 8).astype(np.uint8)  # type: ignore[no-any-return]
    if pixels.dtype.kind == "f":
        # Float images are in [0, 1]; NaN counts as black.
        unit = np.clip(np.nan_to_num(pixels, nan=0.0), 0.0, 1.0)
        return np.rint(unit * 255.0).astype(np.uint8)  # type: ignore[no-any-return]
    if pixels.dtype.kind in ("i", "u"):
        return np.clip(pixels, 0, 255).astype(np.uint8)  # type: ignore[no-any-return]
    raise NormalizationError(f"Unsupported pixel dtype {pixels.dtype}")


def _check_target_size(target_size: tuple[int, int]) -> tuple[int, int]:
    if len(target_size) != 2:
        raise ValueError(f"target_size must be (width, height), got {target_size!r}")
    width, height = (int(v) for v in target_size)
    if width <= 0 or height <= 0:
        raise ValueError(f"target_size must be positive, got {target_size!r}")
    return width, height
