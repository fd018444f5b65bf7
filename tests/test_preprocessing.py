"""Tests for image decoding and normalization."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from snaplabel.errors import NormalizationError
from snaplabel.ml.preprocessing import ImageNormalizer, RawImage

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _encode(image: Image.Image, fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def _solid(width: int, height: int, color: tuple[int, int, int]) -> RawImage:
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    pixels[:, :] = color
    return RawImage(pixels=pixels)


# ---------------------------------------------------------------------------
# RawImage decoding
# ---------------------------------------------------------------------------


class TestRawImageFromBytes:
    def test_decodes_png(self) -> None:
        raw = RawImage.from_bytes(_encode(Image.new("RGB", (1000, 800), (10, 20, 30))))
        assert (raw.width, raw.height) == (1000, 800)
        assert raw.pixels.shape == (800, 1000, 3)
        assert raw.pixels.dtype == np.uint8

    def test_decodes_jpeg(self) -> None:
        raw = RawImage.from_bytes(_encode(Image.new("RGB", (64, 32), (200, 0, 0)), fmt="JPEG"))
        assert (raw.width, raw.height) == (64, 32)

    def test_palette_image_becomes_rgb(self) -> None:
        raw = RawImage.from_bytes(_encode(Image.new("P", (16, 16))))
        assert raw.pixels.shape == (16, 16, 3)

    def test_grayscale_kept_single_channel(self) -> None:
        raw = RawImage.from_bytes(_encode(Image.new("L", (16, 8), 128)))
        assert raw.pixels.shape == (8, 16)

    def test_garbage_bytes_raise(self) -> None:
        with pytest.raises(NormalizationError, match="Cannot decode image"):
            RawImage.from_bytes(b"fake image data")

    def test_empty_bytes_raise(self) -> None:
        with pytest.raises(NormalizationError, match="Empty"):
            RawImage.from_bytes(b"")

    def test_pixel_limit_enforced(self) -> None:
        data = _encode(Image.new("RGB", (100, 100)))
        with pytest.raises(NormalizationError, match="limit"):
            RawImage.from_bytes(data, max_pixels=9_999)

    def test_exif_orientation_applied(self) -> None:
        image = Image.new("RGB", (40, 20))
        exif = Image.Exif()
        exif[0x0112] = 6  # rotate 90 CW
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", exif=exif)

        raw = RawImage.from_bytes(buffer.getvalue())

        assert (raw.width, raw.height) == (20, 40)


# ---------------------------------------------------------------------------
# ImageNormalizer
# ---------------------------------------------------------------------------


class TestImageNormalizer:
    @pytest.mark.parametrize(
        ("shape", "dtype"),
        [
            ((800, 1000, 3), np.uint8),
            ((3, 5, 3), np.uint8),
            ((1200, 90), np.uint8),
            ((50, 70, 1), np.uint8),
            ((640, 640, 4), np.uint8),
            ((33, 17, 3), np.uint16),
            ((10, 10), np.bool_),
        ],
    )
    def test_output_matches_target_size(self, shape: tuple[int, ...], dtype: type) -> None:
        raw = RawImage(pixels=np.ones(shape, dtype=dtype))
        normalized = ImageNormalizer().normalize(raw, (640, 640))

        assert normalized.size == (640, 640)
        assert normalized.tensor.shape == (1, 3, 640, 640)
        assert normalized.tensor.dtype == np.float32

    def test_non_square_target(self) -> None:
        normalized = ImageNormalizer().normalize(_solid(1000, 800, (0, 0, 0)), (320, 240))
        assert (normalized.width, normalized.height) == (320, 240)
        assert normalized.tensor.shape == (1, 3, 240, 320)

    def test_nhwc_layout(self) -> None:
        normalized = ImageNormalizer(layout="nhwc").normalize(_solid(100, 50, (0, 0, 0)), (64, 32))
        assert normalized.layout == "nhwc"
        assert normalized.tensor.shape == (1, 32, 64, 3)

    def test_values_scaled_to_unit_range(self) -> None:
        normalized = ImageNormalizer().normalize(_solid(20, 20, (255, 0, 51)), (8, 8))
        tensor = normalized.tensor
        assert np.allclose(tensor[0, 0], 1.0)
        assert np.allclose(tensor[0, 1], 0.0)
        assert np.allclose(tensor[0, 2], 0.2)

    def test_bgr_input_is_converted_to_rgb(self) -> None:
        pixels = np.zeros((10, 10, 3), dtype=np.uint8)
        pixels[:, :, 0] = 255  # blue in BGR order
        normalized = ImageNormalizer().normalize(RawImage(pixels=pixels, channel_order="BGR"), (4, 4))

        assert np.allclose(normalized.tensor[0, 2], 1.0)
        assert np.allclose(normalized.tensor[0, 0], 0.0)

    def test_alpha_channel_dropped(self) -> None:
        pixels = np.full((10, 10, 4), 255, dtype=np.uint8)
        pixels[:, :, 3] = 0
        normalized = ImageNormalizer().normalize(RawImage(pixels=pixels), (4, 4))
        assert normalized.tensor.shape == (1, 3, 4, 4)
        assert np.allclose(normalized.tensor, 1.0)

    def test_grayscale_replicated_across_channels(self) -> None:
        pixels = np.full((12, 12), 102, dtype=np.uint8)
        normalized = ImageNormalizer().normalize(RawImage(pixels=pixels), (6, 6))
        assert np.allclose(normalized.tensor, 0.4)

    def test_sixteen_bit_depth_reduced(self) -> None:
        pixels = np.full((4, 4, 3), 65535, dtype=np.uint16)
        normalized = ImageNormalizer().normalize(RawImage(pixels=pixels), (2, 2))
        assert np.allclose(normalized.tensor, 1.0)

    def test_source_image_untouched(self) -> None:
        raw = _solid(30, 20, (1, 2, 3))
        before = raw.pixels.copy()
        ImageNormalizer().normalize(raw, (640, 640))
        assert np.array_equal(raw.pixels, before)

    def test_zero_sized_image_raises(self) -> None:
        with pytest.raises(NormalizationError, match="no pixels"):
            ImageNormalizer().normalize(RawImage(pixels=np.zeros((0, 10, 3), dtype=np.uint8)), (640, 640))

    def test_unsupported_shape_raises(self) -> None:
        with pytest.raises(NormalizationError, match="shape"):
            ImageNormalizer().normalize(RawImage(pixels=np.zeros((4, 4, 2), dtype=np.uint8)), (640, 640))

    @pytest.mark.parametrize("dtype", [np.float32, np.float64, np.float16])
    def test_float_pixels_read_as_unit_range(self, dtype: type) -> None:
        raw = RawImage(pixels=np.full((8, 8, 3), 0.5, dtype=dtype))
        normalized = ImageNormalizer().normalize(raw, (4, 4))
        assert normalized.size == (4, 4)
        assert np.allclose(normalized.tensor, 128 / 255)

    def test_float_pixels_clipped(self) -> None:
        pixels = np.zeros((4, 4, 3), dtype=np.float32)
        pixels[:, :, 0] = 3.0
        pixels[:, :, 1] = -1.0
        pixels[:, :, 2] = np.nan
        normalized = ImageNormalizer().normalize(RawImage(pixels=pixels), (2, 2))
        assert np.allclose(normalized.tensor[0, 0], 1.0)
        assert np.allclose(normalized.tensor[0, 1], 0.0)
        assert np.allclose(normalized.tensor[0, 2], 0.0)

    @pytest.mark.parametrize("dtype", [np.int8, np.int16, np.int32, np.int64, np.uint32])
    def test_other_integer_depths_clipped_to_byte_range(self, dtype: type) -> None:
        pixels = np.zeros((4, 4), dtype=dtype)
        pixels[:, :2] = 102
        if np.issubdtype(dtype, np.signedinteger):
            pixels[:, 2:] = -5
        normalized = ImageNormalizer().normalize(RawImage(pixels=pixels), (4, 4))
        assert np.allclose(normalized.tensor[0, :, :, :2], 0.4)
        assert np.allclose(normalized.tensor[0, :, :, 2:], 0.0)

    def test_non_numeric_dtype_raises(self) -> None:
        with pytest.raises(NormalizationError, match="dtype"):
            ImageNormalizer().normalize(RawImage(pixels=np.zeros((4, 4, 3), dtype=np.complex64)), (640, 640))

    @pytest.mark.parametrize("target", [(0, 640), (640, -1)])
    def test_invalid_target_size_raises(self, target: tuple[int, int]) -> None:
        with pytest.raises(ValueError, match="positive"):
            ImageNormalizer().normalize(_solid(4, 4, (0, 0, 0)), target)
