import io

import numpy as np
import pytest
from PIL import Image

from models import Settings, ColorMode, CompressionTier, GrayPolicy, BackendPolicy, BackendUnavailable
from encoder import Encoder, pack_bits, unpack_bits, posterize, GRAY_LEVELS


def gradient(height=20, width=64):
    row = np.linspace(0, 255, width).astype(np.uint8)
    gray = np.tile(row, (height, 1))
    return np.stack([gray, gray, gray], axis=2)


def decode(encoded) -> Image.Image:
    img = Image.open(io.BytesIO(encoded.data))
    img.load()
    return img


class TestBitPacking:
    def test_partial_last_byte(self):
        row = np.array([[1, 0, 0, 0, 0, 0, 0, 0, 1, 1]], dtype=np.uint8)
        assert pack_bits(row) == bytes([0x80, 0xC0])

    def test_rows_are_padded_independently(self):
        rng = np.random.default_rng(1)
        bits = rng.integers(0, 2, size=(3, 10)).astype(bool)
        packed = pack_bits(bits)
        assert len(packed) == 3 * 2
        assert np.array_equal(unpack_bits(packed, 10, 3), bits)

    @pytest.mark.parametrize("width", [1, 7, 8, 9, 17])
    def test_unpack_inverts_pack(self, width):
        rng = np.random.default_rng(width)
        bits = rng.integers(0, 2, size=(5, width)).astype(bool)
        assert np.array_equal(unpack_bits(pack_bits(bits), width, 5), bits)


class TestEncoder:
    def test_color_compressed_is_jpeg(self):
        encoded = Encoder(Settings()).encode(gradient(), ColorMode.COLOR, CompressionTier.LOW)
        assert encoded.format == "jpeg"
        assert encoded.data[:2] == b"\xff\xd8"
        assert (encoded.width, encoded.height) == (64, 20)

    def test_color_uncompressed_is_lossless_png(self):
        raster = gradient()
        encoded = Encoder(Settings()).encode(raster, ColorMode.COLOR, CompressionTier.NONE)
        assert encoded.format == "png"
        assert np.array_equal(np.asarray(decode(encoded).convert("RGB")), raster)

    def test_higher_tier_gives_smaller_jpeg(self):
        rng = np.random.default_rng(2)
        raster = rng.integers(0, 256, size=(64, 64, 3), dtype=np.uint8)
        encoder = Encoder(Settings())
        low = encoder.encode(raster, ColorMode.COLOR, CompressionTier.LOW)
        high = encoder.encode(raster, ColorMode.COLOR, CompressionTier.HIGH)
        assert len(high.data) < len(low.data)

    def test_gray_jpeg_policy(self):
        encoded = Encoder(Settings(gray_policy=GrayPolicy.JPEG)).encode(
            gradient(), ColorMode.GRAY, CompressionTier.MEDIUM
        )
        assert encoded.format == "jpeg"
        assert decode(encoded).mode == "L"

    @pytest.mark.parametrize("tier", [CompressionTier.LOW, CompressionTier.MEDIUM, CompressionTier.HIGH])
    def test_gray_posterize_policy_limits_levels(self, tier):
        encoded = Encoder(Settings(gray_policy=GrayPolicy.POSTERIZE)).encode(
            gradient(width=256), ColorMode.GRAY, tier
        )
        img = decode(encoded)
        assert encoded.format == "png"
        assert img.mode == "P"
        assert len(np.unique(np.asarray(img.convert("L")))) <= GRAY_LEVELS[tier]

    def test_gray_uncompressed_is_8bit_png(self):
        raster = gradient()
        encoded = Encoder(Settings(gray_policy=GrayPolicy.POSTERIZE)).encode(raster, ColorMode.GRAY, CompressionTier.NONE)
        img = decode(encoded)
        assert img.mode == "L"
        assert np.array_equal(np.asarray(img), raster[:, :, 0])

    @pytest.mark.parametrize("mode", [ColorMode.BW_OTSU, ColorMode.BW_ADAPTIVE])
    def test_bw_is_one_bit_png(self, mode):
        raster = np.zeros((9, 13, 3), dtype=np.uint8)
        raster[:, 5:] = 255
        encoded = Encoder(Settings()).encode(raster, mode, CompressionTier.HIGH)
        img = decode(encoded)
        assert encoded.format == "png"
        assert img.mode == "1"
        assert np.array_equal(np.asarray(img.convert("L")) > 127, raster[:, :, 0] > 127)

    def test_unbinarized_page_skip_policy_encodes_color(self):
        encoder = Encoder(Settings(on_backend_unavailable=BackendPolicy.SKIP))
        encoded = encoder.encode(gradient(), ColorMode.BW_ADAPTIVE, CompressionTier.MEDIUM, binarized=False)
        assert encoded.format == "jpeg"
        assert encoded.warnings

    def test_unbinarized_page_abort_policy_raises(self):
        encoder = Encoder(Settings(on_backend_unavailable=BackendPolicy.ABORT))
        with pytest.raises(BackendUnavailable):
            encoder.encode(gradient(), ColorMode.BW_ADAPTIVE, CompressionTier.MEDIUM, binarized=False)


def test_posterize_palette_spans_full_range():
    gray = np.arange(256, dtype=np.uint8).reshape(16, 16)
    indices, palette = posterize(gray, 16)
    assert indices.max() == 15
    assert palette[0] == 0 and palette[-1] == 255
    assert len(palette) == 16


def test_posterize_maps_to_nearest_level():
    gray = np.array([[0, 8, 9, 31, 247, 255]], dtype=np.uint8)
    indices, palette = posterize(gray, 16)
    assert [palette[i] for i in indices[0]] == [0, 0, 17, 34, 255, 255]
