"""
Compression-aware page image encoder.
Chooses the image format per color mode and compression tier.
"""

import io
import logging
from dataclasses import dataclass, field

import numpy as np
from PIL import Image, ImageFilter

from models import (
    ColorMode, CompressionTier, GrayPolicy, BackendPolicy, Settings, BackendUnavailable,
)
from processor import ImageProcessor

logger = logging.getLogger(__name__)

# JPEG quality per tier
JPEG_QUALITY = {
    CompressionTier.LOW: 75,
    CompressionTier.MEDIUM: 60,
    CompressionTier.HIGH: 50,
}

# Gray levels kept by the posterizing gray policy
GRAY_LEVELS = {
    CompressionTier.LOW: 64,
    CompressionTier.MEDIUM: 32,
    CompressionTier.HIGH: 16,
}

# Blur radius applied to gray pages before JPEG encoding
GRAY_JPEG_BLUR = 0.4


@dataclass
class EncodedImage:
    """Encoded page image ready to embed into a PDF page."""
    data: bytes
    format: str  # "jpeg" or "png"
    width: int
    height: int
    warnings: list[str] = field(default_factory=list)


def pack_bits(binary: np.ndarray) -> bytes:
    """
    Pack a 2D image into 1 bit per pixel.

    Non-zero pixels are set bits. Each row is packed MSB-first and padded to
    a whole byte.
    """
    return np.packbits(np.asarray(binary) != 0, axis=1).tobytes()


def unpack_bits(data: bytes, width: int, height: int) -> np.ndarray:
    """Inverse of pack_bits. Returns a height x width bool array."""
    row_bytes = (width + 7) // 8
    packed = np.frombuffer(data, dtype=np.uint8, count=row_bytes * height).reshape(height, row_bytes)
    return np.unpackbits(packed, axis=1, count=width).astype(bool)


def posterize(gray: np.ndarray, levels: int) -> tuple[np.ndarray, list[int]]:
    """
    Quantize a uint8 image to evenly spaced gray levels.

    Returns:
        Tuple of (palette index array, palette gray values)
    """
    step = 255.0 / (levels - 1)
    indices = np.floor(gray / step + 0.5).astype(np.uint8)
    palette = [int(np.floor(i * step + 0.5)) for i in range(levels)]
    return indices, palette


class Encoder:
    """Encodes final page rasters as JPEG or PNG."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def encode(
        self,
        raster: np.ndarray,
        color_mode: ColorMode,
        tier: CompressionTier,
        binarized: bool = True,
    ) -> EncodedImage:
        """
        Encode a rendered page.

        Args:
            raster: H x W x C uint8 raster after the page operations
            color_mode: Effective color mode of the page
            tier: Compression tier
            binarized: False if a B/W mode was requested but not applied

        Returns:
            EncodedImage

        Raises:
            BackendUnavailable: B/W page not binarized and the policy is ABORT
        """
        warnings: list[str] = []
        if color_mode.is_bw and not binarized:
            if self.settings.on_backend_unavailable == BackendPolicy.ABORT:
                raise BackendUnavailable("Page was not binarized, dropping it from the export")
            message = "Page was not binarized, encoded as color"
            logger.warning(message)
            warnings.append(message)
            color_mode = ColorMode.COLOR

        if color_mode.is_bw:
            encoded = self._encode_bw(raster)
        elif color_mode == ColorMode.GRAY:
            encoded = self._encode_gray(raster, tier)
        else:
            encoded = self._encode_color(raster, tier)
        encoded.warnings.extend(warnings)
        return encoded

    def _encode_color(self, raster: np.ndarray, tier: CompressionTier) -> EncodedImage:
        img = Image.fromarray(np.ascontiguousarray(raster[:, :, :3]))
        if tier == CompressionTier.NONE:
            return self._save(img, "png")
        return self._save(img, "jpeg", quality=JPEG_QUALITY[tier])

    def _encode_gray(self, raster: np.ndarray, tier: CompressionTier) -> EncodedImage:
        gray = ImageProcessor.luma8(raster)
        if tier == CompressionTier.NONE:
            return self._save(Image.fromarray(gray), "png")

        if self.settings.gray_policy == GrayPolicy.POSTERIZE:
            indices, palette = posterize(gray, GRAY_LEVELS[tier])
            img = Image.frombytes("P", (gray.shape[1], gray.shape[0]), indices.tobytes())
            img.putpalette([v for g in palette for v in (g, g, g)])
            return self._save(img, "png", optimize=True)

        img = Image.fromarray(gray).filter(ImageFilter.GaussianBlur(GRAY_JPEG_BLUR))
        return self._save(img, "jpeg", quality=JPEG_QUALITY[tier])

    def _encode_bw(self, raster: np.ndarray) -> EncodedImage:
        height, width = raster.shape[:2]
        white = ImageProcessor.luma8(raster) > 127
        img = Image.frombytes("1", (width, height), pack_bits(white))
        return self._save(img, "png", optimize=True)

    @staticmethod
    def _save(img: Image.Image, fmt: str, **params) -> EncodedImage:
        buffer = io.BytesIO()
        img.save(buffer, format=fmt.upper(), **params)
        return EncodedImage(data=buffer.getvalue(), format=fmt, width=img.width, height=img.height)
