"""
Page rendering module.
Applies an operation log to a raw page raster at any working resolution,
and keeps the low resolution previews used while editing.
"""

import numpy as np
from PIL import Image, ImageFilter
import logging
import math

from models import (
    Operation, Rotate, Split, SplitSide, ColorMode, RemoveShading, EnhanceContrast,
    Page, BackendUnavailable, effective_color_mode,
)

logger = logging.getLogger(__name__)

# Shading removal: blur radius at 300 DPI and high-pass strength
SHADING_BLUR_RADIUS_300DPI = 20.0
SHADING_STRENGTH = 1.2
REFERENCE_DPI = 300.0

# Adaptive threshold block size bounds (odd values)
ADAPTIVE_BLOCK_MIN = 15
ADAPTIVE_BLOCK_MAX = 75
ADAPTIVE_C_MIN = 6
ADAPTIVE_C_MAX = 20

LUMA_WEIGHTS = (0.299, 0.587, 0.114)


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def _odd(value: int) -> int:
    return value if value % 2 == 1 else value + 1


class ImageProcessor:
    """Render engine: (raster, operations) -> raster."""

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    @staticmethod
    def rotate_quarter_turns(raster: np.ndarray, degrees: int) -> np.ndarray:
        """
        Rotate clockwise in 90 degree steps.

        Every step allocates a new buffer, so four steps reproduce the input
        exactly.
        """
        turns = (((degrees // 90) % 4) + 4) % 4
        for _ in range(turns):
            raster = np.ascontiguousarray(np.rot90(raster, k=-1))
        return raster

    @staticmethod
    def split_columns(width: int, side: SplitSide) -> tuple[int, int]:
        """Column range [start, stop) kept by a split."""
        mid = width // 2
        if side == SplitSide.LEFT:
            return 0, mid
        return mid, width

    @classmethod
    def crop_half(cls, raster: np.ndarray, side: SplitSide) -> np.ndarray:
        """Crop to the left or right half of the columns."""
        start, stop = cls.split_columns(raster.shape[1], side)
        return np.ascontiguousarray(raster[:, start:stop])

    @classmethod
    def apply_geometry(cls, raster: np.ndarray, operations: list[Operation]) -> np.ndarray:
        """Apply Rotate and Split entries in log order."""
        for op in operations:
            if isinstance(op, Rotate):
                raster = cls.rotate_quarter_turns(raster, op.degrees)
            elif isinstance(op, Split):
                raster = cls.crop_half(raster, op.side)
        return raster

    # ------------------------------------------------------------------
    # Pixel transforms
    # ------------------------------------------------------------------

    @staticmethod
    def luma(raster: np.ndarray) -> np.ndarray:
        """Unrounded luma as float64."""
        rgb = raster[:, :, :3].astype(np.float64)
        return LUMA_WEIGHTS[0] * rgb[:, :, 0] + LUMA_WEIGHTS[1] * rgb[:, :, 1] + LUMA_WEIGHTS[2] * rgb[:, :, 2]

    @classmethod
    def luma8(cls, raster: np.ndarray) -> np.ndarray:
        """Luma rounded half-up to uint8."""
        return np.clip(_round_half_up(cls.luma(raster)), 0, 255).astype(np.uint8)

    @staticmethod
    def _write_gray(raster: np.ndarray, gray: np.ndarray) -> np.ndarray:
        """Copy of raster with gray written to R, G and B. Alpha is kept."""
        out = raster.copy()
        out[:, :, 0] = gray
        out[:, :, 1] = gray
        out[:, :, 2] = gray
        return out

    @classmethod
    def convert_to_grayscale(cls, raster: np.ndarray) -> np.ndarray:
        """Replace R, G, B by the rounded luma."""
        return cls._write_gray(raster, cls.luma8(raster))

    @staticmethod
    def calculate_otsu_threshold(gray: np.ndarray) -> int:
        """
        Calculate the threshold maximizing between-class variance.

        Class B is luma <= t, class F is luma > t. If the maximum is a flat
        plateau (two pure peaks) the middle of the plateau is returned.

        Args:
            gray: uint8 luma image

        Returns:
            Threshold value (0-255)
        """
        hist = np.bincount(gray.ravel(), minlength=256).astype(np.float64)
        levels = np.arange(256, dtype=np.float64)

        w_b = np.cumsum(hist)
        w_f = w_b[-1] - w_b
        sum_b = np.cumsum(hist * levels)
        sum_total = sum_b[-1]

        with np.errstate(divide="ignore", invalid="ignore"):
            mu_b = sum_b / w_b
            mu_f = (sum_total - sum_b) / w_f
            variance = w_b * w_f * (mu_b - mu_f) ** 2
        variance = np.nan_to_num(variance, nan=0.0, posinf=0.0, neginf=0.0)

        best = int(np.argmax(variance))
        peak = variance[best]
        if peak <= 0:
            return best
        end = best
        while end + 1 < 256 and variance[end + 1] == peak:
            end += 1
        return (best + end) // 2

    @classmethod
    def binarize_otsu(cls, raster: np.ndarray) -> np.ndarray:
        """Global Otsu binarization. Luma above the threshold becomes white."""
        gray = cls.luma8(raster)
        threshold = cls.calculate_otsu_threshold(gray)
        logger.debug(f"Otsu threshold calculated: {threshold}")
        binary = np.where(gray > threshold, 255, 0).astype(np.uint8)
        return cls._write_gray(raster, binary)

    @staticmethod
    def adaptive_parameters(width: int, height: int) -> tuple[int, int]:
        """Block size and offset for the local-mean threshold, scaled to the raster."""
        implied = math.floor(min(width, height) / 50 + 0.5)
        block = _odd(max(3, implied))
        block = _odd(min(ADAPTIVE_BLOCK_MAX, max(ADAPTIVE_BLOCK_MIN, block)))
        c = min(ADAPTIVE_C_MAX, max(ADAPTIVE_C_MIN, math.floor(block * 0.2 + 0.5)))
        return block, c

    @classmethod
    def binarize_adaptive(cls, raster: np.ndarray, binarizer) -> np.ndarray:
        """
        Local-mean binarization through the backend.

        Raises:
            BackendUnavailable: if there is no ready backend
        """
        if binarizer is None or not binarizer.is_ready():
            raise BackendUnavailable("Binarization backend not ready")
        height, width = raster.shape[:2]
        block, c = cls.adaptive_parameters(width, height)
        binary = binarizer.adaptive(cls.luma8(raster), block, c)
        return cls._write_gray(raster, binary)

    @classmethod
    def remove_shading(cls, raster: np.ndarray, dpi: float, strength: float = SHADING_STRENGTH) -> np.ndarray:
        """
        High-pass shading removal.

        The background estimate is a Gaussian blur whose radius is 20px at
        300 DPI, scaled to the working resolution. Pixels at background level
        map to white, ink keeps its contrast.
        """
        radius = max(0.5, SHADING_BLUR_RADIUS_300DPI * dpi / REFERENCE_DPI)
        rgb = Image.fromarray(np.ascontiguousarray(raster[:, :, :3]))
        blurred = np.asarray(rgb.filter(ImageFilter.GaussianBlur(radius)))

        diff = (cls.luma(raster) - cls.luma(blurred)) * strength
        value = np.clip(_round_half_up(255.0 + diff), 0, 255).astype(np.uint8)
        return cls._write_gray(raster, value)

    @classmethod
    def enhance_contrast(cls, raster: np.ndarray) -> np.ndarray:
        """
        Min/max luma stretch to 0..255, written as gray.

        No-op when the image has a single luma level. Applying it twice gives
        the same result as applying it once.
        """
        gray = cls.luma8(raster).astype(np.float64)
        low, high = gray.min(), gray.max()
        if high == low:
            return raster
        stretched = _round_half_up((gray - low) * 255.0 / (high - low))
        return cls._write_gray(raster, np.clip(stretched, 0, 255).astype(np.uint8))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    @classmethod
    def apply_color_mode(
        cls,
        raster: np.ndarray,
        mode: ColorMode,
        binarizer=None,
    ) -> tuple[np.ndarray, list[str]]:
        """Apply exactly one color transform. Returns (raster, warnings)."""
        warnings: list[str] = []
        if mode == ColorMode.GRAY:
            raster = cls.convert_to_grayscale(raster)
        elif mode == ColorMode.BW_OTSU:
            raster = cls.binarize_otsu(raster)
        elif mode == ColorMode.BW_ADAPTIVE:
            try:
                raster = cls.binarize_adaptive(raster, binarizer)
            except BackendUnavailable as e:
                message = f"Adaptive B/W skipped: {e}"
                logger.warning(message)
                warnings.append(message)
        return raster, warnings

    @classmethod
    def apply_operations(
        cls,
        raster: np.ndarray,
        operations: list[Operation],
        dpi: float,
        binarizer=None,
    ) -> tuple[np.ndarray, list[str]]:
        """
        Apply a full operation log to a raw page raster.

        Pipeline order:
        1. Geometric operations (Rotate, Split) in log order
        2. Effective color mode (last ColorMode entry wins)
        3. Remove shading (if present anywhere in the log)
        4. Enhance contrast (if present anywhere in the log)

        Args:
            raster: H x W x C uint8 raster, not modified
            operations: Page operation log
            dpi: Working resolution of the raster, used to scale filter radii
            binarizer: Backend for adaptive thresholding

        Returns:
            Tuple of (processed raster, list of warnings)
        """
        current = cls.apply_geometry(raster, operations)
        if current is raster:
            current = raster.copy()

        current, warnings = cls.apply_color_mode(current, effective_color_mode(operations), binarizer)

        if any(isinstance(op, RemoveShading) for op in operations):
            current = cls.remove_shading(current, dpi)

        if any(isinstance(op, EnhanceContrast) for op in operations):
            current = cls.enhance_contrast(current)

        return current, warnings


class PreviewCache:
    """
    Manages preview rasters for efficient display while editing.

    Raw previews are rendered once per source page at a fixed width and kept.
    A page's processed preview lives on the page itself and is rebuilt from
    the raw preview and the page log whenever it is missing.
    """

    def __init__(self, source, width: int = 300, binarizer=None):
        self.source = source
        self.width = width
        self.binarizer = binarizer
        self._raw: dict[int, tuple[np.ndarray, float]] = {}  # source index -> (raster, dpi)

    def clear(self) -> None:
        """Clear all cached raw previews."""
        self._raw.clear()

    def get_raw_preview(self, source_page_index: int) -> tuple[np.ndarray, float]:
        """
        Get the unprocessed preview raster for a source page and its DPI.
        Renders and caches if not already cached.
        """
        if source_page_index not in self._raw:
            raster, size = self.source.render_page_width(source_page_index, self.width)
            dpi = raster.shape[1] / (size.width / 72.0) if size.width > 0 else 72.0
            self._raw[source_page_index] = (raster, dpi)
        return self._raw[source_page_index]

    def get_preview(self, page: Page) -> np.ndarray:
        """Return the page preview, regenerating it if it was invalidated."""
        if page.preview is None:
            raw, dpi = self.get_raw_preview(page.source_page_index)
            page.preview, warnings = ImageProcessor.apply_operations(raw, page.operations, dpi, self.binarizer)
            for message in warnings:
                logger.debug(f"Preview {page.id}: {message}")
        return page.preview

    @staticmethod
    def invalidate(page: Page) -> None:
        page.preview = None

    def refresh(self, pages: list[Page]) -> int:
        """Regenerate every missing preview. Returns how many were rebuilt."""
        rebuilt = 0
        for page in pages:
            if page.preview is None:
                self.get_preview(page)
                rebuilt += 1
        return rebuilt
