"""
Source PDF handling.
Holds the immutable source bytes, a lazily opened PyMuPDF handle and page rendering.
"""

import fitz  # PyMuPDF
import numpy as np
from pathlib import Path
from typing import Optional, Iterable
import logging

from models import PageSize

logger = logging.getLogger(__name__)


class SourceReference:
    """
    Immutable source PDF bytes plus a cached parsed handle.

    Several pages of a Document may point at the same source page index
    (after a split), so the handle is opened once and shared.
    """

    def __init__(self, data: bytes, names: Optional[list[str]] = None):
        self._data = bytes(data)
        self.names: list[str] = list(names or [])
        self._doc: Optional[fitz.Document] = None
        self._page_sizes: dict[int, PageSize] = {}

    @classmethod
    def from_path(cls, path: Path) -> "SourceReference":
        """Load a single PDF file."""
        return cls(Path(path).read_bytes(), names=[Path(path).stem])

    @classmethod
    def from_paths(cls, paths: Iterable[Path]) -> "SourceReference":
        """
        Concatenate several PDFs into one source.

        Pages keep their order: all pages of the first file, then the second, ...
        """
        paths = [Path(p) for p in paths]
        if len(paths) == 1:
            return cls.from_path(paths[0])

        merged = fitz.open()
        try:
            for path in paths:
                with fitz.open(str(path)) as part:
                    merged.insert_pdf(part)
                logger.info(f"Appended {path.name} to source")
            data = merged.tobytes()
        finally:
            merged.close()
        return cls(data, names=[p.stem for p in paths])

    @property
    def data(self) -> bytes:
        return self._data

    @property
    def handle(self) -> fitz.Document:
        """Parsed document, opened on first use."""
        if self._doc is None:
            self._doc = fitz.open(stream=self._data, filetype="pdf")
        return self._doc

    def close(self) -> None:
        """Release the parsed handle. The bytes stay available."""
        if self._doc is not None:
            self._doc.close()
            self._doc = None

    def __enter__(self) -> "SourceReference":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __getstate__(self) -> dict:
        # fitz documents cannot be pickled; workers reopen their own handle
        state = self.__dict__.copy()
        state["_doc"] = None
        return state

    @property
    def page_count(self) -> int:
        return len(self.handle)

    def page_size(self, index: int) -> PageSize:
        """Native point size of a source page."""
        if index not in self._page_sizes:
            rect = self.handle[index].rect
            self._page_sizes[index] = PageSize(rect.width, rect.height)
        return self._page_sizes[index]

    def render_page(self, index: int, scale: float) -> tuple[np.ndarray, PageSize]:
        """
        Render a source page to an RGB raster.

        Args:
            index: Source page index (0-based)
            scale: Pixels per point (dpi / 72)

        Returns:
            Tuple of (H x W x 3 uint8 array, native page size in points)
        """
        page = self.handle[index]
        mat = fitz.Matrix(scale, scale)
        pix = page.get_pixmap(matrix=mat, colorspace=fitz.csRGB, alpha=False)

        raster = np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, pix.n)
        # Own the memory so the pixmap can be released
        raster = raster.copy()
        del pix

        return raster, self.page_size(index)

    def render_page_width(self, index: int, width_px: int) -> tuple[np.ndarray, PageSize]:
        """Render a page so that its width is about width_px pixels."""
        size = self.page_size(index)
        scale = width_px / size.width if size.width > 0 else 1.0
        return self.render_page(index, scale)
