"""
External engines used by the pipeline.

OpenCVBinarizer wraps OpenCV's adaptive threshold; TesseractOCR turns page
images into a text-only PDF layer. Both expose is_ready() so callers can
degrade instead of failing.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import fitz  # PyMuPDF
import numpy as np
import pytesseract
from PIL import Image

from models import BackendUnavailable, OCRFailure

logger = logging.getLogger(__name__)


class OpenCVBinarizer:
    """Local-mean binarization backed by OpenCV."""

    def __init__(self) -> None:
        self._cv2 = None
        self._checked = False

    def _load(self):
        if not self._checked:
            self._checked = True
            try:
                import cv2
            except ImportError:
                logger.warning("OpenCV is not installed; adaptive B/W is unavailable")
            else:
                self._cv2 = cv2
        return self._cv2

    def is_ready(self) -> bool:
        return self._load() is not None

    def adaptive(self, gray: np.ndarray, block_size: int, c: int) -> np.ndarray:
        """
        Threshold an 8-bit single channel image against its local mean.

        Pixels brighter than (neighbourhood mean - c) become 255, others 0.
        """
        cv2 = self._load()
        if cv2 is None:
            raise BackendUnavailable("OpenCV binarization backend is not available")
        return cv2.adaptiveThreshold(
            np.ascontiguousarray(gray, dtype=np.uint8),
            255,
            cv2.ADAPTIVE_THRESH_MEAN_C,
            cv2.THRESH_BINARY,
            block_size,
            c,
        )


@dataclass
class OcrImage:
    """A page image handed to the OCR engine."""
    png: bytes
    dpi: float


class TesseractOCR:
    """
    OCR through the Tesseract command line engine.

    Each page is recognized separately into a text-only PDF (invisible text,
    no image); the per-page PDFs are then concatenated in page order.
    """

    STAGES = ("importImage", "convert", "export")

    def __init__(self, tesseract_cmd: Optional[str] = None):
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def is_ready(self) -> bool:
        try:
            pytesseract.get_tesseract_version()
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            logger.warning(f"Tesseract not available: {e}")
            return False
        return True

    def recognize(
        self,
        images: list[OcrImage],
        language: str,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        status_callback: Optional[Callable[[str], None]] = None,
        yield_hook: Optional[Callable[[], None]] = None,
    ) -> bytes:
        """
        Recognize all images and return one positioned-text PDF.

        Progress is reported over the three stages (loading images,
        recognizing, generating PDF) as one continuous (step, total) range.

        Raises:
            OCRFailure: if the engine is missing or fails on any page
        """
        if not self.is_ready():
            raise OCRFailure("Tesseract is not installed or not on PATH")

        count = len(images)
        total_steps = max(1, count * len(self.STAGES))

        def report(stage: str, index: int, message: str) -> None:
            stage_index = self.STAGES.index(stage)
            step = min(stage_index * count + index + 1, total_steps)
            if progress_callback:
                progress_callback(step, total_steps)
            if status_callback:
                status_callback(f"{message} {index + 1}/{count}")
            if yield_hook:
                yield_hook()

        loaded: list[Image.Image] = []
        for i, item in enumerate(images):
            img = Image.open(io.BytesIO(item.png))
            img.load()
            loaded.append(img)
            report("importImage", i, "OCR: loading images")

        page_pdfs: list[bytes] = []
        for i, (img, item) in enumerate(zip(loaded, images)):
            config = f"--dpi {int(round(item.dpi))} -c textonly_pdf=1"
            try:
                page_pdfs.append(pytesseract.image_to_pdf_or_hocr(
                    img, lang=language, extension="pdf", config=config
                ))
            except (pytesseract.TesseractError, RuntimeError, OSError) as e:
                raise OCRFailure(f"Tesseract failed on page {i + 1}: {e}") from e
            report("convert", i, "OCR: recognizing")
        loaded.clear()

        out = fitz.open()
        try:
            for i, pdf_bytes in enumerate(page_pdfs):
                try:
                    with fitz.open(stream=pdf_bytes, filetype="pdf") as part:
                        out.insert_pdf(part)
                except (fitz.FileDataError, RuntimeError, ValueError) as e:
                    raise OCRFailure(f"Unreadable OCR output for page {i + 1}") from e
                report("export", i, "OCR: generating PDF")
            return out.tobytes()
        finally:
            out.close()
