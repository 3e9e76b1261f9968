"""
PDF export.
Renders every page at export fidelity in bounded batches, adds an optional OCR
text layer, composes the output PDF and optionally recompresses its streams.
"""

import fitz  # PyMuPDF
import io
import logging
import re
import shutil
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import numpy as np
from PIL import Image

from models import (
    Document, Page, PageSnapshot, PageSize, Settings, ExportProgress, ColorMode, CompressionTier,
    GrayPolicy, RenderFailure, BackendUnavailable, OCRFailure,
    effective_color_mode, effective_page_size,
)
from source import SourceReference
from processor import ImageProcessor
from planner import ResolutionPlanner
from encoder import Encoder, EncodedImage
from backends import OcrImage
from recompress import recompress_pdf, RecompressionStats

logger = logging.getLogger(__name__)


@dataclass
class RenderedPage:
    """One page rendered and encoded at export fidelity."""
    page_id: str
    image: EncodedImage
    size: PageSize  # points
    dpi: float
    ocr: Optional[OcrImage] = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class ExportResult:
    """Outcome of an export."""
    pdf_bytes: bytes = b""
    ocr_used: bool = False
    skipped_pages: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    recompression: Optional[RecompressionStats] = None
    cancelled: bool = False
    output_name: str = ""
    output_path: Optional[Path] = None

    @property
    def success(self) -> bool:
        return bool(self.pdf_bytes) and not self.cancelled


def _png_bytes(raster: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(raster[:, :, :3])).save(buffer, format="PNG")
    return buffer.getvalue()


def render_export_page(
    source: SourceReference,
    page: PageSnapshot,
    settings: Settings,
    planner: ResolutionPlanner,
    binarizer=None,
    want_ocr: bool = False,
) -> RenderedPage:
    """
    Render, process and encode one page for export.

    Used both by the exporter and by the render worker processes, so it only
    touches its arguments.

    Raises:
        RenderFailure: the source page could not be rasterized, processed or encoded
        BackendUnavailable: B/W page not binarized under the ABORT policy
    """
    operations = list(page.operations)
    mode = effective_color_mode(operations)

    native_dpi = planner.working_dpi(source, page.source_page_index)
    dpi = planner.export_dpi(native_dpi, mode, settings.compression)

    try:
        raw, _ = source.render_page(page.source_page_index, dpi / 72.0)
    except (RuntimeError, ValueError, IndexError) as e:
        raise RenderFailure(page.id, f"could not rasterize source page {page.source_page_index + 1}: {e}") from e

    try:
        ocr = None
        if want_ocr:
            # OCR reads the page before any color transform
            geometric = ImageProcessor.apply_geometry(raw, operations)
            ocr = OcrImage(png=_png_bytes(geometric), dpi=dpi)
            del geometric

        final, warnings = ImageProcessor.apply_operations(raw, operations, dpi, binarizer)
        del raw

        binarized = not (mode.is_bw and warnings)
        encoded = Encoder(settings).encode(final, mode, settings.compression, binarized=binarized)
        del final
    except BackendUnavailable:
        raise
    except Exception as e:
        raise RenderFailure(page.id, f"could not process page: {e}") from e

    return RenderedPage(
        page_id=page.id,
        image=encoded,
        size=effective_page_size(page.base_size, operations),
        dpi=dpi,
        ocr=ocr,
        warnings=warnings + encoded.warnings,
    )


class PDFExporter:
    """Handles PDF export with batched page rendering."""

    def __init__(
        self,
        document: Document,
        settings: Settings,
        planner: Optional[ResolutionPlanner] = None,
        binarizer=None,
        ocr_engine=None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        status_callback: Optional[Callable[[str], None]] = None,
        yield_hook: Optional[Callable[[], None]] = None,
        worker_pool=None,
    ):
        self.document = document
        self.settings = settings
        self.planner = planner or ResolutionPlanner(settings.default_scale)
        self.binarizer = binarizer
        self.ocr_engine = ocr_engine
        self.progress_callback = progress_callback
        self.status_callback = status_callback
        self.yield_hook = yield_hook or (lambda: time.sleep(0))
        self.worker_pool = worker_pool
        self.progress = ExportProgress()
        self._cancelled = False

    def cancel(self) -> None:
        """Request cancellation. The batch being rendered is finished first."""
        self._cancelled = True
        self.progress.cancelled = True

    def _progress(self, done: int, total: int) -> None:
        if self.progress_callback:
            self.progress_callback(done, total)

    def _status(self, message: str) -> None:
        self.progress.message = message
        logger.debug(message)
        if self.status_callback:
            self.status_callback(message)

    def _render_batch(self, batch: list[PageSnapshot], want_ocr: bool) -> list:
        """Render a batch. Failures are returned in place of the page."""
        if self.worker_pool is not None:
            return self.worker_pool.render_batch(batch, want_ocr)

        outcomes = []
        for snapshot in batch:
            try:
                outcomes.append(render_export_page(
                    self.document.source, snapshot, self.settings, self.planner, self.binarizer, want_ocr
                ))
            except (RenderFailure, BackendUnavailable) as e:
                outcomes.append(e)
            except MemoryError as e:
                outcomes.append(RenderFailure(snapshot.id, f"out of memory: {e}"))
        return outcomes

    def _render_all(self, result: ExportResult, want_ocr: bool) -> list[RenderedPage]:
        pages = [p.snapshot() for p in self.document.pages]
        total = len(pages)
        batch_size = max(1, self.settings.batch_size)
        rendered: list[RenderedPage] = []
        self.progress.total_pages = total

        for start in range(0, total, batch_size):
            if self._cancelled:
                logger.info(f"Export cancelled after {start} of {total} pages")
                result.cancelled = True
                break

            batch = pages[start:start + batch_size]
            for offset, (snapshot, outcome) in enumerate(zip(batch, self._render_batch(batch, want_ocr))):
                number = start + offset + 1
                if isinstance(outcome, RenderedPage):
                    rendered.append(outcome)
                    result.warnings.extend(f"Page {number}: {w}" for w in outcome.warnings)
                else:
                    logger.error(f"Skipping page {number} ({snapshot.id}): {outcome}")
                    result.skipped_pages.append(snapshot.id)
                    result.warnings.append(f"Page {number} skipped: {outcome}")
                self.progress.current_page = number
                self._progress(number, total)
                self._status(f"Rendering page {number}/{total}")
            self.yield_hook()

        return rendered

    def _run_ocr(self, rendered: list[RenderedPage], result: ExportResult) -> Optional[bytes]:
        """Return the text layer PDF, or None if OCR is unavailable or failed."""
        if self.ocr_engine is None or not self.ocr_engine.is_ready():
            message = "OCR engine not available, saving without OCR..."
            self._status(message)
            result.warnings.append(message)
            return None

        self._status("Running OCR...")
        try:
            text_pdf = self.ocr_engine.recognize(
                [r.ocr for r in rendered],
                self.settings.ocr_language,
                progress_callback=self.progress_callback,
                status_callback=self.status_callback,
                yield_hook=self.yield_hook,
            )
            with fitz.open(stream=text_pdf, filetype="pdf") as check:
                if len(check) != len(rendered):
                    raise OCRFailure(f"OCR returned {len(check)} pages for {len(rendered)} images")
        except (OCRFailure, fitz.FileDataError, RuntimeError, ValueError) as e:
            logger.warning(f"OCR failed: {e}")
            message = "OCR failed, saving without OCR..."
            self._status(message)
            result.warnings.append(f"{message} ({e})")
            return None
        return text_pdf

    def _compose(self, rendered: list[RenderedPage], text_pdf: Optional[bytes]) -> bytes:
        """Build the output PDF: one full-page image per page, over the text layer if any."""
        text_doc = fitz.open(stream=text_pdf, filetype="pdf") if text_pdf else None
        output_doc = fitz.open()
        try:
            total = len(rendered)
            for i, page in enumerate(rendered):
                new_page = output_doc.new_page(width=page.size.width, height=page.size.height)
                rect = new_page.rect
                if text_doc is not None:
                    new_page.show_pdf_page(rect, text_doc, i, keep_proportion=False)
                new_page.insert_image(rect, stream=page.image.data, keep_proportion=False)
                page.image = None
                self._progress(i + 1, total)
                self._status(f"Adding page {i + 1}/{total}")

            self._status("Finalizing PDF...")
            return output_doc.tobytes(garbage=1, deflate=True)
        finally:
            output_doc.close()
            if text_doc is not None:
                text_doc.close()

    def export(self) -> ExportResult:
        """
        Export the document.

        Page failures never abort the export: the page is skipped and listed
        in the result. A cancelled export returns no PDF bytes.

        Returns:
            ExportResult
        """
        result = ExportResult()
        want_ocr = self.settings.ocr_enabled and self.ocr_engine is not None

        self._status("Rendering pages...")
        rendered = self._render_all(result, want_ocr)
        if result.cancelled:
            return result
        if not rendered:
            self.progress.error = "No page could be rendered"
            logger.error(self.progress.error)
            return result

        text_pdf = None
        if self.settings.ocr_enabled:
            text_pdf = self._run_ocr(rendered, result)
        result.ocr_used = text_pdf is not None
        for page in rendered:
            page.ocr = None

        pdf_bytes = self._compose(rendered, text_pdf)
        del rendered, text_pdf

        if self.settings.recompress_streams:
            self._status("Recompressing streams...")
            pdf_bytes, result.recompression = recompress_pdf(
                pdf_bytes, progress=self.progress_callback, yield_hook=self.yield_hook
            )

        result.pdf_bytes = pdf_bytes
        result.output_name = build_output_filename(
            self.document.source_names, self.settings.compression, self.document.pages,
            result.ocr_used, self.settings.gray_policy,
        )
        self.progress.completed = True
        logger.info(
            f"Export finished: {len(pdf_bytes)} bytes, {len(result.skipped_pages)} page(s) skipped, "
            f"OCR {'on' if result.ocr_used else 'off'}"
        )
        return result

    def export_to_file(self, output_path: Path) -> ExportResult:
        """
        Export and write the PDF.

        If output_path is a directory the generated output name is used inside
        it. Writes to a temporary file first and renames on success; the final
        path is stored in result.output_path.
        """
        output_path = Path(output_path)
        if not output_path.is_dir():
            writable, error = check_output_writable(output_path)
            if not writable:
                self.progress.error = error
                logger.error(error)
                return ExportResult()

        result = self.export()
        if not result.success:
            return result
        if output_path.is_dir():
            output_path = output_path / result.output_name

        temp_path = output_path.with_suffix(".tmp.pdf")
        try:
            temp_path.write_bytes(result.pdf_bytes)
            if output_path.exists():
                output_path.unlink()
            shutil.move(str(temp_path), str(output_path))
        except OSError as e:
            logger.exception("Writing output failed")
            self.progress.error = str(e)
            self._cleanup_temp(temp_path)
            result.pdf_bytes = b""
            return result

        result.output_path = output_path
        logger.info(f"Export completed: {output_path}")
        return result

    def _cleanup_temp(self, temp_path: Path) -> None:
        """Clean up temporary file."""
        try:
            if temp_path.exists():
                temp_path.unlink()
        except OSError as e:
            logger.warning(f"Failed to clean up temp file: {e}")


# ============================================
# Output naming
# ============================================

COMPRESSION_LABELS = {
    CompressionTier.NONE: "",
    CompressionTier.LOW: "lowcomp",
    CompressionTier.MEDIUM: "medcomp",
    CompressionTier.HIGH: "highcomp",
}

# Earlier labels win ties; color ("") only loses to a strictly larger count
MODE_LABEL_ORDER = ("gray4", "gray8", "grayjpg", "bw", "bwprog")


def sanitize_filename_part(value: str, max_length: int = 40) -> str:
    """Strip characters that are unsafe in file names."""
    cleaned = re.sub(r'[/\\?%*:|"<>]', "", value or "")
    cleaned = re.sub(r"\s+", "-", cleaned)
    cleaned = re.sub(r"-+", "-", cleaned)
    cleaned = re.sub(r"^[-_.]+|[-_.]+$", "", cleaned)[:max_length]
    return cleaned or "file"


def mode_label(mode: ColorMode, tier: CompressionTier, gray_policy: GrayPolicy) -> str:
    """Short label describing how a page of this mode is encoded."""
    if mode == ColorMode.BW_ADAPTIVE:
        return "bwprog"
    if mode == ColorMode.BW_OTSU:
        return "bw"
    if mode == ColorMode.GRAY:
        if tier == CompressionTier.NONE:
            return "gray8"
        return "gray4" if gray_policy == GrayPolicy.POSTERIZE else "grayjpg"
    return ""


def most_common_mode_label(pages: list[Page], tier: CompressionTier, gray_policy: GrayPolicy) -> str:
    if not pages:
        return "color"
    counts = Counter(mode_label(p.color_mode, tier, gray_policy) for p in pages)
    best = ""
    for label in MODE_LABEL_ORDER:
        if counts[label] > counts[best]:
            best = label
    return best


def build_output_filename(
    stems: list[str],
    tier: CompressionTier,
    pages: list[Page],
    ocr_used: bool,
    gray_policy: GrayPolicy = GrayPolicy.JPEG,
) -> str:
    """
    Build "<base>_<compression>_<mode>_<ocr>.pdf".

    Empty parts are left out. The base is the input stem, or "merged" when
    several inputs were combined.
    """
    unique = list(dict.fromkeys(sanitize_filename_part(s) for s in stems if s))
    base = unique[0] if len(unique) == 1 else "merged"
    parts = [base, COMPRESSION_LABELS[tier], most_common_mode_label(pages, tier, gray_policy), "ocr" if ocr_used else ""]
    return "_".join(sanitize_filename_part(p, 24) for p in parts if p) + ".pdf"


def check_output_writable(path: Path) -> tuple[bool, str]:
    """
    Check if output path is writable.

    Returns:
        Tuple of (is_writable, error_message)
    """
    try:
        if path.exists():
            # Try to open for append to check lock
            with open(path, "a"):
                pass
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch()
            path.unlink()
        return True, ""
    except PermissionError:
        return False, f"File is locked or permission denied: {path}"
    except OSError as e:
        return False, str(e)
