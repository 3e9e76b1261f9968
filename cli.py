"""
CLI wrapper for the scanned page cleaner.
Applies page edits to one or more PDFs and exports the result.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from PIL import Image

from models import (
    Document, Settings, ColorMode, CompressionTier, GrayPolicy, BackendPolicy, PageCleanerError,
)
from source import SourceReference
from processor import PreviewCache
from backends import OpenCVBinarizer, TesseractOCR
from planner import ResolutionPlanner
from editor import DocumentEditor
from exporter import PDFExporter
from workers import RenderWorkerPool

logger = logging.getLogger(__name__)

# Configuration file path
CONFIG_PATH = Path("config.json")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Clean up scanned book pages inside PDFs and re-export them.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s scan.pdf
  %(prog)s scan.pdf -o clean.pdf --color-mode bw-otsu --compression high
  %(prog)s scan.pdf --pages 1-4 --split
  %(prog)s part1.pdf part2.pdf --pages 3 --rotate 90 --ocr-lang eng
  %(prog)s scan.pdf --pages 2,5 --delete --recompress

Without -o the output is written next to the first input, named after the
input, the compression level, the dominant color mode and OCR.
"""
    )

    parser.add_argument(
        "inputs",
        type=str,
        nargs="+",
        help="Input PDF file path(s); several files are concatenated"
    )

    parser.add_argument(
        "-o", "--output",
        type=str,
        default=None,
        help="Output PDF file path or directory (default: next to the first input)"
    )

    parser.add_argument(
        "--pages",
        type=str,
        default=None,
        help="Pages to edit, e.g. '1,3-5' (default: all pages)"
    )

    parser.add_argument(
        "--rotate",
        type=int,
        default=None,
        help="Rotate the pages clockwise by a multiple of 90 degrees"
    )

    parser.add_argument(
        "--split",
        action="store_true",
        help="Split the pages into left and right halves"
    )

    parser.add_argument(
        "--delete",
        action="store_true",
        help="Delete the pages"
    )

    parser.add_argument(
        "--move",
        type=str,
        action="append",
        default=[],
        metavar="FROM:TO",
        help="Move page FROM to position TO (1-based, applied after the other edits, repeatable)"
    )

    parser.add_argument(
        "--color-mode",
        type=str,
        choices=[m.value for m in ColorMode],
        default=None,
        help="Color mode for the pages"
    )

    parser.add_argument(
        "--remove-shading",
        action="store_true",
        help="Flatten uneven scan lighting"
    )

    parser.add_argument(
        "--enhance-contrast",
        action="store_true",
        help="Stretch contrast to the full range"
    )

    parser.add_argument(
        "--compression",
        type=str,
        choices=[t.value for t in CompressionTier],
        default=None,
        help="Compression level (default: from config, else medium)"
    )

    parser.add_argument(
        "--gray-policy",
        type=str,
        choices=[p.value for p in GrayPolicy],
        default=None,
        help="Encoding of gray pages when compressing (default: jpeg)"
    )

    parser.add_argument(
        "--on-backend-unavailable",
        type=str,
        choices=[p.value for p in BackendPolicy],
        default=None,
        help="What to do with B/W pages that could not be binarized (default: skip)"
    )

    parser.add_argument(
        "--ocr-lang",
        type=str,
        default=None,
        help="Tesseract language for the OCR text layer, 'none' to disable (default: none)"
    )

    parser.add_argument(
        "--recompress",
        action="store_true",
        help="Recompress the output's Flate streams at maximum level"
    )

    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of render worker processes (default: 1, no pool)"
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Pages rendered per batch (default: 4)"
    )

    parser.add_argument(
        "--config",
        type=str,
        default=str(CONFIG_PATH),
        help="Settings JSON file (default: config.json)"
    )

    parser.add_argument(
        "--load-session",
        type=str,
        default=None,
        help="Start from a page list saved with --save-session"
    )

    parser.add_argument(
        "--save-session",
        type=str,
        default=None,
        help="Save the edited page list to a JSON file"
    )

    parser.add_argument(
        "--thumbnails",
        type=str,
        default=None,
        help="Write a preview PNG per edited page into this directory"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output"
    )

    return parser.parse_args(argv)


def setup_logging(verbose: bool) -> None:
    """Log to app.log, and to the console when verbose."""
    logging.basicConfig(
        filename='app.log',
        level=logging.DEBUG,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    if verbose:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.INFO)
        console.setFormatter(logging.Formatter('%(levelname)s - %(message)s'))
        logging.getLogger().addHandler(console)


def parse_page_ranges(text: str, page_count: int) -> list[int]:
    """
    Parse '1,3-5' into 0-based page indices.

    Raises:
        ValueError: malformed range or page out of range
    """
    indices: list[int] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            first, last = (int(x) for x in part.split("-", 1))
        else:
            first = last = int(part)
        if first < 1 or last > page_count or first > last:
            raise ValueError(f"Invalid page range '{part}' for a {page_count} page document")
        indices.extend(range(first - 1, last))
    if not indices:
        raise ValueError("No pages given")
    return sorted(set(indices))


def create_settings(args: argparse.Namespace) -> Settings:
    """Load settings from the config file and apply command-line overrides."""
    settings = Settings.load_from_file(Path(args.config))

    if args.compression is not None:
        settings.compression = CompressionTier(args.compression)
    if args.gray_policy is not None:
        settings.gray_policy = GrayPolicy(args.gray_policy)
    if args.on_backend_unavailable is not None:
        settings.on_backend_unavailable = BackendPolicy(args.on_backend_unavailable)
    if args.ocr_lang is not None:
        settings.ocr_language = args.ocr_lang
    if args.recompress:
        settings.recompress_streams = True
    if args.workers is not None:
        settings.render_workers = max(1, args.workers)
    if args.batch_size is not None:
        settings.batch_size = max(1, args.batch_size)

    return settings


def apply_edits(editor: DocumentEditor, args: argparse.Namespace) -> None:
    """Apply the requested edits in a fixed order."""
    document = editor.document
    if args.pages:
        editor.select_indices(parse_page_ranges(args.pages, document.page_count))
    else:
        editor.select_all()

    if args.rotate is not None:
        editor.rotate_selected(args.rotate)
    if args.color_mode is not None:
        editor.set_color_mode(args.color_mode)
    if args.remove_shading:
        editor.remove_shading_selected()
    if args.enhance_contrast:
        editor.enhance_contrast_selected()
    if args.split:
        editor.split_selected()
    if args.delete:
        editor.delete_selected()

    for move in args.move:
        src, _, dst = move.partition(":")
        editor.move_page(int(src) - 1, int(dst) - 1)

    editor.clear_selection()


def write_thumbnails(document: Document, settings: Settings, binarizer, directory: Path) -> int:
    """Save the preview of every page as PNG."""
    directory.mkdir(parents=True, exist_ok=True)
    cache = PreviewCache(document.source, width=settings.preview_width, binarizer=binarizer)
    for i, page in enumerate(document.pages):
        preview = cache.get_preview(page)
        Image.fromarray(preview[:, :, :3]).save(directory / f"{i + 1:04d}_{page.id}.png")
    return document.page_count


def progress_callback(done: int, total: int) -> None:
    """Print progress to console."""
    pct = int(done / total * 100) if total else 0
    print(f"\rProcessing {done}/{total} ({pct}%)", end="", flush=True)


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    args = parse_args(argv)
    setup_logging(args.verbose)

    # Validate input files
    input_paths = [Path(p) for p in args.inputs]
    for input_path in input_paths:
        if not input_path.exists():
            print(f"Error: Input file not found: {input_path}", file=sys.stderr)
            return 1
        if not input_path.suffix.lower() == ".pdf":
            print(f"Warning: Input file may not be a PDF: {input_path}", file=sys.stderr)

    settings = create_settings(args)

    if args.verbose:
        print(f"Inputs: {', '.join(str(p) for p in input_paths)}")
        print(f"Compression: {settings.compression.value}")
        print(f"Gray policy: {settings.gray_policy.value}")
        print(f"OCR language: {settings.ocr_language}")
        print(f"Workers: {settings.render_workers}")
        print()

    try:
        source = SourceReference.from_paths(input_paths)
    except (RuntimeError, ValueError, OSError) as e:
        print(f"Error: Could not open input: {e}", file=sys.stderr)
        return 1

    pool = None
    try:
        if args.load_session:
            document = Document.load_session(Path(args.load_session), source)
        else:
            document = Document.from_source(source)

        if args.verbose:
            print(f"Document has {document.page_count} pages")

        editor = DocumentEditor(document)
        apply_edits(editor, args)

        if args.save_session:
            document.save_session(Path(args.save_session))
            logger.info(f"Session saved to {args.save_session}")

        binarizer = OpenCVBinarizer()
        if args.thumbnails:
            count = write_thumbnails(document, settings, binarizer, Path(args.thumbnails))
            print(f"Wrote {count} thumbnails to {args.thumbnails}")

        if document.page_count == 0:
            print("Error: No pages left to export", file=sys.stderr)
            return 1

        ocr_engine = TesseractOCR() if settings.ocr_enabled else None
        if settings.render_workers > 1:
            pool = RenderWorkerPool(source, settings)

        exporter = PDFExporter(
            document,
            settings,
            planner=ResolutionPlanner(settings.default_scale),
            binarizer=binarizer,
            ocr_engine=ocr_engine,
            progress_callback=progress_callback,
            status_callback=(lambda msg: logger.info(msg)) if args.verbose else None,
            worker_pool=pool,
        )

        output_path = Path(args.output) if args.output else input_paths[0].resolve().parent
        print(f"Processing {document.page_count} pages...")
        result = exporter.export_to_file(output_path)
        print()  # New line after progress

        for warning in result.warnings:
            print(f"Warning: {warning}", file=sys.stderr)

        if result.success and result.output_path is not None:
            print(f"Successfully exported to: {result.output_path}")
            if result.recompression is not None and args.verbose:
                print(f"Recompression saved {result.recompression.bytes_saved} bytes")
            return 0

        error = exporter.progress.error or "Unknown error"
        print(f"Export failed: {error}", file=sys.stderr)
        return 1

    except (PageCleanerError, ValueError, IndexError, OSError) as e:
        logger.exception("CLI run failed")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if pool is not None:
            pool.shutdown()
        source.close()


if __name__ == "__main__":
    sys.exit(main())
