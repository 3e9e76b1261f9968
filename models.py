"""
Data models for the scanned-page cleaner.
Contains the operation log, page/document model, settings and shared error types.
"""

from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING
from enum import Enum
import re
import threading
import json
from pathlib import Path

if TYPE_CHECKING:
    import numpy as np
    from source import SourceReference


# ============================================
# Errors
# ============================================

class PageCleanerError(Exception):
    """Base class for all errors raised by the page cleaner."""


class InvalidOperation(PageCleanerError, ValueError):
    """An operation failed input validation and was not appended."""


class BackendUnavailable(PageCleanerError):
    """The binarization or OCR backend is missing or not ready."""


class RenderFailure(PageCleanerError):
    """A single page could not be rendered."""

    def __init__(self, page_id: str, message: str):
        super().__init__(f"{page_id}: {message}")
        self.page_id = page_id


class OCRFailure(PageCleanerError):
    """The OCR engine failed or produced unreadable output."""


class RecompressionSkip(PageCleanerError):
    """A stream was excluded from recompression. Not a failure."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StructuralParseFailure(PageCleanerError):
    """The PDF has no locatable xref / trailer / startxref."""


class MutationInProgress(PageCleanerError):
    """A document mutation was requested while another one is running."""


class PoolTerminated(PageCleanerError):
    """The render worker pool was shut down before the task completed."""


class TaskTimeout(PageCleanerError):
    """A render worker did not finish its task in time."""


# ============================================
# Enums
# ============================================

class ColorMode(Enum):
    """Color transform applied to a page."""
    COLOR = "color"
    GRAY = "gray"
    BW_ADAPTIVE = "bw-adaptive"
    BW_OTSU = "bw-otsu"

    @property
    def is_bw(self) -> bool:
        return self in (ColorMode.BW_ADAPTIVE, ColorMode.BW_OTSU)

    @property
    def family(self) -> str:
        """Key into the per-mode lookup tables (color / gray / bw)."""
        if self.is_bw:
            return "bw"
        return self.value


class SplitSide(Enum):
    """Which half of a double page a Split keeps."""
    LEFT = "left"
    RIGHT = "right"


class CompressionTier(Enum):
    """Export compression level."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class GrayPolicy(Enum):
    """How gray pages are encoded when compression is enabled."""
    JPEG = "jpeg"
    POSTERIZE = "posterize"


class BackendPolicy(Enum):
    """What the encoder does with a B/W page that never got binarized."""
    SKIP = "skip"    # Serve the untransformed raster with a warning
    ABORT = "abort"  # Drop the page from the export


# ============================================
# Operations
# ============================================

@dataclass(frozen=True)
class Rotate:
    """Clockwise rotation by a multiple of 90 degrees."""
    degrees: int = 90
    type: str = field(default="rotate", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "degrees": self.degrees}


@dataclass(frozen=True)
class Split:
    """Keep one half of a double page."""
    side: SplitSide = SplitSide.LEFT
    type: str = field(default="split", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "side": self.side.value}


@dataclass(frozen=True)
class ColorModeOp:
    """Switch the page's color mode. The last one in the log wins."""
    mode: ColorMode = ColorMode.COLOR
    type: str = field(default="colorMode", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "mode": self.mode.value}


@dataclass(frozen=True)
class RemoveShading:
    """Flatten uneven scan lighting toward a white background."""
    type: str = field(default="removeShading", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type}


@dataclass(frozen=True)
class EnhanceContrast:
    """Stretch the luma range to the full 0..255 scale."""
    type: str = field(default="enhanceContrast", init=False)

    def to_dict(self) -> dict:
        return {"type": self.type}


Operation = Rotate | Split | ColorModeOp | RemoveShading | EnhanceContrast

GEOMETRIC_OPERATIONS = (Rotate, Split)

# Narrowest page, in points, that can still be split in two
MIN_SPLIT_WIDTH = 2


def operation_from_dict(data: dict) -> Operation:
    """Deserialize a single operation."""
    kind = data.get("type")
    try:
        if kind == "rotate":
            return Rotate(int(data["degrees"]))
        if kind == "split":
            return Split(SplitSide(data["side"]))
        if kind == "colorMode":
            return ColorModeOp(ColorMode(data["mode"]))
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidOperation(f"Malformed {kind} operation: {data!r}") from e
    if kind == "removeShading":
        return RemoveShading()
    if kind == "enhanceContrast":
        return EnhanceContrast()
    raise InvalidOperation(f"Unknown operation type: {kind!r}")


def validate_operation(op: Operation) -> None:
    """Raise InvalidOperation if op cannot be appended to a log."""
    if isinstance(op, Rotate):
        if isinstance(op.degrees, bool) or not isinstance(op.degrees, int) or op.degrees % 90 != 0:
            raise InvalidOperation(f"Rotation must be a multiple of 90 degrees, got {op.degrees!r}")
    elif isinstance(op, Split):
        if not isinstance(op.side, SplitSide):
            raise InvalidOperation(f"Unknown split side: {op.side!r}")
    elif isinstance(op, ColorModeOp):
        if not isinstance(op.mode, ColorMode):
            raise InvalidOperation(f"Unknown color mode: {op.mode!r}")
    elif not isinstance(op, (RemoveShading, EnhanceContrast)):
        raise InvalidOperation(f"Not an operation: {op!r}")


def append_operation(log: list[Operation], op: Operation) -> list[Operation]:
    """Validate and append an operation. Returns the same list."""
    validate_operation(op)
    log.append(op)
    return log


def clone_log(log: list[Operation]) -> list[Operation]:
    """Deep copy of an operation log."""
    return [operation_from_dict(op.to_dict()) for op in log]


def effective_color_mode(log: list[Operation]) -> ColorMode:
    """Mode of the last ColorModeOp in the log, or COLOR if there is none."""
    for op in reversed(log):
        if isinstance(op, ColorModeOp):
            return op.mode
    return ColorMode.COLOR


def effective_rotation(log: list[Operation]) -> int:
    """Total rotation in degrees, normalized to 0..359."""
    total = sum(op.degrees for op in log if isinstance(op, Rotate))
    return ((total % 360) + 360) % 360


def split_width(width: float, side: SplitSide) -> float:
    """Width of one half. Integral widths give the odd column to the right half."""
    if float(width).is_integer():
        left = int(width) // 2
        return float(left if side == SplitSide.LEFT else int(width) - left)
    return width / 2


@dataclass(frozen=True)
class PageSize:
    """Page size in points (1/72 inch)."""
    width: float
    height: float

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: dict) -> "PageSize":
        return cls(width=float(data["width"]), height=float(data["height"]))


def effective_page_size(base: PageSize, log: list[Operation]) -> PageSize:
    """Fold the base size through the geometric operations of the log."""
    width, height = base.width, base.height
    for op in log:
        if isinstance(op, Rotate) and op.degrees % 180 != 0:
            width, height = height, width
        elif isinstance(op, Split):
            width = split_width(width, op.side)
    return PageSize(width, height)


def compact_log(log: list[Operation]) -> list[Operation]:
    """
    Drop entries that no longer affect the output.

    Only the last ColorModeOp survives and RemoveShading / EnhanceContrast
    are kept once each. Geometric entries keep their relative order.
    """
    last_mode = None
    for i in range(len(log) - 1, -1, -1):
        if isinstance(log[i], ColorModeOp):
            last_mode = i
            break

    compacted: list[Operation] = []
    seen_pixel_ops: set[str] = set()
    for i, op in enumerate(log):
        if isinstance(op, ColorModeOp) and i != last_mode:
            continue
        if isinstance(op, (RemoveShading, EnhanceContrast)):
            if op.type in seen_pixel_ops:
                continue
            seen_pixel_ops.add(op.type)
        compacted.append(op)
    return compacted


# ============================================
# Page / Document
# ============================================

_page_id_lock = threading.Lock()
_last_page_id = 0
PAGE_ID_RE = re.compile(r"^page_(\d+)$")


def generate_page_id() -> str:
    """Create a page id that is never reused within the process."""
    global _last_page_id
    with _page_id_lock:
        _last_page_id += 1
        return f"page_{_last_page_id}"


def reserve_page_id(page_id: str) -> None:
    """Make sure generate_page_id never hands out an id loaded from a session."""
    global _last_page_id
    match = PAGE_ID_RE.match(page_id)
    if match:
        with _page_id_lock:
            _last_page_id = max(_last_page_id, int(match.group(1)))


@dataclass
class Page:
    """One output page: a source page index plus its edit log."""
    source_page_index: int
    base_size: PageSize
    operations: list[Operation] = field(default_factory=list)
    selected: bool = False
    id: str = field(default_factory=generate_page_id)
    preview: Optional["np.ndarray"] = field(default=None, repr=False, compare=False)

    @property
    def color_mode(self) -> ColorMode:
        return effective_color_mode(self.operations)

    @property
    def rotation(self) -> int:
        return effective_rotation(self.operations)

    @property
    def size(self) -> PageSize:
        """Effective page size in points after the log is applied."""
        return effective_page_size(self.base_size, self.operations)

    def append(self, op: Operation) -> None:
        """Append an operation and drop the now stale preview."""
        append_operation(self.operations, op)
        self.preview = None

    def split(self) -> tuple["Page", "Page"]:
        """
        Create the left and right halves as new pages with fresh ids.

        Raises:
            InvalidOperation: if the page is too narrow to split
        """
        width = self.size.width
        if width < MIN_SPLIT_WIDTH:
            raise InvalidOperation(f"Page {self.id} is too narrow to split ({width:g} pt)")
        halves = []
        for side in (SplitSide.LEFT, SplitSide.RIGHT):
            log = clone_log(self.operations)
            append_operation(log, Split(side))
            halves.append(Page(
                source_page_index=self.source_page_index,
                base_size=self.base_size,
                operations=log,
            ))
        return halves[0], halves[1]

    def snapshot(self) -> "PageSnapshot":
        return PageSnapshot(
            id=self.id,
            source_page_index=self.source_page_index,
            base_size=self.base_size,
            operations=tuple(clone_log(self.operations)),
            selected=self.selected,
        )

    def to_dict(self) -> dict:
        """Serialize to dictionary. The log is compacted first."""
        return {
            "id": self.id,
            "source_page_index": self.source_page_index,
            "base_size": self.base_size.to_dict(),
            "operations": [op.to_dict() for op in compact_log(self.operations)],
            "selected": self.selected,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Page":
        """Deserialize from dictionary."""
        page = cls(
            source_page_index=int(data["source_page_index"]),
            base_size=PageSize.from_dict(data["base_size"]),
            operations=[operation_from_dict(op) for op in data.get("operations", [])],
            selected=bool(data.get("selected", False)),
        )
        if "id" in data:
            page.id = str(data["id"])
            reserve_page_id(page.id)
        return page


@dataclass(frozen=True)
class PageSnapshot:
    """Immutable logical state of one page. Never holds pixels."""
    id: str
    source_page_index: int
    base_size: PageSize
    operations: tuple
    selected: bool

    def restore(self, preview: Optional["np.ndarray"] = None) -> Page:
        return Page(
            source_page_index=self.source_page_index,
            base_size=self.base_size,
            operations=clone_log(list(self.operations)),
            selected=self.selected,
            id=self.id,
            preview=preview,
        )


@dataclass(frozen=True)
class HistorySnapshot:
    """State of every page of a document at one instant."""
    pages: tuple[PageSnapshot, ...]
    label: str = ""


@dataclass
class Document:
    """Ordered pages over a single source PDF."""
    pages: list[Page] = field(default_factory=list)
    source: Optional["SourceReference"] = field(default=None, repr=False)
    source_names: list[str] = field(default_factory=list)

    @classmethod
    def from_source(cls, source: "SourceReference") -> "Document":
        """Create one page per source page, with an empty log."""
        pages = [
            Page(source_page_index=i, base_size=source.page_size(i))
            for i in range(source.page_count)
        ]
        return cls(pages=pages, source=source, source_names=list(source.names))

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def selected_pages(self) -> list[Page]:
        return [p for p in self.pages if p.selected]

    def find_page(self, page_id: str) -> Optional[Page]:
        """Find a page by its id."""
        for page in self.pages:
            if page.id == page_id:
                return page
        return None

    def snapshot(self, label: str = "") -> HistorySnapshot:
        return HistorySnapshot(pages=tuple(p.snapshot() for p in self.pages), label=label)

    def restore(self, snapshot: HistorySnapshot) -> None:
        """
        Replace all pages with the snapshot state.

        Previews survive only for pages whose id and log are unchanged; the
        rest are regenerated lazily by the preview cache.
        """
        current = {p.id: p for p in self.pages}
        restored = []
        for snap in snapshot.pages:
            old = current.get(snap.id)
            keep = old is not None and tuple(old.operations) == snap.operations
            restored.append(snap.restore(preview=old.preview if keep else None))
        self.pages = restored

    def to_dict(self) -> dict:
        """Serialize to dictionary."""
        return {
            "source_names": list(self.source_names),
            "pages": [p.to_dict() for p in self.pages],
        }

    @classmethod
    def from_dict(cls, data: dict, source: Optional["SourceReference"] = None) -> "Document":
        """Deserialize from dictionary."""
        return cls(
            pages=[Page.from_dict(p) for p in data.get("pages", [])],
            source=source,
            source_names=list(data.get("source_names", [])),
        )

    def save_session(self, path: Path) -> None:
        """Save the page list and logs to a JSON file."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load_session(cls, path: Path, source: Optional["SourceReference"] = None) -> "Document":
        """Load a session JSON file written by save_session."""
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f), source=source)


# ============================================
# Settings
# ============================================

# Default render scale when a page's native density is unknown (2.5 * 72 = 180 DPI)
DEFAULT_RENDER_SCALE = 2.5

# Width of preview rasters in pixels
PREVIEW_WIDTH = 300

# Maximum number of undo snapshots kept
HISTORY_CAPACITY = 50


@dataclass
class Settings:
    """Application settings for rendering and export."""
    # Export settings
    compression: CompressionTier = CompressionTier.MEDIUM
    gray_policy: GrayPolicy = GrayPolicy.JPEG
    on_backend_unavailable: BackendPolicy = BackendPolicy.SKIP
    recompress_streams: bool = False

    # OCR ("none" disables it)
    ocr_language: str = "none"

    # Batching / workers
    batch_size: int = 4
    render_workers: int = 1
    task_timeout: float = 60.0

    # Rendering
    default_scale: float = DEFAULT_RENDER_SCALE
    preview_width: int = PREVIEW_WIDTH

    @property
    def ocr_enabled(self) -> bool:
        return bool(self.ocr_language) and self.ocr_language != "none"

    def to_dict(self) -> dict:
        """Serialize settings to dictionary."""
        return {
            "compression": self.compression.value,
            "gray_policy": self.gray_policy.value,
            "on_backend_unavailable": self.on_backend_unavailable.value,
            "recompress_streams": self.recompress_streams,
            "ocr_language": self.ocr_language,
            "batch_size": self.batch_size,
            "render_workers": self.render_workers,
            "task_timeout": self.task_timeout,
            "default_scale": self.default_scale,
            "preview_width": self.preview_width,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        """Deserialize settings from dictionary."""
        settings = cls()

        if "compression" in data:
            try:
                settings.compression = CompressionTier(data["compression"])
            except ValueError:
                pass
        if "gray_policy" in data:
            try:
                settings.gray_policy = GrayPolicy(data["gray_policy"])
            except ValueError:
                pass
        if "on_backend_unavailable" in data:
            try:
                settings.on_backend_unavailable = BackendPolicy(data["on_backend_unavailable"])
            except ValueError:
                pass
        if "recompress_streams" in data:
            settings.recompress_streams = bool(data["recompress_streams"])
        if "ocr_language" in data:
            settings.ocr_language = str(data["ocr_language"])
        if "batch_size" in data:
            settings.batch_size = max(1, int(data["batch_size"]))
        if "render_workers" in data:
            settings.render_workers = max(1, int(data["render_workers"]))
        if "task_timeout" in data:
            settings.task_timeout = float(data["task_timeout"])
        if "default_scale" in data:
            settings.default_scale = float(data["default_scale"])
        if "preview_width" in data:
            settings.preview_width = int(data["preview_width"])

        return settings

    def save_to_file(self, path: Path) -> None:
        """Save settings to JSON file."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load_from_file(cls, path: Path) -> "Settings":
        """Load settings from JSON file, or return defaults if file doesn't exist."""
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return cls.from_dict(json.load(f))
            except (json.JSONDecodeError, KeyError, ValueError):
                pass
        return cls()


@dataclass
class ExportProgress:
    """Progress information for export operation."""
    current_page: int = 0
    total_pages: int = 0
    message: str = ""
    cancelled: bool = False
    error: Optional[str] = None
    completed: bool = False

    @property
    def progress_fraction(self) -> float:
        """Get progress as a fraction (0.0 to 1.0)."""
        if self.total_pages == 0:
            return 0.0
        return self.current_page / self.total_pages
