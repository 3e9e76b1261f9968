"""
Resolution planning.

Infers the native pixel density of a scanned page from the images its content
stream paints, and picks the working resolution for preview and export renders.
"""

import fitz  # PyMuPDF
import math
import re
from dataclasses import dataclass
from typing import Iterator, Optional, Union
import logging

from models import ColorMode, CompressionTier, PageSize, DEFAULT_RENDER_SCALE

logger = logging.getLogger(__name__)

# Export DPI ceilings per color family and compression tier
TARGET_DPI = {
    "color": {"low": 180, "medium": 150, "high": 120},
    "gray": {"low": 200, "medium": 150, "high": 120},
    "bw": {"low": 260, "medium": 200, "high": 150},
}

IDENTITY = (1.0, 0.0, 0.0, 1.0, 0.0, 0.0)

Matrix = tuple[float, float, float, float, float, float]
DrawStep = tuple  # ("save",) ("restore",) ("transform", m) ("set_transform", m) ("paint_image", w, h)


def multiply(m: Matrix, ctm: Matrix) -> Matrix:
    """Compose m (applied first) with the current transform ctm."""
    a, b, c, d, e, f = m
    A, B, C, D, E, F = ctm
    return (
        a * A + b * C,
        a * B + b * D,
        c * A + d * C,
        c * B + d * D,
        e * A + f * C + E,
        e * B + f * D + F,
    )


@dataclass
class ImageMetrics:
    """Density and covered area of one painted image."""
    dpi: float
    area: float


def image_metrics(ctm: Matrix, width_px: int, height_px: int) -> Optional[ImageMetrics]:
    """
    Measure an image painted under ctm.

    Images are drawn into the unit square, so the matrix columns give the
    rendered width and height in points.
    """
    a, b, c, d = ctm[:4]
    width_pts = math.hypot(a, b)
    height_pts = math.hypot(c, d)
    if not (width_pts > 0 and height_pts > 0) or not math.isfinite(width_pts * height_pts):
        return None
    dpi_x = width_px / (width_pts / 72.0)
    dpi_y = height_px / (height_pts / 72.0)
    return ImageMetrics(dpi=min(dpi_x, dpi_y), area=abs(a * d - b * c))


class ResolutionPlanner:
    """
    Chooses the pixel density to render a page at.

    The page's drawing program is walked as a stack machine; the image
    covering the largest area (at least a quarter of the page) decides the
    page DPI.
    """

    MAX_DPI = 600.0
    MIN_COVERAGE = 0.25
    FULL_PAGE_COVERAGE = 0.9

    def __init__(self, default_scale: float = DEFAULT_RENDER_SCALE):
        self.default_scale = default_scale
        self._cache: dict[int, Optional[float]] = {}

    @property
    def default_dpi(self) -> float:
        return self.default_scale * 72.0

    def plan(self, program: list[DrawStep], page_size: PageSize) -> Optional[float]:
        """
        Infer the native DPI from a drawing program.

        Returns:
            DPI capped at MAX_DPI, or None when no image qualifies
        """
        page_area = page_size.width * page_size.height
        ctm: Matrix = IDENTITY
        stack: list[Matrix] = []
        best: Optional[ImageMetrics] = None

        for step in program:
            kind = step[0]
            if kind == "save":
                stack.append(ctm)
            elif kind == "restore":
                ctm = stack.pop() if stack else IDENTITY
            elif kind == "transform":
                ctm = multiply(step[1], ctm)
            elif kind == "set_transform":
                ctm = tuple(step[1])
            elif kind == "paint_image":
                width_px, height_px = step[1], step[2]
                if not width_px or not height_px:
                    continue
                metrics = image_metrics(ctm, width_px, height_px)
                if metrics is None:
                    continue
                if page_area > 0 and metrics.area / page_area >= self.FULL_PAGE_COVERAGE:
                    dpi_x = width_px / (page_size.width / 72.0)
                    dpi_y = height_px / (page_size.height / 72.0)
                    metrics = ImageMetrics(dpi=min(dpi_x, dpi_y), area=page_area)
                if page_area > 0 and metrics.area / page_area < self.MIN_COVERAGE:
                    continue
                if best is None or metrics.area > best.area:
                    best = metrics

        if best is None or not (best.dpi > 0) or not math.isfinite(best.dpi):
            return None
        return min(best.dpi, self.MAX_DPI)

    def source_dpi(self, source, index: int) -> Optional[float]:
        """Native DPI of a source page, cached. None if unknown."""
        if index not in self._cache:
            try:
                page = source.handle[index]
                box = page.cropbox
                program = content_program(source.handle, page)
                self._cache[index] = self.plan(program, PageSize(box.width, box.height))
            except (RuntimeError, ValueError, IndexError) as e:
                logger.warning(f"Could not analyze page {index + 1} images: {e}")
                self._cache[index] = None
            logger.debug(f"Page {index + 1} native DPI: {self._cache[index]}")
        return self._cache[index]

    def working_dpi(self, source, index: int) -> float:
        """Native DPI when known, else the default scale."""
        dpi = self.source_dpi(source, index)
        return dpi if dpi else self.default_dpi

    @staticmethod
    def export_dpi(source_dpi: float, mode: ColorMode, tier: CompressionTier) -> float:
        """Bound the source DPI by the tier target. NONE keeps the source DPI."""
        if tier == CompressionTier.NONE:
            return source_dpi
        return min(source_dpi, TARGET_DPI[mode.family][tier.value])


# ============================================
# Content stream parsing
# ============================================

WHITESPACE = b" \t\r\n\x0c\x00"
DELIMITERS = b"()<>[]{}/%"
NUMBER_RE = re.compile(rb"^[+-]?(\d+\.?\d*|\.\d+)$")
INLINE_END_RE = re.compile(rb"[ \t\r\n\x0c\x00]EI(?=[ \t\r\n\x0c\x00/]|$)")


class Name(str):
    """A PDF name (without the leading slash)."""


class Keyword(str):
    """A bare content stream keyword (operator)."""


_ARRAY_START = object()
_ARRAY_END = object()
_DICT_START = object()
_DICT_END = object()

Operand = Union[float, Name, bytes, list, dict, bool, None]


class ContentLexer:
    """Tokenizer for PDF content streams."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def _skip_whitespace(self) -> None:
        data, n = self.data, len(self.data)
        while self.pos < n:
            ch = data[self.pos]
            if ch in WHITESPACE:
                self.pos += 1
            elif ch == 0x25:  # %
                while self.pos < n and data[self.pos] not in b"\r\n":
                    self.pos += 1
            else:
                break

    def _read_regular(self) -> bytes:
        start = self.pos
        data, n = self.data, len(self.data)
        while self.pos < n and data[self.pos] not in WHITESPACE and data[self.pos] not in DELIMITERS:
            self.pos += 1
        return data[start:self.pos]

    def _read_literal_string(self) -> bytes:
        data, n = self.data, len(self.data)
        self.pos += 1
        depth = 1
        out = bytearray()
        while self.pos < n:
            ch = data[self.pos]
            if ch == 0x5C:  # backslash: keep the escaped byte as-is
                if self.pos + 1 < n:
                    out.append(data[self.pos + 1])
                self.pos += 2
                continue
            if ch == 0x28:
                depth += 1
            elif ch == 0x29:
                depth -= 1
                if depth == 0:
                    self.pos += 1
                    return bytes(out)
            out.append(ch)
            self.pos += 1
        return bytes(out)

    def _read_hex_string(self) -> bytes:
        end = self.data.find(b">", self.pos)
        if end < 0:
            end = len(self.data)
        raw = re.sub(rb"\s", b"", self.data[self.pos + 1:end])
        self.pos = end + 1
        if len(raw) % 2:
            raw += b"0"
        try:
            return bytes.fromhex(raw.decode("ascii"))
        except ValueError:
            return b""

    def next_token(self):
        """Return the next raw token, or None at end of stream."""
        self._skip_whitespace()
        data = self.data
        if self.pos >= len(data):
            return None
        ch = data[self.pos]
        if ch == 0x2F:  # /
            self.pos += 1
            return Name(self._read_regular().decode("latin-1"))
        if ch == 0x28:
            return self._read_literal_string()
        if ch == 0x3C:
            if data[self.pos + 1:self.pos + 2] == b"<":
                self.pos += 2
                return _DICT_START
            return self._read_hex_string()
        if ch == 0x3E:
            self.pos += 2 if data[self.pos + 1:self.pos + 2] == b">" else 1
            return _DICT_END
        if ch == 0x5B:
            self.pos += 1
            return _ARRAY_START
        if ch == 0x5D:
            self.pos += 1
            return _ARRAY_END
        if ch in b"{}":
            self.pos += 1
            return Keyword(chr(ch))

        word = self._read_regular()
        if NUMBER_RE.match(word):
            return float(word)
        if word == b"true":
            return True
        if word == b"false":
            return False
        if word == b"null":
            return None
        return Keyword(word.decode("latin-1"))

    def _collect(self, token):
        """Build arrays and dictionaries from their start tokens."""
        if token is _ARRAY_START:
            items = []
            while True:
                tok = self.next_token()
                if tok is None or tok is _ARRAY_END:
                    return items
                items.append(self._collect(tok))
        if token is _DICT_START:
            items = []
            while True:
                tok = self.next_token()
                if tok is None or tok is _DICT_END:
                    break
                items.append(self._collect(tok))
            return {str(items[i]): items[i + 1] for i in range(0, len(items) - 1, 2)}
        return token

    def _read_inline_image(self) -> dict:
        """Parse BI <params> ID <data> EI, returning the parameter dictionary."""
        params = []
        while True:
            tok = self.next_token()
            if tok is None:
                break
            if isinstance(tok, Keyword) and tok == "ID":
                break
            params.append(self._collect(tok))
        # One whitespace byte separates ID from the image data
        self.pos += 1
        match = INLINE_END_RE.search(self.data, self.pos)
        self.pos = match.end() if match else len(self.data)
        return {str(params[i]): params[i + 1] for i in range(0, len(params) - 1, 2)}

    def operations(self) -> Iterator[tuple[str, list]]:
        """Yield (operator, operands) pairs."""
        operands: list = []
        while True:
            tok = self.next_token()
            if tok is None:
                return
            if isinstance(tok, Keyword):
                if tok == "BI":
                    yield "BI", [self._read_inline_image()]
                else:
                    yield str(tok), operands
                operands = []
            else:
                operands.append(self._collect(tok))


def _as_number(value, default: float = 0.0) -> float:
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else default


def _parse_matrix(text: str) -> Matrix:
    numbers = [float(x) for x in re.findall(r"[+-]?(?:\d+\.?\d*|\.\d+)", text)]
    if len(numbers) != 6:
        return IDENTITY
    return tuple(numbers)


def _image_lookup(page: fitz.Page) -> tuple[dict, dict]:
    """Map (scope xref, name) to image size and to form xobject xref."""
    images = {}
    for item in page.get_images(full=True):
        xref, _smask, width, height = item[0], item[1], item[2], item[3]
        name, referencer = item[7], item[9]
        images[(referencer, name)] = (width, height)
        images.setdefault((None, name), (width, height))
    forms = {}
    for item in page.get_xobjects():
        xref, name, invoker = item[0], item[1], item[2]
        forms[(invoker, name)] = xref
        forms.setdefault((None, name), xref)
    return images, forms


def _resolve_xobject(doc: fitz.Document, scope_xref: int, name: str):
    """Look a name up in a resource dictionary: ("image", (w, h)), ("form", xref) or None."""
    try:
        kind, value = doc.xref_get_key(scope_xref, f"Resources/XObject/{name}")
        if kind != "xref":
            return None
        xref = int(value.split()[0])
        subtype = doc.xref_get_key(xref, "Subtype")[1]
        if subtype == "/Image":
            width = int(doc.xref_get_key(xref, "Width")[1])
            height = int(doc.xref_get_key(xref, "Height")[1])
            return "image", (width, height)
        if subtype == "/Form":
            return "form", xref
    except (ValueError, RuntimeError):
        return None
    return None


def content_program(doc: fitz.Document, page: fitz.Page, max_depth: int = 8) -> list[DrawStep]:
    """
    Translate a page's content stream into drawing program steps.

    q/Q become save/restore, cm becomes transform, image Do and inline
    images become paint_image. Form XObjects are expanded in place under
    their /Matrix.
    """
    images, forms = _image_lookup(page)
    program: list[DrawStep] = []

    def resolve(scope: int, name: str):
        if (scope, name) in images:
            return "image", images[(scope, name)]
        if (scope, name) in forms:
            return "form", forms[(scope, name)]
        found = _resolve_xobject(doc, scope or page.xref, name)
        if found is not None:
            return found
        if (None, name) in images:
            return "image", images[(None, name)]
        if (None, name) in forms:
            return "form", forms[(None, name)]
        return None

    def walk(content: bytes, scope: int, depth: int, active: frozenset) -> None:
        for operator, operands in ContentLexer(content).operations():
            if operator == "q":
                program.append(("save",))
            elif operator == "Q":
                program.append(("restore",))
            elif operator == "cm" and len(operands) >= 6:
                program.append(("transform", tuple(_as_number(x) for x in operands[-6:])))
            elif operator == "BI" and operands:
                params = operands[0]
                width = params.get("W", params.get("Width"))
                height = params.get("H", params.get("Height"))
                program.append(("paint_image", int(_as_number(width)), int(_as_number(height))))
            elif operator == "Do" and operands and isinstance(operands[-1], Name):
                found = resolve(scope, str(operands[-1]))
                if found is None:
                    continue
                kind, target = found
                if kind == "image":
                    program.append(("paint_image", target[0], target[1]))
                    continue
                xref = target
                if depth >= max_depth or xref in active:
                    continue
                kind, value = doc.xref_get_key(xref, "Matrix")
                program.append(("save",))
                if kind == "array":
                    program.append(("transform", _parse_matrix(value)))
                walk(doc.xref_stream(xref) or b"", xref, depth + 1, active | {xref})
                program.append(("restore",))

    walk(page.read_contents() or b"", 0, 0, frozenset())
    return program
