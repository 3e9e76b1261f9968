"""
Lossless stream recompression for finished PDFs.

Re-deflates Flate streams at the highest zlib level and rebuilds the
cross-reference table. Files whose structure cannot be located are returned
unchanged.
"""

import logging
import re
import zlib
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

from models import RecompressionSkip, StructuralParseFailure

logger = logging.getLogger(__name__)

OBJ_RE = re.compile(rb"(?<![0-9])(\d+)\s+(\d+)\s+obj\b")
STREAM_RE = re.compile(rb"(?<![A-Za-z])stream(?:\r\n|\n|\r)")
ENDSTREAM_RE = re.compile(rb"(?:\r\n|\n|\r)?endstream")
LENGTH_RE = re.compile(rb"/Length(?![0-9A-Za-z])\s+(\d+)(?!\d)(?!\s+\d+\s+R)")
INDIRECT_LENGTH_RE = re.compile(rb"/Length(?![0-9A-Za-z])\s+\d+\s+\d+\s+R")
FILTER_RE = re.compile(rb"/Filter\s*(\[[^\]]*\]|/[^\s/\[<>()]+)")
PREDICTOR_RE = re.compile(rb"/Predictor(?![0-9A-Za-z])")
XREF_RE = re.compile(rb"(?<![A-Za-z])xref\s")

TRAILER_REF_KEYS = ("Root", "Info", "Encrypt")


@dataclass
class RecompressionStats:
    """Outcome of one recompression pass."""
    streams_seen: int = 0
    streams_recompressed: int = 0
    skipped: Counter = field(default_factory=Counter)  # reason -> count
    bytes_before: int = 0
    bytes_after: int = 0
    aborted: Optional[str] = None

    @property
    def bytes_saved(self) -> int:
        return self.bytes_before - self.bytes_after


@dataclass
class _StreamObject:
    number: int
    generation: int
    start: int          # offset of "N G obj"
    end: int            # offset just after "endobj"
    dict_start: int
    dict_end: int       # offset of the "stream" keyword
    data_start: int
    data_end: int


@dataclass
class _PlainObject:
    number: int
    generation: int
    start: int
    end: int


def _scan_objects(data: bytes) -> list:
    """Locate every indirect object in file order."""
    objects = []
    pos = 0
    while True:
        match = OBJ_RE.search(data, pos)
        if match is None:
            break
        number, generation = int(match.group(1)), int(match.group(2))
        body_start = match.end()
        endobj = data.find(b"endobj", body_start)
        stream = STREAM_RE.search(data, body_start)

        if stream is not None and (endobj < 0 or stream.start() < endobj):
            dict_bytes = data[body_start:stream.start()]
            data_start = stream.end()
            data_end = None
            length = LENGTH_RE.search(dict_bytes)
            if length is not None:
                candidate = data_start + int(length.group(1))
                tail = ENDSTREAM_RE.match(data, candidate)
                if tail is not None:
                    data_end = candidate
                    after = tail.end()
            if data_end is None:
                tail = ENDSTREAM_RE.search(data, data_start)
                if tail is None:
                    raise StructuralParseFailure(f"Object {number} has no endstream")
                data_end = tail.start()
                after = tail.end()
            endobj = data.find(b"endobj", after)
            if endobj < 0:
                raise StructuralParseFailure(f"Object {number} has no endobj")
            objects.append(_StreamObject(
                number, generation, match.start(), endobj + 6,
                body_start, stream.start(), data_start, data_end,
            ))
            pos = endobj + 6
        else:
            if endobj < 0:
                raise StructuralParseFailure(f"Object {number} has no endobj")
            objects.append(_PlainObject(number, generation, match.start(), endobj + 6))
            pos = endobj + 6
    return objects


def _parse_trailer(data: bytes) -> dict[str, bytes]:
    """Extract the entries of the last trailer that must survive the rebuild."""
    if data.rfind(b"startxref") < 0:
        raise StructuralParseFailure("startxref not found")
    if XREF_RE.search(data) is None:
        raise StructuralParseFailure("xref table not found")
    start = data.rfind(b"trailer")
    if start < 0:
        raise StructuralParseFailure("trailer not found")
    end = data.find(b"startxref", start)
    trailer = data[start:end if end > 0 else len(data)]

    entries: dict[str, bytes] = {}
    for key in TRAILER_REF_KEYS:
        match = re.search(rb"/" + key.encode() + rb"\s+(\d+\s+\d+\s+R)", trailer)
        if match:
            entries[key] = match.group(1)
    match = re.search(rb"/ID\s*(\[[^\]]*\])", trailer)
    if match:
        entries["ID"] = match.group(1)
    if "Root" not in entries:
        raise StructuralParseFailure("trailer has no /Root")
    return entries


def recompress_stream(dict_bytes: bytes, raw: bytes) -> bytes:
    """
    Re-deflate one stream at level 9.

    Returns:
        The smaller of the new and the original encoding

    Raises:
        RecompressionSkip: the stream is not a plain Flate stream
    """
    if INDIRECT_LENGTH_RE.search(dict_bytes) or not LENGTH_RE.search(dict_bytes):
        raise RecompressionSkip("indirect length")
    match = FILTER_RE.search(dict_bytes)
    if match is None:
        raise RecompressionSkip("unfiltered")
    filters = re.findall(rb"/([^\s/\[\]<>()]+)", match.group(1))
    if filters != [b"FlateDecode"]:
        raise RecompressionSkip("filter")
    if PREDICTOR_RE.search(dict_bytes):
        raise RecompressionSkip("predictor")

    try:
        inflated = zlib.decompress(raw)
    except zlib.error:
        try:
            inflated = zlib.decompress(raw, -15)
        except zlib.error as e:
            raise RecompressionSkip("inflate error") from e

    deflated = zlib.compress(inflated, 9)
    return deflated if len(deflated) < len(raw) else raw


def _rebuild(data: bytes, objects: list, trailer: dict[str, bytes], stats: RecompressionStats,
             progress: Optional[Callable[[int, int], None]],
             yield_hook: Optional[Callable[[], None]]) -> bytes:
    out = bytearray()
    offsets: dict[int, tuple[int, int]] = {}
    total_streams = sum(1 for obj in objects if isinstance(obj, _StreamObject))
    done = 0

    out += data[:objects[0].start]
    previous_end = objects[0].start
    for obj in objects:
        gap = data[previous_end:obj.start]
        # Stale xref sections of incremental updates are dropped
        out += b"\n" if (b"xref" in gap or b"trailer" in gap) else gap
        offsets[obj.number] = (len(out), obj.generation)

        if isinstance(obj, _StreamObject):
            stats.streams_seen += 1
            raw = data[obj.data_start:obj.data_end]
            dict_bytes = data[obj.dict_start:obj.dict_end]
            stats.bytes_before += len(raw)
            try:
                new_raw = recompress_stream(dict_bytes, raw)
            except RecompressionSkip as skip:
                stats.skipped[skip.reason] += 1
                new_raw = raw

            if new_raw is raw:
                out += data[obj.start:obj.end]
            else:
                stats.streams_recompressed += 1
                length = LENGTH_RE.search(dict_bytes)
                out += data[obj.start:obj.dict_start + length.start(1)]
                out += str(len(new_raw)).encode()
                out += data[obj.dict_start + length.end(1):obj.data_start]
                out += new_raw
                out += data[obj.data_end:obj.end]
            stats.bytes_after += len(new_raw)

            done += 1
            if progress:
                progress(done, total_streams)
            if yield_hook:
                yield_hook()
        else:
            out += data[obj.start:obj.end]
        previous_end = obj.end

    size = max(offsets) + 1
    out += b"\n"
    xref_offset = len(out)
    out += f"xref\n0 {size}\n".encode()
    for number in range(size):
        if number in offsets:
            offset, generation = offsets[number]
            out += f"{offset:010d} {generation:05d} n\r\n".encode()
        elif number == 0:
            out += b"0000000000 65535 f\r\n"
        else:
            out += b"0000000000 00000 f\r\n"

    out += f"trailer\n<< /Size {size}".encode()
    for key in ("Root", "Info", "ID", "Encrypt"):
        if key in trailer:
            out += b" /" + key.encode() + b" " + trailer[key]
    out += f" >>\nstartxref\n{xref_offset}\n%%EOF\n".encode()
    return bytes(out)


def recompress_pdf(
    data: bytes,
    progress: Optional[Callable[[int, int], None]] = None,
    yield_hook: Optional[Callable[[], None]] = None,
) -> tuple[bytes, RecompressionStats]:
    """
    Recompress all plain Flate streams of a PDF.

    Object numbering never changes. If the xref, trailer or startxref cannot
    be located the input bytes are returned as they are.

    Args:
        data: Complete PDF file
        progress: Called with (streams done, stream count)
        yield_hook: Called after each stream

    Returns:
        Tuple of (PDF bytes, statistics)
    """
    stats = RecompressionStats()
    try:
        trailer = _parse_trailer(data)
        objects = _scan_objects(data)
        if not objects:
            raise StructuralParseFailure("no objects found")
        result = _rebuild(data, objects, trailer, stats, progress, yield_hook)
    except StructuralParseFailure as e:
        logger.warning(f"Recompression skipped: {e}")
        return data, RecompressionStats(aborted=str(e))

    logger.info(
        f"Recompressed {stats.streams_recompressed}/{stats.streams_seen} streams, "
        f"saved {stats.bytes_saved} bytes, skipped {dict(stats.skipped)}"
    )
    return result, stats
