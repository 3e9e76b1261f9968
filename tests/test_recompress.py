import re
import zlib

import fitz
import pytest

from models import RecompressionSkip
from recompress import recompress_pdf, recompress_stream
from conftest import make_pdf


CONTENT = b"0 0 1 rg 10 10 50 50 re f\n" * 40
FILE_ID = b"[<0123456789ABCDEF0123456789ABCDEF> <0123456789ABCDEF0123456789ABCDEF>]"


def stored_deflate(payload: bytes) -> bytes:
    compressor = zlib.compressobj(0)
    return compressor.compress(payload) + compressor.flush()


def stream_object(stream_dict: bytes, raw: bytes) -> bytes:
    return stream_dict + b"\nstream\n" + raw + b"\nendstream"


def build_pdf(objects, trailer_extra=b"") -> bytes:
    """Assemble a classic xref-table PDF from object bodies numbered from 1."""
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R" % (len(objects) + 1) + trailer_extra + b" >>\n"
    out += b"startxref\n%d\n%%%%EOF\n" % xref
    return bytes(out)


def single_page_pdf(content_raw: bytes, stream_dict: bytes, trailer_extra=b"") -> bytes:
    return build_pdf([
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 200 200] /Contents 4 0 R >>",
        stream_object(stream_dict, content_raw),
        b"<< /Title (Recompression test) >>",
    ], trailer_extra)


def stored_flate_pdf(trailer_extra=b"") -> bytes:
    raw = stored_deflate(CONTENT)
    return single_page_pdf(raw, b"<< /Length %d /Filter /FlateDecode >>" % len(raw), trailer_extra)


def xref_offsets(data: bytes) -> dict[int, int]:
    start = data.rindex(b"\nxref\n") + 1
    lines = data[start:].split(b"\n")
    first, count = (int(x) for x in lines[1].split())
    entries = {}
    for i in range(count):
        offset, _generation, kind = lines[2 + i].split()
        if kind == b"n":
            entries[first + i] = int(offset)
    return entries


class TestRecompressPdf:
    def test_stored_stream_is_shrunk(self):
        original = stored_flate_pdf()
        result, stats = recompress_pdf(original)

        assert stats.aborted is None
        assert stats.streams_seen == 1
        assert stats.streams_recompressed == 1
        assert stats.bytes_saved > 0
        assert len(result) < len(original)

    def test_length_matches_new_stream(self):
        result, _ = recompress_pdf(stored_flate_pdf())
        match = re.search(rb"/Length (\d+) /Filter /FlateDecode >>\nstream\n", result)
        assert match is not None
        start = match.end()
        length = int(match.group(1))
        assert result[start + length:start + length + 10] == b"\nendstream"
        assert zlib.decompress(result[start:start + length]) == CONTENT

    def test_xref_points_at_objects(self):
        result, _ = recompress_pdf(stored_flate_pdf())
        offsets = xref_offsets(result)
        assert sorted(offsets) == [1, 2, 3, 4, 5]
        for number, offset in offsets.items():
            assert result[offset:].startswith(b"%d 0 obj" % number)
        startxref = int(result.rsplit(b"startxref", 1)[1].split()[0])
        assert result[startxref:startxref + 4] == b"xref"

    def test_xref_entries_are_twenty_bytes(self):
        result, _ = recompress_pdf(stored_flate_pdf())
        start = result.rindex(b"\nxref\n") + 1
        table = result[start:result.index(b"trailer", start)]
        entries = table.split(b"\n", 2)[2]
        assert len(entries) == 6 * 20

    def test_result_opens_without_repair(self):
        result, _ = recompress_pdf(stored_flate_pdf())
        with fitz.open(stream=result, filetype="pdf") as doc:
            assert not doc.is_repaired
            assert doc.page_count == 1
            assert doc[0].read_contents() == CONTENT

    def test_trailer_info_and_id_survive(self):
        result, _ = recompress_pdf(stored_flate_pdf(b" /Info 5 0 R /ID " + FILE_ID))
        trailer = result[result.rindex(b"trailer"):]
        assert b"/Info 5 0 R" in trailer
        assert FILE_ID in trailer
        with fitz.open(stream=result, filetype="pdf") as doc:
            assert doc.metadata["title"] == "Recompression test"

    def test_missing_trailer_returns_input(self):
        broken = stored_flate_pdf().split(b"trailer")[0]
        result, stats = recompress_pdf(broken)
        assert result is broken
        assert stats.aborted
        assert stats.streams_seen == 0

    def test_non_flate_streams_are_counted_as_skipped(self):
        data = single_page_pdf(b"abcd", b"<< /Length 4 /Filter /DCTDecode >>")
        result, stats = recompress_pdf(data)
        assert stats.streams_recompressed == 0
        assert stats.skipped["filter"] == 1
        assert result[result.index(b"1 0 obj"):result.index(b"\nxref")] == \
            data[data.index(b"1 0 obj"):data.index(b"\nxref")]

    def test_progress_and_yield_hook(self):
        progress, yields = [], []
        recompress_pdf(stored_flate_pdf(), progress=lambda d, t: progress.append((d, t)),
                       yield_hook=lambda: yields.append(1))
        assert progress == [(1, 1)]
        assert yields == [1]

    def test_generated_document_stays_valid(self):
        original = make_pdf([(200, 100), (300, 150)])
        result, stats = recompress_pdf(original)
        assert stats.aborted is None
        with fitz.open(stream=result, filetype="pdf") as doc:
            assert doc.page_count == 2
            assert doc[1].rect.width == 300


class TestRecompressStream:
    def test_raw_deflate_input_is_accepted(self):
        compressor = zlib.compressobj(0, zlib.DEFLATED, -15)
        raw = compressor.compress(CONTENT) + compressor.flush()
        result = recompress_stream(b"<< /Length %d /Filter /FlateDecode >>" % len(raw), raw)
        assert len(result) < len(raw)
        assert zlib.decompress(result) == CONTENT

    def test_already_optimal_stream_is_kept(self):
        raw = zlib.compress(CONTENT, 9)
        assert recompress_stream(b"<< /Length %d /Filter /FlateDecode >>" % len(raw), raw) == raw

    def test_single_filter_array_is_accepted(self):
        raw = stored_deflate(CONTENT)
        result = recompress_stream(b"<< /Length %d /Filter [/FlateDecode] >>" % len(raw), raw)
        assert zlib.decompress(result) == CONTENT

    @pytest.mark.parametrize("stream_dict, reason", [
        (b"<< /Length 4 /Filter /DCTDecode >>", "filter"),
        (b"<< /Length 4 /Filter [/ASCII85Decode /FlateDecode] >>", "filter"),
        (b"<< /Length 5 0 R /Filter /FlateDecode >>", "indirect length"),
        (b"<< /Length 4 >>", "unfiltered"),
        (b"<< /Length 4 /Filter /FlateDecode /DecodeParms << /Predictor 12 /Columns 4 >> >>", "predictor"),
        (b"<< /Length 4 /Filter /FlateDecode >>", "inflate error"),
    ])
    def test_skip_reasons(self, stream_dict, reason):
        with pytest.raises(RecompressionSkip) as info:
            recompress_stream(stream_dict, b"abcd")
        assert info.value.reason == reason
