import json

import fitz
import pytest

from cli import main, parse_args, parse_page_ranges, create_settings
from models import CompressionTier, GrayPolicy, Settings
from conftest import make_pdf


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "sample.pdf").write_bytes(make_pdf([(200, 100), (200, 100)]))
    return tmp_path


class TestPageRanges:
    def test_single_pages_and_ranges(self):
        assert parse_page_ranges("1,3-5", 6) == [0, 2, 3, 4]

    def test_duplicates_are_merged(self):
        assert parse_page_ranges("2, 1-2 ,2", 3) == [0, 1]

    @pytest.mark.parametrize("text", ["0", "4", "3-2", "", "a"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_page_ranges(text, 3)


class TestSettings:
    def test_config_file_and_overrides(self, workdir):
        Settings(compression=CompressionTier.LOW, batch_size=2).save_to_file(workdir / "config.json")
        settings = create_settings(parse_args(["sample.pdf", "--gray-policy", "posterize"]))
        assert settings.compression == CompressionTier.LOW
        assert settings.batch_size == 2
        assert settings.gray_policy == GrayPolicy.POSTERIZE

    def test_broken_config_falls_back_to_defaults(self, workdir):
        (workdir / "config.json").write_text("{not json")
        settings = create_settings(parse_args(["sample.pdf", "--compression", "high"]))
        assert settings.compression == CompressionTier.HIGH
        assert settings.batch_size == Settings().batch_size


class TestMain:
    def test_default_output_name(self, workdir):
        assert main(["sample.pdf", "--color-mode", "gray", "--compression", "high"]) == 0
        output = workdir / "sample_highcomp_grayjpg.pdf"
        with fitz.open(output) as doc:
            assert doc.page_count == 2

    def test_split_selected_pages(self, workdir):
        assert main(["sample.pdf", "--pages", "1", "--split", "-o", "out.pdf"]) == 0
        with fitz.open(workdir / "out.pdf") as doc:
            assert [round(p.rect.width) for p in doc] == [100, 100, 200]

    def test_delete_and_move(self, workdir):
        (workdir / "mixed.pdf").write_bytes(make_pdf([(100, 100), (200, 100), (300, 100)]))
        assert main(["mixed.pdf", "--pages", "2", "--delete", "--move", "2:1", "-o", "out.pdf"]) == 0
        with fitz.open(workdir / "out.pdf") as doc:
            assert [round(p.rect.width) for p in doc] == [300, 100]

    def test_merged_inputs(self, workdir):
        (workdir / "second.pdf").write_bytes(make_pdf([(300, 100)]))
        assert main(["sample.pdf", "second.pdf", "--compression", "none"]) == 0
        with fitz.open(workdir / "merged.pdf") as doc:
            assert doc.page_count == 3

    def test_session_round_trip(self, workdir):
        assert main(["sample.pdf", "--pages", "2", "--rotate", "90", "--save-session", "s.json",
                     "-o", "first.pdf"]) == 0
        session = json.loads((workdir / "s.json").read_text())
        assert session["pages"][1]["operations"] == [{"type": "rotate", "degrees": 90}]

        assert main(["sample.pdf", "--load-session", "s.json", "-o", "second.pdf"]) == 0
        with fitz.open(workdir / "second.pdf") as doc:
            assert round(doc[1].rect.width) == 100
            assert round(doc[1].rect.height) == 200

    def test_thumbnails(self, workdir):
        assert main(["sample.pdf", "--thumbnails", "thumbs", "-o", "out.pdf"]) == 0
        assert len(list((workdir / "thumbs").glob("*.png"))) == 2

    def test_missing_input(self, workdir):
        assert main(["missing.pdf"]) == 1

    def test_invalid_page_range(self, workdir):
        assert main(["sample.pdf", "--pages", "7", "--rotate", "90"]) == 1

    def test_invalid_rotation(self, workdir):
        assert main(["sample.pdf", "--rotate", "45"]) == 1

    def test_deleting_everything_fails(self, workdir):
        assert main(["sample.pdf", "--delete", "-o", "out.pdf"]) == 1
        assert not (workdir / "out.pdf").exists()
