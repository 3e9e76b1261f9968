import io

import fitz
import numpy as np
import pytest
from PIL import Image

from models import Document, OCRFailure
from source import SourceReference


def make_pdf(page_sizes=((200, 100),)) -> bytes:
    """Vector PDF: every page has a black box and a red box."""
    doc = fitz.open()
    for width, height in page_sizes:
        page = doc.new_page(width=width, height=height)
        page.draw_rect(fitz.Rect(width * 0.1, height * 0.2, width * 0.4, height * 0.6), color=(0, 0, 0), fill=(0, 0, 0))
        page.draw_rect(fitz.Rect(width * 0.6, height * 0.2, width * 0.9, height * 0.6), color=(1, 0, 0), fill=(1, 0, 0))
    data = doc.tobytes()
    doc.close()
    return data


def png_bytes(array: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(array).save(buffer, format="PNG")
    return buffer.getvalue()


def make_scanned_pdf(page_size=(612, 792), image_px=(1275, 1650)) -> bytes:
    """PDF with one page fully covered by a single image (a 150 DPI scan by default)."""
    width_px, height_px = image_px
    scan = np.full((height_px, width_px, 3), 235, dtype=np.uint8)
    scan[height_px // 4:height_px // 2, width_px // 4:width_px // 2] = 20
    doc = fitz.open()
    page = doc.new_page(width=page_size[0], height=page_size[1])
    page.insert_image(page.rect, stream=png_bytes(scan))
    data = doc.tobytes()
    doc.close()
    return data


class FakeBinarizer:
    """Stands in for OpenCV: global threshold at 128."""

    def __init__(self, ready: bool = True):
        self.ready = ready
        self.calls = []

    def is_ready(self) -> bool:
        return self.ready

    def adaptive(self, gray, block_size, c):
        self.calls.append((gray.shape, block_size, c))
        return np.where(gray > 127, 255, 0).astype(np.uint8)


class FakeOCR:
    """Stands in for Tesseract: one text-only page per image."""

    def __init__(self, ready: bool = True, fail: bool = False, text: str = "hello"):
        self.ready = ready
        self.fail = fail
        self.text = text
        self.images = []
        self.languages = []

    def is_ready(self) -> bool:
        return self.ready

    def recognize(self, images, language, progress_callback=None, status_callback=None, yield_hook=None):
        self.images = list(images)
        self.languages.append(language)
        if self.fail:
            raise OCRFailure("engine crashed")
        doc = fitz.open()
        for image in images:
            with Image.open(io.BytesIO(image.png)) as img:
                width = img.width * 72.0 / image.dpi
                height = img.height * 72.0 / image.dpi
            page = doc.new_page(width=width, height=height)
            page.insert_text((10, 20), self.text, fontsize=8, render_mode=3)
        data = doc.tobytes()
        doc.close()
        return data


@pytest.fixture
def two_page_source():
    source = SourceReference(make_pdf([(200, 100), (200, 100)]), names=["sample"])
    yield source
    source.close()


@pytest.fixture
def two_page_document(two_page_source):
    return Document.from_source(two_page_source)


@pytest.fixture
def binarizer():
    return FakeBinarizer()
