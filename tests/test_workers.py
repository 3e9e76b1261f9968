import pytest

from models import Settings, ColorMode, PoolTerminated, RenderFailure, TaskTimeout
from editor import DocumentEditor
from exporter import PDFExporter, RenderedPage
from workers import RenderWorkerPool, _TaskError


@pytest.fixture
def pool(two_page_source):
    with RenderWorkerPool(two_page_source, Settings(), processes=2, timeout=60) as pool:
        yield pool


def test_render_batch_keeps_order(two_page_document, pool):
    snapshots = [p.snapshot() for p in two_page_document.pages]
    outcomes = pool.render_batch(snapshots)
    assert [type(o) for o in outcomes] == [RenderedPage, RenderedPage]
    assert [o.page_id for o in outcomes] == [s.id for s in snapshots]


def test_export_through_pool(two_page_document, pool):
    editor = DocumentEditor(two_page_document)
    editor.select_all()
    editor.set_color_mode(ColorMode.GRAY)
    result = PDFExporter(two_page_document, Settings(), worker_pool=pool).export()
    assert result.success
    assert result.output_name == "sample_medcomp_grayjpg.pdf"


def test_shutdown_rejects_new_tasks(two_page_document, two_page_source):
    pool = RenderWorkerPool(two_page_source, Settings(), processes=1)
    pool.shutdown()
    assert pool.closed
    outcomes = pool.render_batch([p.snapshot() for p in two_page_document.pages])
    assert all(isinstance(o, PoolTerminated) for o in outcomes)


def test_timeout_replaces_pool(two_page_document, two_page_source, monkeypatch):
    pool = RenderWorkerPool(two_page_source, Settings(), processes=1, timeout=60)
    calls = []

    def fake_wait(async_result, page_id):
        calls.append(page_id)
        if len(calls) == 1:
            raise TaskTimeout(f"{page_id}: no result")
        return async_result.get()

    monkeypatch.setattr(pool, "_wait", fake_wait)
    try:
        snapshots = [p.snapshot() for p in two_page_document.pages]
        outcomes = pool.render_batch(snapshots)
    finally:
        pool.shutdown()

    assert isinstance(outcomes[0], TaskTimeout)
    assert isinstance(outcomes[1], RenderedPage)
    assert calls == [snapshots[0].id, snapshots[1].id]


def test_task_error_maps_to_exception():
    error = _TaskError("render", "broken").to_exception("page-1")
    assert isinstance(error, RenderFailure)
    assert error.page_id == "page-1"
