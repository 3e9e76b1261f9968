"""
Parallel export rendering.

Each worker process opens its own copy of the source PDF once, in the pool
initializer, and renders whole pages with the same function the sequential
exporter uses.
"""

import logging
import multiprocessing
import time
from dataclasses import dataclass
from typing import Optional

from models import (
    Settings, PageSnapshot, RenderFailure, BackendUnavailable, PoolTerminated, TaskTimeout,
)
from source import SourceReference
from planner import ResolutionPlanner
from backends import OpenCVBinarizer
from exporter import render_export_page

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1

# Per-process state set up by _init_worker
_worker: dict = {}


@dataclass
class _TaskError:
    """Picklable description of a failed task."""
    kind: str
    message: str

    def to_exception(self, page_id: str) -> Exception:
        if self.kind == "backend":
            return BackendUnavailable(self.message)
        return RenderFailure(page_id, self.message)


def _init_worker(pdf_bytes: bytes, settings_data: dict) -> None:
    settings = Settings.from_dict(settings_data)
    _worker["source"] = SourceReference(pdf_bytes)
    _worker["settings"] = settings
    _worker["planner"] = ResolutionPlanner(settings.default_scale)
    _worker["binarizer"] = OpenCVBinarizer()


def _render_task(snapshot: PageSnapshot, want_ocr: bool):
    try:
        return render_export_page(
            _worker["source"], snapshot, _worker["settings"], _worker["planner"],
            _worker["binarizer"], want_ocr,
        )
    except BackendUnavailable as e:
        return _TaskError("backend", str(e))
    except RenderFailure as e:
        return _TaskError("render", str(e))
    except MemoryError as e:
        return _TaskError("render", f"out of memory: {e}")


class RenderWorkerPool:
    """
    Pool of page render processes.

    A task that produces no result within the timeout (a hung or killed
    worker) fails with TaskTimeout and the whole pool is replaced before the
    remaining tasks are resubmitted.
    """

    def __init__(
        self,
        source: SourceReference,
        settings: Settings,
        processes: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.processes = max(1, processes or settings.render_workers)
        self.timeout = settings.task_timeout if timeout is None else timeout
        self._initargs = (source.data, settings.to_dict())
        self._pool = None
        self._closed = False

    def __enter__(self) -> "RenderWorkerPool":
        return self

    def __exit__(self, *args) -> None:
        self.shutdown()

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_pool(self):
        if self._closed:
            raise PoolTerminated("Render worker pool has been shut down")
        if self._pool is None:
            self._pool = multiprocessing.Pool(
                self.processes, initializer=_init_worker, initargs=self._initargs
            )
            logger.info(f"Started {self.processes} render worker(s)")
        return self._pool

    def _discard_pool(self) -> None:
        if self._pool is not None:
            self._pool.terminate()
            self._pool.join()
            self._pool = None

    def _wait(self, async_result, page_id: str):
        deadline = time.monotonic() + self.timeout
        while not async_result.ready():
            if self._closed:
                raise PoolTerminated(f"{page_id}: pool shut down")
            if time.monotonic() >= deadline:
                raise TaskTimeout(f"{page_id}: no result after {self.timeout:g}s")
            async_result.wait(POLL_INTERVAL)
        return async_result.get()

    def render_batch(self, snapshots: list[PageSnapshot], want_ocr: bool = False) -> list:
        """
        Render pages in parallel.

        Returns:
            One entry per snapshot, in order: a RenderedPage or the exception
            that made the page fail
        """
        outcomes: list = [None] * len(snapshots)
        remaining = list(range(len(snapshots)))

        while remaining:
            try:
                pool = self._ensure_pool()
            except PoolTerminated as e:
                for i in remaining:
                    outcomes[i] = e
                break
            submitted = [(i, pool.apply_async(_render_task, (snapshots[i], want_ocr))) for i in remaining]
            remaining = []

            for position, (i, async_result) in enumerate(submitted):
                page_id = snapshots[i].id
                try:
                    outcome = self._wait(async_result, page_id)
                except TaskTimeout as e:
                    logger.warning(f"Render worker timed out, replacing pool: {e}")
                    outcomes[i] = e
                    self._discard_pool()
                    remaining = [j for j, _ in submitted[position + 1:]]
                    break
                except PoolTerminated as e:
                    for j, _ in submitted[position:]:
                        outcomes[j] = e
                    break
                except Exception as e:
                    # Anything the task did not catch itself
                    outcome = RenderFailure(page_id, str(e))

                if isinstance(outcome, _TaskError):
                    outcome = outcome.to_exception(page_id)
                outcomes[i] = outcome

        return outcomes

    def shutdown(self) -> None:
        """Stop all workers. Pending and later tasks fail with PoolTerminated."""
        if self._closed:
            return
        self._closed = True
        self._discard_pool()
        logger.info("Render workers shut down")
