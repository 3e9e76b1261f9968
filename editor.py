"""
Document editing tools.
Every action that changes page logs or the page list is one undoable history step.
"""

from typing import Callable, Optional, Union
import logging

from models import (
    Document, Page, Operation, Rotate, ColorMode, ColorModeOp, RemoveShading, EnhanceContrast,
    InvalidOperation, validate_operation,
)
from history import HistoryEngine

logger = logging.getLogger(__name__)


class DocumentEditor:
    """Applies edit tools to the selected pages of a document."""

    def __init__(
        self,
        document: Document,
        history: Optional[HistoryEngine] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        status_callback: Optional[Callable[[str], None]] = None,
        yield_hook: Optional[Callable[[], None]] = None,
    ):
        self.document = document
        self.history = history or HistoryEngine()
        self.progress_callback = progress_callback
        self.status_callback = status_callback
        self.yield_hook = yield_hook

    def _report(self, done: int, total: int, verb: str) -> None:
        if self.progress_callback:
            self.progress_callback(done, total)
        if self.status_callback:
            self.status_callback(f"{verb} {done}/{total}")
        if self.yield_hook:
            self.yield_hook()

    # ------------------------------------------------------------------
    # Selection (not recorded in history)
    # ------------------------------------------------------------------

    def select(self, page_id: str, selected: bool = True) -> None:
        page = self.document.find_page(page_id)
        if page is None:
            raise KeyError(page_id)
        page.selected = selected

    def select_indices(self, indices) -> None:
        """Select exactly the pages at the given 0-based positions."""
        wanted = set(indices)
        for i in wanted:
            if not 0 <= i < self.document.page_count:
                raise IndexError(f"Page {i + 1} is out of range (1-{self.document.page_count})")
        for i, page in enumerate(self.document.pages):
            page.selected = i in wanted

    def select_all(self) -> None:
        for page in self.document.pages:
            page.selected = True

    def clear_selection(self) -> None:
        for page in self.document.pages:
            page.selected = False

    # ------------------------------------------------------------------
    # Log tools
    # ------------------------------------------------------------------

    def _append_to_selection(self, op: Operation, label: str, verb: str) -> int:
        validate_operation(op)
        targets = self.document.selected_pages
        if not targets:
            return 0
        with self.history.mutation(self.document, label):
            for i, page in enumerate(targets):
                page.append(op)
                self._report(i + 1, len(targets), verb)
        logger.info(f"{label}: {len(targets)} page(s)")
        return len(targets)

    def rotate_selected(self, degrees: int = 90) -> int:
        """Rotate the selected pages clockwise. Returns the number of pages changed."""
        return self._append_to_selection(Rotate(degrees), f"Rotate {degrees}", "Rotating")

    def set_color_mode(self, mode: Union[ColorMode, str]) -> int:
        """Set the color mode of the selected pages."""
        if not isinstance(mode, ColorMode):
            try:
                mode = ColorMode(mode)
            except ValueError as e:
                raise InvalidOperation(f"Unknown color mode: {mode!r}") from e
        return self._append_to_selection(ColorModeOp(mode), f"Color mode {mode.value}", "Applying color mode")

    def remove_shading_selected(self) -> int:
        return self._append_to_selection(RemoveShading(), "Remove shading", "Removing shading")

    def enhance_contrast_selected(self) -> int:
        return self._append_to_selection(EnhanceContrast(), "Enhance contrast", "Enhancing contrast")

    # ------------------------------------------------------------------
    # Page list tools
    # ------------------------------------------------------------------

    def split_selected(self) -> int:
        """
        Replace every selected page by its left and right halves.

        The halves get fresh ids and are not selected.
        """
        if not self.document.selected_pages:
            return 0
        split_count = 0
        with self.history.mutation(self.document, "Split"):
            pages = self.document.pages
            result: list[Page] = []
            for i, page in enumerate(pages):
                if page.selected:
                    result.extend(page.split())
                    split_count += 1
                else:
                    result.append(page)
                self._report(i + 1, len(pages), "Splitting")
            self.document.pages = result
        logger.info(f"Split {split_count} page(s)")
        return split_count

    def delete_selected(self) -> int:
        """Remove the selected pages."""
        if not self.document.selected_pages:
            return 0
        with self.history.mutation(self.document, "Delete"):
            pages = self.document.pages
            kept: list[Page] = []
            for i, page in enumerate(pages):
                if not page.selected:
                    kept.append(page)
                self._report(i + 1, len(pages), "Deleting")
            removed = len(pages) - len(kept)
            self.document.pages = kept
        logger.info(f"Deleted {removed} page(s)")
        return removed

    def move_page(self, src: int, dst: int) -> None:
        """Move the page at position src so that it ends up at position dst."""
        count = self.document.page_count
        if not (0 <= src < count and 0 <= dst < count):
            raise IndexError(f"Cannot move page {src + 1} to {dst + 1} in a {count} page document")
        if src == dst:
            return
        with self.history.mutation(self.document, "Reorder"):
            page = self.document.pages.pop(src)
            self.document.pages.insert(dst, page)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def undo(self) -> bool:
        return self.history.undo(self.document)

    def redo(self) -> bool:
        return self.history.redo(self.document)
