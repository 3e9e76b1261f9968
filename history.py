"""
Undo/redo history for document edits.
Stores log-only snapshots of the page list; previews are never part of history.
"""

from collections import deque
from contextlib import contextmanager
from enum import Enum
from typing import Iterator
import logging
import threading

from models import Document, HistorySnapshot, MutationInProgress, HISTORY_CAPACITY

logger = logging.getLogger(__name__)


class HistoryState(Enum):
    IDLE = "idle"
    MUTATING = "mutating"


class HistoryEngine:
    """
    Snapshot based undo/redo.

    Every mutation pushes the document state taken just before it. Only one
    mutation (or undo/redo) may run at a time; a second one is rejected
    instead of queued.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        self.capacity = capacity
        self._undo: deque[HistorySnapshot] = deque(maxlen=capacity)
        self._redo: list[HistorySnapshot] = []
        self._lock = threading.Lock()
        self.state = HistoryState.IDLE

    @property
    def can_undo(self) -> bool:
        return len(self._undo) > 0

    @property
    def can_redo(self) -> bool:
        return len(self._redo) > 0

    @property
    def undo_depth(self) -> int:
        return len(self._undo)

    @property
    def redo_depth(self) -> int:
        return len(self._redo)

    def clear(self) -> None:
        """Forget all snapshots (e.g. after loading a new document)."""
        self._undo.clear()
        self._redo.clear()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise MutationInProgress("Another edit is still running")
        self.state = HistoryState.MUTATING
        try:
            yield
        finally:
            self.state = HistoryState.IDLE
            self._lock.release()

    @contextmanager
    def mutation(self, document: Document, label: str = "") -> Iterator[Document]:
        """
        Record a snapshot and run the body as one undoable step.

        If the body raises, the document is put back to the snapshot and
        nothing is recorded.

        Raises:
            MutationInProgress: another mutation is running
        """
        with self._exclusive():
            snapshot = document.snapshot(label)
            try:
                yield document
            except BaseException:
                document.restore(snapshot)
                raise
            self._undo.append(snapshot)
            self._redo.clear()
            logger.debug(f"History: recorded '{label}' ({len(self._undo)} undo steps)")

    def undo(self, document: Document) -> bool:
        """Restore the previous state. Returns False if there is nothing to undo."""
        with self._exclusive():
            if not self._undo:
                return False
            snapshot = self._undo.pop()
            self._redo.append(document.snapshot(snapshot.label))
            document.restore(snapshot)
            logger.info(f"Undo: {snapshot.label}")
            return True

    def redo(self, document: Document) -> bool:
        """Re-apply the last undone state. Returns False if there is nothing to redo."""
        with self._exclusive():
            if not self._redo:
                return False
            snapshot = self._redo.pop()
            self._undo.append(document.snapshot(snapshot.label))
            document.restore(snapshot)
            logger.info(f"Redo: {snapshot.label}")
            return True
