"""
Store Module - Holder of the active index generation.
=====================================================

Readers call active_index() and keep working against the snapshot they got
for as long as they need it; publish() swaps the reference in a single
assignment. Because Index objects are immutable, a reader never sees a
partially built or partially replaced index, and an old generation stays
valid until its last reader drops it.
"""

import threading
from typing import Callable, Optional

from coursefinder.indexing.builder import Index
from coursefinder.shared.logging import get_logger

logger = get_logger(__name__)

PublishListener = Callable[[Index, Index], None]


class IndexStore:
    """
    Process-wide active index reference.

    Example:
        >>> store = IndexStore()
        >>> store.active_index().generation
        0
        >>> store.publish(builder.build(records, previous=store.active_index()))
    """

    def __init__(self, initial: Optional[Index] = None):
        self._active: Index = initial if initial is not None else Index.empty()
        self._publish_lock = threading.Lock()
        self._listeners: list[PublishListener] = []

    def active_index(self) -> Index:
        """Current snapshot. Never blocks."""
        return self._active

    @property
    def generation(self) -> int:
        return self._active.generation

    def publish(self, new_index: Index) -> Index:
        """
        Make `new_index` the active snapshot.

        Returns:
            The snapshot that was replaced

        Raises:
            ValueError: If `new_index` is not newer than the active one
        """
        with self._publish_lock:
            old = self._active
            if new_index.generation <= old.generation:
                raise ValueError(
                    f"Refusing to publish generation {new_index.generation} "
                    f"over active generation {old.generation}"
                )
            self._active = new_index

        logger.info(
            f"Published index generation {new_index.generation} "
            f"({new_index.document_count} documents, replaced generation {old.generation})"
        )
        for listener in list(self._listeners):
            listener(old, new_index)
        return old

    def add_listener(self, listener: PublishListener) -> None:
        """Register a callback invoked as listener(old, new) after each publish."""
        self._listeners.append(listener)
