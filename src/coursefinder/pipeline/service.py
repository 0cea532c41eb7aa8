"""
Service Module - Entry points for the chat layer.
=================================================

CatalogService ties the store, the query engine and the rebuild pipeline
together and exposes what an outer interface needs:

- search(text, limit)        ranked results from the active index
- active_index()             the current snapshot
- trigger_rebuild()          start a background rebuild (coalesced)
- status()                   rebuild state and statistics
- start_schedule() / stop()  periodic refresh and shutdown

Rebuild failures never surface through search(); they are logged and
reported through status().
"""

import threading
from datetime import datetime, timezone
from typing import Optional

from coursefinder.indexing.builder import Index
from coursefinder.indexing.snapshot import SnapshotManager
from coursefinder.indexing.store import IndexStore
from coursefinder.pipeline.rebuild import RebuildPipeline
from coursefinder.search.engine import QueryEngine
from coursefinder.shared.config import get_settings
from coursefinder.shared.errors import RebuildAbortedError, RebuildCancelledError
from coursefinder.shared.logging import get_logger
from coursefinder.shared.schemas import CourseRecord, RebuildState, RebuildStats, RebuildStatus, SearchHit

logger = get_logger(__name__)


class CatalogService:
    """
    Course catalog search service.

    Example:
        >>> service = CatalogService()
        >>> service.load_snapshot()
        >>> service.trigger_rebuild()
        >>> hits = service.search("COMP-1020")
    """

    def __init__(
        self,
        store: Optional[IndexStore] = None,
        pipeline: Optional[RebuildPipeline] = None,
        engine: Optional[QueryEngine] = None,
        snapshots: Optional[SnapshotManager] = None,
        refresh_interval: Optional[float] = None,
    ):
        settings = get_settings()

        self.store = store or IndexStore()
        self.pipeline = pipeline or RebuildPipeline(self.store)
        self.engine = engine or QueryEngine(self.store)
        if snapshots is None and settings.paths.snapshot_enabled:
            snapshots = SnapshotManager()
        self.snapshots = snapshots
        self.refresh_interval = (
            refresh_interval if refresh_interval is not None else settings.rebuild.refresh_interval
        )

        self._rebuild_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._status = RebuildStatus()
        self._cancel = threading.Event()
        self._stop = threading.Event()
        self._rebuild_thread: Optional[threading.Thread] = None
        self._schedule_thread: Optional[threading.Thread] = None

    # ─────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────

    def search(self, text: str, limit: Optional[int] = None) -> list[SearchHit]:
        """Ranked search against the active index."""
        return self.engine.search(text, limit=limit)

    def lookup_code(self, code: str) -> list[CourseRecord]:
        """Records listed under exactly this course code."""
        return self.engine.lookup_code(code)

    def active_index(self) -> Index:
        return self.store.active_index()

    def status(self) -> RebuildStatus:
        """Copy of the current rebuild status."""
        with self._status_lock:
            return self._status.model_copy()

    # ─────────────────────────────────────────────────────────────────────
    # Rebuilds
    # ─────────────────────────────────────────────────────────────────────

    def load_snapshot(self) -> bool:
        """
        Publish the on-disk snapshot if it is newer than the active index.

        Returns:
            True if a snapshot was published
        """
        if self.snapshots is None:
            return False
        index = self.snapshots.load()
        if index is None or index.generation <= self.store.generation:
            return False
        self.store.publish(index)
        with self._status_lock:
            self._status.generation = index.generation
            self._status.record_count = index.document_count
        return True

    def trigger_rebuild(self, wait: bool = False) -> bool:
        """
        Start a rebuild on a background thread.

        A trigger while a rebuild is already running is ignored.

        Args:
            wait: Block until the rebuild has finished

        Returns:
            True if a rebuild was started, False if one was already running
        """
        if not self._rebuild_lock.acquire(blocking=False):
            logger.info("Rebuild already in progress; trigger ignored")
            return False

        self._cancel = threading.Event()
        thread = threading.Thread(
            target=self._run_locked,
            name="coursefinder-rebuild",
            daemon=True,
        )
        self._rebuild_thread = thread
        thread.start()

        if wait:
            thread.join()
        return True

    def rebuild_now(self) -> RebuildStatus:
        """
        Run a rebuild on the calling thread.

        Returns:
            The resulting status (the rebuild may have failed)
        """
        if not self._rebuild_lock.acquire(blocking=False):
            logger.info("Rebuild already in progress; request ignored")
            return self.status()
        self._cancel = threading.Event()
        self._run_locked()
        return self.status()

    def cancel_rebuild(self) -> None:
        """Ask the in-flight rebuild, if any, to stop."""
        self._cancel.set()

    @property
    def rebuilding(self) -> bool:
        return self._rebuild_lock.locked()

    def _run_locked(self) -> None:
        """Run one cycle; the caller holds _rebuild_lock."""
        try:
            self._set_running()
            try:
                stats = self.pipeline.run(cancel_event=self._cancel)
            except RebuildCancelledError as e:
                logger.warning(f"Rebuild cancelled; keeping generation {self.store.generation}")
                self._set_finished(RebuildState.CANCELLED, error=str(e))
            except RebuildAbortedError as e:
                logger.error(f"Rebuild failed; keeping generation {self.store.generation}: {e}")
                self._set_finished(RebuildState.FAILED, error=str(e))
            except Exception as e:
                logger.exception("Unexpected rebuild failure")
                self._set_finished(RebuildState.FAILED, error=f"unexpected error: {e}")
            else:
                self._set_finished(RebuildState.SUCCEEDED, stats=stats)
                self._save_snapshot()
        finally:
            self._rebuild_lock.release()

    def _set_running(self) -> None:
        with self._status_lock:
            self._status.state = RebuildState.RUNNING
            self._status.started_at = datetime.now(timezone.utc)
            self._status.finished_at = None

    def _set_finished(
        self,
        state: RebuildState,
        stats: Optional[RebuildStats] = None,
        error: Optional[str] = None,
    ) -> None:
        active = self.store.active_index()
        with self._status_lock:
            self._status.state = state
            self._status.finished_at = datetime.now(timezone.utc)
            self._status.generation = active.generation
            self._status.record_count = active.document_count
            self._status.last_error = error
            if stats is not None:
                self._status.rejected_count = stats.rejected_count
                self._status.pages_fetched = stats.pages_fetched
                self._status.last_success_at = stats.finished_at

    def _save_snapshot(self) -> None:
        if self.snapshots is None:
            return
        try:
            self.snapshots.save(self.store.active_index())
        except OSError as e:
            logger.warning(f"Could not save index snapshot: {e}")

    # ─────────────────────────────────────────────────────────────────────
    # Schedule
    # ─────────────────────────────────────────────────────────────────────

    def start_schedule(self, interval: Optional[float] = None, run_immediately: bool = True) -> bool:
        """
        Refresh the index periodically on a daemon thread.

        Returns:
            False if the interval is not positive or a schedule is running
        """
        interval = interval if interval is not None else self.refresh_interval
        if interval <= 0:
            logger.info("Refresh schedule disabled")
            return False
        if self._schedule_thread is not None and self._schedule_thread.is_alive():
            return False

        self._stop.clear()

        def _loop() -> None:
            if run_immediately:
                self.trigger_rebuild(wait=True)
            while not self._stop.wait(interval):
                self.trigger_rebuild(wait=True)

        self._schedule_thread = threading.Thread(target=_loop, name="coursefinder-schedule", daemon=True)
        self._schedule_thread.start()
        logger.info(f"Refresh schedule started (every {interval:.0f}s)")
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the schedule and cancel any in-flight rebuild."""
        self._stop.set()
        self._cancel.set()
        for thread in (self._schedule_thread, self._rebuild_thread):
            if thread is not None and thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout)
        logger.info("Catalog service stopped")
