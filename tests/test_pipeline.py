"""
Tests for Pipeline Module.
==========================

Tests for:
- RebuildPipeline: end-to-end cycles against a fake catalog
- Failure handling: the active index survives every aborted rebuild
- CatalogService: status, snapshots, coalescing, cancellation, schedule
"""

import logging
import threading
import time
from unittest.mock import Mock

import pytest

TERM = "20185"


@pytest.fixture
def make_pipeline(make_fetcher):
    """Factory for RebuildPipelines over a FakeSession."""
    from coursefinder.pipeline.rebuild import RebuildPipeline

    def _make(store, session, max_attempts: int = 3, **overrides):
        options = dict(
            term=TERM,
            timeout=30,
            max_rejection_rate=0.5,
            parallel_fetch=False,
            max_workers=2,
            prune_missing=True,
            allow_empty=False,
        )
        options.update(overrides)
        return RebuildPipeline(store, fetcher=make_fetcher(session, max_attempts=max_attempts), **options)

    return _make


@pytest.fixture
def store():
    from coursefinder.indexing.store import IndexStore

    return IndexStore()


@pytest.fixture
def make_service(snapshot_file):
    from coursefinder.indexing.snapshot import SnapshotManager
    from coursefinder.pipeline.service import CatalogService
    from coursefinder.search.engine import QueryEngine

    def _make(store, pipeline):
        return CatalogService(
            store=store,
            pipeline=pipeline,
            engine=QueryEngine(store, default_limit=10, max_limit=20),
            snapshots=SnapshotManager(snapshot_file),
            refresh_interval=0,
        )

    return _make


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ─────────────────────────────────────────────────────────────────────────────
# Rebuild Pipeline Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestRebuildPipeline:
    """Tests for successful rebuild cycles."""

    def test_two_page_catalog_with_repeated_listing(self, store, make_pipeline, fake_session, two_page_catalog):
        """Test that a listing repeated on a later page replaces the earlier one."""
        stats = make_pipeline(store, fake_session(two_page_catalog)).run()

        index = store.active_index()
        assert stats.generation == 1
        assert stats.pages_fetched == 2
        assert stats.group_count == 3
        assert stats.record_count == 2
        assert index.document_count == 2
        assert stats.duplicate_count == 1
        assert stats.rejected_count == 0

        comp_1020 = index.find_by_code("COMP-1020")
        assert len(comp_1020) == 1
        assert comp_1020[0].description == "Introduction to programming in C and Python."
        assert comp_1020[0].doc_id == 0
        assert comp_1020[0].source_token == "2"

    def test_extra_listing_fields_survive(self, store, make_pipeline, fake_session, two_page_catalog, make_page):
        pages = dict(two_page_catalog)
        pages["2"] = make_page([{
            "code": "COMP-2540",
            "title": "Data Structures and Algorithms",
            "prerequisites": ["COMP-1020", "MATH-1720"],
            "meets": "MW 10:00 AM - 11:20 AM",
            "availability": "12 of 90 seats open",
            "instructors": [("Jane Doe", "jdoe@uwindsor.ca")],
        }])
        make_pipeline(store, fake_session(pages)).run()
        index = store.active_index()

        assert index.find_by_code("COMP-1021")[0].note == "Must be taken with COMP-1020."
        comp_2540 = index.find_by_code("COMP-2540")[0]
        assert comp_2540.prerequisites == ("COMP-1020", "MATH-1720")
        assert comp_2540.meets == "MW 10:00 AM - 11:20 AM"
        assert comp_2540.availability == "12 of 90 seats open"
        assert [(i.name, i.email) for i in comp_2540.instructors] == [("Jane Doe", "jdoe@uwindsor.ca")]

    def test_listing_details_are_not_indexed(self, store, make_pipeline, fake_session, make_page):
        page = make_page([{
            "code": "COMP-2540",
            "title": "Data Structures",
            "campus": "Main Campus",
            "instructors": [("Jane Doe", "jdoe@uwindsor.ca")],
        }])
        make_pipeline(store, fake_session({"1": page})).run()

        index = store.active_index()
        assert index.get_postings("campus") is None
        assert index.get_postings("jane") is None

    def test_programming_fundamentals_is_top_hit(self, store, make_pipeline, fake_session, two_page_catalog):
        from coursefinder.search.engine import QueryEngine

        make_pipeline(store, fake_session(two_page_catalog)).run()
        hits = QueryEngine(store, default_limit=10, max_limit=20).search("programming fundamentals")

        assert hits[0].code == "COMP-1020"

    def test_rebuild_is_idempotent(self, store, make_pipeline, fake_session, two_page_catalog):
        """Test that re-scraping an unchanged catalog changes only the generation."""
        pipeline = make_pipeline(store, fake_session(two_page_catalog))
        pipeline.run()
        first = store.active_index()
        pipeline.run()
        second = store.active_index()

        assert second.generation == 2
        assert dict(second.records) == dict(first.records)
        assert {t: (e.doc_ids, dict(e.term_frequency)) for t, e in second.postings.items()} == {
            t: (e.doc_ids, dict(e.term_frequency)) for t, e in first.postings.items()
        }

    def test_missing_courses_are_pruned(self, store, make_pipeline, fake_session, two_page_catalog, make_page):
        make_pipeline(store, fake_session(two_page_catalog)).run()

        updated = make_page([
            {"code": "COMP-1020", "title": "Programming Fundamentals"},
            {"code": "COMP-3150", "title": "Database Management Systems"},
        ])
        stats = make_pipeline(store, fake_session({"1": updated})).run()

        index = store.active_index()
        assert stats.generation == 2
        assert index.find_by_code("COMP-1021") == []
        assert index.find_by_code("COMP-1020")[0].doc_id == 0
        assert index.find_by_code("COMP-3150")[0].doc_id == 2

    def test_missing_courses_can_be_retained(self, store, make_pipeline, fake_session, two_page_catalog, make_page):
        make_pipeline(store, fake_session(two_page_catalog)).run()

        updated = make_page([{"code": "COMP-1020", "title": "Programming Fundamentals"}])
        stats = make_pipeline(store, fake_session({"1": updated}), prune_missing=False).run()

        assert stats.record_count == 2
        assert stats.carried_over_count == 1
        assert store.active_index().find_by_code("COMP-1021")[0].doc_id == 1

    def test_parallel_fetch_keeps_page_order(self, store, make_pipeline, fake_session, make_page):
        pages = {
            "1": make_page([{"code": "A-1", "title": "First"}], next_page="2", total_pages=3),
            "2": make_page([{"code": "B-2", "title": "Second"}], next_page="3", total_pages=3),
            "3": make_page([{"code": "C-3", "title": "Third"}], total_pages=3),
        }
        session = fake_session(pages)

        stats = make_pipeline(store, session, parallel_fetch=True).run()

        index = store.active_index()
        assert stats.pages_fetched == 3
        assert sorted(session.calls) == ["1", "2", "3"]
        assert [index.records[i].code for i in sorted(index.records)] == ["A-1", "B-2", "C-3"]

    def test_log_records_carry_the_rebuild_generation(
        self, store, make_pipeline, fake_session, make_page, caplog
    ):
        """Test that fetch workers log under the tag of the rebuild they serve."""
        from coursefinder.shared.logging import RebuildContextFilter

        pages = {
            "1": make_page([{"code": "A-1", "title": "First"}], total_pages=3),
            "2": make_page([{"code": "B-2", "title": "Second"}], total_pages=3),
            "3": make_page([{"code": "C-3", "title": "Third"}], total_pages=3),
        }
        caplog.handler.addFilter(RebuildContextFilter())
        caplog.set_level(logging.INFO, logger="coursefinder")

        make_pipeline(store, fake_session(pages), parallel_fetch=True).run()

        fetched = [r for r in caplog.records if r.getMessage().startswith("Fetched page")]
        assert len(fetched) == 3
        assert {r.rebuild for r in fetched} == {"gen 1"}

    def test_empty_catalog_can_be_allowed(self, store, make_pipeline, fake_session, make_page):
        stats = make_pipeline(store, fake_session({"1": make_page([])}), allow_empty=True).run()

        assert stats.generation == 1
        assert store.active_index().document_count == 0


class TestRebuildFailures:
    """Tests for aborted rebuild cycles."""

    @pytest.fixture
    def seeded_store(self, store, make_pipeline, fake_session, two_page_catalog):
        make_pipeline(store, fake_session(two_page_catalog)).run()
        return store

    def test_malformed_middle_page_keeps_previous_index(
        self, seeded_store, make_pipeline, fake_session, make_page, malformed_page
    ):
        from coursefinder.shared.errors import ParseError, RebuildAbortedError

        before = seeded_store.active_index()
        first_page = [{"code": f"COMP-{9000 + n}", "title": f"New Course {n}"} for n in range(10)]
        pages = {
            "1": make_page(first_page, next_page="2"),
            "2": malformed_page,
            "3": make_page([{"code": "COMP-8888", "title": "Another"}]),
        }

        with pytest.raises(RebuildAbortedError) as exc_info:
            make_pipeline(seeded_store, fake_session(pages)).run()

        assert isinstance(exc_info.value.cause, ParseError)
        assert seeded_store.active_index() is before
        assert seeded_store.active_index().document_count == 2
        assert seeded_store.active_index().find_by_code("COMP-9000") == []

    def test_fetch_failure_keeps_previous_index(self, seeded_store, make_pipeline, fake_session, make_page):
        from coursefinder.shared.errors import FetchError, RebuildAbortedError

        before = seeded_store.active_index()
        session = fake_session({"1": make_page([{"code": "COMP-9999", "title": "New"}], next_page="2"), "2": 503})

        with pytest.raises(RebuildAbortedError) as exc_info:
            make_pipeline(seeded_store, session, max_attempts=2).run()

        assert isinstance(exc_info.value.cause, FetchError)
        assert exc_info.value.cause.attempts == 2
        assert seeded_store.active_index() is before

    def test_rejection_rate_aborts(self, seeded_store, make_pipeline, fake_session, make_page):
        from coursefinder.shared.errors import RebuildAbortedError

        before = seeded_store.active_index()
        page = make_page([
            {"code": "COMP-9999", "title": "Fine"},
            {"code": "COMP-9998", "title": ""},
            {"code": "COMP_BAD", "title": "Broken Code"},
        ])

        with pytest.raises(RebuildAbortedError, match="rejected"):
            make_pipeline(seeded_store, fake_session({"1": page})).run()

        assert seeded_store.active_index() is before

    def test_listings_without_codes_count_as_rejections(
        self, seeded_store, make_pipeline, fake_session, make_page
    ):
        """Test that code markers vanishing from most blocks aborts the rebuild."""
        from coursefinder.shared.errors import RebuildAbortedError

        before = seeded_store.active_index()
        page = make_page(
            [{"code": "COMP-9999", "title": "Still Listed"}]
            + [{"title": f"Orphan {n}", "description": "Code marker missing."} for n in range(4)]
        )

        with pytest.raises(RebuildAbortedError, match="invalid code"):
            make_pipeline(seeded_store, fake_session({"1": page}), max_rejection_rate=0.5).run()

        assert seeded_store.active_index() is before
        assert seeded_store.active_index().find_by_code("COMP-9999") == []

    def test_parallel_fetch_failure_keeps_previous_index(
        self, seeded_store, make_pipeline, fake_session, make_page
    ):
        from coursefinder.shared.errors import FetchError, RebuildAbortedError

        before = seeded_store.active_index()
        pages = {
            "1": make_page([{"code": "A-1", "title": "First"}], total_pages=3),
            "2": make_page([{"code": "B-2", "title": "Second"}], total_pages=3),
            "3": 404,
        }

        with pytest.raises(RebuildAbortedError) as exc_info:
            make_pipeline(seeded_store, fake_session(pages), parallel_fetch=True).run()

        assert isinstance(exc_info.value.cause, FetchError)
        assert exc_info.value.cause.status_code == 404
        assert seeded_store.active_index() is before

    def test_parallel_fetch_cancellation_does_not_wait_for_fetches(
        self, seeded_store, make_pipeline, fake_session, make_page
    ):
        from coursefinder.shared.errors import RebuildCancelledError

        cancel = threading.Event()
        release = threading.Event()

        def stall(token):
            if token != "1":
                cancel.set()
                release.wait(5)

        pages = {
            str(n): make_page([{"code": f"P-{n}", "title": f"Page {n}"}], total_pages=4)
            for n in range(1, 5)
        }
        started = time.monotonic()
        try:
            with pytest.raises(RebuildCancelledError):
                make_pipeline(seeded_store, fake_session(pages, on_get=stall), parallel_fetch=True).run(
                    cancel_event=cancel
                )
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 2.0
        assert seeded_store.generation == 1

    def test_empty_catalog_aborts(self, seeded_store, make_pipeline, fake_session, make_page):
        from coursefinder.shared.errors import RebuildAbortedError

        with pytest.raises(RebuildAbortedError):
            make_pipeline(seeded_store, fake_session({"1": make_page([])})).run()

        assert seeded_store.generation == 1

    def test_pagination_loop_aborts(self, store, make_pipeline, fake_session, make_page):
        from coursefinder.shared.errors import ParseError, RebuildAbortedError

        pages = {
            "1": make_page([{"code": "A-1", "title": "First"}], next_page="2"),
            "2": make_page([{"code": "B-2", "title": "Second"}], next_page="1"),
        }

        with pytest.raises(RebuildAbortedError) as exc_info:
            make_pipeline(store, fake_session(pages)).run()

        assert isinstance(exc_info.value.cause, ParseError)
        assert store.generation == 0

    def test_invalid_term_aborts(self, store, make_pipeline, fake_session, two_page_catalog):
        from coursefinder.shared.errors import RebuildAbortedError

        with pytest.raises(RebuildAbortedError):
            make_pipeline(store, fake_session(two_page_catalog), term="2018-fall").run()

        assert store.generation == 0

    def test_cancellation(self, seeded_store, make_pipeline, fake_session, two_page_catalog):
        from coursefinder.shared.errors import RebuildCancelledError

        cancel = threading.Event()
        session = fake_session(two_page_catalog, on_get=lambda token: cancel.set())

        with pytest.raises(RebuildCancelledError):
            make_pipeline(seeded_store, session).run(cancel_event=cancel)

        assert seeded_store.generation == 1
        assert session.calls == ["1"]

    def test_timeout(self, seeded_store, make_pipeline, fake_session, two_page_catalog):
        from coursefinder.shared.errors import RebuildTimeoutError

        session = fake_session(two_page_catalog, on_get=lambda token: time.sleep(0.2))

        with pytest.raises(RebuildTimeoutError):
            make_pipeline(seeded_store, session, timeout=0.1).run()

        assert seeded_store.generation == 1


# ─────────────────────────────────────────────────────────────────────────────
# Catalog Service Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestCatalogService:
    """Tests for the CatalogService class."""

    def test_rebuild_now_success(self, store, make_pipeline, make_service, fake_session, two_page_catalog, snapshot_file):
        from coursefinder.shared.schemas import RebuildState

        service = make_service(store, make_pipeline(store, fake_session(two_page_catalog)))

        status = service.rebuild_now()

        assert status.state == RebuildState.SUCCEEDED
        assert status.generation == 1
        assert status.record_count == 2
        assert status.pages_fetched == 2
        assert status.last_error is None
        assert status.last_success_at is not None
        assert snapshot_file.exists()
        assert service.search("programming fundamentals")[0].code == "COMP-1020"

    def test_failed_rebuild_is_reported_not_raised(
        self, store, make_pipeline, make_service, fake_session, two_page_catalog
    ):
        from coursefinder.shared.schemas import RebuildState

        service = make_service(store, make_pipeline(store, fake_session(two_page_catalog)))
        service.rebuild_now()
        first_success = service.status().last_success_at

        service.pipeline = make_pipeline(store, fake_session({"1": 404}))
        status = service.rebuild_now()

        assert status.state == RebuildState.FAILED
        assert "fetch failed" in status.last_error
        assert status.generation == 1
        assert status.last_success_at == first_success
        assert service.search("COMP-1021")[0].code == "COMP-1021"

    def test_snapshot_restores_index(self, store, make_pipeline, make_service, fake_session, two_page_catalog):
        from coursefinder.indexing.store import IndexStore

        make_service(store, make_pipeline(store, fake_session(two_page_catalog))).rebuild_now()

        fresh_store = IndexStore()
        restarted = make_service(fresh_store, make_pipeline(fresh_store, fake_session({})))

        assert restarted.load_snapshot() is True
        assert restarted.load_snapshot() is False
        assert restarted.active_index().generation == 1
        assert restarted.status().record_count == 2
        assert restarted.lookup_code("comp-1020")[0].doc_id == 0

    def test_trigger_rebuild_is_coalesced(self, store, make_service):
        """Test that a trigger during a running rebuild is ignored."""
        from coursefinder.shared.schemas import RebuildState, RebuildStats

        started = threading.Event()
        release = threading.Event()

        def blocking_run(cancel_event=None):
            started.set()
            release.wait(5)
            return RebuildStats(term=TERM)

        pipeline = Mock()
        pipeline.run.side_effect = blocking_run
        service = make_service(store, pipeline)

        assert service.trigger_rebuild() is True
        assert started.wait(5)
        assert service.rebuilding
        assert service.status().state == RebuildState.RUNNING
        assert service.trigger_rebuild() is False

        release.set()
        service._rebuild_thread.join(5)

        assert pipeline.run.call_count == 1
        assert service.status().state == RebuildState.SUCCEEDED
        assert service.trigger_rebuild(wait=True) is True
        assert pipeline.run.call_count == 2

    def test_cancel_in_flight_rebuild(self, store, make_pipeline, make_service, fake_session, two_page_catalog):
        from coursefinder.shared.schemas import RebuildState

        entered = threading.Event()
        release = threading.Event()

        def on_get(token):
            entered.set()
            release.wait(5)

        session = fake_session(two_page_catalog, on_get=on_get)
        service = make_service(store, make_pipeline(store, session))

        service.trigger_rebuild()
        assert entered.wait(5)
        service.cancel_rebuild()
        release.set()
        service._rebuild_thread.join(5)

        assert service.status().state == RebuildState.CANCELLED
        assert store.generation == 0

    def test_unexpected_error_is_contained(self, store, make_service):
        from coursefinder.shared.schemas import RebuildState

        pipeline = Mock()
        pipeline.run.side_effect = KeyError("boom")
        service = make_service(store, pipeline)

        status = service.rebuild_now()

        assert status.state == RebuildState.FAILED
        assert "unexpected error" in status.last_error
        assert not service.rebuilding

    def test_schedule_runs_and_stops(self, store, make_pipeline, make_service, fake_session, two_page_catalog):
        from coursefinder.shared.schemas import RebuildState

        service = make_service(store, make_pipeline(store, fake_session(two_page_catalog)))

        assert service.start_schedule(interval=0) is False
        assert service.start_schedule(interval=60) is True
        assert service.start_schedule(interval=60) is False
        assert _wait_for(lambda: service.status().state == RebuildState.SUCCEEDED)

        service.stop(timeout=5)

        assert not service._schedule_thread.is_alive()
        assert store.generation == 1
