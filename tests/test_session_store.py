"""
Tests for the session store, pagination cursors, markers and selections.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock

from deskbridge.session_store import (
    CursorStore,
    InMemorySessionStore,
    MarkerStore,
    SelectionStore,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestInMemorySessionStore:
    """Tests for TTL and entry cap."""

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        store = InMemorySessionStore(ttl_s=60, max_entries=10, clock=clock)
        store.set("a", 1)

        clock.now += 59
        assert store.get("a") == 1

        clock.now += 2
        assert store.get("a") is None
        assert len(store) == 0

    def test_oldest_written_entry_evicted_at_cap(self):
        store = InMemorySessionStore(ttl_s=60, max_entries=2)
        store.set("a", 1)
        store.set("b", 2)
        store.set("a", 3)  # rewrite moves "a" to the back
        store.set("c", 4)

        assert store.get("b") is None
        assert store.get("a") == 3
        assert store.get("c") == 4

    def test_delete_reports_presence(self):
        store = InMemorySessionStore(ttl_s=60, max_entries=10)
        store.set("a", 1)

        assert store.delete("a") is True
        assert store.delete("a") is False


class TestCursorStore:
    """Tests for bounded-depth pagination."""

    @pytest.fixture
    def cursors(self, store):
        return CursorStore(store, fetch_cap=20, page_size=5)

    @pytest.mark.asyncio
    async def test_twenty_items_page_five(self, cursors):
        fetch = AsyncMock(return_value=list(range(20)))

        first = await cursors.start_list("home", "jane@example.com", fetch)

        fetch.assert_awaited_once_with(20)
        assert first.added == [0, 1, 2, 3, 4]
        assert first.has_more is True

        windows = [cursors.next_page("home", "jane@example.com") for _ in range(3)]
        assert [len(p.added) for p in windows] == [5, 5, 5]
        assert windows[-1].visible == list(range(20))

        last = cursors.next_page("home", "jane@example.com")
        assert last.added == []
        assert last.has_more is False
        # Local slices only
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_short_list_has_no_more(self, cursors):
        page = await cursors.start_list("merge", "jane@example.com", AsyncMock(return_value=[1, 2, 3]))

        assert page.visible == [1, 2, 3]
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_fetch_over_cap_is_truncated(self, cursors):
        page = await cursors.start_list("home", "k", AsyncMock(return_value=list(range(50))))

        assert len(page.cursor.items) == 20

    def test_next_page_without_cursor(self, cursors):
        assert cursors.next_page("home", "nobody@example.com") is None
        assert cursors.next_page("home", None) is None

    @pytest.mark.asyncio
    async def test_sessions_and_kinds_are_isolated(self, cursors):
        await cursors.start_list("home", "a@example.com", AsyncMock(return_value=list(range(20))))
        await cursors.start_list("merge", "a@example.com", AsyncMock(return_value=list(range(100, 120))))
        await cursors.start_list("home", "b@example.com", AsyncMock(return_value=list(range(200, 220))))

        cursors.next_page("home", "a@example.com")

        assert cursors.get("home", "a@example.com").revealed == 10
        assert cursors.get("merge", "a@example.com").revealed == 5
        assert cursors.get("home", "b@example.com").visible == [200, 201, 202, 203, 204]

    @pytest.mark.asyncio
    async def test_starting_a_list_replaces_the_cursor(self, cursors):
        await cursors.start_list("merge", "k", AsyncMock(return_value=list(range(20))))
        cursors.next_page("merge", "k")

        page = await cursors.start_list("merge", "k", AsyncMock(return_value=list(range(20))))

        assert page.cursor.revealed == 5

    @pytest.mark.asyncio
    async def test_concurrent_load_more_is_monotonic(self, cursors):
        await cursors.start_list("home", "k", AsyncMock(return_value=list(range(20))))
        observed = []

        async def load_more():
            await asyncio.sleep(0)
            page = cursors.next_page("home", "k")
            observed.append(page.cursor.revealed)

        await asyncio.gather(*(load_more() for _ in range(5)))

        assert observed == sorted(observed)
        assert cursors.get("home", "k").revealed == 20
        assert cursors.get("home", "k").has_more is False


class TestMarkerStore:
    """Tests for in-flight ticket markers."""

    def test_pending_then_done(self, store):
        markers = MarkerStore(store)
        pending = markers.mark_pending("jane@example.com")

        done = markers.mark_done("jane@example.com", 501)

        assert done.status == "done"
        assert done.ticket_id == 501
        assert done.started_at == pending.started_at

    def test_clear_pending_keeps_resolved_markers(self, store):
        markers = MarkerStore(store)
        markers.mark_failed("jane@example.com", "boom")

        assert markers.clear_pending("jane@example.com") is False
        assert markers.get("jane@example.com").status == "failed"

        markers.mark_pending("jane@example.com")
        assert markers.clear_pending("jane@example.com") is True
        assert markers.get("jane@example.com") is None

    def test_missing_key(self, store):
        assert MarkerStore(store).get(None) is None


class TestSelectionStore:

    def test_select_and_clear(self, store):
        selections = SelectionStore(store)
        selections.select("jane@example.com", "42")

        assert selections.selected("jane@example.com") == "42"

        selections.clear("jane@example.com")
        assert selections.selected("jane@example.com") is None
