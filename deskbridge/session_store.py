"""
Session-scoped interaction state: the key/value store abstraction plus the
pagination cursors, in-flight ticket markers and merge selections kept in it.

State lives in process memory. Losing it (restart, TTL expiry) is a
recoverable condition: callers fall back to a fresh upstream fetch or a
"session expired" panel.
"""
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal

from deskbridge.config import settings
from deskbridge.logger import get_logger

logger = get_logger(__name__)


class SessionStore(ABC):
    """Key/value store for interaction state, keyed by session identity."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass


class InMemorySessionStore(SessionStore):
    """
    Process-local store with a per-entry TTL and an entry cap.

    The least recently written entry is evicted when the cap is reached.
    """

    def __init__(self, ttl_s: float | None = None, max_entries: int | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s if ttl_s is not None else settings.session_ttl_s
        self.max_entries = max_entries or settings.session_max_entries
        self._clock = clock
        self._data: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def get(self, key: str) -> Any | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._data.pop(key, None)
        self._data[key] = (self._clock() + self.ttl_s, value)
        while len(self._data) > self.max_entries:
            evicted, _ = self._data.popitem(last=False)
            logger.debug("Evicted session entry", extra={"key": evicted})

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def __len__(self):
        return len(self._data)


# --- Pagination cursors ---

ListKind = Literal["home", "merge"]


@dataclass(frozen=True)
class Cursor:
    """Tickets fetched once plus how many of them have been revealed."""
    session_key: str
    items: tuple = ()
    revealed: int = 0
    has_more: bool = False
    page_size: int = 5

    @property
    def visible(self) -> list:
        return list(self.items[:self.revealed])


@dataclass(frozen=True)
class Page:
    """Result of a list step: what was newly revealed and the cursor after it."""
    added: list
    cursor: Cursor

    @property
    def visible(self) -> list:
        return self.cursor.visible

    @property
    def has_more(self) -> bool:
        return self.cursor.has_more


class CursorStore:
    """
    Bounded-depth pagination over one upfront fetch.

    ``start_list`` fetches at most ``fetch_cap`` items once; ``next_page`` only
    slices locally. Once the fetched items are exhausted ``has_more`` is
    false, even if the upstream holds more beyond the cap.
    """

    def __init__(self, store: SessionStore, fetch_cap: int | None = None, page_size: int | None = None):
        self.store = store
        self.fetch_cap = fetch_cap or settings.list_fetch_cap
        self.page_size = page_size or settings.page_size

    @staticmethod
    def _key(kind: ListKind, session_key: str) -> str:
        return f"cursor:{kind}:{session_key}"

    def get(self, kind: ListKind, session_key: str | None) -> Cursor | None:
        if not session_key:
            return None
        return self.store.get(self._key(kind, session_key))

    async def start_list(
        self,
        kind: ListKind,
        session_key: str,
        fetch: Callable[[int], Awaitable[list]],
        page_size: int | None = None,
    ) -> Page:
        """Fetch up to the cap, store the result and reveal the first window."""
        page_size = page_size or self.page_size
        items = tuple((await fetch(self.fetch_cap))[:self.fetch_cap])
        first = items[:page_size]
        cursor = Cursor(
            session_key=session_key,
            items=items,
            revealed=len(first),
            has_more=len(items) > page_size,
            page_size=page_size,
        )
        self.store.set(self._key(kind, session_key), cursor)
        logger.info(
            "List cursor started",
            extra={"kind": kind, "fetched": len(items), "has_more": cursor.has_more}
        )
        return Page(added=list(first), cursor=cursor)

    def next_page(self, kind: ListKind, session_key: str | None) -> Page | None:
        """Reveal the next window locally. None when no cursor exists for the key."""
        cursor = self.get(kind, session_key)
        if cursor is None:
            return None

        # No await between read and write: advances never interleave on one loop
        start = cursor.revealed
        end = min(start + cursor.page_size, len(cursor.items))
        advanced = replace(cursor, revealed=end, has_more=end < len(cursor.items))
        self.store.set(self._key(kind, session_key), advanced)
        logger.info(
            "List cursor advanced",
            extra={"kind": kind, "revealed": advanced.revealed, "has_more": advanced.has_more}
        )
        return Page(added=list(cursor.items[start:end]), cursor=advanced)

    def drop(self, kind: ListKind, session_key: str) -> None:
        self.store.delete(self._key(kind, session_key))


# --- In-flight ticket markers ---

MarkerStatus = Literal["pending", "done", "failed"]


@dataclass(frozen=True)
class TicketMarker:
    """Advisory status of a background ticket creation for one session."""
    key: str
    status: MarkerStatus
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ticket_id: Any = None
    error: str | None = None


class MarkerStore:
    """In-flight ticket markers, overwritten by the next marker for the same key."""

    def __init__(self, store: SessionStore):
        self.store = store

    @staticmethod
    def _key(session_key: str) -> str:
        return f"marker:{session_key}"

    def get(self, session_key: str | None) -> TicketMarker | None:
        if not session_key:
            return None
        return self.store.get(self._key(session_key))

    def mark_pending(self, session_key: str) -> TicketMarker:
        marker = TicketMarker(key=session_key, status="pending")
        self.store.set(self._key(session_key), marker)
        return marker

    def mark_done(self, session_key: str, ticket_id) -> TicketMarker:
        previous = self.get(session_key)
        marker = TicketMarker(
            key=session_key,
            status="done",
            started_at=previous.started_at if previous else datetime.now(timezone.utc),
            ticket_id=ticket_id,
        )
        self.store.set(self._key(session_key), marker)
        return marker

    def mark_failed(self, session_key: str, error: str) -> TicketMarker:
        previous = self.get(session_key)
        marker = TicketMarker(
            key=session_key,
            status="failed",
            started_at=previous.started_at if previous else datetime.now(timezone.utc),
            error=error,
        )
        self.store.set(self._key(session_key), marker)
        return marker

    def clear_pending(self, session_key: str | None) -> bool:
        """Forget a pending marker; completed and failed markers are kept."""
        marker = self.get(session_key)
        if marker is not None and marker.status == "pending":
            self.store.delete(self._key(session_key))
            return True
        return False


# --- Merge selection ---

class SelectionStore:
    """Ticket chosen on the select step, awaiting confirmation."""

    def __init__(self, store: SessionStore):
        self.store = store

    @staticmethod
    def _key(session_key: str) -> str:
        return f"selection:{session_key}"

    def select(self, session_key: str, ticket_id: str) -> None:
        self.store.set(self._key(session_key), ticket_id)

    def selected(self, session_key: str | None) -> str | None:
        if not session_key:
            return None
        return self.store.get(self._key(session_key))

    def clear(self, session_key: str | None) -> None:
        if session_key:
            self.store.delete(self._key(session_key))
