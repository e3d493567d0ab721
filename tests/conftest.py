"""
Pytest configuration and fixtures for testing.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx

from deskbridge.config import settings
from deskbridge.helpdesk import HelpdeskClient
from deskbridge.machine import InteractionStateMachine
from deskbridge.messaging import MessagingClient
from deskbridge.models import Choice, SessionContext, TicketSchema
from deskbridge.notifier import CompletionNotifier
from deskbridge.session_store import InMemorySessionStore
from deskbridge.upstream import UpstreamClient


def _raw_tickets(count: int, start_id: int = 100) -> list[dict]:
    """Newest-first ticket payloads as the helpdesk returns them."""
    base = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    return [
        {
            "id": start_id + count - i,
            "subject": f"Ticket {start_id + count - i}",
            "created_at": (base + timedelta(hours=count - i)).isoformat().replace("+00:00", "Z"),
        }
        for i in range(count)
    ]


def _upstream(handler, service: str = "helpdesk", **kwargs) -> UpstreamClient:
    """UpstreamClient over an ``httpx.MockTransport`` that never really sleeps."""
    kwargs.setdefault("sleep", AsyncMock())
    kwargs.setdefault("rand", lambda: 0.5)
    return UpstreamClient(
        service,
        base_url="https://helpdesk.test",
        transport=httpx.MockTransport(handler),
        **kwargs
    )


@pytest.fixture
def make_raw_tickets():
    return _raw_tickets


@pytest.fixture
def make_upstream():
    return _upstream


@pytest.fixture
def session() -> SessionContext:
    """Conversation opened for a known customer."""
    return SessionContext(email="jane@example.com", name="Jane Doe", thread_id="8812", description="")


@pytest.fixture
def anonymous_session() -> SessionContext:
    """Conversation where the inbox knows nothing about the customer."""
    return SessionContext()


@pytest.fixture
def schema() -> TicketSchema:
    return TicketSchema(
        statuses=[Choice("2", "Open"), Choice("3", "Pending"), Choice("4", "Resolved")],
        priorities=[Choice("1", "Low"), Choice("2", "Medium"), Choice("3", "High")],
        mailboxes=[{"id": 1, "name": "Support", "support_email": "help@example.com", "active": True}],
    )


@pytest.fixture
def conversation() -> dict:
    """Messaging API conversation with a source message, a reply, a note and an image."""
    return {
        "id": "8812",
        "created_at": 1714557600,
        "source": {
            "body": "<p>My order never arrived</p>",
            "author": {"type": "user", "name": "Jane Doe", "email": "jane@example.com"},
            "attachments": [
                {"name": "receipt.pdf", "url": "https://files.test/receipt.pdf", "content_type": "application/pdf"}
            ],
        },
        "conversation_parts": {
            "conversation_parts": [
                {
                    "part_type": "comment",
                    "body": '<p>Looking into it <img src="https://files.test/screen.jpg?sig=1&amp;x=2"></p>',
                    "author": {"type": "admin", "name": "Sam"},
                    "created_at": 1714557700,
                },
                {
                    "part_type": "note",
                    "body": "<p>Carrier lost it</p>",
                    "author": {"type": "admin", "name": "Sam"},
                    "created_at": 1714557800,
                },
                {"part_type": "assignment", "body": "", "author": {"type": "bot"}, "created_at": 1714557900},
            ]
        },
    }


@pytest.fixture
def helpdesk(schema) -> MagicMock:
    """Helpdesk client with async methods mocked."""
    mock = MagicMock(spec=HelpdeskClient)
    mock.list_tickets = AsyncMock(return_value=_raw_tickets(20))
    mock.fetch_schema = AsyncMock(return_value=schema)
    mock.create_ticket = AsyncMock(return_value={"id": 501, "subject": "Order missing"})
    mock.add_note = AsyncMock(return_value={"id": 9})
    mock.list_mailboxes = AsyncMock(return_value=schema.mailboxes)
    mock.choices_for = AsyncMock(return_value=schema.statuses)
    mock.aclose = AsyncMock()
    return mock


@pytest.fixture
def messaging(conversation) -> MagicMock:
    mock = MagicMock(spec=MessagingClient)
    mock.fetch_thread = AsyncMock(return_value=conversation)
    mock.post_note = AsyncMock(return_value={"type": "conversation_part"})
    mock.download = AsyncMock(return_value=b"file-bytes")
    mock.aclose = AsyncMock()
    return mock


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore(ttl_s=600, max_entries=100)


@pytest.fixture
def machine(helpdesk, messaging, store) -> InteractionStateMachine:
    return InteractionStateMachine(
        helpdesk=helpdesk,
        messaging=messaging,
        notifier=CompletionNotifier(messaging),
        store=store,
    )


@pytest.fixture
def test_config():
    """Test configuration overrides."""
    # Store original values
    original_env = settings.environment
    original_keys = settings.api_keys
    original_deadline = settings.response_deadline_ms

    # Set test values
    settings.environment = "development"
    settings.api_keys = []

    yield settings

    # Restore original values
    settings.environment = original_env
    settings.api_keys = original_keys
    settings.response_deadline_ms = original_deadline
