"""
Tests for the helpdesk and messaging clients and the completion notifier.
"""
import json

import pytest
from unittest.mock import AsyncMock

import httpx

from deskbridge.errors import UpstreamError, UpstreamTransient
from deskbridge.helpdesk import HelpdeskClient
from deskbridge.messaging import MessagingClient
from deskbridge.models import Attachment
from deskbridge.notifier import CompletionNotifier


TICKET_FIELDS = [
    {"id": 11, "name": "status"},
    {"id": 12, "name": "priority"},
    {"id": 13, "name": "requester"},
]

FIELD_CHOICES = {
    "11": {"choices": [{"id": 2, "label": "Open", "value": "Open"}, {"id": 3, "label": "Pending", "value": "Pending"}]},
    "12": {"choices": [{"id": 901, "label": "Low", "value": 1}, {"id": 902, "label": "Medium", "value": 2}]},
}


def helpdesk_api(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/api/v2/email/mailboxes":
        return httpx.Response(200, json=[
            {"id": 1, "name": "Support", "support_email": "s@x.test", "product_id": None, "active": True},
            {"id": 2, "name": "Old", "support_email": "o@x.test", "product_id": None, "active": False},
        ])
    if path == "/api/v2/admin/ticket_fields":
        return httpx.Response(200, json=TICKET_FIELDS)
    if path.startswith("/api/v2/admin/ticket_fields/"):
        return httpx.Response(200, json=FIELD_CHOICES[path.rsplit("/", 1)[-1]])
    return httpx.Response(404, json={"message": "not found"})


class TestHelpdeskClient:
    """Tests for helpdesk request shapes."""

    @pytest.mark.asyncio
    async def test_list_tickets_query(self, make_upstream):
        captured = {}

        def handler(request):
            captured["params"] = dict(request.url.params)
            return httpx.Response(200, json=[{"id": 1, "subject": "s"}])

        client = HelpdeskClient(make_upstream(handler))

        tickets = await client.list_tickets("jane@example.com", per_page=20)

        assert tickets == [{"id": 1, "subject": "s"}]
        assert captured["params"] == {
            "email": "jane@example.com", "order_by": "created_at", "order_type": "desc",
            "per_page": "20", "page": "1",
        }

    @pytest.mark.asyncio
    async def test_list_tickets_without_email_skips_call(self, make_upstream):
        handler = AsyncMock()
        client = HelpdeskClient(make_upstream(handler))

        assert await client.list_tickets("", per_page=20) == []
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_schema_uses_id_for_status_and_value_for_priority(self, make_upstream):
        client = HelpdeskClient(make_upstream(helpdesk_api))

        schema = await client.fetch_schema()

        assert [(c.value, c.label) for c in schema.statuses] == [("2", "Open"), ("3", "Pending")]
        assert [(c.value, c.label) for c in schema.priorities] == [("1", "Low"), ("2", "Medium")]
        assert [m["name"] for m in schema.mailboxes] == ["Support"]

    @pytest.mark.asyncio
    async def test_unknown_field_raises(self, make_upstream):
        client = HelpdeskClient(make_upstream(helpdesk_api))

        with pytest.raises(UpstreamError):
            await client.choices_for("severity")

    @pytest.mark.asyncio
    async def test_create_ticket_json_without_attachments(self, make_upstream):
        captured = {}

        def handler(request):
            captured["content_type"] = request.headers["content-type"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 77})

        client = HelpdeskClient(make_upstream(handler))

        created = await client.create_ticket({"email": "a@b.co", "subject": "s", "status": 2})

        assert created == {"id": 77}
        assert captured["content_type"] == "application/json"
        assert captured["body"]["status"] == 2

    @pytest.mark.asyncio
    async def test_create_ticket_multipart_with_attachments(self, make_upstream):
        captured = {}

        def handler(request):
            captured["content_type"] = request.headers["content-type"]
            captured["body"] = request.read()
            return httpx.Response(201, json={"id": 78})

        client = HelpdeskClient(make_upstream(handler))
        files = [Attachment(name="receipt.pdf", content_type="application/pdf", content=b"%PDF")]

        await client.create_ticket({"email": "a@b.co", "subject": "s", "priority": 3}, files)

        assert captured["content_type"].startswith("multipart/form-data")
        assert b'name="attachments[]"; filename="receipt.pdf"' in captured["body"]
        assert b'name="priority"\r\n\r\n3' in captured["body"]

    @pytest.mark.asyncio
    async def test_add_note_is_private(self, make_upstream):
        captured = {}

        def handler(request):
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 5})

        client = HelpdeskClient(make_upstream(handler))

        await client.add_note(42, "<p>note</p>")

        assert captured["path"] == "/api/v2/tickets/42/notes"
        assert captured["body"] == {"body": "<p>note</p>", "private": True}

    @pytest.mark.asyncio
    async def test_create_ticket_is_not_retried(self, make_upstream):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("read timed out", request=request)

        client = HelpdeskClient(make_upstream(handler))

        with pytest.raises(UpstreamTransient):
            await client.create_ticket({"email": "a@b.co", "subject": "s"})
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_add_note_is_not_retried(self, make_upstream):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        client = HelpdeskClient(make_upstream(handler))

        with pytest.raises(UpstreamTransient):
            await client.add_note(42, "<p>note</p>")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_json_ticket_list_raises_upstream_error(self, make_upstream):
        client = HelpdeskClient(make_upstream(lambda request: httpx.Response(200, text="<html>maintenance</html>")))

        with pytest.raises(UpstreamError) as exc_info:
            await client.list_tickets("jane@example.com", per_page=20)
        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    async def test_ticket_list_of_wrong_shape_raises_upstream_error(self, make_upstream):
        client = HelpdeskClient(make_upstream(lambda request: httpx.Response(200, json={"tickets": []})))

        with pytest.raises(UpstreamError):
            await client.list_tickets("jane@example.com", per_page=20)


class TestMessagingClient:
    """Tests for messaging request shapes and downloads."""

    @pytest.mark.asyncio
    async def test_post_note_payload(self, make_upstream, test_config):
        captured = {}

        def handler(request):
            captured["auth"] = request.headers.get("authorization")
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        original = test_config.intercom_access_token, test_config.intercom_admin_id
        test_config.intercom_access_token = "tok"
        test_config.intercom_admin_id = 7
        try:
            client = MessagingClient(make_upstream(handler, service="messaging"), downloads=AsyncMock())
            await client.post_note("123", "hello")
        finally:
            test_config.intercom_access_token, test_config.intercom_admin_id = original

        assert captured["auth"] == "Bearer tok"
        assert captured["body"] == {"message_type": "note", "type": "admin", "body": "hello", "admin_id": 7}

    @pytest.mark.asyncio
    async def test_post_note_is_not_retried(self, make_upstream):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        client = MessagingClient(make_upstream(handler, service="messaging"), downloads=AsyncMock())

        with pytest.raises(UpstreamTransient):
            await client.post_note("123", "hello")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_download_retries_without_query(self, make_upstream):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            if request.url.query:
                return httpx.Response(403)
            return httpx.Response(200, content=b"bytes")

        client = MessagingClient(AsyncMock(), downloads=make_upstream(handler, service="attachments"))

        content = await client.download("https://files.test/a.png?sig=1&amp;exp=2")

        assert content == b"bytes"
        assert seen == ["https://files.test/a.png?sig=1&exp=2", "https://files.test/a.png"]

    @pytest.mark.asyncio
    async def test_download_gives_up_after_second_failure(self, make_upstream):
        client = MessagingClient(
            AsyncMock(), downloads=make_upstream(lambda request: httpx.Response(404), service="attachments")
        )

        assert await client.download("https://files.test/a.png?sig=1") is None


class TestCompletionNotifier:
    """Tests for best-effort completion notes."""

    @pytest.mark.asyncio
    async def test_posts_note(self):
        messaging = AsyncMock()
        notifier = CompletionNotifier(messaging)

        assert await notifier.notify("123", "done") is True
        messaging.post_note.assert_awaited_once_with("123", "done")

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self):
        messaging = AsyncMock()
        messaging.post_note.side_effect = UpstreamTransient("down", service="messaging")
        notifier = CompletionNotifier(messaging)

        assert await notifier.notify("123", "done") is False
        messaging.post_note.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_thread_no_note(self):
        messaging = AsyncMock()

        assert await CompletionNotifier(messaging).notify(None, "done") is False
        messaging.post_note.assert_not_awaited()
