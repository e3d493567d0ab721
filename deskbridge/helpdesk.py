"""
Helpdesk (ticketing) API client.
"""
import json

from deskbridge.config import settings
from deskbridge.errors import UpstreamError
from deskbridge.logger import get_logger
from deskbridge.models import Attachment, Choice, TicketSchema
from deskbridge.upstream import UpstreamClient, decode_json

logger = get_logger(__name__)


class HelpdeskClient:
    """
    Ticket operations against the helpdesk REST API (v2).

    Authentication is HTTP Basic with the API key as username.
    """

    def __init__(self, upstream: UpstreamClient | None = None):
        self.upstream = upstream or UpstreamClient(
            "helpdesk",
            base_url=settings.freshdesk_domain,
            auth=(settings.freshdesk_api_key or "", settings.freshdesk_password),
        )

    async def aclose(self):
        await self.upstream.aclose()

    def _json(self, response, expect: type = dict):
        return decode_json(response, self.upstream.service, expect)

    def _records(self, response) -> list[dict]:
        records = self._json(response, list)
        if not all(isinstance(r, dict) for r in records):
            raise UpstreamError("Helpdesk returned a list with non-object items",
                                service=self.upstream.service, status_code=response.status_code, body=records)
        return records

    # --- Reads ---

    async def list_tickets(self, email: str | None, per_page: int, page: int = 1) -> list[dict]:
        """Newest-first tickets requested by ``email``. No email means no history."""
        if not email:
            return []
        response = await self.upstream.call_with_retry(
            "GET",
            "/api/v2/tickets",
            params={
                "email": email,
                "order_by": "created_at",
                "order_type": "desc",
                "per_page": per_page,
                "page": page,
            },
        )
        return self._records(response)

    async def list_mailboxes(self) -> list[dict]:
        response = await self.upstream.call_with_retry("GET", "/api/v2/email/mailboxes")
        return [
            {
                "id": mailbox.get("id"),
                "name": mailbox.get("name"),
                "support_email": mailbox.get("support_email"),
                "product_id": mailbox.get("product_id"),
                "active": mailbox.get("active", True),
            }
            for mailbox in self._records(response)
        ]

    async def list_ticket_fields(self) -> list[dict]:
        response = await self.upstream.call_with_retry("GET", "/api/v2/admin/ticket_fields")
        return self._records(response)

    async def field_choices(self, field_id) -> list[dict]:
        response = await self.upstream.call_with_retry("GET", f"/api/v2/admin/ticket_fields/{field_id}")
        return self._json(response).get("choices") or []

    async def choices_for(self, field_name: str, fields: list[dict] | None = None) -> list[Choice]:
        """
        Choices of a named ticket field.

        Status choices are keyed by ``id``; priority choices by ``value``.
        """
        if fields is None:
            fields = await self.list_ticket_fields()
        field = next((f for f in fields if f.get("name") == field_name), None)
        if field is None:
            raise UpstreamError(f"Ticket field '{field_name}' not found", service=self.upstream.service)

        choices = []
        for raw in await self.field_choices(field["id"]):
            value = raw.get("value") if field_name == "priority" else raw.get("id")
            if value is None:
                value = raw.get("id", raw.get("value"))
            choices.append(Choice(value=str(value), label=str(raw.get("label", value))))
        return choices

    async def fetch_schema(self) -> TicketSchema:
        """Mailboxes plus status and priority choices for the create form."""
        mailboxes = await self.list_mailboxes()
        fields = await self.list_ticket_fields()
        names = {f.get("name") for f in fields}
        statuses = await self.choices_for("status", fields) if "status" in names else []
        priorities = await self.choices_for("priority", fields) if "priority" in names else []
        return TicketSchema(
            statuses=statuses,
            priorities=priorities,
            mailboxes=[m for m in mailboxes if m.get("active")],
        )

    # --- Writes ---

    async def create_ticket(self, ticket: dict, attachments: list[Attachment] | None = None) -> dict:
        """
        Create a ticket; multipart when there are attachments, JSON otherwise.

        Sent once; a failed create is never retried.
        """
        if attachments:
            logger.info("Creating ticket with attachments", extra={"attachments": len(attachments)})
            response = await self.upstream.call(
                "POST",
                "/api/v2/tickets",
                data=_form_fields(ticket),
                files=_files(attachments),
            )
        else:
            response = await self.upstream.call("POST", "/api/v2/tickets", json=ticket)
        return self._json(response)

    async def add_note(self, ticket_id, body: str, attachments: list[Attachment] | None = None,
                       private: bool = True) -> dict:
        """Append a note to an existing ticket. Sent once, like ``create_ticket``."""
        path = f"/api/v2/tickets/{ticket_id}/notes"
        if attachments:
            response = await self.upstream.call(
                "POST",
                path,
                data={"body": body, "private": "true" if private else "false"},
                files=_files(attachments),
            )
        else:
            response = await self.upstream.call(
                "POST", path, json={"body": body, "private": private}
            )
        return self._json(response)


def _form_fields(ticket: dict) -> dict[str, str]:
    fields = {}
    for key, value in ticket.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            fields[key] = json.dumps(value)
        else:
            fields[key] = str(value)
    return fields


def _files(attachments: list[Attachment]) -> list[tuple]:
    return [
        ("attachments[]", (a.name, a.content, a.content_type or "application/octet-stream"))
        for a in attachments
    ]
