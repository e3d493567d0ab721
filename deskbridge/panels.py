"""
Panel construction.

A Panel is the immutable UI descriptor returned for every event: an ordered
list of elements plus optional pre-filled values and field-level errors.
The builders here produce the concrete screens of the inbox app.
"""
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo

from deskbridge.config import settings
from deskbridge.models import Choice, SessionContext, TicketSchema, TicketSummary
from deskbridge.session_store import TicketMarker

DEFAULT_DESCRIPTION = "Chat Transcript Added"

# Action ids rendered on buttons
CREATE_TICKET = "create_ticket"
ADD_TO_EXISTING = "add_to_existing_ticket"
SUBMIT_TICKET = "submit_ticket_button"
CANCEL = "cancel"
CANCEL_MERGE = "cancel_merge"
BACK_TO_HOME = "back_to_home"
MERGE_TICKET = "merge_ticket"
LOAD_MORE_MERGE = "load_more_tickets"
LOAD_MORE_HOME = "load_more_home_tickets"
RETRY = "retry_button"
SELECT_TICKET_PREFIX = "select_ticket_"


@dataclass(frozen=True)
class Panel:
    elements: tuple = ()
    values: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def element(self, element_id: str) -> dict | None:
        return next((e for e in self.elements if e.get("id") == element_id), None)

    def element_ids(self) -> list[str]:
        return [e["id"] for e in self.elements if "id" in e]

    def to_wire(self) -> dict:
        panel = {"elements": [dict(e) for e in self.elements]}
        if self.values:
            panel["values"] = dict(self.values)
        if self.errors:
            panel["errors"] = dict(self.errors)
        return {"panel": panel}


# --- Elements ---

def text(value: str, style: str | None = None, element_id: str | None = None, **extra) -> dict:
    element = {"type": "text", "text": value}
    if element_id:
        element["id"] = element_id
    if style:
        element["style"] = style
    element.update(extra)
    return element


def button(element_id: str, label: str, style: str = "secondary") -> dict:
    return {"type": "button", "id": element_id, "label": label, "style": style, "action": {"type": "submit"}}


def spacer(size: str = "s") -> dict:
    return {"type": "spacer", "size": size}


def divider() -> dict:
    return {"type": "divider"}


def input_field(element_id: str, label: str, value: str = "", error: str | None = None, **extra) -> dict:
    element = {"type": "input", "id": element_id, "label": label, "value": value}
    element.update(extra)
    if error:
        element["error"] = error
    return element


def textarea(element_id: str, label: str, value: str = "") -> dict:
    return {"type": "textarea", "id": element_id, "label": label, "value": value}


def dropdown(element_id: str, label: str, choices: list[Choice], value: str = "") -> dict:
    return {
        "type": "dropdown",
        "id": element_id,
        "label": label,
        "value": value,
        "options": [
            {"type": "option", "id": f"{element_id}_{c.value}", "text": c.label, "value": c.value}
            for c in choices
        ],
    }


# --- Formatting ---

def format_created_at(ticket: TicketSummary) -> str:
    """``DD/MM/YYYY, hh:mm AM`` in the display timezone."""
    if ticket.created_at is None:
        return ""
    local = ticket.created_at.astimezone(ZoneInfo(settings.display_timezone))
    return local.strftime("%d/%m/%Y, %I:%M %p")


def truncate(subject: str, limit: int | None = None) -> str:
    limit = limit or settings.subject_display_limit
    return subject if len(subject) <= limit else subject[:limit] + "..."


# --- Screens ---

def recent_tickets(tickets: list[TicketSummary], has_more: bool = False) -> list[dict]:
    elements = [
        spacer("l"),
        text("Recent Tickets", style="header", element_id="recent_tickets_header"),
        spacer("xs"),
    ]
    if not tickets:
        elements.append(text("No recent tickets found for this user.", style="muted", element_id="no_tickets"))
        return elements

    for ticket in tickets:
        link = f"[#{ticket.id} - {truncate(ticket.subject)}]({settings.ticket_url(ticket.id)})"
        elements.append(text(link, style="muted", element_id=f"ticket_{ticket.id}"))
        elements.append(text(format_created_at(ticket), style="muted", element_id=f"ticket_date_{ticket.id}",
                             size="small"))
        elements.append(spacer("xs"))

    if has_more:
        elements.append(spacer("m"))
        elements.append(button(LOAD_MORE_HOME, "Load More Tickets"))
    return elements


def marker_status(marker: TicketMarker | None) -> list[dict]:
    if marker is None:
        return []
    if marker.status == "pending":
        return [text("A ticket is being created for this conversation.", style="muted",
                     element_id="ticket_in_progress")]
    if marker.status == "done":
        return [text(f"Last ticket created: [#{marker.ticket_id}]({settings.ticket_url(marker.ticket_id)})",
                     style="muted", element_id="ticket_created")]
    return [text("The last ticket could not be created.", style="error", element_id="ticket_failed")]


def home_panel(tickets: list[TicketSummary], has_more: bool = False,
               marker: TicketMarker | None = None) -> Panel:
    elements = [
        spacer("m"),
        button(CREATE_TICKET, "Create a Freshdesk Ticket", style="primary"),
        spacer("s"),
        button(ADD_TO_EXISTING, "Add to existing Freshdesk Ticket"),
        *marker_status(marker),
        *recent_tickets(tickets, has_more),
    ]
    return Panel(elements=tuple(elements))


def default_panel() -> Panel:
    """Minimal safe screen for anything unrecognized."""
    return Panel(elements=(
        button(CREATE_TICKET, "Create a Freshdesk Ticket", style="primary"),
        spacer("s"),
        button(ADD_TO_EXISTING, "Add to existing Freshdesk Ticket"),
    ))


def create_form(session: SessionContext, schema: TicketSchema, submitted: dict[str, str] | None = None,
                errors: dict[str, str] | None = None) -> Panel:
    """
    The create-ticket form.

    Without ``submitted`` the fields are pre-filled from the session. With it,
    every submitted value is echoed back unchanged so nothing typed is lost.
    """
    errors = {k: v for k, v in (errors or {}).items() if v}
    default_status = schema.default_status()
    default_priority = schema.default_priority()

    if submitted is None:
        values = {
            "email": session.email,
            "subject": session.default_subject,
            "description": session.description or DEFAULT_DESCRIPTION,
            "status": f"status_{default_status.value}" if default_status else "",
            "priority": f"priority_{default_priority.value}" if default_priority else "",
        }
        if not session.email:
            errors.setdefault("email", "Email is required")
    else:
        values = {
            "email": submitted.get("email", ""),
            "subject": submitted.get("subject", ""),
            "description": submitted.get("description") or DEFAULT_DESCRIPTION,
            "status": submitted.get("status") or (f"status_{default_status.value}" if default_status else ""),
            "priority": submitted.get("priority")
            or (f"priority_{default_priority.value}" if default_priority else ""),
        }

    elements = []
    if submitted is not None and errors:
        elements.append(text(" and ".join(sorted({m for m in errors.values()})), style="error",
                             element_id="form_error"))
    elements.append(text("Create a new Freshdesk ticket", style="header"))
    elements.append(input_field(
        "email", "Email", values["email"], error=errors.get("email"),
        placeholder="Enter email address",
        validation_rules={
            "required": {"error": "Email is required"},
            "format": {"type": "email_address", "error": "Please enter a valid email address"},
        },
    ))
    elements.append(input_field(
        "subject", "Subject", values["subject"], error=errors.get("subject"),
        validation_rules={"required": {"error": "Subject is required"}},
    ))
    elements.append(textarea("description", "Description", values["description"]))
    if schema.statuses:
        elements.append(dropdown("status", "Status", schema.statuses, values["status"]))
    if schema.priorities:
        elements.append(dropdown("priority", "Priority", schema.priorities, values["priority"]))
    elements.append(button(SUBMIT_TICKET, "Create Ticket", style="primary"))
    elements.append(button(CANCEL, "Cancel"))

    return Panel(
        elements=tuple(elements),
        values={k: v for k, v in values.items() if k in ("status", "priority") and v},
        errors=errors,
    )


def merge_list_panel(tickets: list[TicketSummary], has_more: bool) -> Panel:
    if not tickets:
        return Panel(elements=(
            text("No existing tickets found for this user.", align="center", element_id="no_tickets"),
            spacer("m"),
            button(BACK_TO_HOME, "Back to Home"),
        ))

    elements = [text("Select a ticket to merge this conversation into:", style="header")]
    for ticket in tickets:
        elements.append(button(f"{SELECT_TICKET_PREFIX}{ticket.id}", f"#{ticket.id} - {ticket.subject}"))
        elements.append(spacer("s"))
    if has_more:
        elements.append(spacer("m"))
        elements.append(button(LOAD_MORE_MERGE, "Load More Tickets"))
    elements.append(spacer("m"))
    elements.append(button(BACK_TO_HOME, "Back to Home"))
    return Panel(elements=tuple(elements))


def confirm_merge_panel(ticket_id: str) -> Panel:
    return Panel(elements=(
        text(f"Merge conversation with Ticket #{ticket_id}?", style="header", align="center"),
        button(MERGE_TICKET, "Merge", style="primary"),
        spacer("s"),
        button(CANCEL_MERGE, "Cancel"),
    ))


def error_panel(message: str, retry_id: str = RETRY, retry_label: str = "Retry") -> Panel:
    return Panel(elements=(
        text("Error", style="header"),
        text(message, style="error", element_id="error"),
        button(retry_id, retry_label, style="primary"),
    ))


def session_expired_panel(back_id: str = BACK_TO_HOME) -> Panel:
    return Panel(elements=(
        text("Error: Session expired. Please try again.", align="center", element_id="session_expired"),
        button(back_id, "Back to Home"),
    ))
