"""
Interaction State Machine

Every inbound event is a standalone command: the action id is parsed into an
``ActionKind`` and handled against whatever session state currently exists
(cursors, markers, merge selection). No screen state is kept on the client,
and there is no explicit "current screen" on the server either.

Handlers return one of three transitions:

* ``Immediate``: the next panel, computed synchronously.
* ``Deferred``: an interim panel plus a background task that outlives the reply.
* ``Error``: a recoverable failure shown as a panel with a retry button.
"""
import re
from functools import partial

from deskbridge import panels
from deskbridge.actions import Action, ActionKind, parse_action
from deskbridge.config import settings
from deskbridge.errors import BridgeError, FormValidationError, SessionLost, UpstreamError, UpstreamRejected
from deskbridge.helpdesk import HelpdeskClient
from deskbridge.logger import get_logger
from deskbridge.messaging import MessagingClient
from deskbridge.models import SessionContext, TicketSchema, TicketSummary
from deskbridge.notifier import CompletionNotifier
from deskbridge.panels import Panel
from deskbridge.session_store import CursorStore, ListKind, MarkerStore, SelectionStore, SessionStore
from deskbridge.transcript import (
    download_attachments,
    format_transcript,
    note_body,
    ticket_description,
)
from deskbridge.transitions import Deferred, Error, Immediate, Transition

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SCHEMA_KEY = "schema:ticket_form"

# Ticket source "web form" in the helpdesk
TICKET_SOURCE = 2


def validate_ticket_form(values: dict[str, str]) -> dict[str, str]:
    """Field errors for the create form; empty when it may be submitted."""
    errors = {}
    email = (values.get("email") or "").strip()
    if not email:
        errors["email"] = "Email is required"
    elif not EMAIL_PATTERN.match(email):
        errors["email"] = "Please enter a valid email address"
    if not (values.get("subject") or "").strip():
        errors["subject"] = "Subject is required"
    return errors


def _choice_value(raw: str | None, prefix: str) -> int | None:
    if not raw:
        return None
    value = raw[len(prefix):] if raw.startswith(prefix) else raw
    try:
        return int(value)
    except ValueError:
        return None


def _failure_reason(error: Exception) -> str:
    if isinstance(error, UpstreamRejected):
        return error.detail
    return str(error) or error.__class__.__name__


class InteractionStateMachine:
    """Maps (action id, form values, session) to a transition."""

    def __init__(
        self,
        helpdesk: HelpdeskClient,
        messaging: MessagingClient,
        notifier: CompletionNotifier,
        store: SessionStore,
    ):
        self.helpdesk = helpdesk
        self.messaging = messaging
        self.notifier = notifier
        self.store = store
        self.cursors = CursorStore(store)
        self.markers = MarkerStore(store)
        self.selections = SelectionStore(store)

    # --- Entry points ---

    async def handle(self, action_id: str | None, form_values: dict[str, str] | None,
                     session: SessionContext) -> Transition:
        action = parse_action(action_id)
        form_values = form_values or {}
        logger.info("Handling action", extra={"kind": action.kind.value})

        try:
            match action.kind:
                case ActionKind.START_CREATE:
                    return await self._start_create(session)
                case ActionKind.SUBMIT_CREATE:
                    return await self._submit_create(form_values, session)
                case ActionKind.BROWSE_EXISTING:
                    return await self._browse_existing(session)
                case ActionKind.SELECT_TARGET:
                    return self._select_target(action, session)
                case ActionKind.LOAD_MORE_HOME:
                    return self._load_more("home", session)
                case ActionKind.LOAD_MORE_MERGE:
                    return self._load_more("merge", session)
                case ActionKind.CONFIRM_MERGE:
                    return await self._confirm_merge(session)
                case ActionKind.CANCEL_MERGE:
                    self.selections.clear(session.key)
                    return Immediate(await self.home_view(session))
                case ActionKind.CANCEL:
                    return Immediate(await self.home_view(session))
                case ActionKind.UNKNOWN:
                    logger.info("Unrecognized action, showing default panel")
                    return Immediate(panels.default_panel())
        except SessionLost as e:
            logger.warning("Session state missing", extra={"kind": action.kind.value, "error": str(e)})
            return Error(panels.session_expired_panel())
        except Exception as e:
            logger.error("Action failed", extra={"kind": action.kind.value, "error": str(e)}, exc_info=True)
            return Error(panels.error_panel(f"An error occurred: {e}", retry_id=panels.CANCEL,
                                            retry_label="Try Again"))
        return Immediate(panels.default_panel())

    async def initialize(self, session: SessionContext) -> Panel:
        """First render when the app is opened: fresh home list, stale pending marker cleared."""
        if self.markers.clear_pending(session.key):
            logger.info("Cleared pending ticket marker on initialize")
        return await self.home_view(session, refresh=True)

    def fallback_panel(self, action_id: str | None, form_values: dict[str, str] | None,
                       session: SessionContext) -> Panel:
        """
        Deadline panel built from local state only.

        A submit that missed the deadline is marked pending so the home view
        reflects it until the background work resolves the marker.
        """
        action = parse_action(action_id)
        form_values = form_values or {}
        marker_key = session.key
        if action.kind is ActionKind.SUBMIT_CREATE and not validate_ticket_form(form_values):
            marker_key = self._marker_key(form_values, session)
            self.markers.mark_pending(marker_key)
        cursor = self.cursors.get("home", session.key)
        return panels.home_panel(
            cursor.visible if cursor else [],
            cursor.has_more if cursor else False,
            self.markers.get(marker_key),
        )

    # --- Shared views ---

    async def _fetch_tickets(self, email: str, limit: int) -> list[TicketSummary]:
        raw = await self.helpdesk.list_tickets(email, per_page=limit)
        return [TicketSummary.from_api(t) for t in raw]

    async def home_view(self, session: SessionContext, refresh: bool = False) -> Panel:
        """Home panel from the cached home cursor, fetching only when none is cached."""
        key = session.key
        if not key:
            return panels.home_panel([], False)

        marker = self.markers.get(key)
        cursor = None if refresh else self.cursors.get("home", key)
        if cursor is not None:
            return panels.home_panel(cursor.visible, cursor.has_more, marker)

        try:
            page = await self.cursors.start_list("home", key, partial(self._fetch_tickets, session.email))
        except UpstreamError as e:
            logger.warning("Could not load recent tickets", extra={"error": str(e)})
            return panels.home_panel([], False, marker)
        return panels.home_panel(page.visible, page.has_more, marker)

    # --- Create ---

    async def _load_schema(self) -> TicketSchema:
        schema = await self.helpdesk.fetch_schema()
        self.store.set(SCHEMA_KEY, schema)
        return schema

    async def _start_create(self, session: SessionContext) -> Transition:
        try:
            schema = await self._load_schema()
        except UpstreamError as e:
            logger.error("Failed to load ticket form schema", extra={"error": str(e)})
            return Error(panels.error_panel("Failed to load Freshdesk data. Please try again in a moment."))
        return Immediate(panels.create_form(session, schema))

    def _marker_key(self, form_values: dict[str, str], session: SessionContext) -> str | None:
        return session.key or (form_values.get("email") or "").strip().lower() or None

    async def _submit_create(self, form_values: dict[str, str], session: SessionContext) -> Transition:
        try:
            errors = validate_ticket_form(form_values)
            if errors:
                raise FormValidationError(errors)
        except FormValidationError as e:
            logger.info("Ticket form rejected", extra={"fields": sorted(e.errors)})
            schema = self.store.get(SCHEMA_KEY) or TicketSchema()
            return Immediate(panels.create_form(session, schema, submitted=form_values, errors=e.errors))

        ticket = {
            "email": form_values["email"].strip(),
            "subject": form_values["subject"].strip(),
            "description": form_values.get("description") or session.description or panels.DEFAULT_DESCRIPTION,
            "source": TICKET_SOURCE,
        }
        status = _choice_value(form_values.get("status"), "status_")
        priority = _choice_value(form_values.get("priority"), "priority_")
        if status is not None:
            ticket["status"] = status
        if priority is not None:
            ticket["priority"] = priority

        key = self._marker_key(form_values, session)
        self.markers.mark_pending(key)
        logger.info("Ticket creation accepted", extra={"subject": ticket["subject"]})

        try:
            interim = await self.home_view(session)
        except Exception as e:
            logger.warning("Home view unavailable, using bare interim panel", extra={"error": str(e)})
            interim = panels.home_panel([], False, self.markers.get(key))
        job = partial(self._create_ticket_job, key, session.thread_id, ticket)
        return Deferred(interim, job, label="create_ticket")

    async def _create_ticket_job(self, key: str, thread_id, ticket: dict):
        try:
            attachments = []
            if thread_id:
                try:
                    conversation = await self.messaging.fetch_thread(thread_id)
                    transcript = format_transcript(conversation)
                    ticket = {
                        **ticket,
                        "description": ticket_description(ticket["description"], transcript.html, thread_id),
                    }
                    attachments = await download_attachments(self.messaging, transcript.attachments)
                except (BridgeError, ValueError) as e:
                    logger.warning("Creating ticket without transcript", extra={"error": str(e)})
            created = await self.helpdesk.create_ticket(ticket, attachments)
        except Exception as e:
            reason = _failure_reason(e)
            self.markers.mark_failed(key, reason)
            logger.error("Ticket creation failed", extra={"error": reason})
            await self.notifier.notify(
                thread_id, f"Freshdesk Ticket creation failed. Contact Admin.\nError: {reason}"
            )
            raise

        ticket_id = created.get("id")
        self.markers.mark_done(key, ticket_id)
        # The new ticket is not in the cached list; next home view refetches
        self.cursors.drop("home", key)
        logger.info("Ticket created", extra={"ticket_id": ticket_id})
        await self.notifier.notify(
            thread_id, f"Freshdesk Ticket creation successful.\nTicket URL: {settings.ticket_url(ticket_id)}"
        )

    # --- Merge into existing ---

    async def _browse_existing(self, session: SessionContext) -> Transition:
        key = session.key
        if not key:
            return Immediate(Panel(elements=(
                panels.text("Could not find customer email to fetch tickets.", align="center"),
                panels.button(panels.CANCEL, "Back to Home"),
            )))
        try:
            page = await self.cursors.start_list("merge", key, partial(self._fetch_tickets, session.email))
        except UpstreamError as e:
            logger.error("Failed to list tickets for merge", extra={"error": str(e)})
            return Error(panels.error_panel("Error fetching recent tickets. Please try again.",
                                            retry_id=panels.ADD_TO_EXISTING, retry_label="Try Again"))
        return Immediate(panels.merge_list_panel(page.visible, page.has_more))

    def _select_target(self, action: Action, session: SessionContext) -> Transition:
        if not session.key:
            raise SessionLost("No session key to remember the merge target under")
        self.selections.select(session.key, action.target)
        logger.info("Merge target selected", extra={"ticket_id": action.target})
        return Immediate(panels.confirm_merge_panel(action.target))

    def _load_more(self, kind: ListKind, session: SessionContext) -> Transition:
        page = self.cursors.next_page(kind, session.key)
        if page is None:
            raise SessionLost(f"No {kind} list cursor for this session")
        if kind == "home":
            return Immediate(panels.home_panel(page.visible, page.has_more, self.markers.get(session.key)))
        return Immediate(panels.merge_list_panel(page.visible, page.has_more))

    async def _confirm_merge(self, session: SessionContext) -> Transition:
        ticket_id = self.selections.selected(session.key)
        thread_id = session.thread_id
        if not ticket_id or not thread_id:
            logger.warning("Merge confirmed without target or conversation",
                           extra={"has_ticket": bool(ticket_id), "has_thread": bool(thread_id)})
            return Error(Panel(elements=(
                panels.text("Error: Missing ticket or conversation ID.", style="header"),
                panels.button(panels.BACK_TO_HOME, "Back to Home", style="primary"),
            )))

        self.selections.clear(session.key)
        interim = await self.home_view(session)
        return Deferred(interim, partial(self._merge_job, ticket_id, thread_id), label="merge_ticket")

    async def _merge_job(self, ticket_id: str, thread_id):
        try:
            conversation = await self.messaging.fetch_thread(thread_id)
            transcript = format_transcript(conversation)
            attachments = await download_attachments(self.messaging, transcript.attachments)
            await self.helpdesk.add_note(ticket_id, note_body(transcript.html, thread_id), attachments)
        except Exception as e:
            reason = _failure_reason(e)
            logger.error("Adding conversation to ticket failed", extra={"ticket_id": ticket_id, "error": reason})
            await self.notifier.notify(thread_id, f"Failed to add note to Freshdesk ticket. Details: {reason}")
            raise

        logger.info("Conversation added to ticket", extra={"ticket_id": ticket_id})
        await self.notifier.notify(
            thread_id, f"Successfully added conversation as a note to Freshdesk ticket #{ticket_id}."
        )
