"""
FastAPI application: the inbox canvas endpoints, the ticket REST helpers,
health checks and metrics.
"""
from fastapi import FastAPI, HTTPException, Header, Request, Depends, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response
from typing import Any, Optional
import uuid
import time

from deskbridge.actions import parse_action
from deskbridge.config import settings
from deskbridge.errors import UpstreamError, UpstreamRejected
from deskbridge.helpdesk import HelpdeskClient
from deskbridge.logger import get_logger, set_correlation_id, set_event_context
from deskbridge.machine import InteractionStateMachine, TICKET_SOURCE, validate_ticket_form
from deskbridge.messaging import MessagingClient
from deskbridge.metrics import (
    app_info,
    http_requests_total,
    http_request_duration_seconds,
    events_total,
    active_requests
)
from deskbridge.models import SessionContext, TicketSummary
from deskbridge.notifier import CompletionNotifier
from deskbridge.responder import BackgroundSupervisor, DeadlineResponder, Reply
from deskbridge.session_store import InMemorySessionStore
from deskbridge.transitions import Immediate

VERSION = "1.0.0"

logger = get_logger(__name__)

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


def build_machine() -> InteractionStateMachine:
    """Wire the upstream clients, the notifier and the session store into a state machine."""
    messaging = MessagingClient()
    return InteractionStateMachine(
        helpdesk=HelpdeskClient(),
        messaging=messaging,
        notifier=CompletionNotifier(messaging),
        store=InMemorySessionStore(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan events: startup and shutdown logic.
    """
    # Startup
    logger.info("Application starting up...")
    app_info.info({"version": VERSION, "environment": settings.environment})
    supervisor = BackgroundSupervisor()
    app.state.supervisor = supervisor
    app.state.responder = DeadlineResponder(supervisor)
    app.state.machine = build_machine()

    yield

    # Shutdown
    logger.info("Application shutting down...")
    await app.state.supervisor.drain(settings.shutdown_grace_s)
    machine = app.state.machine
    await machine.helpdesk.aclose()
    await machine.messaging.aclose()


# Initialize FastAPI app
app = FastAPI(
    title="Deskbridge API",
    version=VERSION,
    description="Inbox canvas app that turns conversations into helpdesk tickets",
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    lifespan=lifespan
)

# Add rate limit exception handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Request/Response Models ---

class SessionPayload(BaseModel):
    """Conversation identity echoed back by the inbox."""
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    name: Optional[str] = None
    thread_id: Optional[str | int] = Field(default=None, alias="threadId")
    description: Optional[str] = None

    def to_context(self) -> SessionContext:
        return SessionContext(
            email=(self.email or "").strip(),
            name=(self.name or "").strip(),
            thread_id=str(self.thread_id) if self.thread_id not in (None, "") else None,
            description=self.description or "",
        )


class InitializeRequest(BaseModel):
    session: SessionPayload = Field(default_factory=SessionPayload)


class SubmitRequest(BaseModel):
    """One canvas event: the clicked action plus the current form values."""
    model_config = ConfigDict(populate_by_name=True)

    action_id: Optional[str] = Field(default=None, alias="actionId")
    form_values: Optional[dict[str, Any]] = Field(default=None, alias="formValues")
    session: SessionPayload = Field(default_factory=SessionPayload)

    def values(self) -> dict[str, str]:
        return {k: "" if v is None else str(v) for k, v in (self.form_values or {}).items()}


class TicketCreateRequest(BaseModel):
    email: Optional[str] = None
    subject: Optional[str] = None
    description: Optional[str] = None
    status: Optional[int] = None
    priority: Optional[int] = None


class HealthResponse(BaseModel):
    status: str
    environment: str
    version: str
    timestamp: str


class ReadyResponse(BaseModel):
    ready: bool
    checks: dict


# --- Middleware ---

@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    trace_id = request.headers.get("X-Trace-ID") or str(uuid.uuid4())
    set_correlation_id(trace_id)
    active_requests.inc()

    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        response.headers["X-Trace-ID"] = trace_id

        http_requests_total.labels(
            method=request.method,
            endpoint=request.url.path,
            status_code=response.status_code
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=request.url.path
        ).observe(process_time)

        return response
    finally:
        active_requests.dec()


# --- Error mapping ---

@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    """REST helpers surface upstream failures as gateway errors."""
    if isinstance(exc, UpstreamRejected):
        status_code = 502
        detail = {"message": exc.detail, "service": exc.service, "upstream_status": exc.status_code}
    else:
        # No status means the upstream never answered
        status_code = 504 if exc.status_code is None else 502
        detail = {"message": str(exc), "service": exc.service, "upstream_status": exc.status_code}
    logger.error("Upstream request failed", extra={"path": request.url.path, "status_code": status_code,
                                                    "error": str(exc)})
    return JSONResponse(status_code=status_code, content={"detail": detail})


# --- Dependencies ---

async def verify_api_key(x_api_key: Optional[str] = Header(None)):
    if settings.is_development and not settings.api_keys:
        return

    if not x_api_key or x_api_key not in settings.api_keys:
        logger.warning("Invalid API key")
        raise HTTPException(status_code=403, detail="Invalid API key")


def get_machine(request: Request) -> InteractionStateMachine:
    return request.app.state.machine


def get_responder(request: Request) -> DeadlineResponder:
    return request.app.state.responder


# --- System endpoints ---

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    return HealthResponse(
        status="healthy",
        environment=settings.environment,
        version=VERSION,
        timestamp=datetime.now(timezone.utc).isoformat()
    )


@app.get("/ready", response_model=ReadyResponse, tags=["System"])
async def readiness_check(request: Request):
    checks = {
        "helpdesk_credentials": bool(settings.freshdesk_api_key),
        "messaging_credentials": bool(settings.intercom_access_token),
        "state_machine": getattr(request.app.state, "machine", None) is not None,
    }
    return ReadyResponse(ready=all(checks.values()), checks=checks)


@app.get("/metrics", tags=["System"])
async def metrics():
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --- Canvas endpoints ---

def _send(reply: Reply, background_tasks: BackgroundTasks) -> dict:
    # Runs after the response body is written
    background_tasks.add_task(reply.release)
    return reply.panel.to_wire()


@app.post("/api/initialize", tags=["Canvas"])
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def initialize(
    request: Request,
    payload: InitializeRequest,
    background_tasks: BackgroundTasks,
    machine: InteractionStateMachine = Depends(get_machine),
    responder: DeadlineResponder = Depends(get_responder),
):
    session = payload.session.to_context()
    set_event_context(session.key, "initialize")
    logger.info("Initializing canvas")

    async def handler():
        return Immediate(await machine.initialize(session))

    reply = await responder.run(
        handler(),
        fallback=lambda: machine.fallback_panel(None, None, session),
        action="initialize",
    )
    events_total.labels(action="initialize", transition=reply.transition).inc()
    return _send(reply, background_tasks)


@app.post("/api/submit", tags=["Canvas"])
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def submit(
    request: Request,
    payload: SubmitRequest,
    background_tasks: BackgroundTasks,
    machine: InteractionStateMachine = Depends(get_machine),
    responder: DeadlineResponder = Depends(get_responder),
):
    session = payload.session.to_context()
    form_values = payload.values()
    kind = parse_action(payload.action_id).kind.value
    set_event_context(session.key, payload.action_id)
    logger.info("Canvas event received", extra={"kind": kind})

    reply = await responder.run(
        machine.handle(payload.action_id, form_values, session),
        fallback=lambda: machine.fallback_panel(payload.action_id, form_values, session),
        action=kind,
    )
    events_total.labels(action=kind, transition=reply.transition).inc()
    return _send(reply, background_tasks)


# --- Ticket REST helpers ---

@app.get("/api/tickets/mailboxes", tags=["Tickets"], dependencies=[Depends(verify_api_key)])
async def list_mailboxes(machine: InteractionStateMachine = Depends(get_machine)):
    return await machine.helpdesk.list_mailboxes()


@app.get("/api/tickets/recent", tags=["Tickets"], dependencies=[Depends(verify_api_key)])
async def recent_tickets(
    email: Optional[str] = None,
    machine: InteractionStateMachine = Depends(get_machine),
):
    if not email or not email.strip():
        raise HTTPException(status_code=400, detail="Email is required")
    raw = await machine.helpdesk.list_tickets(email.strip(), per_page=settings.list_fetch_cap)
    tickets = [TicketSummary.from_api(t) for t in raw]
    return [
        {
            "id": t.id,
            "subject": t.subject,
            "created_at": t.created_at.isoformat() if t.created_at else None,
            "url": settings.ticket_url(t.id),
        }
        for t in tickets
    ]


@app.get("/api/tickets/statuses", tags=["Tickets"], dependencies=[Depends(verify_api_key)])
async def list_statuses(machine: InteractionStateMachine = Depends(get_machine)):
    return [{"value": c.value, "label": c.label} for c in await machine.helpdesk.choices_for("status")]


@app.get("/api/tickets/priorities", tags=["Tickets"], dependencies=[Depends(verify_api_key)])
async def list_priorities(machine: InteractionStateMachine = Depends(get_machine)):
    return [{"value": c.value, "label": c.label} for c in await machine.helpdesk.choices_for("priority")]


@app.post("/api/tickets", status_code=201, tags=["Tickets"], dependencies=[Depends(verify_api_key)])
async def create_ticket(
    ticket_request: TicketCreateRequest,
    machine: InteractionStateMachine = Depends(get_machine),
):
    errors = validate_ticket_form({
        "email": ticket_request.email or "",
        "subject": ticket_request.subject or "",
    })
    if errors:
        raise HTTPException(status_code=400, detail=errors)

    ticket = {
        "email": ticket_request.email.strip(),
        "subject": ticket_request.subject.strip(),
        "description": ticket_request.description or ticket_request.subject.strip(),
        "source": TICKET_SOURCE,
    }
    if ticket_request.status is not None:
        ticket["status"] = ticket_request.status
    if ticket_request.priority is not None:
        ticket["priority"] = ticket_request.priority

    created = await machine.helpdesk.create_ticket(ticket)
    logger.info("Ticket created via REST", extra={"ticket_id": created.get("id")})
    return created


def run():
    import uvicorn
    uvicorn.run("deskbridge.api:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
