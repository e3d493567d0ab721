"""
Internal value types shared across the engine.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class SessionContext:
    """Identity echoed back by the inbox on every event. Recomputed per event."""
    email: str = ""
    name: str = ""
    thread_id: str | None = None
    description: str = ""

    @property
    def key(self) -> str | None:
        """Session key used for cursors and markers; None when no email is known."""
        return self.email.strip().lower() or None

    @property
    def default_subject(self) -> str:
        return f"Conversation from {self.name}" if self.name else "New Conversation"


@dataclass(frozen=True)
class Choice:
    """One selectable value of a ticket field (status, priority)."""
    value: str
    label: str


@dataclass(frozen=True)
class TicketSchema:
    """Dynamic form schema fetched from the helpdesk."""
    statuses: list[Choice] = field(default_factory=list)
    priorities: list[Choice] = field(default_factory=list)
    mailboxes: list[dict] = field(default_factory=list)

    def default_status(self) -> Choice | None:
        return _pick(self.statuses, "open")

    def default_priority(self) -> Choice | None:
        return _pick(self.priorities, "medium")


def _pick(choices: list[Choice], label: str) -> Choice | None:
    for choice in choices:
        if choice.label.lower() == label:
            return choice
    return choices[0] if choices else None


@dataclass(frozen=True)
class TicketSummary:
    """Read-only projection of a helpdesk ticket."""
    id: int | str
    subject: str
    created_at: datetime | None = None

    @classmethod
    def from_api(cls, raw: dict) -> "TicketSummary":
        created_at = None
        if raw.get("created_at"):
            try:
                created_at = datetime.fromisoformat(str(raw["created_at"]).replace("Z", "+00:00"))
            except ValueError:
                created_at = None
        if created_at is not None and created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(id=raw.get("id"), subject=raw.get("subject") or "(no subject)", created_at=created_at)


@dataclass(frozen=True)
class Attachment:
    """A file to upload alongside a ticket or note."""
    name: str
    content_type: str
    content: bytes


@dataclass(frozen=True)
class AttachmentRef:
    """An attachment found in a conversation, not yet downloaded."""
    url: str
    name: str
    content_type: str
    kind: str = "attachment"  # attachment | inline_image
