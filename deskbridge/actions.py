"""
Inbound action ids parsed into a closed set of action kinds.
"""
from dataclasses import dataclass
from enum import Enum

from deskbridge import panels


class ActionKind(Enum):
    START_CREATE = "start_create"
    SUBMIT_CREATE = "submit_create"
    BROWSE_EXISTING = "browse_existing"
    SELECT_TARGET = "select_target"
    LOAD_MORE_HOME = "load_more_home"
    LOAD_MORE_MERGE = "load_more_merge"
    CONFIRM_MERGE = "confirm_merge"
    CANCEL = "cancel"
    CANCEL_MERGE = "cancel_merge"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    raw: str
    target: str | None = None


_EXACT = {
    panels.CREATE_TICKET: ActionKind.START_CREATE,
    panels.RETRY: ActionKind.START_CREATE,
    panels.SUBMIT_TICKET: ActionKind.SUBMIT_CREATE,
    panels.ADD_TO_EXISTING: ActionKind.BROWSE_EXISTING,
    panels.LOAD_MORE_HOME: ActionKind.LOAD_MORE_HOME,
    panels.LOAD_MORE_MERGE: ActionKind.LOAD_MORE_MERGE,
    panels.MERGE_TICKET: ActionKind.CONFIRM_MERGE,
    panels.CANCEL: ActionKind.CANCEL,
    panels.BACK_TO_HOME: ActionKind.CANCEL,
    "refresh_status": ActionKind.CANCEL,
    panels.CANCEL_MERGE: ActionKind.CANCEL_MERGE,
}


def parse_action(action_id: str | None) -> Action:
    """Map a raw action id to its kind; anything unrecognized is UNKNOWN."""
    raw = (action_id or "").strip()
    kind = _EXACT.get(raw)
    if kind is not None:
        return Action(kind=kind, raw=raw)
    if raw.startswith(panels.SELECT_TICKET_PREFIX):
        target = raw[len(panels.SELECT_TICKET_PREFIX):]
        if target:
            return Action(kind=ActionKind.SELECT_TARGET, raw=raw, target=target)
    return Action(kind=ActionKind.UNKNOWN, raw=raw)
