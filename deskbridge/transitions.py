"""
Transition results produced by the interaction state machine.
"""
from dataclasses import dataclass
from typing import Awaitable, Callable

from deskbridge.panels import Panel


@dataclass(frozen=True)
class Immediate:
    """Reply with ``panel``; nothing else to do."""
    panel: Panel

    kind = "immediate"


@dataclass(frozen=True)
class Deferred:
    """Reply with the interim ``panel`` and run ``task`` after the reply is out."""
    panel: Panel
    task: Callable[[], Awaitable[None]]
    label: str = "background"

    kind = "deferred"


@dataclass(frozen=True)
class Error:
    """A recoverable failure rendered as a panel with a retry affordance."""
    panel: Panel

    kind = "error"


Transition = Immediate | Deferred | Error
