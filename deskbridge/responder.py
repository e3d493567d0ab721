"""
Deadline-bound replies and detached background work.

The inbox drops any reply slower than its own timeout, so each event is
answered by whichever comes first: the handler's transition or a deadline
fallback. Only the reply is time-boxed. The handler keeps running after the
deadline and its side effects still happen.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from deskbridge.config import settings
from deskbridge.logger import get_logger
from deskbridge.metrics import (
    active_background_tasks,
    background_tasks_total,
    deadline_fallbacks_total,
    late_results_total,
)
from deskbridge.panels import Panel, default_panel, error_panel
from deskbridge.transitions import Deferred, Transition

logger = get_logger(__name__)


class ReplyLatch:
    """Set once by whichever path replies first; every later claim is refused."""

    def __init__(self):
        self._replied = False

    @property
    def replied(self) -> bool:
        return self._replied

    def claim(self) -> bool:
        if self._replied:
            return False
        self._replied = True
        return True


@dataclass
class Reply:
    """The single reply for one event."""
    panel: Panel
    transition: str
    timed_out: bool = False
    released: asyncio.Event = field(default_factory=asyncio.Event)

    async def release(self):
        """Signal that the reply has been written; gated background work may start."""
        self.released.set()


class BackgroundSupervisor:
    """
    Owns detached tasks: keeps them referenced, gives each its own error
    boundary and never cancels them.
    """

    def __init__(self, release_grace_s: float | None = None):
        self.release_grace_s = release_grace_s if release_grace_s is not None else settings.reply_release_grace_s
        self._tasks: set[asyncio.Task] = set()

    def __len__(self):
        return len(self._tasks)

    def track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def spawn(self, label: str, work: Callable[[], Awaitable[None]],
              gate: asyncio.Event | None = None) -> asyncio.Task:
        """Start ``work`` once ``gate`` is set (or the grace period runs out)."""
        return self.track(asyncio.create_task(self._run(label, work, gate)))

    async def _run(self, label: str, work: Callable[[], Awaitable[None]], gate: asyncio.Event | None):
        if gate is not None and not gate.is_set():
            try:
                await asyncio.wait_for(gate.wait(), timeout=self.release_grace_s)
            except asyncio.TimeoutError:
                logger.warning("Reply release not observed, starting background work", extra={"task": label})

        active_background_tasks.inc()
        try:
            await work()
        except Exception:
            background_tasks_total.labels(kind=label, outcome="failed").inc()
            logger.exception("Background task failed", extra={"task": label})
        else:
            background_tasks_total.labels(kind=label, outcome="ok").inc()
            logger.info("Background task finished", extra={"task": label})
        finally:
            active_background_tasks.dec()

    async def drain(self, timeout: float | None = None):
        """Wait for running tasks, used on shutdown."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Background tasks still running at shutdown", extra={"pending": len(pending)})


class DeadlineResponder:
    """Races a handler against a fixed deadline and produces exactly one reply."""

    def __init__(self, supervisor: BackgroundSupervisor, deadline_s: float | None = None):
        self.supervisor = supervisor
        self.deadline_s = deadline_s if deadline_s is not None else settings.response_deadline_s

    async def run(self, handler: Awaitable[Transition], fallback: Callable[[], Panel],
                  action: str = "unknown") -> Reply:
        """
        Reply with the handler's transition if it finishes in time, otherwise
        with ``fallback()``.

        Args:
            handler: Awaitable producing the transition for this event
            fallback: Builds the deadline panel from local state only
            action: Action id, for logs and metrics
        """
        latch = ReplyLatch()
        released = asyncio.Event()
        task = asyncio.ensure_future(handler)

        done, _ = await asyncio.wait({task}, timeout=self.deadline_s)
        if task in done and latch.claim():
            return self._reply(task, released)

        latch.claim()
        deadline_fallbacks_total.labels(action=action).inc()
        logger.warning("Deadline reached, replying with fallback panel", extra={"deadline_s": self.deadline_s})
        try:
            panel = fallback()
        except Exception:
            logger.exception("Fallback panel failed, using default panel")
            panel = default_panel()

        self.supervisor.track(task)
        task.add_done_callback(lambda t: self._finish_late(t, latch, released))
        return Reply(panel=panel, transition="fallback", timed_out=True, released=released)

    def _reply(self, task: asyncio.Future, released: asyncio.Event) -> Reply:
        try:
            transition = task.result()
        except Exception as e:
            logger.exception("Handler raised")
            return Reply(panel=error_panel(f"An error occurred: {e}", retry_label="Try Again"),
                         transition="error", released=released)

        if isinstance(transition, Deferred):
            self.supervisor.spawn(transition.label, transition.task, gate=released)
        return Reply(panel=transition.panel, transition=transition.kind, released=released)

    def _finish_late(self, task: asyncio.Future, latch: ReplyLatch, released: asyncio.Event):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Handler failed after the deadline", exc_info=error)
            return

        transition = task.result()
        late_results_total.labels(transition=transition.kind).inc()
        if not latch.claim():
            logger.info("Late handler result not sent; reply already written",
                        extra={"transition": transition.kind})
        if isinstance(transition, Deferred):
            self.supervisor.spawn(transition.label, transition.task, gate=released)
