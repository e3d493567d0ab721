"""
Completion notifier: reports the outcome of background work back into the
originating conversation.
"""
from deskbridge.logger import get_logger
from deskbridge.messaging import MessagingClient
from deskbridge.metrics import notifications_failed_total

logger = get_logger(__name__)


class CompletionNotifier:
    """
    Best-effort, fire-and-forget notes.

    Failures are logged and counted but never retried or raised; the ticket
    operation that triggered the note stays authoritative.
    """

    def __init__(self, messaging: MessagingClient):
        self.messaging = messaging

    async def notify(self, thread_id, message: str) -> bool:
        if not thread_id:
            logger.info("No conversation to notify, skipping note")
            return False
        try:
            await self.messaging.post_note(thread_id, message)
        except Exception as e:
            notifications_failed_total.inc()
            logger.error("Failed to post completion note", extra={"thread_id": thread_id, "error": str(e)})
            return False
        logger.info("Completion note posted", extra={"thread_id": thread_id})
        return True
