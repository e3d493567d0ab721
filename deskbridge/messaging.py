"""
Messaging (inbox) API client: conversation reads, note replies and
attachment downloads.
"""
from deskbridge.config import settings
from deskbridge.errors import UpstreamError
from deskbridge.logger import get_logger
from deskbridge.upstream import UpstreamClient, decode_json

logger = get_logger(__name__)


class MessagingClient:
    """Bearer-token client for the messaging API."""

    def __init__(self, upstream: UpstreamClient | None = None, downloads: UpstreamClient | None = None):
        self.upstream = upstream or UpstreamClient(
            "messaging",
            base_url=settings.intercom_api_url,
            headers={"Accept": "application/json"},
        )
        # Attachment URLs are pre-signed; no credentials are sent to them
        self.downloads = downloads or UpstreamClient(
            "attachments",
            timeout=settings.download_timeout_s,
        )

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {settings.intercom_access_token or ''}"}

    async def aclose(self):
        await self.upstream.aclose()
        await self.downloads.aclose()

    async def fetch_thread(self, thread_id) -> dict:
        response = await self.upstream.call_with_retry(
            "GET", f"/conversations/{thread_id}", headers=self._auth_headers()
        )
        return decode_json(response, self.upstream.service, dict)

    async def post_note(self, thread_id, body: str) -> dict:
        """Post a private admin note into the conversation."""
        payload = {"message_type": "note", "type": "admin", "body": body}
        if settings.intercom_admin_id is not None:
            payload["admin_id"] = settings.intercom_admin_id
        response = await self.upstream.call(
            "POST", f"/conversations/{thread_id}/reply", json=payload, headers=self._auth_headers()
        )
        return decode_json(response, self.upstream.service, dict)

    async def download(self, url: str) -> bytes | None:
        """
        Fetch attachment bytes.

        Retries once against the URL without its query string. Returns None
        when both attempts fail.
        """
        clean_url = url.replace("&amp;", "&")
        try:
            response = await self.downloads.call("GET", clean_url)
            return response.content
        except UpstreamError as e:
            logger.warning("Attachment download failed, retrying without query", extra={"error": str(e)})

        simplified = clean_url.split("?")[0]
        try:
            response = await self.downloads.call("GET", simplified)
            return response.content
        except UpstreamError as e:
            logger.error("Attachment download failed", extra={"error": str(e)})
            return None
