"""
Conversation transcript rendering.

Turns a messaging-API conversation into an HTML chat transcript suitable for a
ticket description or note, and collects the files (regular attachments and
inline images) that should be uploaded with it.
"""
import html
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import unquote, urlparse
from zoneinfo import ZoneInfo

from deskbridge.config import settings
from deskbridge.logger import get_logger
from deskbridge.messaging import MessagingClient
from deskbridge.metrics import track_time, transcript_build_duration_seconds
from deskbridge.models import Attachment, AttachmentRef

logger = get_logger(__name__)

TRANSCRIPT_MARKER = "Chat Transcript Added"

_IMG_TAG = re.compile(r'<img\s+[^>]*src="([^"]+)"[^>]*>', re.IGNORECASE)
_IMAGE_REF = re.compile(r'\[Image:?\s*"?([^"\]]+)"?\]')

ADMIN_COLOR = "#30446c"
USER_COLOR = "#100c0c"
NOTE_TEXT_COLOR = "#45380c"
NOTE_BG_COLOR = "rgba(255, 243, 205, 0.9)"


@dataclass
class Transcript:
    html: str
    attachments: list[AttachmentRef] = field(default_factory=list)


def _author_name(author: dict | None, default: str = "User") -> str:
    if not author:
        return default
    if author.get("name"):
        return author["name"]
    if author.get("email"):
        return author["email"].split("@")[0]
    if author.get("type"):
        return author["type"].capitalize()
    return default


def _timestamp(epoch) -> str:
    if not epoch:
        return ""
    moment = datetime.fromtimestamp(int(epoch), tz=timezone.utc)
    return moment.astimezone(ZoneInfo(settings.display_timezone)).strftime("%d/%m/%Y %H:%M")


def _strip_paragraph(body: str) -> str:
    if body.startswith("<p>") and body.endswith("</p>"):
        return body[3:-4]
    return body


def extract_inline_images(body: str, start_index: int) -> tuple[str, list[AttachmentRef], int]:
    """
    Replace ``<img>`` tags with sequentially numbered placeholders.

    Returns the rewritten body, the images found and the next free index.
    """
    images = []
    index = start_index

    def replace(match: re.Match) -> str:
        nonlocal index
        url = html.unescape(match.group(1))
        extension = "png"
        filename = unquote(urlparse(url).path.rsplit("/", 1)[-1])
        if "." in filename and not filename.endswith("."):
            extension = filename.rsplit(".", 1)[-1].lower()
        name = f"image {index}.{extension}"
        images.append(AttachmentRef(url=url, name=name, content_type=f"image/{extension}", kind="inline_image"))
        index += 1
        return f"<strong>[ Inline image: {name} ]</strong>"

    return _IMG_TAG.sub(replace, body), images, index


def _render_message(author: str, body: str, timestamp: str, is_admin: bool, is_note: bool) -> str:
    if is_note:
        name_color, background, text_color = NOTE_TEXT_COLOR, NOTE_BG_COLOR, NOTE_TEXT_COLOR
    else:
        name_color = background = ADMIN_COLOR if is_admin else USER_COLOR
        text_color = "#FFFFFF"
    alignment = "right" if is_admin else "left"
    suffix = " &bull; Private Note" if is_note else ""
    return (
        f'<div style="margin-bottom: 16px; text-align: {alignment};">'
        f'<div style="color: {name_color}; font-weight: bold; margin-bottom: 2px;">{html.escape(author)}</div>'
        f'<div style="background-color: {background}; color: {text_color}; padding: 10px 12px; '
        f'border-radius: 8px; display: inline-block; max-width: 80%; margin-top: 4px; text-align: left; '
        f'word-wrap: break-word;">{body}</div>'
        f'<div style="font-size: 12px; color: {name_color}; margin-top: 4px;">{timestamp}{suffix}</div>'
        f'</div>\n'
    )


@track_time(transcript_build_duration_seconds)
def format_transcript(conversation: dict) -> Transcript:
    """Render the source message and every non-empty part, oldest first."""
    if not conversation:
        raise ValueError("Conversation data is required to build a transcript")

    parts = []
    source = conversation.get("source")
    if source:
        parts.append({**source, "created_at": source.get("created_at") or conversation.get("created_at"),
                      "part_type": "comment"})
    parts.extend((conversation.get("conversation_parts") or {}).get("conversation_parts") or [])

    chunks = []
    attachments: list[AttachmentRef] = []
    image_index = 1

    for part in parts:
        body = part.get("body") or ""
        files = part.get("attachments") or []
        if not body.strip() and not files:
            continue

        author = part.get("author") or {}
        is_admin = author.get("type") in ("admin", "bot")
        is_note = part.get("part_type") == "note"

        body = _strip_paragraph(body)
        body, images, image_index = extract_inline_images(body, image_index)
        attachments.extend(images)
        body = _IMAGE_REF.sub("<strong>[ Image reference ]</strong>", body)
        body = body.replace("\r\n", "<br>").replace("\n", "<br>").replace("\r", "<br>")

        for item in files:
            name = item.get("name") or "File"
            attachments.append(AttachmentRef(
                url=item.get("url", ""),
                name=name,
                content_type=item.get("content_type") or "application/octet-stream",
            ))
            body += ("<br>" if body else "") + f"<div><strong>[ Attachment: {html.escape(name)} ]</strong></div>"

        chunks.append(_render_message(_author_name(author), body, _timestamp(part.get("created_at")),
                                      is_admin, is_note))

    return Transcript(html="<html><body>" + "".join(chunks) + "</body></html>", attachments=attachments)


def link_header(thread_id) -> str:
    url = settings.conversation_url(thread_id)
    return (
        f"<div>{TRANSCRIPT_MARKER}</div>"
        f'<div>Intercom Conversation URL: <a href="{url}" rel="noreferrer">{url}</a></div>'
        f"<div>&nbsp;</div>"
    )


def ticket_description(description: str, transcript_html: str, thread_id) -> str:
    """
    Description for a new ticket.

    The default placeholder description is replaced by the transcript; any
    text the agent typed is kept above it.
    """
    if not description or TRANSCRIPT_MARKER in description:
        return link_header(thread_id) + transcript_html
    return link_header(thread_id) + html.escape(description).replace("\n", "<br>") + "<br><br>" + transcript_html


def note_body(transcript_html: str, thread_id) -> str:
    return link_header(thread_id) + transcript_html


async def download_attachments(messaging: MessagingClient, refs: list[AttachmentRef]) -> list[Attachment]:
    """Download what can be downloaded; files that fail are skipped."""
    files = []
    for ref in refs:
        if not ref.url:
            continue
        content = await messaging.download(ref.url)
        if content is None:
            logger.warning("Skipping attachment", extra={"attachment": ref.name})
            continue
        files.append(Attachment(name=ref.name, content_type=ref.content_type, content=content))
    return files
