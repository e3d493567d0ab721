"""
Tests for transcript rendering and attachment collection.
"""
import pytest
from unittest.mock import AsyncMock

from deskbridge.models import AttachmentRef
from deskbridge.transcript import (
    download_attachments,
    extract_inline_images,
    format_transcript,
    ticket_description,
)


class TestInlineImages:

    def test_images_replaced_with_numbered_placeholders(self):
        body = '<img src="https://x.test/a.PNG"> and <img class="c" src="https://x.test/b?sig=1&amp;t=2">'

        rewritten, images, next_index = extract_inline_images(body, 3)

        assert rewritten == (
            "<strong>[ Inline image: image 3.png ]</strong> and "
            "<strong>[ Inline image: image 4.png ]</strong>"
        )
        assert [i.url for i in images] == ["https://x.test/a.PNG", "https://x.test/b?sig=1&t=2"]
        assert all(i.kind == "inline_image" for i in images)
        assert next_index == 5


class TestFormatTranscript:
    """Tests for the HTML chat transcript."""

    def test_renders_messages_in_order(self, conversation):
        transcript = format_transcript(conversation)

        html = transcript.html
        assert html.startswith("<html><body>")
        assert html.index("My order never arrived") < html.index("Looking into it") < html.index("Carrier lost it")
        assert "&bull; Private Note" in html
        assert "[ Attachment: receipt.pdf ]" in html
        assert "[ Inline image: image 1.jpg ]" in html

    def test_collects_files_and_images(self, conversation):
        transcript = format_transcript(conversation)

        assert [(a.name, a.kind) for a in transcript.attachments] == [
            ("receipt.pdf", "attachment"),
            ("image 1.jpg", "inline_image"),
        ]

    def test_empty_parts_are_skipped(self, conversation):
        transcript = format_transcript(conversation)

        # The bot assignment part has no body and no files
        assert transcript.html.count('<div style="margin-bottom: 16px;') == 3

    def test_author_names_are_escaped(self):
        transcript = format_transcript({
            "source": {"body": "hi", "author": {"type": "user", "name": "<script>x</script>"}},
        })

        assert "<script>" not in transcript.html
        assert "&lt;script&gt;x&lt;/script&gt;" in transcript.html

    def test_author_falls_back_to_email_prefix(self):
        transcript = format_transcript({
            "source": {"body": "hi", "author": {"type": "user", "email": "kim@example.com"}},
        })

        assert ">kim</div>" in transcript.html

    def test_empty_conversation_rejected(self):
        with pytest.raises(ValueError):
            format_transcript({})


class TestDescriptions:

    def test_placeholder_description_replaced(self):
        description = ticket_description("Chat Transcript Added", "<p>T</p>", "55")

        assert description.count("Chat Transcript Added") == 1
        assert description.endswith("<p>T</p>")
        assert "/conversation/55" in description

    def test_typed_description_escaped_and_kept(self):
        description = ticket_description("Line 1\n<b>Line 2</b>", "<p>T</p>", "55")

        assert "Line 1<br>&lt;b&gt;Line 2&lt;/b&gt;<br><br><p>T</p>" in description


class TestDownloads:

    @pytest.mark.asyncio
    async def test_failed_downloads_are_skipped(self):
        messaging = AsyncMock()
        messaging.download.side_effect = [b"pdf", None]
        refs = [
            AttachmentRef(url="https://files.test/a.pdf", name="a.pdf", content_type="application/pdf"),
            AttachmentRef(url="https://files.test/b.png", name="b.png", content_type="image/png"),
            AttachmentRef(url="", name="missing", content_type="text/plain"),
        ]

        files = await download_attachments(messaging, refs)

        assert [(f.name, f.content) for f in files] == [("a.pdf", b"pdf")]
        assert messaging.download.await_count == 2
