"""Tests for the fan-out broadcaster and attachment handling."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from membership.broadcast.attachments import (
    DOCX_TYPE,
    AttachmentTooLargeError,
    LocalAttachmentStore,
    UnsupportedMediaError,
    load_attachment,
    sniff_content_type,
)
from membership.broadcast.fanout import BroadcastReport, Broadcaster, format_welcome
from membership.channels.base import Attachment
from membership.channels.telegram import TelegramAPIError
from membership.db.invites import InviteArtifacts
from membership.db.models import Channel
from membership.errors import ChannelFailure, ValidationError, render_failures

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
PDF = b"%PDF-1.7\n" + b"\x00" * 16


@pytest.fixture
def audience(monkeypatch, db):
    """Two linked Telegram users, one linked Discord user, two WhatsApp numbers."""
    db.patch(monkeypatch, "membership.broadcast.fanout")
    handles = {
        Channel.TELEGRAM: [("ann@example.com", "777"), ("bob@example.com", "888")],
        Channel.DISCORD: [("ann@example.com", "11")],
    }

    async def linked(conn, channel, now):
        return handles[channel]

    numbers = AsyncMock(
        return_value=[("ann@example.com", "+15551234567"), ("bob@example.com", "+15557654321")]
    )
    monkeypatch.setattr("membership.db.identities.list_linked_handles", linked)
    monkeypatch.setattr("membership.db.identities.list_contact_numbers", numbers)
    return handles


class TestBroadcastReport:
    def test_summary_lists_succeeded_channels(self):
        report = BroadcastReport(
            delivered={Channel.TELEGRAM: 2, Channel.DISCORD: 0, Channel.WHATSAPP: 1}
        )

        assert report.summary() == "Message broadcasted successfully to: Telegram and WhatsApp"
        assert report.success
        assert not report.partial

    def test_partial(self):
        failure = ChannelFailure(Channel.DISCORD, "no linked recipients")
        report = BroadcastReport(delivered={Channel.TELEGRAM: 1}, failures=[failure])

        assert report.partial
        assert "Discord: no linked recipients" in str(report.partial_error())


class TestBroadcaster:
    @pytest.mark.asyncio
    async def test_delivers_to_every_audience(self, config, channels, stubs, audience):
        report = await Broadcaster(channels).broadcast("Market update", now=NOW)

        assert report.success
        assert report.failures == []
        assert report.delivered == {
            Channel.TELEGRAM: 2,
            Channel.DISCORD: 1,
            Channel.WHATSAPP: 2,
        }
        assert stubs[Channel.TELEGRAM].sent == [("777", "Market update"), ("888", "Market update")]
        assert stubs[Channel.DISCORD].sent == [("11", "Market update")]
        assert {r for r, _ in stubs[Channel.WHATSAPP].sent} == {"+15551234567", "+15557654321"}
        assert report.summary() == (
            "Message broadcasted successfully to: Telegram, Discord and WhatsApp"
        )

    @pytest.mark.asyncio
    async def test_recipient_failure_isolated(self, config, channels, stubs, audience):
        stubs[Channel.TELEGRAM].send_errors["777"] = TelegramAPIError("bot was blocked by the user")

        report = await Broadcaster(channels).broadcast("Hello", now=NOW)

        assert report.partial
        assert report.delivered[Channel.TELEGRAM] == 1
        assert report.failures == [
            ChannelFailure(Channel.TELEGRAM, "ann@example.com: bot was blocked by the user")
        ]
        assert stubs[Channel.TELEGRAM].sent == [("888", "Hello")]

    @pytest.mark.asyncio
    async def test_channel_not_ready_is_a_failure(self, config, channels, stubs, audience):
        stubs[Channel.DISCORD].ready = False

        report = await Broadcaster(channels).broadcast("Hello", now=NOW)

        assert report.partial
        assert ChannelFailure(Channel.DISCORD, "channel not ready") in report.failures
        assert stubs[Channel.DISCORD].sent == []

    @pytest.mark.asyncio
    async def test_empty_audience_is_a_failure(self, config, channels, stubs, audience):
        audience[Channel.DISCORD] = []

        report = await Broadcaster(channels).broadcast("Hello", now=NOW)

        assert ChannelFailure(Channel.DISCORD, "no linked recipients") in report.failures
        assert report.success

    @pytest.mark.asyncio
    async def test_every_channel_failing(self, config, channels, stubs, audience):
        for stub in stubs.values():
            stub.ready = False

        report = await Broadcaster(channels).broadcast("Hello", now=NOW)

        assert not report.success
        rendered = render_failures(report.failures)
        assert "Telegram: channel not ready" in rendered
        assert "Discord: channel not ready" in rendered
        assert "WhatsApp: channel not ready" in rendered

    @pytest.mark.asyncio
    async def test_attachment_native_and_linked(self, config, channels, stubs, audience, tmp_path):
        store = LocalAttachmentStore(str(tmp_path), "https://members.example.com")
        attachment = Attachment("chart.png", "image/png", PNG)

        report = await Broadcaster(channels, store).broadcast("See chart", attachment, now=NOW)

        assert report.failures == []
        # Telegram and Discord get the file itself
        assert [r for r, _, _ in stubs[Channel.TELEGRAM].media] == ["777", "888"]
        assert stubs[Channel.DISCORD].media[0][2] == "See chart"
        # WhatsApp gets the caption plus a link to the stored copy
        assert attachment.url.startswith("https://members.example.com/media/")
        assert attachment.url.endswith(".png")
        for _, text in stubs[Channel.WHATSAPP].sent:
            assert text == f"See chart\n{attachment.url}"
        stored = list(tmp_path.iterdir())
        assert len(stored) == 1
        assert stored[0].read_bytes() == PNG

    @pytest.mark.asyncio
    async def test_attachment_without_store(self, config, channels, stubs, audience):
        attachment = Attachment("chart.png", "image/png", PNG)

        report = await Broadcaster(channels).broadcast("", attachment, now=NOW)

        assert report.delivered[Channel.WHATSAPP] == 0
        assert report.delivered[Channel.TELEGRAM] == 2
        [failure] = report.failures
        assert failure.channel == Channel.WHATSAPP
        assert "attachment link unavailable" in failure.error


class TestWelcome:
    def test_format_welcome_lists_links(self):
        text = format_welcome(
            InviteArtifacts(
                telegram="https://t.me/+abc",
                discord="https://discord.gg/xyz",
                whatsapp="https://wa.me/1555",
            )
        )

        assert "https://t.me/+abc" in text
        assert "https://discord.gg/xyz" in text
        assert "https://wa.me/1555" in text

    def test_format_welcome_skips_blank(self):
        text = format_welcome(InviteArtifacts(telegram="https://t.me/+abc"))

        assert "Discord server" not in text


class TestAttachments:
    def test_sniff_magic_bytes_beat_extension(self):
        assert sniff_content_type(PNG, "photo.pdf", "application/pdf") == "image/png"
        assert sniff_content_type(PDF, "report.bin") == "application/pdf"

    def test_sniff_mp4(self):
        data = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 8
        assert sniff_content_type(data, "clip") == "video/mp4"

    def test_sniff_other_iso_media_not_mp4(self):
        heic = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 8
        quicktime = b"\x00\x00\x00\x14ftypqt  " + b"\x00" * 8

        assert sniff_content_type(heic, "photo.heic", "image/heic") is None
        assert sniff_content_type(quicktime, "clip.mov", "video/quicktime") is None

    def test_load_attachment_rejects_heic(self):
        heic = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 8

        with pytest.raises(UnsupportedMediaError):
            load_attachment("photo.heic", heic, "image/heic", 1024)

    def test_sniff_docx_needs_extension(self):
        zipped = b"PK\x03\x04" + b"\x00" * 16

        assert sniff_content_type(zipped, "notes.docx") == DOCX_TYPE
        assert sniff_content_type(zipped, "archive.zip") is None

    def test_load_attachment(self):
        attachment = load_attachment("../../chart.png", PNG, "application/octet-stream", 1024)

        assert attachment.content_type == "image/png"
        assert attachment.filename == "chart.png"

    def test_load_attachment_rejects_type(self):
        with pytest.raises(UnsupportedMediaError):
            load_attachment("page.html", b"<html></html>", "text/html", 1024)

    def test_load_attachment_rejects_size(self):
        with pytest.raises(AttachmentTooLargeError):
            load_attachment("chart.png", PNG, "image/png", 8)

    def test_load_attachment_rejects_empty(self):
        with pytest.raises(ValidationError, match="empty"):
            load_attachment("chart.png", b"", "image/png", 1024)
