"""Tests for the subscription activation workflow and invite re-issuance."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from membership.channels.whatsapp import WhatsAppAPIError
from membership.db.identities import SubscriberIdentity
from membership.db.invites import InviteArtifacts
from membership.db.models import Channel
from membership.errors import (
    ArtifactIssuanceError,
    DuplicateEventError,
    InactiveSubscriptionError,
    PersistenceError,
    UpstreamUnavailableError,
    ValidationError,
)
from membership.subscriptions.activation import (
    ActivationStatus,
    PaymentEvent,
    activate_subscription,
)
from membership.subscriptions.issuance import issue_artifacts, reissue_invites

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def checkout_session(**overrides) -> dict:
    session = {
        "id": "cs_1",
        "payment_intent": "pi_1",
        "amount_total": 6000,
        "currency": "usd",
        "payment_status": "paid",
        "metadata": {
            "email": "Ann@Example.com",
            "whatsapp_number": "+15551234567",
            "phone_number": "",
        },
    }
    session.update(overrides)
    return session


@pytest.fixture
def event() -> PaymentEvent:
    return PaymentEvent.from_checkout_session(checkout_session())


@pytest.fixture
def store(monkeypatch, db):
    """Patch the ledger, identity and invite writes used by activation."""
    db.patch(monkeypatch, "membership.subscriptions.activation")
    mocks = {
        "payment_exists": AsyncMock(return_value=False),
        "insert_payment": AsyncMock(return_value=1),
        "upsert_identity": AsyncMock(),
        "upsert_invites": AsyncMock(),
    }
    monkeypatch.setattr("membership.db.ledger.payment_exists", mocks["payment_exists"])
    monkeypatch.setattr("membership.db.ledger.insert_payment", mocks["insert_payment"])
    monkeypatch.setattr("membership.db.identities.upsert_identity", mocks["upsert_identity"])
    monkeypatch.setattr("membership.db.invites.upsert_invites", mocks["upsert_invites"])
    return mocks


class TestPaymentEvent:
    def test_from_checkout_session(self, event):
        assert event.email == "ann@example.com"
        assert event.whatsapp_number == "+15551234567"
        assert event.phone_number is None
        assert event.checkout_session_id == "cs_1"
        assert event.amount == 6000

    def test_email_falls_back_to_customer_details(self):
        session = checkout_session(
            metadata={"whatsapp_number": "+15551234567"},
            customer_details={"email": "bob@example.com"},
        )

        assert PaymentEvent.from_checkout_session(session).email == "bob@example.com"

    def test_missing_whatsapp_number(self):
        session = checkout_session(metadata={"email": "ann@example.com"})

        with pytest.raises(ValidationError, match="whatsapp_number"):
            PaymentEvent.from_checkout_session(session)

    def test_invalid_email(self):
        session = checkout_session(
            metadata={"email": "not-an-email", "whatsapp_number": "+15551234567"}
        )

        with pytest.raises(ValidationError):
            PaymentEvent.from_checkout_session(session)


class TestActivateSubscription:
    @pytest.mark.asyncio
    async def test_activates_and_welcomes(self, config, channels, stubs, store, event, db):
        result = await activate_subscription(event, channels, now=NOW)

        assert result.status == ActivationStatus.ACTIVATED
        assert result.expire_date == NOW + timedelta(days=30)
        assert result.artifacts == InviteArtifacts(
            telegram="https://t.me/+abc",
            discord="https://discord.gg/xyz",
            whatsapp="https://wa.me/15550001111",
        )
        assert result.notified

        db.conn.transaction.assert_called_once()
        store["insert_payment"].assert_awaited_once()
        identity_kwargs = store["upsert_identity"].call_args.kwargs
        assert identity_kwargs["email"] == "ann@example.com"
        assert identity_kwargs["expire_date"] == NOW + timedelta(days=30)
        assert identity_kwargs["whatsapp_number"] == "+15551234567"

        welcome = stubs[Channel.WHATSAPP].sent
        assert len(welcome) == 1
        recipient, text = welcome[0]
        assert recipient == "+15551234567"
        assert "https://t.me/+abc" in text
        assert "https://discord.gg/xyz" in text

    @pytest.mark.asyncio
    async def test_duplicate_event_skipped(self, config, channels, stubs, store, event):
        store["payment_exists"].return_value = True

        result = await activate_subscription(event, channels, now=NOW)

        assert result.status == ActivationStatus.DUPLICATE
        assert stubs[Channel.TELEGRAM].issued == []
        store["insert_payment"].assert_not_awaited()
        assert stubs[Channel.WHATSAPP].sent == []

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_revokes_artifacts(self, config, channels, stubs, store, event):
        store["insert_payment"].side_effect = DuplicateEventError("cs_1 already recorded")

        result = await activate_subscription(event, channels, now=NOW)

        assert result.status == ActivationStatus.DUPLICATE
        assert stubs[Channel.TELEGRAM].revoked == ["https://t.me/+abc"]
        assert stubs[Channel.DISCORD].revoked == ["https://discord.gg/xyz"]
        assert stubs[Channel.WHATSAPP].sent == []

    @pytest.mark.asyncio
    async def test_issuance_failure_persists_nothing(self, config, channels, stubs, store, event):
        stubs[Channel.DISCORD].issue_error = UpstreamUnavailableError(
            Channel.DISCORD, "Discord client is not ready"
        )

        with pytest.raises(ArtifactIssuanceError, match="Discord: Discord client is not ready"):
            await activate_subscription(event, channels, now=NOW)

        store["insert_payment"].assert_not_awaited()
        store["upsert_identity"].assert_not_awaited()
        assert stubs[Channel.TELEGRAM].revoked == ["https://t.me/+abc"]
        assert stubs[Channel.WHATSAPP].sent == []

    @pytest.mark.asyncio
    async def test_persistence_failure_rolls_back(self, config, channels, stubs, store, event):
        store["upsert_invites"].side_effect = OSError("connection reset")

        with pytest.raises(PersistenceError, match="ann@example.com"):
            await activate_subscription(event, channels, now=NOW)

        assert stubs[Channel.TELEGRAM].revoked == ["https://t.me/+abc"]
        assert stubs[Channel.WHATSAPP].sent == []

    @pytest.mark.asyncio
    async def test_welcome_failure_is_not_fatal(self, config, channels, stubs, store, event):
        stubs[Channel.WHATSAPP].send_errors["+15551234567"] = WhatsAppAPIError("number not on WhatsApp")

        result = await activate_subscription(event, channels, now=NOW)

        assert result.status == ActivationStatus.ACTIVATED
        assert not result.notified
        assert "number not on WhatsApp" in result.notification_error
        store["upsert_invites"].assert_awaited_once()


class TestIssuance:
    @pytest.mark.asyncio
    async def test_retries_channel_that_is_not_ready(self, config, channels, stubs, monkeypatch):
        calls = []
        original = stubs[Channel.DISCORD].issue_invite

        async def flaky(email):
            calls.append(email)
            if len(calls) == 1:
                raise UpstreamUnavailableError(Channel.DISCORD, "connecting")
            return await original(email)

        monkeypatch.setattr(stubs[Channel.DISCORD], "issue_invite", flaky)

        result = await issue_artifacts(channels, "ann@example.com")

        assert result.failures == []
        assert result.artifacts.discord == "https://discord.gg/xyz"
        assert len(calls) == 2


class TestReissueInvites:
    @pytest.fixture
    def reissue_store(self, monkeypatch, db):
        db.patch(monkeypatch, "membership.subscriptions.issuance")
        active = SubscriberIdentity(
            email="ann@example.com",
            expire_date=datetime.now(timezone.utc) + timedelta(days=5),
        )
        mocks = {
            "get_identity": AsyncMock(return_value=active),
            "upsert_invites": AsyncMock(),
            "get_invites": AsyncMock(
                return_value=InviteArtifacts(
                    telegram="https://t.me/+abc",
                    discord="https://discord.gg/old",
                    whatsapp="https://wa.me/15550001111",
                )
            ),
        }
        monkeypatch.setattr("membership.db.identities.get_identity", mocks["get_identity"])
        monkeypatch.setattr("membership.db.invites.upsert_invites", mocks["upsert_invites"])
        monkeypatch.setattr("membership.db.invites.get_invites", mocks["get_invites"])
        return mocks

    @pytest.mark.asyncio
    async def test_partial_reissue_keeps_previous(self, config, channels, stubs, reissue_store):
        stubs[Channel.DISCORD].issue_error = UpstreamUnavailableError(Channel.DISCORD, "down")

        result = await reissue_invites("ann@example.com", channels)

        assert result.artifacts.discord == "https://discord.gg/old"
        assert [f.channel for f in result.failures] == [Channel.DISCORD]
        assert reissue_store["upsert_invites"].call_args.kwargs["keep_existing"] is True

    @pytest.mark.asyncio
    async def test_inactive_subscription(self, config, channels, reissue_store):
        reissue_store["get_identity"].return_value = None

        with pytest.raises(InactiveSubscriptionError):
            await reissue_invites("ann@example.com", channels)

    @pytest.mark.asyncio
    async def test_nothing_issued(self, config, channels, stubs, reissue_store):
        for channel in (Channel.TELEGRAM, Channel.DISCORD):
            stubs[channel].issue_error = UpstreamUnavailableError(channel, "down")

        with pytest.raises(ArtifactIssuanceError):
            await reissue_invites("ann@example.com", channels)
        reissue_store["upsert_invites"].assert_not_awaited()
