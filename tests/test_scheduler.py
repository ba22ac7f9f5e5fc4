"""Tests for expiry reconciliation."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from membership.scheduler import cron
from membership.scheduler.reconciler import ReconcileReport, reconcile_expired, run_reconciler

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(monkeypatch, db):
    db.patch(monkeypatch, "membership.scheduler.reconciler")
    mocks = {
        "list_expired_emails": AsyncMock(return_value=["old@example.com", "older@example.com"]),
        "delete_identity": AsyncMock(),
        "delete_invites": AsyncMock(),
    }
    monkeypatch.setattr("membership.db.identities.list_expired_emails", mocks["list_expired_emails"])
    monkeypatch.setattr("membership.db.identities.delete_identity", mocks["delete_identity"])
    monkeypatch.setattr("membership.db.invites.delete_invites", mocks["delete_invites"])
    return mocks


class TestReconcileExpired:
    @pytest.mark.asyncio
    async def test_deletes_identity_and_invites(self, store, db):
        report = await reconcile_expired(NOW)

        assert report.deleted == ["old@example.com", "older@example.com"]
        assert report.failed == {}
        store["list_expired_emails"].assert_awaited_once_with(db.conn, NOW)
        assert store["delete_identity"].await_count == 2
        assert store["delete_invites"].await_count == 2
        # One transaction per subscriber
        assert db.conn.transaction.call_count == 2

    @pytest.mark.asyncio
    async def test_nothing_expired(self, store, db):
        store["list_expired_emails"].return_value = []

        report = await reconcile_expired(NOW)

        assert report == ReconcileReport()
        store["delete_identity"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_isolated_per_record(self, store):
        store["delete_invites"].side_effect = [OSError("connection reset"), None]

        report = await reconcile_expired(NOW)

        assert report.deleted == ["older@example.com"]
        assert report.failed == {"old@example.com": "connection reset"}


class TestRunReconciler:
    @pytest.mark.asyncio
    async def test_stops_on_shutdown(self):
        shutdown = asyncio.Event()
        passes = []

        async def fake_pass():
            passes.append(1)
            if len(passes) == 2:
                shutdown.set()
            return ReconcileReport()

        with patch("membership.scheduler.reconciler.reconcile_expired", side_effect=fake_pass):
            await asyncio.wait_for(run_reconciler(0.01, shutdown), timeout=2)

        assert len(passes) == 2

    @pytest.mark.asyncio
    async def test_failed_pass_does_not_stop_loop(self):
        shutdown = asyncio.Event()
        calls = []

        async def flaky_pass():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unreachable")
            shutdown.set()
            return ReconcileReport()

        with patch("membership.scheduler.reconciler.reconcile_expired", side_effect=flaky_pass):
            await asyncio.wait_for(run_reconciler(0.01, shutdown), timeout=2)

        assert len(calls) == 2


def test_cron_entry_point_runs_single_pass():
    with patch("membership.scheduler.cron.reconcile_expired", new_callable=AsyncMock) as mock_pass, \
         patch("membership.scheduler.cron.close_pool", new_callable=AsyncMock) as mock_close:
        mock_pass.return_value = ReconcileReport(deleted=["old@example.com"])

        cron.reconcile_run()

    mock_pass.assert_awaited_once()
    mock_close.assert_awaited_once()
