"""
Tests for the batch ReconciliationScheduler.
"""

import asyncio
import uuid

import pytest
from sqlalchemy import select, update

from conftest import NOW
from database.models import EmailConnection
from core.scheduler import ReconciliationScheduler
from utils.schemas import ExpiryCheckResult, SyncResult


async def _connect(store, user_id, *, sync_enabled=True):
    async with store.transaction() as session:
        session.add(
            EmailConnection(
                user_id=user_id,
                provider="gmail",
                email_address=f"{user_id}@example.com",
                access_token="token",
                refresh_token="refresh",
                sync_enabled=sync_enabled,
            )
        )


class TestReconciliationRun:
    @pytest.mark.asyncio
    async def test_one_failing_sync_does_not_abort_batch(self, store, make_user):
        users = [await make_user() for _ in range(4)]
        for uid in users:
            await _connect(store, uid)
        broken = users[1]

        async def sync_account(user_id):
            if user_id == broken:
                raise RuntimeError("Gmail API unavailable")
            async with store.transaction() as session:
                await session.execute(
                    update(EmailConnection)
                    .where(EmailConnection.user_id == user_id)
                    .values(last_sync_at=NOW)
                )
            return SyncResult(synced=2, total=3)

        async def check_expiries(user_id):
            return ExpiryCheckResult(created=1)

        scheduler = ReconciliationScheduler(
            store, sync_account, check_expiries, max_concurrency=1, budget_seconds=30,
        )
        result = await scheduler.run()

        assert result.success is True
        assert result.users_processed == 4
        assert result.errors == [f"User {broken}: Gmail API unavailable"]
        assert result.syncs_completed == 6
        assert result.notifications_created == 3

        async with store.read() as session:
            rows = (await session.execute(select(EmailConnection.user_id, EmailConnection.last_sync_at))).all()
        synced = {uid: last for uid, last in rows}
        assert synced[broken] is None
        assert all(synced[uid] == NOW for uid in users if uid != broken)

    @pytest.mark.asyncio
    async def test_expiry_runs_after_sync_for_each_user(self, store, make_user):
        uid = await make_user()
        await _connect(store, uid)
        calls = []

        async def sync_account(user_id):
            calls.append(("sync", user_id))
            return SyncResult()

        async def check_expiries(user_id):
            calls.append(("expiry", user_id))
            return ExpiryCheckResult()

        await ReconciliationScheduler(store, sync_account, check_expiries, budget_seconds=30).run()

        assert calls == [("sync", uid), ("expiry", uid)]

    @pytest.mark.asyncio
    async def test_users_without_connection_get_expiry_only(self, store, make_user):
        connected = await make_user()
        disabled = await make_user()
        bare = await make_user()
        await _connect(store, connected)
        await _connect(store, disabled, sync_enabled=False)
        synced, checked = [], []

        async def sync_account(user_id):
            synced.append(user_id)
            return SyncResult()

        async def check_expiries(user_id):
            checked.append(user_id)
            if user_id == bare:
                raise RuntimeError("boom")
            return ExpiryCheckResult(created=1)

        result = await ReconciliationScheduler(
            store, sync_account, check_expiries, budget_seconds=30,
        ).run()

        assert synced == [connected]
        assert sorted(checked, key=str) == sorted([connected, disabled, bare], key=str)
        assert result.users_processed == 1
        assert result.notifications_created == 2
        assert result.errors == []
        assert result.expiry_failures == 1

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store, make_user):
        for _ in range(6):
            await _connect(store, await make_user())
        in_flight = 0
        peak = 0

        async def sync_account(user_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return SyncResult()

        async def check_expiries(user_id):
            return ExpiryCheckResult()

        result = await ReconciliationScheduler(
            store, sync_account, check_expiries, max_concurrency=2, budget_seconds=30,
        ).run()

        assert result.users_processed == 6
        assert peak == 2

    @pytest.mark.asyncio
    async def test_budget_cancels_pending_units(self, store, make_user):
        fast = await make_user()
        slow = await make_user()
        await _connect(store, fast)
        await _connect(store, slow)
        cancelled = asyncio.Event()

        async def sync_account(user_id):
            if user_id == slow:
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.set()
                    raise
            return SyncResult(synced=1)

        async def check_expiries(user_id):
            return ExpiryCheckResult()

        result = await ReconciliationScheduler(
            store, sync_account, check_expiries, max_concurrency=2, budget_seconds=0.2,
        ).run()

        assert cancelled.is_set()
        assert result.errors == [f"User {slow}: reconciliation deadline exceeded"]
        assert result.syncs_completed == 1
        assert result.users_processed == 2

    @pytest.mark.asyncio
    async def test_no_users(self, store):
        async def never(user_id):
            raise AssertionError("should not be called")

        result = await ReconciliationScheduler(store, never, never, budget_seconds=30).run()

        assert result.users_processed == 0
        assert result.errors == []
