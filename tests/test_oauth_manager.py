"""
Tests for the OAuth ConnectionManager.
"""

import uuid
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select

from conftest import FakeConnector
from core.errors import (
    ExpiredAuthorization,
    InvalidCallback,
    UpstreamAuthError,
    UpstreamLookupError,
)
from core.oauth_manager import ConnectionManager
from database.models import EmailConnection, Notification
from utils.background import BackgroundTasks


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


@pytest.fixture
def tasks():
    return BackgroundTasks()


@pytest.fixture
def manager(store, connector, clock, tasks):
    return ConnectionManager(
        store,
        connector=connector,
        tasks=tasks,
        clock=clock,
        state_secret="test-secret",
        state_ttl_seconds=300,
    )


async def _count(store, model, **filters):
    async with store.read() as session:
        stmt = select(func.count()).select_from(model)
        for field, value in filters.items():
            stmt = stmt.where(getattr(model, field) == value)
        return await session.scalar(stmt)


class TestCompleteConnection:
    @pytest.mark.asyncio
    async def test_connect_creates_connection_and_notification(self, manager, store, make_user):
        uid = await make_user()
        state = _state_from(manager.initiate_connection(uid))

        result = await manager.complete_connection("code-1", state)

        assert result.user_id == str(uid)
        assert result.email_address == "shopper@example.com"
        async with store.read() as session:
            conn = await session.scalar(select(EmailConnection).where(EmailConnection.user_id == uid))
            note = await session.scalar(select(Notification).where(Notification.user_id == uid))
        assert conn.sync_enabled is True
        assert conn.last_sync_at is None
        assert conn.email_address == "shopper@example.com"
        assert note.type == "gmail_connected"
        assert note.title == "Gmail connected!"
        assert "shopper@example.com" in note.message
        assert note.action_url == "/settings"

    @pytest.mark.asyncio
    async def test_reconnect_keeps_single_row(self, manager, store, make_user, connector, clock):
        uid = await make_user()
        await manager.complete_connection("code-1", _state_from(manager.initiate_connection(uid)))

        async with store.transaction() as session:
            conn = await session.scalar(select(EmailConnection).where(EmailConnection.user_id == uid))
            conn.sync_enabled = False
            conn.last_sync_at = clock()

        connector.email = "second@example.com"
        await manager.complete_connection("code-2", _state_from(manager.initiate_connection(uid)))

        assert await _count(store, EmailConnection, user_id=uid) == 1
        async with store.read() as session:
            conn = await session.scalar(select(EmailConnection).where(EmailConnection.user_id == uid))
        assert conn.email_address == "second@example.com"
        assert conn.sync_enabled is True
        assert conn.last_sync_at is None

    @pytest.mark.asyncio
    async def test_connect_creates_missing_user(self, manager, store):
        uid = uuid.uuid4()
        await manager.complete_connection("code", _state_from(manager.initiate_connection(uid)))
        assert await _count(store, EmailConnection, user_id=uid) == 1

    @pytest.mark.asyncio
    async def test_missing_code_or_state(self, manager):
        with pytest.raises(InvalidCallback) as exc_info:
            await manager.complete_connection(None, "state")
        assert exc_info.value.message == "Invalid callback parameters"
        with pytest.raises(InvalidCallback):
            await manager.complete_connection("code", "")

    @pytest.mark.asyncio
    async def test_expired_state(self, manager, make_user, clock, store):
        uid = await make_user()
        state = _state_from(manager.initiate_connection(uid))
        clock.now = clock.now + timedelta(minutes=6)

        with pytest.raises(ExpiredAuthorization):
            await manager.complete_connection("code", state)
        assert await _count(store, EmailConnection) == 0

    @pytest.mark.asyncio
    async def test_missing_refresh_token_writes_nothing(self, store, clock, tasks, make_user):
        connector = FakeConnector(grant={"access_token": "a", "expires_in": 3600})
        manager = ConnectionManager(
            store, connector=connector, tasks=tasks, clock=clock,
            state_secret="test-secret", state_ttl_seconds=300,
        )
        uid = await make_user()

        with pytest.raises(UpstreamAuthError) as exc_info:
            await manager.complete_connection("code", _state_from(manager.initiate_connection(uid)))

        assert exc_info.value.message == "Failed to get tokens"
        assert await _count(store, EmailConnection) == 0
        assert await _count(store, Notification) == 0

    @pytest.mark.asyncio
    async def test_exchange_failure(self, manager, connector, make_user):
        connector.exchange_error = RuntimeError("invalid_grant")
        uid = await make_user()
        with pytest.raises(UpstreamAuthError):
            await manager.complete_connection("code", _state_from(manager.initiate_connection(uid)))

    @pytest.mark.asyncio
    async def test_email_lookup_failure(self, manager, connector, make_user, store):
        connector.email_error = RuntimeError("userinfo down")
        uid = await make_user()

        with pytest.raises(UpstreamLookupError) as exc_info:
            await manager.complete_connection("code", _state_from(manager.initiate_connection(uid)))

        assert exc_info.value.message == "Failed to get email address"
        assert await _count(store, EmailConnection) == 0

    @pytest.mark.asyncio
    async def test_initial_sync_failure_is_not_surfaced(self, store, connector, clock, tasks, make_user):
        calls = []

        async def failing_sync(user_id):
            calls.append(user_id)
            raise RuntimeError("Gmail API unavailable")

        manager = ConnectionManager(
            store, connector=connector, initial_sync=failing_sync, tasks=tasks,
            clock=clock, state_secret="test-secret", state_ttl_seconds=300,
        )
        uid = await make_user()

        result = await manager.complete_connection("code", _state_from(manager.initiate_connection(uid)))
        await tasks.drain(timeout=5)

        assert result.status == "connected"
        assert calls == [uid]
        assert tasks.pending == 0
        assert await _count(store, EmailConnection, user_id=uid) == 1


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, manager, store, make_user, connector, tasks):
        uid = await make_user()
        await manager.complete_connection("code", _state_from(manager.initiate_connection(uid)))

        assert await manager.disconnect(uid) is True
        assert await manager.disconnect(uid) is False
        await tasks.drain(timeout=5)

        assert await _count(store, EmailConnection, user_id=uid) == 0
        assert connector.revoked == ["access-1"]

    @pytest.mark.asyncio
    async def test_disconnect_without_connection(self, manager, make_user):
        uid = await make_user()
        assert await manager.disconnect(uid) is False

    @pytest.mark.asyncio
    async def test_connection_status(self, manager, make_user):
        uid = await make_user()
        assert (await manager.connection_status(uid)).connected is False

        await manager.complete_connection("code", _state_from(manager.initiate_connection(uid)))
        status = await manager.connection_status(uid)

        assert status.connected is True
        assert status.email_address == "shopper@example.com"
        assert status.sync_enabled is True
