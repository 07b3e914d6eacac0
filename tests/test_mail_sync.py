"""
Tests for MailboxSync and purchase construction.
"""

import uuid
from datetime import date, timedelta

import pytest
from sqlalchemy import select

from conftest import NOW, FakeMailbox
from connectors.token_manager import store_connection
from core.errors import UpstreamError
from core.mail_sync import MailboxSync, build_purchases
from database.models import EmailConnection, Notification, ProcessedEmail, Purchase
from utils.schemas import MailMessage, OrderExtraction, OrderItem

ORDER = OrderExtraction(
    is_order_confirmation=True,
    confidence="high",
    order_number="A-100",
    items=[OrderItem(name="Kettle", price=39.99, category="appliances")],
    merchant="Acme",
    order_date=date(2026, 3, 8),
    currency="USD",
    warranty_months=24,
)


def _message(message_id: str, subject: str = "Your order") -> MailMessage:
    return MailMessage(id=message_id, sender="orders@acme.test", subject=subject, body="...")


async def _connect(store, user_id, connector, clock):
    async with store.transaction() as session:
        await store_connection(
            session, user_id, "gmail", "shopper@example.com",
            {"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600},
            now=clock(),
        )


def _sync(store, connector, clock, mailbox, extract):
    async def open_mailbox(token):
        mailbox.token = token
        return mailbox

    return MailboxSync(store, extract, connector=connector, mailbox_factory=open_mailbox, clock=clock)


class TestBuildPurchases:
    def test_warranty_and_return_window(self):
        uid = uuid.uuid4()
        (purchase,) = build_purchases(uid, ORDER, _message("m1"), NOW.date())

        assert purchase.item_name == "Kettle"
        assert purchase.purchase_date == date(2026, 3, 8)
        assert purchase.warranty_expires_at == date(2026, 3, 8) + timedelta(days=720)
        assert purchase.return_deadline == date(2026, 3, 8) + timedelta(days=30)
        assert purchase.needs_review is False
        assert purchase.email_metadata["gmail_message_id"] == "m1"

    def test_placeholder_item_when_none_extracted(self):
        analysis = OrderExtraction(is_order_confirmation=True, merchant="Acme", total_amount=12.5)
        (purchase,) = build_purchases(uuid.uuid4(), analysis, _message("m2"), NOW.date())

        assert purchase.item_name == "Order from Acme"
        assert purchase.price == 12.5
        assert purchase.purchase_date == NOW.date()
        assert purchase.needs_review is True

    def test_zero_warranty_means_none(self):
        analysis = ORDER.model_copy(update={"warranty_months": 0})
        (purchase,) = build_purchases(uuid.uuid4(), analysis, _message("m3"), NOW.date())
        assert purchase.warranty_expires_at is None


class TestMailboxSync:
    @pytest.mark.asyncio
    async def test_sync_creates_purchases_and_notifications(self, store, connector, clock, make_user):
        uid = await make_user()
        await _connect(store, uid, connector, clock)
        mailbox = FakeMailbox({"m1": _message("m1"), "m2": _message("m2", "Newsletter")})

        async def extract(message):
            return ORDER if message.id == "m1" else OrderExtraction()

        result = await _sync(store, connector, clock, mailbox, extract).sync_account(uid)

        assert result.synced == 1
        assert result.total == 2
        assert result.errors == []
        assert mailbox.token == "access-1"
        async with store.read() as session:
            purchases = (await session.execute(select(Purchase))).scalars().all()
            notes = (await session.execute(select(Notification))).scalars().all()
            processed = dict((await session.execute(select(ProcessedEmail.email_id, ProcessedEmail.result))).all())
            conn = await session.scalar(select(EmailConnection))
        assert [p.item_name for p in purchases] == ["Kettle"]
        assert [n.type for n in notes] == ["new_purchase"]
        assert processed == {"m1": "created_purchase", "m2": "not_order"}
        assert conn.last_sync_at == NOW

    @pytest.mark.asyncio
    async def test_processed_messages_are_skipped(self, store, connector, clock, make_user):
        uid = await make_user()
        await _connect(store, uid, connector, clock)
        mailbox = FakeMailbox({"m1": _message("m1")})

        async def extract(message):
            return ORDER

        sync = _sync(store, connector, clock, mailbox, extract)
        await sync.sync_account(uid)
        second = await sync.sync_account(uid)

        assert second.synced == 0
        assert mailbox.fetched == ["m1"]

    @pytest.mark.asyncio
    async def test_duplicate_order_number_is_ignored(self, store, connector, clock, make_user):
        uid = await make_user()
        await _connect(store, uid, connector, clock)
        mailbox = FakeMailbox({"m1": _message("m1"), "m2": _message("m2", "Shipped")})

        async def extract(message):
            return ORDER

        result = await _sync(store, connector, clock, mailbox, extract).sync_account(uid)

        assert result.synced == 1
        async with store.read() as session:
            results = dict((await session.execute(select(ProcessedEmail.email_id, ProcessedEmail.result))).all())
        assert results == {"m1": "created_purchase", "m2": "ignored"}

    @pytest.mark.asyncio
    async def test_failed_message_is_recorded_and_retried(self, store, connector, clock, make_user):
        uid = await make_user()
        await _connect(store, uid, connector, clock)
        mailbox = FakeMailbox({"m1": _message("m1")})
        attempts = []

        async def flaky(message):
            attempts.append(message.id)
            if len(attempts) == 1:
                raise RuntimeError("model overloaded")
            return ORDER

        sync = _sync(store, connector, clock, mailbox, flaky)
        first = await sync.sync_account(uid)
        second = await sync.sync_account(uid)

        assert first.errors == ["m1: model overloaded"]
        assert second.synced == 1
        assert attempts == ["m1", "m1"]

    @pytest.mark.asyncio
    async def test_no_connection(self, store, connector, clock, make_user):
        uid = await make_user()
        sync = _sync(store, connector, clock, FakeMailbox({}), None)

        with pytest.raises(UpstreamError) as exc_info:
            await sync.sync_account(uid)
        assert exc_info.value.message == "No Gmail connection found"

    @pytest.mark.asyncio
    async def test_sync_disabled(self, store, connector, clock, make_user):
        uid = await make_user()
        await _connect(store, uid, connector, clock)
        async with store.transaction() as session:
            conn = await session.scalar(select(EmailConnection))
            conn.sync_enabled = False

        result = await _sync(store, connector, clock, FakeMailbox({}), None).sync_account(uid)

        assert result.message == "Sync disabled"
        assert result.synced == 0

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed(self, store, connector, clock, make_user):
        uid = await make_user()
        await _connect(store, uid, connector, clock)
        clock.now = clock.now + timedelta(minutes=59)
        mailbox = FakeMailbox({})

        await _sync(store, connector, clock, mailbox, None).sync_account(uid)

        assert mailbox.token == "access-refreshed"
