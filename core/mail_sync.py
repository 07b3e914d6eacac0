"""
Mailbox sync — pull recent order emails for one user and turn them into
purchases.

Each message is applied in its own short transaction and recorded in
``processed_emails``, so a sync cut off at the reconciliation deadline
simply resumes with the remaining messages on the next run.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import config
from connectors.base import BaseConnector
from connectors.gmail import GmailConnector
from connectors.mailbox import GmailMailbox, order_search_query
from connectors.token_manager import get_active_token
from core.errors import UpstreamError
from core.notifications import NotificationEngine
from database.helpers import get_connection, to_uuid
from database.models import EmailConnection, ProcessedEmail, Purchase
from database.store import Store
from utils.schemas import MailMessage, NotificationFact, NotificationType, OrderExtraction, SyncResult

logger = logging.getLogger(__name__)

Extractor = Callable[[MailMessage], Awaitable[OrderExtraction]]
MailboxFactory = Callable[[str], Awaitable[GmailMailbox]]


def build_purchases(
    user_id: uuid.UUID,
    analysis: OrderExtraction,
    message: MailMessage,
    today: date,
) -> List[Purchase]:
    """One purchase per extracted item, or a single placeholder item."""
    purchase_date = analysis.order_date or today
    warranty_months = (
        analysis.warranty_months
        if analysis.warranty_months is not None
        else config.default_warranty_months
    )
    warranty_expires_at = (
        purchase_date + timedelta(days=warranty_months * 30) if warranty_months > 0 else None
    )
    return_deadline = analysis.return_deadline or (
        purchase_date + timedelta(days=config.default_return_days)
        if config.default_return_days > 0
        else None
    )

    items = analysis.items or [
        {
            "name": f"Order from {analysis.merchant}" if analysis.merchant else "New Purchase",
            "price": analysis.total_amount,
            "category": None,
        }
    ]
    purchases = []
    for item in items:
        fields = item if isinstance(item, dict) else item.model_dump()
        purchases.append(
            Purchase(
                id=uuid.uuid4(),
                user_id=user_id,
                item_name=fields["name"],
                merchant=analysis.merchant,
                purchase_date=purchase_date,
                price=fields.get("price"),
                currency=analysis.currency,
                category=fields.get("category"),
                warranty_months=warranty_months,
                warranty_expires_at=warranty_expires_at,
                return_deadline=return_deadline,
                order_number=analysis.order_number,
                source="gmail_auto",
                auto_detected=True,
                needs_review=analysis.confidence != "high",
                email_metadata={
                    "subject": message.subject,
                    "sender": message.sender,
                    "received_at": message.date,
                    "gmail_message_id": message.id,
                    "confidence": analysis.confidence,
                },
            )
        )
    return purchases


async def _record(
    session: AsyncSession,
    user_id: uuid.UUID,
    email_id: str,
    result: str,
    *,
    purchase_id: Optional[uuid.UUID] = None,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    row = await session.scalar(
        select(ProcessedEmail).where(
            ProcessedEmail.user_id == user_id,
            ProcessedEmail.email_id == email_id,
        )
    )
    if row is None:
        row = ProcessedEmail(user_id=user_id, email_id=email_id)
        session.add(row)
    row.result = result
    row.purchase_id = purchase_id
    row.error_message = error_message
    row.processed_at = now or datetime.now(timezone.utc)
    await session.flush()


class MailboxSync:
    """``sync_account(user_id)`` bound to a store, connector and extractor."""

    def __init__(
        self,
        store: Store,
        extractor: Extractor,
        *,
        connector: Optional[BaseConnector] = None,
        mailbox_factory: Optional[MailboxFactory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.extractor = extractor
        self.connector = connector or GmailConnector()
        self._open_mailbox = mailbox_factory or GmailMailbox.open
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def __call__(self, user_id: str | uuid.UUID) -> SyncResult:
        return await self.sync_account(user_id)

    async def sync_account(self, user_id: str | uuid.UUID) -> SyncResult:
        uid = to_uuid(user_id)
        provider = self.connector.provider_name
        now = self._clock()

        async with self.store.transaction() as session:
            conn = await get_connection(session, uid, provider)
            if conn is None:
                raise UpstreamError("No Gmail connection found")
            if not conn.sync_enabled:
                return SyncResult(message="Sync disabled")
            access_token = await get_active_token(session, conn, self.connector, now=now)

        mailbox = await self._open_mailbox(access_token)
        after = (now - timedelta(days=config.gmail_sync_lookback_days)).date()
        message_ids = await mailbox.search(
            order_search_query(after), max_results=config.gmail_sync_max_messages,
        )

        done = await self._already_processed(uid, message_ids)
        synced = 0
        errors: List[str] = []
        for message_id in message_ids:
            if message_id in done:
                continue
            try:
                message = await mailbox.fetch(message_id)
                analysis = await self.extractor(message)
                async with self.store.transaction() as session:
                    synced += await self._apply(session, uid, message, analysis, now)
            except Exception as exc:
                logger.exception("Error processing email %s for user %s", message_id, uid)
                errors.append(f"{message_id}: {exc}")
                await self._record_failure(uid, message_id, str(exc), now)

        async with self.store.transaction() as session:
            await session.execute(
                update(EmailConnection)
                .where(EmailConnection.user_id == uid, EmailConnection.provider == provider)
                .values(last_sync_at=now)
            )

        logger.info(
            "Synced user %s: %d purchase(s) from %d message(s), %d error(s)",
            uid, synced, len(message_ids), len(errors),
        )
        return SyncResult(synced=synced, total=len(message_ids), errors=errors)

    async def _already_processed(self, user_id: uuid.UUID, message_ids: List[str]) -> Set[str]:
        """Message ids already handled; failed ones are retried."""
        if not message_ids:
            return set()
        async with self.store.read() as session:
            rows = await session.execute(
                select(ProcessedEmail.email_id).where(
                    ProcessedEmail.user_id == user_id,
                    ProcessedEmail.email_id.in_(message_ids),
                    ProcessedEmail.result != "failed",
                )
            )
            return set(rows.scalars().all())

    async def _apply(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        message: MailMessage,
        analysis: OrderExtraction,
        now: datetime,
    ) -> int:
        if not analysis.is_order_confirmation:
            await _record(session, user_id, message.id, "not_order", now=now)
            return 0

        if analysis.order_number:
            existing_id = await session.scalar(
                select(Purchase.id)
                .where(Purchase.user_id == user_id, Purchase.order_number == analysis.order_number)
                .limit(1)
            )
            if existing_id is not None:
                await _record(session, user_id, message.id, "ignored", purchase_id=existing_id, now=now)
                return 0

        purchases = build_purchases(user_id, analysis, message, now.date())
        session.add_all(purchases)
        await session.flush()

        engine = NotificationEngine(session, clock=self._clock)
        settings = await engine.get_settings(user_id)
        for purchase in purchases:
            await engine.raise_fact(
                user_id,
                NotificationFact(
                    type=NotificationType.NEW_PURCHASE,
                    purchase_id=purchase.id,
                    item_name=purchase.item_name,
                    merchant=purchase.merchant,
                ),
                settings=settings,
            )

        await _record(
            session, user_id, message.id, "created_purchase",
            purchase_id=purchases[0].id, now=now,
        )
        return len(purchases)

    async def _record_failure(self, user_id: uuid.UUID, message_id: str, error: str, now: datetime) -> None:
        try:
            async with self.store.transaction() as session:
                await _record(session, user_id, message_id, "failed", error_message=error[:1000], now=now)
        except Exception:
            logger.exception("Could not record failed email %s for user %s", message_id, user_id)
