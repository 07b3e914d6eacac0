"""
Expiry checks — derive warranty / return-deadline facts from a user's
purchases and raise them through the notification engine.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.notifications import NotificationEngine
from database.helpers import to_uuid
from database.models import NotificationSettings, Purchase
from database.store import Store
from utils.schemas import ExpiryCheckResult, NotificationFact, NotificationType

logger = logging.getLogger(__name__)


async def extract_expiry_facts(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    settings: NotificationSettings,
    today: date,
) -> List[NotificationFact]:
    """
    Facts for purchases whose warranty or return window closes between
    *today* and the user's threshold (inclusive), for enabled alert types.
    """
    uid = to_uuid(user_id)
    facts: List[NotificationFact] = []

    checks = (
        (settings.warranty_expiring, settings.warranty_expiring_days,
         Purchase.warranty_expires_at, NotificationType.WARRANTY_EXPIRING),
        (settings.return_deadline, settings.return_deadline_days,
         Purchase.return_deadline, NotificationType.RETURN_DEADLINE),
    )
    for enabled, days, column, fact_type in checks:
        if not enabled:
            continue
        horizon = today + timedelta(days=days)
        rows = await session.execute(
            select(Purchase.id, Purchase.item_name, Purchase.merchant, column)
            .where(
                Purchase.user_id == uid,
                column.is_not(None),
                column >= today,
                column <= horizon,
            )
        )
        for purchase_id, item_name, merchant, deadline in rows.all():
            facts.append(
                NotificationFact(
                    type=fact_type,
                    purchase_id=purchase_id,
                    item_name=item_name,
                    merchant=merchant,
                    deadline=deadline,
                    days_left=(deadline - today).days,
                )
            )
    return facts


class ExpiryChecker:
    """``check_expiries(user_id)`` as a callable bound to a store and clock."""

    def __init__(self, store: Store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def __call__(self, user_id: str | uuid.UUID) -> ExpiryCheckResult:
        return await self.check_expiries(user_id)

    async def check_expiries(self, user_id: str | uuid.UUID) -> ExpiryCheckResult:
        """Raise every due expiry fact for one user in a single transaction."""
        today = self._clock().date()
        created = 0
        async with self.store.transaction() as session:
            engine = NotificationEngine(session, clock=self._clock)
            settings = await engine.get_settings(user_id)
            facts = await extract_expiry_facts(session, user_id, settings, today)
            for fact in facts:
                if await engine.raise_fact(user_id, fact, settings=settings):
                    created += 1
        if created:
            logger.info("Created %d expiry notification(s) for user %s", created, user_id)
        return ExpiryCheckResult(created=created)
