"""
Notification engine — per-user alerts and alert settings.

Turns computed facts (warranty / return deadlines, newly detected
purchases) into notifications, honouring the user's toggles and day
thresholds and suppressing duplicates for the same underlying fact.

Dedup policy: a fact is not raised again while an earlier notification
for it is still unread, nor within 24 hours of the previous one.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NoValidFields, ValidationError
from database.helpers import to_uuid
from database.models import Notification, NotificationSettings
from utils.schemas import NotificationFact, NotificationType

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "warranty_expiring": True,
    "warranty_expiring_days": 30,
    "return_deadline": True,
    "return_deadline_days": 3,
    "new_purchase": True,
    "email_notifications": False,
}

_TOGGLE_FIELDS = ("warranty_expiring", "return_deadline", "new_purchase", "email_notifications")
_DAY_FIELDS = ("warranty_expiring_days", "return_deadline_days")

DEDUP_WINDOW = timedelta(hours=24)
MAX_LIST_LIMIT = 100

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _where(fact: NotificationFact) -> str:
    return f' from {fact.merchant}' if fact.merchant else ""


def _render(fact: NotificationFact) -> Tuple[str, str]:
    """Title and message for a fact."""
    if fact.type is NotificationType.WARRANTY_EXPIRING:
        return (
            "Warranty expiring soon",
            f'Warranty for "{fact.item_name}"{_where(fact)} expires in {fact.days_left} days',
        )
    if fact.type is NotificationType.RETURN_DEADLINE:
        return (
            "Return deadline approaching",
            f'Return deadline for "{fact.item_name}"{_where(fact)} is in {fact.days_left} days',
        )
    return (
        "New purchase detected!",
        f'We found an order for "{fact.item_name}" from {fact.merchant or "Unknown store"}',
    )


def _validate_settings_value(field: str, value: Any) -> Any:
    if value is None:
        raise ValidationError(f"{field} must not be null")
    if field in _TOGGLE_FIELDS:
        if not isinstance(value, bool):
            raise ValidationError(f"{field} must be a boolean")
        return value
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer")
    return value


class NotificationEngine:
    def __init__(self, session: AsyncSession, clock: Optional[Clock] = None):
        self.session = session
        self._clock = clock or _utcnow

    # ── reading ─────────────────────────────────────────────────────────

    async def list(
        self,
        user_id: str | uuid.UUID,
        *,
        unread_only: bool = False,
        limit: int = 20,
    ) -> Tuple[List[Notification], int]:
        """
        Newest-first notifications plus the user's true unread total,
        which ignores *limit*.
        """
        uid = to_uuid(user_id)
        limit = max(1, min(limit, MAX_LIST_LIMIT))

        stmt = select(Notification).where(Notification.user_id == uid)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
        items = list((await self.session.execute(stmt)).scalars().all())

        unread = await self.session.scalar(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == uid, Notification.read.is_(False))
        )
        return items, int(unread or 0)

    # ── read-state / deletion ───────────────────────────────────────────

    async def mark_read(
        self,
        user_id: str | uuid.UUID,
        ids: Optional[Iterable[str | uuid.UUID]] = None,
        *,
        mark_all: bool = False,
    ) -> int:
        """Mark the given (or, with *mark_all*, every) notification read."""
        uid = to_uuid(user_id)
        stmt = update(Notification).where(
            Notification.user_id == uid,
            Notification.read.is_(False),
        )
        if not mark_all:
            wanted = [to_uuid(i) for i in (ids or [])]
            if not wanted:
                return 0
            stmt = stmt.where(Notification.id.in_(wanted))
        result = await self.session.execute(stmt.values(read=True))
        return result.rowcount or 0

    async def delete(
        self,
        user_id: str | uuid.UUID,
        notification_id: str | uuid.UUID | None = None,
        *,
        delete_all: bool = False,
    ) -> int:
        uid = to_uuid(user_id)
        stmt = delete(Notification).where(Notification.user_id == uid)
        if not delete_all:
            if notification_id is None:
                return 0
            stmt = stmt.where(Notification.id == to_uuid(notification_id))
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    # ── settings ────────────────────────────────────────────────────────

    async def get_settings(self, user_id: str | uuid.UUID) -> NotificationSettings:
        """Return the user's settings row, creating it with defaults if absent."""
        uid = to_uuid(user_id)
        settings = await self.session.get(NotificationSettings, uid)
        if settings is None:
            settings = NotificationSettings(user_id=uid, **DEFAULT_SETTINGS)
            self.session.add(settings)
            await self.session.flush()
            logger.debug("Created default notification settings for user %s", uid)
        return settings

    async def update_settings(
        self,
        user_id: str | uuid.UUID,
        partial: Dict[str, Any],
    ) -> NotificationSettings:
        """
        Apply the recognised keys of *partial*; unknown keys are ignored.

        Raises ``NoValidFields`` when none of the six settings keys is
        present, ``ValidationError`` when a recognised key is null or of
        the wrong type.
        """
        updates = {
            field: _validate_settings_value(field, partial[field])
            for field in DEFAULT_SETTINGS
            if field in partial
        }
        if not updates:
            raise NoValidFields()

        uid = to_uuid(user_id)
        settings = await self.session.get(NotificationSettings, uid)
        if settings is None:
            settings = NotificationSettings(user_id=uid, **{**DEFAULT_SETTINGS, **updates})
            self.session.add(settings)
        else:
            for field, value in updates.items():
                setattr(settings, field, value)
        await self.session.flush()
        return settings

    # ── writing ─────────────────────────────────────────────────────────

    async def notify(
        self,
        user_id: str | uuid.UUID,
        type: NotificationType,
        title: str,
        message: str,
        *,
        action_url: Optional[str] = None,
        purchase_id: Optional[uuid.UUID] = None,
        dedup_key: Optional[str] = None,
        expires_at=None,
    ) -> Notification:
        """Insert a notification unconditionally."""
        notification = Notification(
            user_id=to_uuid(user_id),
            type=type.value,
            title=title,
            message=message,
            action_url=action_url,
            purchase_id=purchase_id,
            dedup_key=dedup_key,
            expires_at=expires_at,
            read=False,
            created_at=self._clock(),
        )
        self.session.add(notification)
        await self.session.flush()
        return notification

    async def raise_fact(
        self,
        user_id: str | uuid.UUID,
        fact: NotificationFact,
        settings: Optional[NotificationSettings] = None,
    ) -> Optional[Notification]:
        """
        Create a notification for *fact* unless the user's settings
        disable it, it falls outside the day threshold, or it duplicates
        a recent / still-unread notification.
        """
        uid = to_uuid(user_id)
        settings = settings or await self.get_settings(uid)
        if not self._enabled(settings, fact):
            return None
        if await self._is_duplicate(uid, fact):
            logger.debug("Suppressed duplicate %s for user %s", fact.dedup_key, uid)
            return None

        title, message = _render(fact)
        return await self.notify(
            uid,
            fact.type,
            title,
            message,
            action_url=f"/purchases/{fact.purchase_id}",
            purchase_id=fact.purchase_id,
            dedup_key=fact.dedup_key,
            expires_at=fact.deadline,
        )

    @staticmethod
    def _enabled(settings: NotificationSettings, fact: NotificationFact) -> bool:
        if fact.type is NotificationType.WARRANTY_EXPIRING:
            toggle, threshold = settings.warranty_expiring, settings.warranty_expiring_days
        elif fact.type is NotificationType.RETURN_DEADLINE:
            toggle, threshold = settings.return_deadline, settings.return_deadline_days
        elif fact.type is NotificationType.NEW_PURCHASE:
            return bool(settings.new_purchase)
        else:
            return True
        if not toggle or fact.days_left is None:
            return False
        return 0 <= fact.days_left <= threshold

    async def _is_duplicate(self, user_id: uuid.UUID, fact: NotificationFact) -> bool:
        since = self._clock() - DEDUP_WINDOW
        existing = await self.session.scalar(
            select(Notification.id)
            .where(
                Notification.user_id == user_id,
                Notification.dedup_key == fact.dedup_key,
                or_(Notification.read.is_(False), Notification.created_at >= since),
            )
            .limit(1)
        )
        return existing is not None
