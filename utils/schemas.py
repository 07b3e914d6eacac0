"""
Pydantic schemas shared by the sync / notification pipeline and the API.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════════════════════════
# Notifications
# ═══════════════════════════════════════════════════════════════════════════════


class NotificationType(str, Enum):
    GMAIL_CONNECTED = "gmail_connected"
    WARRANTY_EXPIRING = "warranty_expiring"
    RETURN_DEADLINE = "return_deadline"
    NEW_PURCHASE = "new_purchase"


class NotificationFact(BaseModel):
    """
    A computed, user-visible fact that may turn into a notification.

    ``purchase_id`` + ``type`` (+ ``deadline`` for expiry facts) identify
    the underlying fact for dedup purposes.
    """

    type: NotificationType
    purchase_id: uuid.UUID
    item_name: str
    merchant: Optional[str] = None
    deadline: Optional[date] = None
    days_left: Optional[int] = None

    @property
    def dedup_key(self) -> str:
        suffix = self.deadline.isoformat() if self.deadline else "-"
        return f"{self.type.value}:{self.purchase_id}:{suffix}"


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: str
    title: str
    message: str
    action_url: Optional[str] = None
    purchase_id: Optional[uuid.UUID] = None
    expires_at: Optional[date] = None
    read: bool
    created_at: datetime


class NotificationList(BaseModel):
    notifications: List[NotificationOut] = Field(default_factory=list)
    unread_count: int = 0


class MarkReadRequest(BaseModel):
    notification_ids: Optional[List[uuid.UUID]] = None
    mark_all: bool = False


class NotificationSettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    warranty_expiring: bool
    warranty_expiring_days: int
    return_deadline: bool
    return_deadline_days: int
    new_purchase: bool
    email_notifications: bool


# ═══════════════════════════════════════════════════════════════════════════════
# Connection / sync
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectResult(BaseModel):
    status: Literal["connected"] = "connected"
    user_id: str
    email_address: str


class ConnectionStatus(BaseModel):
    connected: bool
    email_address: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    sync_enabled: Optional[bool] = None


class SyncResult(BaseModel):
    synced: int = 0
    total: int = 0
    message: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class ExpiryCheckResult(BaseModel):
    created: int = 0


class ReconcileResult(BaseModel):
    success: bool = True
    users_processed: int = 0
    notifications_created: int = 0
    syncs_completed: int = 0
    errors: List[str] = Field(default_factory=list)
    expiry_failures: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# Order extraction (opaque LLM step)
# ═══════════════════════════════════════════════════════════════════════════════


Confidence = Literal["high", "medium", "low"]


class OrderItem(BaseModel):
    name: str
    price: Optional[float] = None
    quantity: int = 1
    category: Optional[str] = None


class OrderExtraction(BaseModel):
    is_order_confirmation: bool = False
    confidence: Confidence = "low"
    order_number: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    merchant: Optional[str] = None
    order_date: Optional[date] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    return_deadline: Optional[date] = None
    warranty_months: Optional[int] = None


class MailMessage(BaseModel):
    id: str
    thread_id: Optional[str] = None
    sender: str = ""
    subject: str = ""
    date: str = ""
    body: str = ""


# ═══════════════════════════════════════════════════════════════════════════════
# Service-info lookup
# ═══════════════════════════════════════════════════════════════════════════════


class ServiceLookupResult(BaseModel):
    cancel_url: Optional[str] = None
    support_url: Optional[str] = None
    support_email: Optional[str] = None
    support_phone: Optional[str] = None
    verified_at: Optional[datetime] = None
    source: str = "fetched"
    confidence: Confidence = "low"

    def has_contact(self) -> bool:
        return any(
            (value or "").strip()
            for value in (self.cancel_url, self.support_url, self.support_email, self.support_phone)
        )
