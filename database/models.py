"""
SQLAlchemy ORM models for connections, notifications, settings and the
service-info cache.

Column types stay dialect-portable so the same models run on PostgreSQL
in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        # SQLite hands back naive values
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    user_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


class EmailConnection(Base):
    __tablename__ = "email_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_email_connections_user_provider"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False, default="gmail")
    email_address = Column(String(255))
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_expires_at = Column(UTCDateTime)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_user_dedup", "user_id", "dedup_key"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    type = Column(String(32), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    action_url = Column(String(512))
    purchase_id = Column(Uuid(as_uuid=True), ForeignKey("purchases.id", ondelete="CASCADE"), nullable=True)
    dedup_key = Column(String(255), nullable=True)
    expires_at = Column(Date, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, default=utcnow)


class NotificationSettings(Base):
    __tablename__ = "notification_settings"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True)
    warranty_expiring = Column(Boolean, nullable=False, default=True)
    warranty_expiring_days = Column(Integer, nullable=False, default=30)
    return_deadline = Column(Boolean, nullable=False, default=True)
    return_deadline_days = Column(Integer, nullable=False, default=3)
    new_purchase = Column(Boolean, nullable=False, default=True)
    email_notifications = Column(Boolean, nullable=False, default=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Purchase(Base):
    __tablename__ = "purchases"
    __table_args__ = (
        Index("ix_purchases_user_order", "user_id", "order_number"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    item_name = Column(String(512), nullable=False)
    merchant = Column(String(255))
    purchase_date = Column(Date)
    price = Column(Numeric(12, 2))
    currency = Column(String(8))
    category = Column(String(64))
    warranty_months = Column(Integer)
    warranty_expires_at = Column(Date)
    return_deadline = Column(Date)
    order_number = Column(String(128))
    source = Column(String(32), nullable=False, default="manual")
    auto_detected = Column(Boolean, nullable=False, default=False)
    needs_review = Column(Boolean, nullable=False, default=False)
    email_metadata = Column(JSON, default=dict)
    created_at = Column(UTCDateTime, default=utcnow)


class ProcessedEmail(Base):
    __tablename__ = "processed_emails"
    __table_args__ = (
        UniqueConstraint("user_id", "email_id", name="uq_processed_emails_user_email"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    email_id = Column(String(128), nullable=False)
    result = Column(String(32), nullable=False)
    purchase_id = Column(Uuid(as_uuid=True), nullable=True)
    error_message = Column(Text)
    processed_at = Column(UTCDateTime, default=utcnow)


class CancelGuide(Base):
    __tablename__ = "cancel_guides"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    merchant = Column(String(255), nullable=False)
    merchant_normalized = Column(String(255), unique=True, nullable=False)
    cancel_url = Column(String(1024))
    support_url = Column(String(1024))
    support_email = Column(String(255))
    support_phone = Column(String(64))
    source = Column(String(32))
    confidence = Column(String(16), nullable=False, default="low")
    verified_at = Column(UTCDateTime)
    expires_at = Column(UTCDateTime, nullable=False)
