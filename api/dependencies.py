"""
FastAPI dependencies (shared across routes).

Each pipeline component is built from the request's ``Store`` by a small
factory, so tests can replace any of them through
``app.dependency_overrides``.
"""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Depends, Header

from config.settings import config
from core.errors import Unauthorized
from core.expiry import ExpiryChecker
from core.mail_sync import MailboxSync
from core.oauth_manager import ConnectionManager
from core.order_extraction import OrderExtractor
from core.scheduler import ReconciliationScheduler
from core.service_info import ServiceInfoCache
from database.session import get_store
from database.store import Store


def get_mailbox_sync(store: Store = Depends(get_store)) -> MailboxSync:
    return MailboxSync(store, OrderExtractor())


def get_expiry_checker(store: Store = Depends(get_store)) -> ExpiryChecker:
    return ExpiryChecker(store)


def get_connection_manager(
    store: Store = Depends(get_store),
    sync: MailboxSync = Depends(get_mailbox_sync),
) -> ConnectionManager:
    return ConnectionManager(store, initial_sync=sync.sync_account)


def get_scheduler(
    store: Store = Depends(get_store),
    sync: MailboxSync = Depends(get_mailbox_sync),
    checker: ExpiryChecker = Depends(get_expiry_checker),
) -> ReconciliationScheduler:
    return ReconciliationScheduler(store, sync.sync_account, checker.check_expiries)


def get_service_info_cache(store: Store = Depends(get_store)) -> ServiceInfoCache:
    return ServiceInfoCache(store)


async def require_cron_secret(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> None:
    """
    Reject the request unless it carries ``Bearer <CRON_SECRET>``.
    With no secret configured the endpoint is open.
    """
    secret = config.cron_secret
    if not secret:
        return
    if not hmac.compare_digest((authorization or "").encode(), f"Bearer {secret}".encode()):
        raise Unauthorized("Unauthorized")
