"""
Gmail routes — manual sync, sync status, disconnect.

Route prefix: /api/v1/gmail
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from api.dependencies import get_connection_manager, get_expiry_checker, get_mailbox_sync
from auth.dependencies import get_current_user_id
from core.expiry import ExpiryChecker
from core.mail_sync import MailboxSync
from core.oauth_manager import ConnectionManager
from utils.schemas import ConnectionStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["gmail"])


@router.post("/sync")
async def sync_now(
    user_id: str = Depends(get_current_user_id),
    sync: MailboxSync = Depends(get_mailbox_sync),
    checker: ExpiryChecker = Depends(get_expiry_checker),
) -> Dict[str, Any]:
    """Sync the caller's mailbox now, then check expiries."""
    result = await sync.sync_account(user_id)
    await checker.check_expiries(user_id)
    return {"success": True, **result.model_dump(exclude_none=True)}


@router.get("/sync", response_model=ConnectionStatus, response_model_exclude_none=True)
async def sync_status(
    user_id: str = Depends(get_current_user_id),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> ConnectionStatus:
    return await manager.connection_status(user_id)


@router.post("/disconnect")
async def disconnect(
    user_id: str = Depends(get_current_user_id),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, bool]:
    removed = await manager.disconnect(user_id)
    if not removed:
        logger.debug("Disconnect for user %s: no connection", user_id)
    return {"success": True}
