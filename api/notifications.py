"""
Notification routes — list / mark read / delete, and alert settings.

Route prefix: /api/v1/notifications
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import get_current_user_id
from core.errors import ValidationError
from core.notifications import NotificationEngine
from database.helpers import ensure_user_exists
from database.session import get_db_session
from utils.schemas import MarkReadRequest, NotificationList, NotificationOut, NotificationSettingsOut

router = APIRouter(tags=["notifications"])


@router.get("", response_model=NotificationList)
async def list_notifications(
    unread: bool = Query(False),
    limit: int = Query(20),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> NotificationList:
    items, unread_count = await NotificationEngine(session).list(
        user_id, unread_only=unread, limit=limit,
    )
    return NotificationList(
        notifications=[NotificationOut.model_validate(n) for n in items],
        unread_count=unread_count,
    )


@router.patch("")
async def mark_read(
    request: MarkReadRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> Dict[str, Any]:
    updated = await NotificationEngine(session).mark_read(
        user_id, request.notification_ids, mark_all=request.mark_all,
    )
    return {"success": True, "updated": updated}


@router.delete("")
async def delete_notifications(
    notification_id: Optional[str] = Query(None, alias="id"),
    delete_all: bool = Query(False, alias="all"),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> Dict[str, Any]:
    deleted = await NotificationEngine(session).delete(user_id, notification_id, delete_all=delete_all)
    return {"success": True, "deleted": deleted}


# ── Settings ───────────────────────────────────────────────────────────


@router.get("/settings", response_model=NotificationSettingsOut)
async def get_settings(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> NotificationSettingsOut:
    await ensure_user_exists(session, user_id)
    settings = await NotificationEngine(session).get_settings(user_id)
    return NotificationSettingsOut.model_validate(settings)


@router.patch("/settings", response_model=NotificationSettingsOut)
async def update_settings(
    body: Any = Body(...),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> NotificationSettingsOut:
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    await ensure_user_exists(session, user_id)
    settings = await NotificationEngine(session).update_settings(user_id, body)
    return NotificationSettingsOut.model_validate(settings)
