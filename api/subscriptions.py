"""
Subscription routes — cancel / support contact lookup.

Route prefix: /api/v1/subscriptions
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_service_info_cache
from auth.dependencies import get_current_user_id
from core.service_info import ServiceInfoCache
from utils.schemas import ServiceLookupResult

router = APIRouter(tags=["subscriptions"])


@router.get("/lookup-service", response_model=ServiceLookupResult)
async def lookup_service(
    merchant: str = Query(""),
    _user_id: str = Depends(get_current_user_id),
    cache: ServiceInfoCache = Depends(get_service_info_cache),
) -> ServiceLookupResult:
    return await cache.lookup(merchant)
