"""
Cron routes — the scheduled reconciliation trigger.

Route prefix: /api/v1/cron
"""

from __future__ import annotations

import logging
from typing import Dict

from fastapi import APIRouter, Depends

from api.dependencies import get_scheduler, require_cron_secret
from core.scheduler import ReconciliationScheduler
from utils.schemas import ReconcileResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cron"])


@router.post(
    "/check-expiries",
    response_model=ReconcileResult,
    dependencies=[Depends(require_cron_secret)],
)
async def check_expiries(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> ReconcileResult:
    """Sync every connected mailbox and raise due expiry notifications."""
    logger.info("Cron reconciliation triggered")
    return await scheduler.run()


@router.get("/check-expiries")
async def check_expiries_health() -> Dict[str, str]:
    return {
        "status": "ok",
        "endpoint": "check-expiries",
        "description": "Cron job to sync Gmail and check warranty/return expiries",
    }
