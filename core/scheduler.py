"""
Batch reconciliation scheduler — the cron-driven sweep over all users.

Connected users get a reconciliation unit (mailbox sync, then expiry
check); users without a connection get an expiry check only.  Units run
on a semaphore-bounded pool and every failure is caught at the unit
boundary, so one broken account never aborts the run.  The whole sweep
is bounded by a wall-clock budget; units still pending at the deadline
are cancelled and reported.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Set

from config.settings import config
from database.helpers import list_sync_enabled_user_ids, list_user_ids
from database.store import Store
from utils.schemas import ExpiryCheckResult, ReconcileResult, SyncResult

logger = logging.getLogger(__name__)

SyncAccount = Callable[[uuid.UUID], Awaitable[SyncResult]]
CheckExpiries = Callable[[uuid.UUID], Awaitable[Optional[ExpiryCheckResult]]]

DEADLINE_MESSAGE = "reconciliation deadline exceeded"


@dataclass
class _Outcome:
    user_id: uuid.UUID
    connected: bool
    synced: int = 0
    created: int = 0
    error: Optional[str] = None


@dataclass
class _Tally:
    result: ReconcileResult = field(default_factory=ReconcileResult)

    def add(self, outcome: _Outcome) -> None:
        r = self.result
        r.notifications_created += outcome.created
        if outcome.connected:
            r.users_processed += 1
            r.syncs_completed += outcome.synced
            if outcome.error is not None:
                r.errors.append(f"User {outcome.user_id}: {outcome.error}")
        elif outcome.error is not None:
            r.expiry_failures += 1


class ReconciliationScheduler:
    def __init__(
        self,
        store: Store,
        sync_account: SyncAccount,
        check_expiries: CheckExpiries,
        *,
        max_concurrency: Optional[int] = None,
        budget_seconds: Optional[float] = None,
    ):
        """
        Parameters
        ----------
        store           : store capability; only used to enumerate users.
        sync_account    : per-user mailbox sync.
        check_expiries  : per-user expiry check.
        max_concurrency : number of units in flight at once.
        budget_seconds  : wall-clock budget for the whole run.
        """
        self.store = store
        self._sync_account = sync_account
        self._check_expiries = check_expiries
        self._max_concurrency = max(1, max_concurrency or config.reconcile_max_concurrency)
        self._budget = budget_seconds if budget_seconds is not None else config.reconcile_budget_seconds

    async def run(self) -> ReconcileResult:
        started = time.monotonic()
        async with self.store.read() as session:
            connected = list(dict.fromkeys(await list_sync_enabled_user_ids(session)))
            everyone = await list_user_ids(session)
        connected_set: Set[uuid.UUID] = set(connected)
        unconnected = [uid for uid in everyone if uid not in connected_set]

        logger.info(
            "Reconciliation started: %d connected user(s), %d without a connection",
            len(connected), len(unconnected),
        )

        semaphore = asyncio.Semaphore(self._max_concurrency)
        tasks: Dict[asyncio.Task, _Outcome] = {}
        for uid in connected:
            outcome = _Outcome(user_id=uid, connected=True)
            tasks[asyncio.create_task(self._guarded(semaphore, self._reconcile_unit, outcome))] = outcome
        for uid in unconnected:
            outcome = _Outcome(user_id=uid, connected=False)
            tasks[asyncio.create_task(self._guarded(semaphore, self._expiry_only_unit, outcome))] = outcome

        tally = _Tally()
        if tasks:
            _done, pending = await asyncio.wait(tasks.keys(), timeout=self._budget)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "Reconciliation budget of %.0fs exhausted; %d unit(s) cancelled",
                    self._budget, len(pending),
                )
            for task, outcome in tasks.items():
                if task in pending and outcome.error is None:
                    outcome.error = DEADLINE_MESSAGE
                tally.add(outcome)

        result = tally.result
        if result.expiry_failures:
            logger.warning(
                "Expiry check failed for %d user(s) without a connection",
                result.expiry_failures,
            )
        logger.info(
            "Reconciliation finished in %.1fs: processed=%d syncs=%d notifications=%d errors=%d",
            time.monotonic() - started,
            result.users_processed,
            result.syncs_completed,
            result.notifications_created,
            len(result.errors),
        )
        return result

    @staticmethod
    async def _guarded(
        semaphore: asyncio.Semaphore,
        unit: Callable[[_Outcome], Awaitable[None]],
        outcome: _Outcome,
    ) -> None:
        async with semaphore:
            await unit(outcome)

    async def _reconcile_unit(self, outcome: _Outcome) -> None:
        """Sync, then expiry check; the check depends on freshly synced purchases."""
        try:
            sync_result = await self._sync_account(outcome.user_id)
            outcome.synced = sync_result.synced if sync_result else 0
            expiry = await self._check_expiries(outcome.user_id)
            outcome.created = expiry.created if expiry else 0
        except Exception as exc:
            logger.error("Error processing user %s: %s", outcome.user_id, exc, exc_info=True)
            outcome.error = str(exc) or exc.__class__.__name__

    async def _expiry_only_unit(self, outcome: _Outcome) -> None:
        try:
            expiry = await self._check_expiries(outcome.user_id)
            outcome.created = expiry.created if expiry else 0
        except Exception as exc:
            logger.debug("Expiry check failed for unconnected user %s: %s", outcome.user_id, exc)
            outcome.error = str(exc) or exc.__class__.__name__
