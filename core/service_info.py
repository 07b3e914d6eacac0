"""
Service-info cache — cancel / support contact details per merchant.

Cache-or-fetch: a normalized merchant key is served from
``cancel_guides`` while its entry is fresh; otherwise the fetcher runs
and a useful result is cached for ``SERVICE_INFO_TTL_HOURS``.  Reads and
writes take ``now`` from the same clock so expiry comparisons agree.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from config.settings import config
from core.errors import InvalidInput
from database.models import CancelGuide
from database.store import Store
from utils.llm_providers import BaseLLMProvider, provider_for
from utils.schemas import ServiceLookupResult

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[ServiceLookupResult]]

_USER_AGENT = "Mozilla/5.0 (compatible; PurchaseTrackerBot/1.0)"


def normalize_merchant(raw: str) -> str:
    return (raw or "").strip().lower()


# ── Fetching ───────────────────────────────────────────────────────────


async def verify_url(url: str, timeout: float = 5.0) -> Optional[str]:
    """
    Check that *url* is an http(s) URL that answers a HEAD request.

    Returns the final URL after redirects, ``None`` for non-http schemes
    or error statuses, and the URL unchanged when it cannot be reached
    (network problems are not evidence that the URL is wrong).
    """
    if urlparse(url).scheme not in ("http", "https"):
        return None
    try:
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        ) as client:
            resp = await client.head(url)
    except httpx.HTTPError as exc:
        logger.debug("URL verification for %s failed: %s", url, exc)
        return url
    if resp.is_success or resp.status_code == 405:
        return str(resp.url)
    return None


_LOOKUP_PROMPT = """Find the official cancellation / account management page for \
the subscription service "{merchant}" (think of searches like "{merchant} cancel \
subscription" or "{merchant} manage subscription").

Return a JSON object with:
  cancel_url     direct URL of the cancel page or account settings
  support_url    help / support page URL
  support_email  official support email, or null
  support_phone  official support phone, or null
  confidence     "high" for an official cancel page, "medium" for a general \
account page, "low" if guessed

If you cannot find reliable information set confidence to "low"."""

_LOOKUP_SCHEMA = {
    "type": "object",
    "properties": {
        "cancel_url": {"type": ["string", "null"]},
        "support_url": {"type": ["string", "null"]},
        "support_email": {"type": ["string", "null"]},
        "support_phone": {"type": ["string", "null"]},
        "confidence": {"enum": ["high", "medium", "low"]},
    },
}


class LLMServiceInfoFetcher:
    """Default fetcher: asks the lookup LLM, then verifies the cancel URL."""

    def __init__(
        self,
        llm: Optional[BaseLLMProvider] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._llm = llm
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def __call__(self, merchant: str) -> ServiceLookupResult:
        now = self._clock()
        try:
            llm, temperature = (self._llm, 0.2) if self._llm else provider_for("lookup")
            data = await llm.generate(
                _LOOKUP_PROMPT.format(merchant=merchant),
                temperature=temperature,
                max_tokens=1024,
                output_schema=_LOOKUP_SCHEMA,
            )
        except Exception as exc:
            logger.error("Service-info lookup for %r failed: %s", merchant, exc)
            return ServiceLookupResult(verified_at=now, confidence="low")

        if not isinstance(data, dict):
            data = {}
        cancel_url = data.get("cancel_url") or None
        if cancel_url:
            cancel_url = await verify_url(cancel_url, timeout=config.url_verify_timeout)
        confidence = data.get("confidence")
        return ServiceLookupResult(
            cancel_url=cancel_url,
            support_url=data.get("support_url") or None,
            support_email=data.get("support_email") or None,
            support_phone=data.get("support_phone") or None,
            verified_at=now,
            confidence=confidence if confidence in ("high", "medium", "low") else "medium",
        )


# ── Cache ──────────────────────────────────────────────────────────────


class ServiceInfoCache:
    def __init__(
        self,
        store: Store,
        fetch: Optional[Fetcher] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        ttl: Optional[timedelta] = None,
    ):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._fetch = fetch or LLMServiceInfoFetcher(clock=self._clock)
        self._ttl = ttl or timedelta(hours=config.service_info_ttl_hours)

    async def lookup(self, raw_merchant: str) -> ServiceLookupResult:
        key = normalize_merchant(raw_merchant)
        if len(key) < 2:
            raise InvalidInput("Merchant name required (min 2 characters)")

        now = self._clock()
        async with self.store.read() as session:
            entry = await session.scalar(
                select(CancelGuide).where(CancelGuide.merchant_normalized == key)
            )
        if entry is not None and now < entry.expires_at:
            logger.debug("Service-info cache hit for %r", key)
            return ServiceLookupResult(
                cancel_url=entry.cancel_url,
                support_url=entry.support_url,
                support_email=entry.support_email,
                support_phone=entry.support_phone,
                verified_at=entry.verified_at,
                source="cached",
                confidence=entry.confidence,
            )

        result = await self._fetch(raw_merchant.strip())
        result = result.model_copy(update={"source": "fetched"})
        if result.has_contact():
            try:
                await self._publish(key, raw_merchant.strip(), result, now)
            except IntegrityError:
                # a concurrent lookup published the same key first
                logger.info("Service-info entry for %r already published", key)
        else:
            logger.info("Not caching empty service-info result for %r", key)
        return result

    async def _publish(self, key: str, merchant: str, result: ServiceLookupResult, now: datetime) -> None:
        async with self.store.transaction() as session:
            entry = await session.scalar(
                select(CancelGuide).where(CancelGuide.merchant_normalized == key)
            )
            if entry is None:
                entry = CancelGuide(merchant_normalized=key)
                session.add(entry)
            entry.merchant = merchant
            entry.cancel_url = result.cancel_url
            entry.support_url = result.support_url
            entry.support_email = result.support_email
            entry.support_phone = result.support_phone
            entry.source = "web_search"
            entry.confidence = result.confidence
            entry.verified_at = result.verified_at or now
            entry.expires_at = now + self._ttl
