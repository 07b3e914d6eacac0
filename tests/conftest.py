"""
Shared fixtures: a SQLite-backed Store, a fixed clock and fake Google
collaborators.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from connectors.base import BaseConnector
from database.helpers import ensure_user_exists
from database.models import Base
from database.store import Store
from utils.schemas import MailMessage

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeConnector(BaseConnector):
    def __init__(
        self,
        grant: Optional[Dict[str, Any]] = None,
        email: str = "shopper@example.com",
    ):
        self.grant = grant if grant is not None else {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "expires_in": 3600,
        }
        self.email = email
        self.exchange_error: Optional[Exception] = None
        self.email_error: Optional[Exception] = None
        self.revoked: List[str] = []

    @property
    def provider_name(self) -> str:
        return "gmail"

    @property
    def display_name(self) -> str:
        return "Gmail"

    @property
    def scopes(self) -> List[str]:
        return ["https://www.googleapis.com/auth/gmail.readonly"]

    def get_auth_url(self, state: str) -> str:
        return f"https://accounts.example.test/auth?state={state}"

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        if self.exchange_error:
            raise self.exchange_error
        return dict(self.grant)

    async def get_account_email(self, access_token: str) -> str:
        if self.email_error:
            raise self.email_error
        return self.email

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        return {"access_token": "access-refreshed", "expires_in": 3600}

    async def revoke_token(self, token: str) -> bool:
        self.revoked.append(token)
        return True


class FakeMailbox:
    def __init__(self, messages: Dict[str, MailMessage]):
        self.messages = messages
        self.fetched: List[str] = []

    async def search(self, query: str, max_results: int = 50) -> List[str]:
        return list(self.messages)[:max_results]

    async def fetch(self, message_id: str) -> MailMessage:
        self.fetched.append(message_id)
        return self.messages[message_id]


@pytest_asyncio.fixture
async def store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield Store(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def make_user(store):
    async def _make(email: Optional[str] = None) -> uuid.UUID:
        uid = uuid.uuid4()
        async with store.transaction() as session:
            await ensure_user_exists(session, uid, email)
        return uid

    return _make
