import os
import sqlite3
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

# the server reads its configuration at import time
_TMP = Path(tempfile.mkdtemp(prefix="xdtip-tests-"))
API_DB = _TMP / "api.db"
os.environ["DATABASE_URL"] = f"sqlite:///{API_DB}"
os.environ["NOTIFY_BACKEND"] = "memory"
os.environ["MOCKPAY_ENABLED"] = "1"
os.environ["MOCK_SECRET"] = "test-mock-secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test-razorpay-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin-pass"
os.environ["LOG_LEVEL"] = "WARNING"

from xdtip.infra.sql import make_async_engine  # noqa: E402
from xdtip.model import accounts  # noqa: E402
from xdtip.model.db import (  # noqa: E402
    create_schema, PLATFORM_ACCOUNT_ID, ROLE_CREATOR, ROLE_VIEWER,
)
from xdtip.model.ledger import (  # noqa: E402
    GatedAsyncSession, credit_purchase,
)
from sqlalchemy import text  # noqa: E402


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def publish(self, topic, event):
        self.events.append((topic, event))
        return 1


class BrokenNotifier:
    async def publish(self, topic, event):
        raise ConnectionError("notification channel is down")


class LedgerHarness:
    """A fresh SQLite ledger per test, opened inside the test's own loop."""

    def __init__(self, url: str):
        self.url = url
        self._sessions = []

    @asynccontextmanager
    async def open(self):
        engine, SessionAsync, _, gated = make_async_engine(self.url)
        async with engine.begin() as conn:
            await create_schema(conn)
        self.engine = engine
        self._factory = SessionAsync
        self._gated = gated
        try:
            yield self
        finally:
            for s in self._sessions:
                await s.close()
            await engine.dispose()

    def db(self) -> GatedAsyncSession:
        s = self._factory()
        self._sessions.append(s)
        return GatedAsyncSession(session=s, gated=self._gated)

    async def add_account(self, username, balance=0, creator=False):
        user = await accounts.register(
            self.db(), username, f"{username}@example.com", "not-a-hash",
            ROLE_CREATOR if creator else ROLE_VIEWER,
        )
        if balance:
            await credit_purchase(self.db(), username, balance,
                                  f"seed:{username}")
        return user["id"]

    async def scalar(self, sql, **params):
        async with self.engine.connect() as conn:
            return (await conn.execute(text(sql), params)).scalar()

    async def balance(self, account_id):
        return await self.scalar(
            "SELECT balance FROM accounts WHERE id = :id", id=account_id)

    async def payout(self, slug):
        return await self.scalar(
            "SELECT payout_balance FROM creator_profiles WHERE slug = :s",
            s=slug)

    async def platform(self):
        return await self.balance(PLATFORM_ACCOUNT_ID)

    async def count(self, table):
        return await self.scalar(f"SELECT COUNT(*) FROM {table}")


@pytest.fixture
def ledger(tmp_path):
    return LedgerHarness(f"sqlite:///{tmp_path / 'ledger.db'}")


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest.fixture
def broken_notifier():
    return BrokenNotifier()


# ---------------------------------------------------------------------------
# HTTP tests: one app and one event loop for the whole session
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def app_client():
    from fastapi.testclient import TestClient
    from xdtip.server import app

    with TestClient(app) as c:
        yield c


def _reset_api_db():
    conn = sqlite3.connect(API_DB, timeout=10)
    try:
        conn.execute("DELETE FROM tips")
        conn.execute("DELETE FROM transactions")
        conn.execute("DELETE FROM creator_profiles")
        conn.execute("DELETE FROM accounts WHERE id != ?",
                     (PLATFORM_ACCOUNT_ID,))
        conn.execute("UPDATE accounts SET balance = 0 WHERE id = ?",
                     (PLATFORM_ACCOUNT_ID,))
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def api(app_client):
    _reset_api_db()
    app_client.cookies.clear()
    yield app_client
    app_client.cookies.clear()
