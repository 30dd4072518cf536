from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.balance_service.app import models  # noqa: F401
from services.balance_service.app import settings as balance_settings_module
from services.balance_service.app.db.base import Base
from services.balance_service.app.dependencies import get_session_factory
from services.balance_service.app.main import create_app
from services.balance_service.app.principal import Principal
from services.balance_service.app.services.balance_facade import BalanceFacade
from services.balance_service.app.services.fund_requests import FundRequestWorkflow
from services.balance_service.app.services.ledger_store import LedgerStore
from services.balance_service.app.services.orders import OrderWorkflow

ADMIN = Principal(user_id=1, roles=frozenset({"admin"}), email="admin@guestpost.test")
ALICE_ID = 42
BOB_ID = 43


class GatedLedgerStore(LedgerStore):
    """Holds every append until the test opens the gate."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.appends = 0

    async def append_event(self, session, user_id, delta, source, **kwargs):
        self.appends += 1
        await self.gate.wait()
        return await super().append_event(session, user_id, delta, source, **kwargs)


def asgi_client(app) -> AsyncClient:
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://testserver")


def make_token(user_id: int, *, roles: list[str] | None = None, scope: str = "access", **extra) -> str:
    settings = balance_settings_module.balance_settings()
    now = datetime.now(tz=timezone.utc)
    claims = {
        "sub": str(user_id),
        "scope": scope,
        "aud": settings.jwt_audience,
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": now + timedelta(minutes=5),
        "roles": roles or [],
        **extra,
    }
    return jwt.encode(claims, settings.secret_key, algorithm="HS256")


def auth_headers(user_id: int, *, roles: list[str] | None = None) -> dict[str, str]:
    return {"authorization": f"Bearer {make_token(user_id, roles=roles)}"}


@pytest.fixture(autouse=True)
def balance_env(monkeypatch):
    balance_settings_module.balance_settings.cache_clear()
    monkeypatch.setenv("BALANCE_TRACING_ENABLED", "false")
    monkeypatch.setenv("BALANCE_SECRET_KEY", "test-secret")
    monkeypatch.setenv("BALANCE_STORE_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("BALANCE_STORE_RETRY_BASE_DELAY", "0.01")
    yield
    balance_settings_module.balance_settings.cache_clear()


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    # A file database gives every session its own connection, like production
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'balance.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest_asyncio.fixture()
async def facade(session_factory) -> BalanceFacade:
    facade = BalanceFacade(session_factory, retry_attempts=5, retry_base_delay=0.01)
    await facade.open_account(ALICE_ID, email="alice@guestpost.test")
    await facade.open_account(BOB_ID, email="bob@guestpost.test")
    return facade


@pytest.fixture()
def fund_requests(facade) -> FundRequestWorkflow:
    return FundRequestWorkflow(facade)


@pytest_asyncio.fixture()
async def orders(facade):
    workflow = OrderWorkflow(facade, debit_timeout=2.0)
    yield workflow
    await workflow.drain()


@pytest_asyncio.fixture()
async def balance_app(monkeypatch, session_factory):
    async def fake_run_migrations(*_args, **_kwargs) -> None:  # pragma: no cover - helper
        return None

    monkeypatch.setattr(
        "services.balance_service.app.startup.run_alembic_migrations",
        fake_run_migrations,
    )

    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield app
    orders = getattr(app.state, "order_workflow", None)
    if orders is not None:
        await orders.drain()
