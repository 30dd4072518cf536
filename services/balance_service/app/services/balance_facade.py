"""Single read/write surface for user balances.

Dashboard reads, admin fund-request tooling and order checkout all go through
``BalanceFacade``. Each mutating call runs as one unit of work: the user's
lock is held across a session and a transaction, the ledger store appends the
event, and transient store failures are retried with backoff.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.balance_service.app.errors import Conflict, InsufficientFunds, InvalidAmount
from services.balance_service.app.metrics import (
    balance_adjustment_replay_total,
    balance_credit_total,
    balance_debit_total,
    balance_insufficient_funds_total,
)
from services.balance_service.app.models import LedgerEvent, LedgerSource, User
from services.balance_service.app.services.ledger_store import (
    ZERO,
    LedgerAudit,
    LedgerStore,
    to_money,
    translate_store_errors,
    with_store_retry,
)
from services.balance_service.app.services.locks import UserLocks
from services.balance_service.app.settings import BalanceSettings

T = TypeVar("T")

Work = Callable[[AsyncSession], Awaitable[T]]


def _positive_amount(amount: Any) -> Decimal:
    value = to_money(amount)
    if value <= ZERO:
        raise InvalidAmount("Amount must be greater than zero", amount=str(value))
    return value


class BalanceFacade:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        store: LedgerStore | None = None,
        locks: UserLocks | None = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.05,
    ) -> None:
        self._session_factory = session_factory
        self._store = store or LedgerStore()
        self._locks = locks or UserLocks()
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay

    @classmethod
    def from_settings(
        cls, session_factory: async_sessionmaker[AsyncSession], settings: BalanceSettings
    ) -> BalanceFacade:
        return cls(
            session_factory,
            retry_attempts=settings.store_retry_attempts,
            retry_base_delay=settings.store_retry_base_delay,
        )

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def locks(self) -> UserLocks:
        return self._locks

    @asynccontextmanager
    async def unit_of_work(self, user_id: int) -> AsyncIterator[AsyncSession]:
        """Hold ``user_id``'s lock around one session and one transaction."""
        async with self._locks.hold(user_id):
            with translate_store_errors():
                async with self._session_factory() as session:
                    async with session.begin():
                        yield session

    async def run(self, user_id: int, work: Work[T]) -> T:
        """Run ``work`` in a locked unit of work for ``user_id``, retrying transient failures."""

        async def attempt() -> T:
            async with self.unit_of_work(user_id) as session:
                return await work(session)

        return await self._with_retry(attempt)

    async def query(self, work: Work[T]) -> T:
        """Run ``work`` in its own transaction without taking a user lock."""

        async def attempt() -> T:
            with translate_store_errors():
                async with self._session_factory() as session:
                    async with session.begin():
                        return await work(session)

        return await self._with_retry(attempt)

    async def _with_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_store_retry(operation, attempts=self._retry_attempts, base_delay=self._retry_base_delay)

    async def require_account(self, session: AsyncSession, user_id: int) -> User:
        return await self._store.get_user(session, user_id)

    async def open_account(
        self, user_id: int, *, email: str | None = None, display_name: str | None = None
    ) -> tuple[User, bool]:
        user, created = await self.run(
            user_id, lambda session: self._store.open_account(session, user_id, email=email, display_name=display_name)
        )
        if created:
            logger.bind(user_id=user_id).info("ledger account opened")
        return user, created

    async def get_balance(self, user_id: int) -> Decimal:
        return await self.query(lambda session: self._store.get_balance(session, user_id))

    async def history(self, user_id: int, *, limit: int, cursor: int | None = None) -> tuple[list[LedgerEvent], int | None]:
        return await self.query(lambda session: self._store.list_events(session, user_id, limit=limit, cursor=cursor))

    async def audit(self, user_id: int) -> LedgerAudit:
        return await self.query(lambda session: self._store.audit(session, user_id))

    async def credit(
        self,
        user_id: int,
        amount: Any,
        source: LedgerSource,
        *,
        session: AsyncSession | None = None,
        description: str | None = None,
    ) -> LedgerEvent:
        """Add ``amount`` to the balance.

        Pass ``session`` only from inside ``unit_of_work(user_id)``; the event
        then commits together with the caller's other writes.
        """
        value = _positive_amount(amount)
        return await self._apply(user_id, value, source, session, description)

    async def debit(
        self,
        user_id: int,
        amount: Any,
        source: LedgerSource,
        *,
        session: AsyncSession | None = None,
        description: str | None = None,
    ) -> LedgerEvent:
        """Subtract ``amount`` from the balance; never lets it go negative."""
        value = _positive_amount(amount)
        return await self._apply(user_id, -value, source, session, description)

    async def _apply(
        self,
        user_id: int,
        delta: Decimal,
        source: LedgerSource,
        session: AsyncSession | None,
        description: str | None,
    ) -> LedgerEvent:
        if session is not None:
            return await self._append(session, user_id, delta, source, description)
        return await self.run(user_id, lambda s: self._append(s, user_id, delta, source, description))

    async def _append(
        self,
        session: AsyncSession,
        user_id: int,
        delta: Decimal,
        source: LedgerSource,
        description: str | None,
    ) -> LedgerEvent:
        log = logger.bind(user_id=user_id, source=str(source))
        if delta < ZERO:
            user = await self._store.get_user(session, user_id, for_update=True)
            if user.balance < -delta:
                balance_insufficient_funds_total.labels(source=source.type.value).inc()
                log.info("debit of {} rejected, balance is {}", -delta, user.balance)
                raise InsufficientFunds(
                    f"Insufficient funds: balance {user.balance} cannot cover {-delta}",
                    balance=str(user.balance),
                    requested=str(-delta),
                )

        event = await self._store.append_event(session, user_id, delta, source, description=description)
        if delta < ZERO:
            balance_debit_total.labels(source=source.type.value).inc()
        else:
            balance_credit_total.labels(source=source.type.value).inc()
        log.info("ledger event {} applied delta {} (balance {})", event.id, delta, event.balance_after)
        return event

    async def adjust(
        self,
        user_id: int,
        direction: str,
        amount: Any,
        *,
        idempotency_key: str,
        reason: str,
    ) -> tuple[LedgerEvent, bool]:
        """Apply an admin credit or debit once per ``idempotency_key``.

        Returns ``(event, applied)``; a repeated key answers with the event it
        produced the first time.
        """
        if direction not in ("credit", "debit"):
            raise InvalidAmount(f"Unknown adjustment direction {direction!r}")
        value = _positive_amount(amount)
        delta = value if direction == "credit" else -value
        source = LedgerSource.adjustment(idempotency_key)

        async def work(session: AsyncSession) -> tuple[LedgerEvent, bool]:
            existing = await self._store.find_event(session, source)
            if existing is not None:
                if existing.user_id != user_id or existing.delta != delta:
                    raise Conflict(
                        "Idempotency key was already used for a different adjustment",
                        idempotency_key=idempotency_key,
                    )
                return existing, False
            return await self._append(session, user_id, delta, source, reason), True

        event, applied = await self.run(user_id, work)
        if not applied:
            balance_adjustment_replay_total.labels(direction=direction).inc()
        return event, applied
