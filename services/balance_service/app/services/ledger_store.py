"""Durable storage of user balances and the append-only ledger event log.

The store carries no business policy: it reads and writes inside the session
it is handed, and the caller decides the transaction and lock scope. Every
balance write goes through ``append_event`` so that ``users.balance`` always
equals the sum of that user's ledger deltas.
"""

from __future__ import annotations

import asyncio
import random
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Iterator, TypeVar

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from services.balance_service.app.errors import (
    BalanceChanged,
    Conflict,
    InsufficientFunds,
    InvalidAmount,
    NotFound,
    StoreUnavailable,
)
from services.balance_service.app.metrics import ledger_store_retry_total
from services.balance_service.app.models import LedgerEvent, LedgerSource, User

T = TypeVar("T")

MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Coerce ``value`` to a two-decimal ``Decimal`` or raise ``InvalidAmount``."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            raise InvalidAmount(f"Invalid amount: {value!r}")
        quantized = amount.quantize(MONEY_QUANTUM)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidAmount(f"Invalid amount: {value!r}") from exc
    if quantized != amount:
        raise InvalidAmount("Amount cannot have more than two decimal places", amount=str(amount))
    return quantized


@dataclass(frozen=True)
class LedgerAudit:
    user_id: int
    balance: Decimal
    ledger_total: Decimal
    last_balance_after: Decimal | None
    event_count: int

    @property
    def consistent(self) -> bool:
        if self.balance != self.ledger_total:
            return False
        if self.last_balance_after is None:
            return self.balance == ZERO
        return self.last_balance_after == self.balance


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Map SQLAlchemy and driver failures onto the ledger error taxonomy."""
    try:
        yield
    except StaleDataError as exc:
        raise BalanceChanged("Balance changed concurrently, retry the operation") from exc
    except IntegrityError as exc:
        raise Conflict("Write conflicts with an existing ledger record") from exc
    except (OperationalError, InterfaceError) as exc:
        raise StoreUnavailable("Ledger store is unavailable") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise StoreUnavailable("Ledger store connection was lost") from exc
        raise
    except OSError as exc:
        raise StoreUnavailable("Ledger store is unreachable") from exc


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
) -> T:
    """Run ``operation``, retrying transient store failures with backoff and jitter."""
    attempts = max(1, attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except StoreUnavailable as exc:
            if attempt >= attempts:
                logger.bind(code=exc.code).error("ledger store gave up after {} attempts: {}", attempt, exc.message)
                raise
            wait = base_delay * (2 ** (attempt - 1)) + random.uniform(0, base_delay)
            ledger_store_retry_total.labels(reason=exc.code).inc()
            logger.bind(code=exc.code).warning(
                "ledger store attempt {}/{} failed ({}); retrying in {:.3f}s", attempt, attempts, exc.message, wait
            )
            await asyncio.sleep(wait)


class LedgerStore:
    async def get_user(self, session: AsyncSession, user_id: int, *, for_update: bool = False) -> User:
        stmt = select(User).where(User.id == user_id)
        if for_update:
            # Lock the balance row and refresh any stale copy in the identity map
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        user = await session.scalar(stmt)
        if user is None:
            raise NotFound(f"User {user_id} not found", user_id=user_id)
        return user

    async def get_balance(self, session: AsyncSession, user_id: int) -> Decimal:
        user = await self.get_user(session, user_id)
        return user.balance

    async def open_account(
        self,
        session: AsyncSession,
        user_id: int,
        *,
        email: str | None = None,
        display_name: str | None = None,
    ) -> tuple[User, bool]:
        existing = await session.get(User, user_id)
        if existing is not None:
            return existing, False
        user = User(id=user_id, email=email, display_name=display_name, balance=ZERO)
        session.add(user)
        await session.flush()
        return user, True

    async def find_event(self, session: AsyncSession, source: LedgerSource) -> LedgerEvent | None:
        return await session.scalar(
            select(LedgerEvent).where(
                LedgerEvent.source_type == source.type.value,
                LedgerEvent.source_id == source.reference,
            )
        )

    async def append_event(
        self,
        session: AsyncSession,
        user_id: int,
        delta: Decimal,
        source: LedgerSource,
        *,
        allow_negative: bool = False,
        description: str | None = None,
    ) -> LedgerEvent:
        user = await self.get_user(session, user_id, for_update=True)
        if await self.find_event(session, source) is not None:
            raise Conflict(f"A ledger event already exists for {source}", source=str(source))

        new_balance = (user.balance + delta).quantize(MONEY_QUANTUM)
        if new_balance < ZERO and not allow_negative:
            raise InsufficientFunds(
                f"Insufficient funds: balance {user.balance} cannot cover {-delta}",
                balance=str(user.balance),
                requested=str(-delta),
            )

        user.balance = new_balance
        event = LedgerEvent(
            user_id=user.id,
            delta=delta,
            balance_after=new_balance,
            source_type=source.type.value,
            source_id=source.reference,
            description=description,
        )
        session.add(event)
        # The versioned UPDATE on users fails with StaleDataError if another writer got there first
        await session.flush()
        return event

    async def list_events(
        self,
        session: AsyncSession,
        user_id: int,
        *,
        limit: int,
        cursor: int | None = None,
    ) -> tuple[list[LedgerEvent], int | None]:
        stmt = select(LedgerEvent).where(LedgerEvent.user_id == user_id)
        if cursor is not None:
            stmt = stmt.where(LedgerEvent.id < cursor)
        rows = list(await session.scalars(stmt.order_by(LedgerEvent.id.desc()).limit(limit + 1)))
        next_cursor = rows[limit - 1].id if len(rows) > limit else None
        return rows[:limit], next_cursor

    async def audit(self, session: AsyncSession, user_id: int) -> LedgerAudit:
        user = await self.get_user(session, user_id)
        total, count = (
            await session.execute(
                select(func.coalesce(func.sum(LedgerEvent.delta), 0), func.count(LedgerEvent.id)).where(
                    LedgerEvent.user_id == user_id
                )
            )
        ).one()
        last = await session.scalar(
            select(LedgerEvent.balance_after)
            .where(LedgerEvent.user_id == user_id)
            .order_by(LedgerEvent.id.desc())
            .limit(1)
        )
        return LedgerAudit(
            user_id=user_id,
            balance=user.balance,
            ledger_total=Decimal(str(total)).quantize(MONEY_QUANTUM),
            last_balance_after=last,
            event_count=int(count),
        )
