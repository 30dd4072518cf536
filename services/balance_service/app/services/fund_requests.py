"""Fund request workflow.

A user asks for funds; an admin sends an invoice, then marks it paid (which
credits the balance exactly once) or rejects it::

    pending -> invoice-sent -> paid
       |            |
       +------------+-> rejected

``paid`` and ``rejected`` are terminal. A rejected request is never reopened;
the user submits a new one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.balance_service.app.db.base import utcnow
from services.balance_service.app.errors import (
    Conflict,
    Forbidden,
    InvalidAmount,
    InvalidStateTransition,
    LedgerError,
    NotFound,
)
from services.balance_service.app.metrics import fund_request_transition_total
from services.balance_service.app.models import FundRequest, FundRequestStatus, LedgerSource
from services.balance_service.app.principal import Principal
from services.balance_service.app.services.balance_facade import BalanceFacade
from services.balance_service.app.services.ledger_store import MONEY_QUANTUM, ZERO, to_money

MIN_FUND_REQUEST_AMOUNT = Decimal("1.00")

TERMINAL_STATUSES = frozenset({FundRequestStatus.paid, FundRequestStatus.rejected})

ALLOWED_TRANSITIONS: dict[FundRequestStatus, frozenset[FundRequestStatus]] = {
    FundRequestStatus.pending: frozenset({FundRequestStatus.invoice_sent, FundRequestStatus.rejected}),
    FundRequestStatus.invoice_sent: frozenset({FundRequestStatus.paid, FundRequestStatus.rejected}),
    FundRequestStatus.paid: frozenset(),
    FundRequestStatus.rejected: frozenset(),
}


@dataclass(frozen=True)
class FundRequestStats:
    total: int = 0
    pending: int = 0
    invoice_sent: int = 0
    paid: int = 0
    rejected: int = 0
    total_amount: Decimal = ZERO
    pending_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO


def check_transition(request_id: int, current: FundRequestStatus, target: FundRequestStatus) -> None:
    if current is FundRequestStatus.paid and target is FundRequestStatus.paid:
        raise Conflict("Fund request already processed", request_id=request_id)
    if current in TERMINAL_STATUSES:
        raise InvalidStateTransition(
            f"Fund request {request_id} is {current.value} and can no longer change",
            request_id=request_id,
            current=current.value,
            target=target.value,
        )
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(
            f"Fund request {request_id} cannot move from {current.value} to {target.value}",
            request_id=request_id,
            current=current.value,
            target=target.value,
        )


class FundRequestWorkflow:
    def __init__(self, facade: BalanceFacade) -> None:
        self._facade = facade

    async def submit(
        self,
        user_id: int,
        amount: Any,
        *,
        notes: str | None = None,
        paypal_email: str | None = None,
    ) -> FundRequest:
        value = to_money(amount)
        if value < MIN_FUND_REQUEST_AMOUNT:
            raise InvalidAmount(f"Amount must be at least {MIN_FUND_REQUEST_AMOUNT}", amount=str(value))

        async def work(session: AsyncSession) -> FundRequest:
            await self._facade.require_account(session, user_id)
            request = FundRequest(
                user_id=user_id,
                amount=value,
                status=FundRequestStatus.pending.value,
                notes=notes,
                paypal_email=paypal_email,
                request_date=utcnow(),
            )
            session.add(request)
            await session.flush()
            return request

        request = await self._facade.query(work)
        logger.bind(user_id=user_id, fund_request_id=request.id).info("fund request for {} submitted", value)
        return request

    async def get(self, request_id: int, *, viewer: Principal | None = None) -> FundRequest:
        request = await self._facade.query(lambda session: session.get(FundRequest, request_id))
        if request is None or (viewer is not None and not viewer.is_admin and request.user_id != viewer.user_id):
            raise NotFound(f"Fund request {request_id} not found", request_id=request_id)
        return request

    async def list_requests(
        self,
        *,
        user_id: int | None = None,
        status: FundRequestStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[FundRequest], int]:
        filters = []
        if user_id is not None:
            filters.append(FundRequest.user_id == user_id)
        if status is not None:
            filters.append(FundRequest.status == status.value)
        if start is not None:
            filters.append(FundRequest.request_date >= start)
        if end is not None:
            filters.append(FundRequest.request_date <= end)

        async def work(session: AsyncSession) -> tuple[list[FundRequest], int]:
            total = await session.scalar(select(func.count(FundRequest.id)).where(*filters))
            rows = await session.scalars(
                select(FundRequest)
                .where(*filters)
                .order_by(FundRequest.request_date.desc(), FundRequest.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(rows), int(total or 0)

        return await self._facade.query(work)

    async def stats(self, *, user_id: int | None = None) -> FundRequestStats:
        stmt = select(FundRequest.status, func.count(FundRequest.id), func.sum(FundRequest.amount)).group_by(
            FundRequest.status
        )
        if user_id is not None:
            stmt = stmt.where(FundRequest.user_id == user_id)

        async def work(session: AsyncSession) -> list[Any]:
            return list((await session.execute(stmt)).all())

        counts: dict[str, int] = {}
        amounts: dict[str, Decimal] = {}
        for status, count, amount in await self._facade.query(work):
            counts[status] = int(count)
            amounts[status] = Decimal(str(amount or 0)).quantize(MONEY_QUANTUM)
        return FundRequestStats(
            total=sum(counts.values()),
            pending=counts.get(FundRequestStatus.pending.value, 0),
            invoice_sent=counts.get(FundRequestStatus.invoice_sent.value, 0),
            paid=counts.get(FundRequestStatus.paid.value, 0),
            rejected=counts.get(FundRequestStatus.rejected.value, 0),
            total_amount=sum(amounts.values(), ZERO),
            pending_amount=amounts.get(FundRequestStatus.pending.value, ZERO),
            paid_amount=amounts.get(FundRequestStatus.paid.value, ZERO),
        )

    async def transition(
        self,
        request_id: int,
        target: FundRequestStatus | str,
        *,
        actor: Principal | None,
        admin_notes: str | None = None,
    ) -> FundRequest:
        # Routes already require an admin; checked again so direct callers cannot skip it
        if actor is None or not actor.is_admin:
            raise Forbidden("Fund request transitions require an admin", request_id=request_id)
        try:
            target = FundRequestStatus(target)
        except ValueError as exc:
            raise InvalidStateTransition(f"Unknown fund request status {target!r}", request_id=request_id) from exc

        owner_id = (await self.get(request_id)).user_id

        async def work(session: AsyncSession) -> FundRequest:
            request = await session.get(FundRequest, request_id, with_for_update=True, populate_existing=True)
            if request is None:
                raise NotFound(f"Fund request {request_id} not found", request_id=request_id)
            check_transition(request_id, FundRequestStatus(request.status), target)

            if target is FundRequestStatus.paid:
                event = await self._facade.credit(
                    request.user_id,
                    request.amount,
                    LedgerSource.fund_request(request.id),
                    session=session,
                    description=f"Fund request {request.id} paid",
                )
                request.ledger_event_id = event.id
            request.status = target.value
            if admin_notes is not None:
                request.admin_notes = admin_notes
            request.processed_by = actor.label
            if target in TERMINAL_STATUSES:
                request.processed_date = utcnow()
            await session.flush()
            return request

        try:
            request = await self._facade.run(owner_id, work)
        except LedgerError as exc:
            fund_request_transition_total.labels(target=target.value, outcome=exc.code).inc()
            raise
        fund_request_transition_total.labels(target=target.value, outcome="ok").inc()
        logger.bind(fund_request_id=request_id, actor=actor.label).info("fund request moved to {}", target.value)
        return request
