from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from services.balance_service.app.errors import (
    Conflict,
    Forbidden,
    InvalidAmount,
    InvalidStateTransition,
    NotFound,
)
from services.balance_service.app.models import FundRequestStatus
from services.balance_service.app.principal import Principal

from .conftest import ADMIN, ALICE_ID, BOB_ID

ALICE = Principal(user_id=ALICE_ID)


async def _invoiced(fund_requests, amount: str = "200.00"):
    request = await fund_requests.submit(ALICE_ID, amount, notes="top up", paypal_email="alice@paypal.test")
    await fund_requests.transition(request.id, FundRequestStatus.invoice_sent, actor=ADMIN, admin_notes="INV-1")
    return request


@pytest.mark.asyncio
async def test_paid_request_credits_balance_exactly_once(fund_requests, facade):
    request = await _invoiced(fund_requests)

    paid = await fund_requests.transition(request.id, "paid", actor=ADMIN)
    assert paid.status == FundRequestStatus.paid.value
    assert paid.processed_by == ADMIN.email
    assert paid.processed_date is not None
    assert paid.ledger_event_id is not None
    assert await facade.get_balance(ALICE_ID) == Decimal("200.00")

    with pytest.raises(Conflict, match="already processed"):
        await fund_requests.transition(request.id, "paid", actor=ADMIN)
    assert await facade.get_balance(ALICE_ID) == Decimal("200.00")


@pytest.mark.asyncio
async def test_concurrent_duplicate_payments_credit_once(fund_requests, facade):
    request = await _invoiced(fund_requests)

    results = await asyncio.gather(
        *(fund_requests.transition(request.id, "paid", actor=ADMIN) for _ in range(3)),
        return_exceptions=True,
    )

    assert sum(1 for result in results if not isinstance(result, Exception)) == 1
    assert all(isinstance(result, Conflict) for result in results if isinstance(result, Exception))
    assert await facade.get_balance(ALICE_ID) == Decimal("200.00")
    assert (await facade.audit(ALICE_ID)).event_count == 1


@pytest.mark.asyncio
async def test_skipping_the_invoice_is_not_allowed(fund_requests, facade):
    request = await fund_requests.submit(ALICE_ID, "50.00")
    with pytest.raises(InvalidStateTransition):
        await fund_requests.transition(request.id, "paid", actor=ADMIN)
    assert await facade.get_balance(ALICE_ID) == Decimal("0.00")


@pytest.mark.asyncio
async def test_rejected_request_is_final(fund_requests, facade):
    request = await fund_requests.submit(ALICE_ID, "50.00")
    rejected = await fund_requests.transition(request.id, "rejected", actor=ADMIN, admin_notes="duplicate")
    assert rejected.admin_notes == "duplicate"
    assert rejected.processed_date is not None

    for target in ("invoice-sent", "paid", "pending"):
        with pytest.raises(InvalidStateTransition):
            await fund_requests.transition(request.id, target, actor=ADMIN)
    assert await facade.get_balance(ALICE_ID) == Decimal("0.00")


@pytest.mark.asyncio
async def test_transitions_require_an_admin(fund_requests):
    request = await fund_requests.submit(ALICE_ID, "50.00")
    with pytest.raises(Forbidden):
        await fund_requests.transition(request.id, "invoice-sent", actor=ALICE)
    with pytest.raises(Forbidden):
        await fund_requests.transition(request.id, "invoice-sent", actor=None)


@pytest.mark.asyncio
async def test_unknown_target_status_is_rejected(fund_requests):
    request = await fund_requests.submit(ALICE_ID, "50.00")
    with pytest.raises(InvalidStateTransition):
        await fund_requests.transition(request.id, "refunded", actor=ADMIN)


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0.99", "0", "-10"])
async def test_submit_enforces_minimum_amount(fund_requests, amount):
    with pytest.raises(InvalidAmount):
        await fund_requests.submit(ALICE_ID, amount)


@pytest.mark.asyncio
async def test_requests_are_private_to_their_owner(fund_requests):
    request = await fund_requests.submit(ALICE_ID, "50.00")
    assert (await fund_requests.get(request.id, viewer=ALICE)).id == request.id
    assert (await fund_requests.get(request.id, viewer=ADMIN)).id == request.id
    with pytest.raises(NotFound):
        await fund_requests.get(request.id, viewer=Principal(user_id=BOB_ID))


@pytest.mark.asyncio
async def test_list_and_stats(fund_requests):
    first = await _invoiced(fund_requests, "200.00")
    await fund_requests.transition(first.id, "paid", actor=ADMIN)
    await fund_requests.submit(ALICE_ID, "30.00")
    await fund_requests.submit(BOB_ID, "10.00")

    items, total = await fund_requests.list_requests(user_id=ALICE_ID)
    assert total == 2
    assert {item.user_id for item in items} == {ALICE_ID}

    pending, pending_total = await fund_requests.list_requests(status=FundRequestStatus.pending)
    assert pending_total == 2
    assert all(item.status == "pending" for item in pending)

    page, _ = await fund_requests.list_requests(page=2, limit=2)
    assert len(page) == 1

    stats = await fund_requests.stats()
    assert stats.total == 3
    assert stats.paid == 1
    assert stats.pending == 2
    assert stats.paid_amount == Decimal("200.00")
    assert stats.pending_amount == Decimal("40.00")
    assert stats.total_amount == Decimal("240.00")

    alice_stats = await fund_requests.stats(user_id=ALICE_ID)
    assert alice_stats.total == 2
