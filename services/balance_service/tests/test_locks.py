from __future__ import annotations

import asyncio

import pytest

from services.balance_service.app.services.locks import UserLocks


@pytest.mark.asyncio
async def test_waiters_for_one_user_run_in_arrival_order():
    locks = UserLocks()
    order: list[int] = []
    release = asyncio.Event()

    async def first() -> None:
        async with locks.hold(1):
            await release.wait()
            order.append(0)

    async def waiter(index: int) -> None:
        async with locks.hold(1):
            order.append(index)

    holder = asyncio.create_task(first())
    await asyncio.sleep(0)
    waiters = []
    for index in range(1, 5):
        waiters.append(asyncio.create_task(waiter(index)))
        await asyncio.sleep(0)

    assert locks.is_locked(1)
    release.set()
    await asyncio.gather(holder, *waiters)
    assert order == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_different_users_do_not_block_each_other():
    locks = UserLocks()
    async with locks.hold(1):
        async with locks.hold(2):
            assert locks.is_locked(1)
            assert locks.is_locked(2)


@pytest.mark.asyncio
async def test_idle_locks_are_dropped():
    locks = UserLocks()
    async with locks.hold(7):
        assert len(locks) == 1
    assert len(locks) == 0
    assert not locks.is_locked(7)
