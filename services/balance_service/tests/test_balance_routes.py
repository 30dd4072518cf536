from __future__ import annotations

from decimal import Decimal

import pytest

from services.balance_service.app.errors import StoreUnavailable
from services.balance_service.app.models import LedgerSource, SourceType
from services.balance_service.app.services.balance_facade import BalanceFacade
from services.balance_service.app.services.ledger_store import LedgerStore
from services.balance_service.app.settings import balance_settings
from services.balance_service.app.startup import init_service_startup

from .conftest import ADMIN, ALICE_ID, BOB_ID, GatedLedgerStore, asgi_client, auth_headers


def _alice() -> dict[str, str]:
    return auth_headers(ALICE_ID)


def _bob() -> dict[str, str]:
    return auth_headers(BOB_ID)


def _admin() -> dict[str, str]:
    return auth_headers(ADMIN.user_id, roles=["admin"])


class OrderDebitOutageStore(LedgerStore):
    down = True

    async def append_event(self, session, user_id, delta, source, **kwargs):
        if self.down and source.type is SourceType.order:
            raise StoreUnavailable("Ledger store is unavailable")
        return await super().append_event(session, user_id, delta, source, **kwargs)


async def _open(client, headers) -> None:
    response = await client.post("/api/v1/balance/account", json={"display_name": "Guest author"}, headers=headers)
    assert response.status_code in {200, 201}


async def _fund(client, user_id: int, amount: str, key: str) -> None:
    response = await client.post(
        f"/api/v1/admin/users/{user_id}/adjustments",
        json={"direction": "credit", "amount": amount, "reason": "seed", "idempotency_key": key},
        headers=_admin(),
    )
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_health_and_metrics(balance_app):
    async with asgi_client(balance_app) as client:
        health = await client.get("/api/v1/healthz")
        assert health.status_code == 200
        assert health.json() == {"status": "ok", "service": "balance-service"}
        assert health.headers["x-request-id"]

        metrics = await client.get("/api/v1/metrics")
        assert metrics.status_code == 200
        assert "balance_credit_total" in metrics.text


@pytest.mark.asyncio
async def test_open_account_is_idempotent(balance_app):
    async with asgi_client(balance_app) as client:
        first = await client.post("/api/v1/balance/account", headers=_alice())
        assert first.status_code == 201
        second = await client.post("/api/v1/balance/account", headers=_alice())
        assert second.status_code == 200
        assert first.json()["id"] == second.json()["id"] == ALICE_ID
        assert Decimal(str(second.json()["balance"])) == Decimal("0.00")


@pytest.mark.asyncio
async def test_requests_without_valid_token_are_rejected(balance_app):
    async with asgi_client(balance_app) as client:
        missing = await client.get("/api/v1/balance")
        assert missing.status_code == 401
        assert missing.json()["code"] == "http_error"

        garbage = await client.get("/api/v1/balance", headers={"authorization": "Bearer not-a-token"})
        assert garbage.status_code == 401


@pytest.mark.asyncio
async def test_balance_and_history(balance_app):
    async with asgi_client(balance_app) as client:
        missing = await client.get("/api/v1/balance", headers=_alice())
        assert missing.status_code == 404
        assert missing.json()["code"] == "not_found"

        await _open(client, _alice())
        await _fund(client, ALICE_ID, "100.00", "seed-1")
        await _fund(client, ALICE_ID, "5.00", "seed-2")

        balance = await client.get("/api/v1/balance", headers=_alice())
        assert Decimal(str(balance.json()["balance"])) == Decimal("105.00")

        page = await client.get("/api/v1/balance/events", params={"limit": 1}, headers=_alice())
        body = page.json()
        assert [item["source_id"] for item in body["items"]] == ["seed-2"]
        assert body["next_cursor"] is not None

        rest = await client.get("/api/v1/balance/events", params={"cursor": body["next_cursor"]}, headers=_alice())
        assert [item["source_id"] for item in rest.json()["items"]] == ["seed-1"]
        assert rest.json()["next_cursor"] is None


@pytest.mark.asyncio
async def test_fund_request_lifecycle_over_http(balance_app):
    async with asgi_client(balance_app) as client:
        await _open(client, _alice())
        created = await client.post(
            "/api/v1/fund-requests",
            json={"amount": "200.00", "notes": "April budget", "paypal_email": "alice@paypal.test"},
            headers=_alice(),
        )
        assert created.status_code == 201
        request_id = created.json()["id"]
        assert created.json()["status"] == "pending"

        forbidden = await client.post(
            f"/api/v1/fund-requests/{request_id}/transitions", json={"target_status": "paid"}, headers=_alice()
        )
        assert forbidden.status_code == 403

        skipped = await client.post(
            f"/api/v1/fund-requests/{request_id}/transitions", json={"target_status": "paid"}, headers=_admin()
        )
        assert skipped.status_code == 409
        assert skipped.json()["code"] == "invalid_state_transition"

        for target in ("invoice-sent", "paid"):
            moved = await client.post(
                f"/api/v1/fund-requests/{request_id}/transitions",
                json={"target_status": target, "admin_notes": f"moved to {target}"},
                headers=_admin(),
            )
            assert moved.status_code == 200
            assert moved.json()["status"] == target

        repeat = await client.post(
            f"/api/v1/fund-requests/{request_id}/transitions", json={"target_status": "paid"}, headers=_admin()
        )
        assert repeat.status_code == 409
        assert repeat.json()["code"] == "conflict"
        assert repeat.json()["error"] == "Fund request already processed"

        balance = await client.get("/api/v1/balance", headers=_alice())
        assert Decimal(str(balance.json()["balance"])) == Decimal("200.00")

        stats = await client.get("/api/v1/fund-requests/stats", headers=_alice())
        assert stats.json()["paid"] == 1

        hidden = await client.get(f"/api/v1/fund-requests/{request_id}", headers=_bob())
        assert hidden.status_code == 404


@pytest.mark.asyncio
async def test_fund_request_amount_validation(balance_app):
    async with asgi_client(balance_app) as client:
        await _open(client, _alice())
        too_small = await client.post("/api/v1/fund-requests", json={"amount": "0.50"}, headers=_alice())
        assert too_small.status_code == 422
        assert too_small.json()["code"] == "invalid_amount"

        negative = await client.post("/api/v1/fund-requests", json={"amount": "-5"}, headers=_alice())
        assert negative.status_code == 422


@pytest.mark.asyncio
async def test_users_only_list_their_own_fund_requests(balance_app):
    async with asgi_client(balance_app) as client:
        await _open(client, _alice())
        await _open(client, _bob())
        await client.post("/api/v1/fund-requests", json={"amount": "10.00"}, headers=_alice())
        await client.post("/api/v1/fund-requests", json={"amount": "20.00"}, headers=_bob())

        own = await client.get("/api/v1/fund-requests", params={"user_id": BOB_ID}, headers=_alice())
        assert own.json()["total"] == 1
        assert own.json()["items"][0]["user_id"] == ALICE_ID

        everyone = await client.get("/api/v1/fund-requests", headers=_admin())
        assert everyone.json()["total"] == 2


@pytest.mark.asyncio
async def test_order_checkout_over_http(balance_app):
    async with asgi_client(balance_app) as client:
        await _open(client, _alice())
        await _fund(client, ALICE_ID, "50.00", "seed")

        placed = await client.post(
            "/api/v1/orders", json={"item_name": "Guest post on example.com", "price": "30.00"}, headers=_alice()
        )
        assert placed.status_code == 201
        assert placed.json()["status"] == "completed"

        declined = await client.post("/api/v1/orders", json={"item_name": "Second post", "price": "30.00"}, headers=_alice())
        assert declined.status_code == 201
        assert declined.json()["status"] == "failed"
        assert declined.json()["failure_code"] == "insufficient_funds"

        again = await client.post(f"/api/v1/orders/{placed.json()['id']}/checkout", headers=_alice())
        assert again.status_code == 409

        listing = await client.get("/api/v1/orders", headers=_alice())
        assert listing.json()["total"] == 2

        other = await client.get(f"/api/v1/orders/{placed.json()['id']}", headers=_bob())
        assert other.status_code == 404

        balance = await client.get("/api/v1/balance", headers=_alice())
        assert Decimal(str(balance.json()["balance"])) == Decimal("20.00")


@pytest.mark.asyncio
async def test_admin_routes(balance_app):
    async with asgi_client(balance_app) as client:
        await _open(client, _alice())
        await _fund(client, ALICE_ID, "40.00", "seed")

        replay = await client.post(
            f"/api/v1/admin/users/{ALICE_ID}/adjustments",
            json={"direction": "credit", "amount": "40.00", "reason": "seed", "idempotency_key": "seed"},
            headers=_admin(),
        )
        assert replay.status_code == 200

        debit = await client.post(
            f"/api/v1/admin/users/{ALICE_ID}/adjustments",
            json={"direction": "debit", "amount": "100.00", "reason": "chargeback", "idempotency_key": "cb-1"},
            headers=_admin(),
        )
        assert debit.status_code == 409
        assert debit.json()["code"] == "insufficient_funds"

        audit = await client.get(f"/api/v1/admin/users/{ALICE_ID}/audit", headers=_admin())
        assert audit.status_code == 200
        assert audit.json()["consistent"] is True
        assert audit.json()["event_count"] == 1

        reconcile = await client.post("/api/v1/admin/orders/reconcile", headers=_admin())
        assert reconcile.status_code == 200
        assert reconcile.json()["settled"] == 0

        not_admin = await client.get(f"/api/v1/admin/users/{ALICE_ID}/audit", headers=_alice())
        assert not_admin.status_code == 403


@pytest.mark.asyncio
async def test_slow_debit_answers_202_and_settles_later(balance_app, session_factory, monkeypatch):
    monkeypatch.setenv("BALANCE_DEBIT_TIMEOUT_SECONDS", "0.05")
    balance_settings.cache_clear()
    store = GatedLedgerStore()
    facade = BalanceFacade(session_factory, store=store, retry_attempts=5, retry_base_delay=0.01)
    balance_app.state.balance_facade = facade
    await facade.open_account(ALICE_ID)
    store.gate.set()
    await facade.credit(ALICE_ID, "50.00", LedgerSource.adjustment("seed"))
    store.gate.clear()

    async with asgi_client(balance_app) as client:
        placed = await client.post("/api/v1/orders", json={"item_name": "Slow post", "price": "20.00"}, headers=_alice())
        assert placed.status_code == 202
        assert placed.json()["status"] == "processing"
        order_id = placed.json()["id"]

        store.gate.set()
        await balance_app.state.order_workflow.drain()

        settled = await client.get(f"/api/v1/orders/{order_id}", headers=_alice())
        assert settled.json()["status"] == "completed"

        retry = await client.post(f"/api/v1/orders/{order_id}/checkout", headers=_alice())
        assert retry.status_code == 409

        balance = await client.get("/api/v1/balance", headers=_alice())
        assert Decimal(str(balance.json()["balance"])) == Decimal("30.00")


@pytest.mark.asyncio
async def test_readiness_follows_startup(balance_app):
    async with asgi_client(balance_app) as client:
        starting = await client.get("/api/v1/readyz")
        assert starting.status_code == 503
        assert starting.json()["status"] == "starting"

        await init_service_startup(balance_app)

        ready = await client.get("/api/v1/readyz")
        assert ready.status_code == 200
        assert ready.json() == {"status": "ready", "service": "balance-service"}


@pytest.mark.asyncio
async def test_store_outage_during_checkout_returns_the_order_for_retry(balance_app, session_factory):
    store = OrderDebitOutageStore()
    facade = BalanceFacade(session_factory, store=store, retry_attempts=2, retry_base_delay=0)
    balance_app.state.balance_facade = facade
    await facade.open_account(ALICE_ID)
    await facade.credit(ALICE_ID, "50.00", LedgerSource.adjustment("seed"))

    async with asgi_client(balance_app) as client:
        placed = await client.post("/api/v1/orders", json={"item_name": "Guest post", "price": "20.00"}, headers=_alice())
        assert placed.status_code == 202
        assert placed.json()["status"] == "processing"
        order_id = placed.json()["id"]

        # The store recovers and the caller retries the same order
        store.down = False
        retry = await client.post(f"/api/v1/orders/{order_id}/checkout", headers=_alice())
        assert retry.status_code == 200
        assert retry.json()["status"] == "completed"

        again = await client.post(f"/api/v1/orders/{order_id}/checkout", headers=_alice())
        assert again.status_code == 409

        listing = await client.get("/api/v1/orders", headers=_alice())
        assert listing.json()["total"] == 1

        balance = await client.get("/api/v1/balance", headers=_alice())
        assert Decimal(str(balance.json()["balance"])) == Decimal("30.00")


@pytest.mark.asyncio
async def test_order_stats_and_filters(balance_app):
    async with asgi_client(balance_app) as client:
        await _open(client, _alice())
        await _open(client, _bob())
        await _fund(client, ALICE_ID, "50.00", "seed-alice")

        await client.post("/api/v1/orders", json={"item_name": "Guest post", "price": "30.00"}, headers=_alice())
        await client.post(
            "/api/v1/orders",
            json={"item_name": "Link insertion", "price": "30.00", "order_type": "link_insertion"},
            headers=_alice(),
        )
        await client.post("/api/v1/orders", json={"item_name": "Bob's post", "price": "15.00"}, headers=_bob())

        mine = await client.get("/api/v1/orders/stats", headers=_alice())
        assert mine.status_code == 200
        assert mine.json()["total"] == 2
        assert mine.json()["completed"] == 1
        assert mine.json()["failed"] == 1
        assert Decimal(str(mine.json()["total_revenue"])) == Decimal("60.00")
        assert Decimal(str(mine.json()["average_order_value"])) == Decimal("30.00")

        everyone = await client.get("/api/v1/orders/stats", headers=_admin())
        assert everyone.json()["total"] == 3
        assert Decimal(str(everyone.json()["average_order_value"])) == Decimal("25.00")

        by_type = await client.get("/api/v1/orders", params={"type": "link_insertion"}, headers=_alice())
        assert [item["item_name"] for item in by_type.json()["items"]] == ["Link insertion"]

        # Users are scoped to their own orders even when they ask for someone else's
        scoped = await client.get("/api/v1/orders", params={"user_id": BOB_ID}, headers=_alice())
        assert scoped.json()["total"] == 2

        all_orders = await client.get("/api/v1/orders", headers=_admin())
        assert all_orders.json()["total"] == 3
        bobs = await client.get("/api/v1/orders", params={"user_id": BOB_ID}, headers=_admin())
        assert [item["user_id"] for item in bobs.json()["items"]] == [BOB_ID]

        future = await client.get("/api/v1/orders", params={"start_date": "2999-01-01T00:00:00"}, headers=_admin())
        assert future.json()["total"] == 0
