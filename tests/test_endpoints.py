import pytest
from httpx import ASGITransport, AsyncClient

from fluzio_points.core.settings import settings
from fluzio_points.services.notifications import NotificationKind


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_fund_apply_approve_flow(app_with_db, seed_balance) -> None:
    app, _ = app_with_db
    await seed_balance("biz-1", 2_000)

    async with _client(app) as client:
        funded = await client.post(
            "/api/v1/missions/m1/funding",
            json={"businessId": "biz-1", "pointsPerSlot": 100, "maxSlots": 10},
        )
        assert funded.status_code == 201
        assert funded.json()["remainingSlots"] == 10
        assert funded.json()["fundedPoints"] == 1_000

        applied = await client.post("/api/v1/missions/m1/participations", json={"userId": "cust-1"})
        assert applied.status_code == 201
        participation_id = applied.json()["id"]

        approved = await client.post(f"/api/v1/participations/{participation_id}/approve", json={})
        assert approved.status_code == 200
        body = approved.json()
        assert body["newBalance"] == 100
        assert body["slotsConsumed"] == 1
        assert body["poolStatus"] == "active"
        assert body["participation"]["status"] == "approved"

        rejected = await client.post(
            f"/api/v1/participations/{participation_id}/reject",
            json={"feedback": "Wrong location"},
        )
        assert rejected.status_code == 200
        assert rejected.json()["reversalStatus"] == "full"
        assert rejected.json()["refunded"] is True

        customer = await client.get("/api/v1/accounts/cust-1")
        business = await client.get("/api/v1/accounts/biz-1")
        listing = await client.get("/api/v1/missions/m1/participations", params={"statuses": ["rejected"]})

    assert customer.json()["balance"] == 0
    assert business.json() == {"ownerId": "biz-1", "ownerKind": "business", "balance": 1_000}
    assert [item["id"] for item in listing.json()] == [participation_id]


@pytest.mark.asyncio
async def test_domain_errors_render_code_and_context(app_with_db, seed_balance) -> None:
    app, _ = app_with_db
    await seed_balance("biz-1", 500)

    async with _client(app) as client:
        insufficient = await client.post(
            "/api/v1/missions/m1/funding",
            json={"businessId": "biz-1", "pointsPerSlot": 100, "maxSlots": 10},
        )
        missing_account = await client.get("/api/v1/accounts/nobody")
        missing_pool = await client.get("/api/v1/missions/m404/funding")
        invalid_body = await client.post(
            "/api/v1/missions/m1/funding",
            json={"businessId": "biz-1", "pointsPerSlot": 0, "maxSlots": 1},
        )

    assert insufficient.status_code == 409
    assert insufficient.json()["error"] == "insufficient_balance"
    assert insufficient.json()["context"]["balance"] == 500
    assert missing_account.status_code == 404
    assert missing_account.json()["error"] == "account_not_found"
    assert missing_pool.status_code == 404
    assert missing_pool.json()["error"] == "not_found"
    assert invalid_body.status_code == 422


@pytest.mark.asyncio
async def test_cancel_mission_endpoint_replays(app_with_db, seed_balance, balance_of) -> None:
    app, _ = app_with_db
    await seed_balance("biz-1", 1_000)

    async with _client(app) as client:
        await client.post(
            "/api/v1/missions/m1/funding",
            json={"businessId": "biz-1", "pointsPerSlot": 50, "maxSlots": 4},
        )
        first = await client.post("/api/v1/missions/m1/cancel", json={"reason": "Store closed"})
        second = await client.post("/api/v1/missions/m1/cancel", json={})
        apply_after = await client.post("/api/v1/missions/m1/participations", json={"userId": "cust-1"})

    assert first.status_code == 200
    assert first.json()["refundAmount"] == 200
    assert first.json()["replayed"] is False
    assert first.json()["pool"]["status"] == "cancelled"
    assert second.json()["replayed"] is True
    assert second.json()["refundTransactionId"] == first.json()["refundTransactionId"]
    assert apply_after.status_code == 409
    assert apply_after.json()["error"] == "pool_not_active"
    assert await balance_of("biz-1") == 1_000


@pytest.mark.asyncio
async def test_ledger_endpoints_post_and_page(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        credited = await client.post(
            "/api/v1/accounts/cust-1/credit",
            json={"amount": 900, "source": "welcome_bonus", "ownerKind": "customer", "idempotencyKey": "welcome:cust-1"},
        )
        replayed = await client.post(
            "/api/v1/accounts/cust-1/credit",
            json={"amount": 900, "source": "welcome_bonus", "idempotencyKey": "welcome:cust-1"},
        )
        debited = await client.post("/api/v1/accounts/cust-1/debit", json={"amount": 100, "source": "redeem"})
        overdrawn = await client.post("/api/v1/accounts/cust-1/debit", json={"amount": 5_000, "source": "redeem"})
        converted = await client.post("/api/v1/accounts/cust-1/conversions", json={"points": 550})
        first_page = await client.get("/api/v1/accounts/cust-1/transactions", params={"limit": 2})
        second_page = await client.get(
            "/api/v1/accounts/cust-1/transactions",
            params={"limit": 2, "cursor": first_page.json()["nextCursor"]},
        )
        earn_only = await client.get("/api/v1/accounts/cust-1/transactions", params={"types": ["earn"]})
        bad_type = await client.get("/api/v1/accounts/cust-1/transactions", params={"types": ["bogus"]})

    assert credited.json()["balanceAfter"] == 900
    assert replayed.json()["replayed"] is True
    assert replayed.json()["transactionId"] == credited.json()["transactionId"]
    assert debited.json()["balanceAfter"] == 800
    assert overdrawn.status_code == 409
    assert converted.status_code == 201
    assert converted.json()["creditedValue"] == "5.50"
    assert converted.json()["receipt"]["balanceAfter"] == 250

    assert len(first_page.json()["entries"]) == 2
    assert len(second_page.json()["entries"]) == 1
    assert second_page.json()["nextCursor"] is None
    assert [entry["transactionType"] for entry in earn_only.json()["entries"]] == ["earn"]
    assert bad_type.status_code == 400


@pytest.mark.asyncio
async def test_commitment_endpoints(app_with_db, notifications) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        created = await client.post(
            "/api/v1/commitments",
            json={"kind": "referral", "initiatorId": "cust-a", "rewardPoints": 150},
        )
        assert created.status_code == 201
        referral = created.json()

        joined = await client.post(
            "/api/v1/commitments/join",
            json={"shareCode": referral["shareCode"], "counterpartyId": "cust-b"},
        )
        assert joined.json()["status"] == "confirmed"

        completed = await client.post(f"/api/v1/commitments/{referral['id']}/complete", json={})
        assert completed.json()["status"] == "completed"
        assert completed.json()["rewardUnlockAt"] is not None

        early = await client.post(f"/api/v1/settlement/commitments/{referral['id']}")
        fetched = await client.get(f"/api/v1/commitments/{referral['id']}")
        window = await client.get(
            "/api/v1/commitments/rate-window", params={"initiatorId": "cust-a", "kind": "referral"}
        )

    assert early.status_code == 409
    assert early.json()["error"] == "invalid_transition"
    assert fetched.json()["settled"] is False
    assert window.json()["count"] == 1
    assert window.json()["remaining"] == 4
    assert NotificationKind.COMMITMENT_JOINED.value in notifications.backend.kinds()


@pytest.mark.asyncio
async def test_commitment_rate_limit_returns_429(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        for index in range(5):
            response = await client.post(
                "/api/v1/commitments",
                json={"kind": "appointment", "initiatorId": "cust-1", "rewardPoints": 20, "counterpartyId": f"biz-{index}"},
            )
            assert response.status_code == 201
        limited = await client.post(
            "/api/v1/commitments",
            json={"kind": "appointment", "initiatorId": "cust-1", "rewardPoints": 20, "counterpartyId": "biz-9"},
        )
        missing_counterparty = await client.post(
            "/api/v1/commitments",
            json={"kind": "appointment", "initiatorId": "cust-2", "rewardPoints": 20},
        )

    assert limited.status_code == 429
    assert limited.json()["error"] == "rate_limited"
    assert limited.json()["context"]["max_count"] == 5
    assert missing_counterparty.status_code == 422
    assert missing_counterparty.json()["error"] == "missing_counterparty"


@pytest.mark.asyncio
async def test_settlement_endpoints(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        sweep = await client.post("/api/v1/settlement/sweep")
        metrics = await client.get("/api/v1/settlement/metrics")

    assert sweep.status_code == 200
    assert sweep.json() == {"scanned": 0, "settled": 0, "noop": 0, "errors": []}
    assert metrics.json()["totals"]["sweeps"] == 1
    assert metrics.json()["last_sweep"]["scanned"] == 0


@pytest.mark.asyncio
async def test_mutations_require_api_key_when_configured(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "internal_api_key", "secret")

    async with _client(app) as client:
        anonymous = await client.post("/api/v1/settlement/sweep")
        wrong = await client.post("/api/v1/accounts/cust-1/credit", json={"amount": 5, "source": "x"}, headers={"X-API-Key": "nope"})
        allowed = await client.post("/api/v1/settlement/sweep", headers={"X-API-Key": "secret"})
        read_only = await client.get("/api/v1/commitments/rate-window", params={"initiatorId": "cust-1"})

    assert anonymous.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    assert read_only.status_code == 200


@pytest.mark.asyncio
async def test_health_endpoints(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        root = await client.get("/healthz")
        ready = await client.get("/api/v1/readyz")
        scheduler = await client.get("/api/v1/health/scheduler")

    assert root.json()["status"] == "ok"
    assert root.json()["version"] == "0.1.0"
    assert ready.status_code == 200
    assert ready.json()["components"]["database"]["status"] == "ready"
    assert ready.json()["components"]["job_scheduler"]["status"] == "disabled"
    assert scheduler.json()["running"] is False
    assert scheduler.json()["jobs"] == []
