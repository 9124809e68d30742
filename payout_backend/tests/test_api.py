"""
API Tests.

End-to-end flows through the FastAPI app with the database, Redis and
bank-transfer collaborator overridden.
"""

import pytest

from payout_backend.app.models.wallet_enums import TransferOutcome
from payout_backend.app.services.bank_transfer import TransientTransferError
from payout_backend.app.services.vendor_lease import VendorLease

SETTLED = {
    "vendor_id": "vendor_1",
    "currency": "NGN",
    "source": "event",
    "order_id": "order_1",
    "event_id": "evt_launch",
    "amount_minor": 5000,
    "hold": False,
    "settled_at": "2025-01-09T09:00:00Z",
    "vendor_name": "Ada Foods",
}

BANK = {
    "bank_name": "Test Bank",
    "account_number": "0123456789",
    "account_name": "Ada Vendor",
    "bank_code": "058",
}


async def _settle_order(client, **overrides):
    response = await client.post("/v1/events/orders/settled", json={**SETTLED, **overrides})
    assert response.status_code == 201
    return response.json()


async def _verified_bank(client):
    response = await client.put("/v1/vendors/vendor_1/bank-account", json=BANK)
    assert response.status_code == 200
    assert response.json()["is_verified"] is False
    response = await client.post("/v1/vendors/vendor_1/bank-account/verify")
    assert response.status_code == 200
    assert response.json()["is_verified"] is True


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["redis"] == "ok"
    assert "X-Correlation-ID" in response.headers


@pytest.mark.asyncio
async def test_health_reports_unreachable_redis(client, redis):
    await redis.aclose()
    body = (await client.get("/health")).json()
    assert body["status"] == "degraded"
    assert body["redis"] == "unavailable"


@pytest.mark.asyncio
async def test_request_log_carries_vendor_and_actor(client, caplog):
    await _settle_order(client)

    with caplog.at_level("INFO", logger="payouts"):
        await client.get("/v1/vendors/vendor_1/wallet", headers={"X-Actor-Id": "ops@payouts"})
        await client.get("/v1/admin/payouts/consistency/vendor_1")
        await client.get("/health")

    served = [r for r in caplog.records if r.getMessage() == "Request served"]
    assert [(r.path, r.vendor_id) for r in served] == [
        ("/v1/vendors/vendor_1/wallet", "vendor_1"),
        ("/v1/admin/payouts/consistency/vendor_1", "vendor_1"),
        ("/health", None),
    ]
    assert served[0].actor == "ops@payouts"


@pytest.mark.asyncio
async def test_order_settlement_reaches_the_wallet(client):
    entry = await _settle_order(client)
    assert entry["entry_type"] == "credit_eligible"
    assert entry["target_payout_key"] == "2025-01-10"

    duplicate = await _settle_order(client)
    assert duplicate["id"] == entry["id"]

    wallet = (await client.get("/v1/vendors/vendor_1/wallet")).json()
    assert wallet["eligible_balance_minor"] == 5000
    assert wallet["currency"] == "NGN"
    assert wallet["schedule"]["tier"] == "weekly"
    assert wallet["next_payout_at"] is not None

    ledger = (await client.get("/v1/vendors/vendor_1/ledger", params={"entry_type": "credit_eligible"})).json()
    assert [e["id"] for e in ledger["entries"]] == [entry["id"]]

    earnings = (await client.get("/v1/vendors/vendor_1/earnings")).json()
    assert earnings["event"]["eligible_minor"] == 5000


@pytest.mark.asyncio
async def test_refund_through_api(client):
    entry = await _settle_order(client, hold=True)
    assert entry["entry_type"] == "debit_hold"

    response = await client.post("/v1/events/orders/refunded", json={
        "vendor_id": "vendor_1", "entry_id": entry["id"], "amount_minor": 2000,
    })
    assert response.status_code == 201
    assert response.json()["related_entry_id"] == entry["id"]

    wallet = (await client.get("/v1/vendors/vendor_1/wallet")).json()
    assert wallet["on_hold_minor"] == 3000

    response = await client.post("/v1/events/orders/refunded", json={
        "vendor_id": "vendor_1", "entry_id": 999, "amount_minor": 1,
    })
    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_NOT_FOUND_001"


@pytest.mark.asyncio
async def test_invalid_event_uses_standard_error_format(client):
    response = await client.post("/v1/events/orders/settled", json={**SETTLED, "amount_minor": 0})
    assert response.status_code == 422
    body = response.json()
    assert body["error_code"] == "ERR_VALIDATION"
    assert body["details"]["errors"]


@pytest.mark.asyncio
async def test_locked_vendor_returns_conflict(client, redis):
    async with VendorLease(redis, "vendor_1"):
        response = await client.post("/v1/events/orders/settled", json=SETTLED)
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_VENDOR_LOCKED"


@pytest.mark.asyncio
async def test_manual_reconciliation_flow(client):
    await _settle_order(client, order_id="order_1", amount_minor=1000)
    await _settle_order(client, order_id="order_2", amount_minor=800)

    dry = await client.post("/v1/admin/payouts/reconcile", json={"vendor_id": "vendor_1", "amount_minor": 1500})
    assert dry.status_code == 200
    token = dry.json()["idempotency_token"]
    assert dry.json()["dry_run"] is True

    request = {"vendor_id": "vendor_1", "amount_minor": 1500, "dry_run": False, "idempotency_token": token}
    committed = await client.post("/v1/admin/payouts/reconcile", json=request, headers={"X-Actor-Id": "ops@payouts"})
    assert committed.status_code == 200
    batch_id = committed.json()["batch_id"]
    assert batch_id.startswith("manual_payout_")

    replay = await client.post("/v1/admin/payouts/reconcile", json=request)
    assert replay.json()["batch_id"] == batch_id

    reused = await client.post("/v1/admin/payouts/reconcile", json={**request, "amount_minor": 100})
    assert reused.status_code == 422
    assert reused.json()["error_code"] == "ERR_LEDGER_VALIDATION"

    wallet = (await client.get("/v1/vendors/vendor_1/wallet")).json()
    assert wallet["eligible_balance_minor"] == 300

    report = (await client.get("/v1/admin/payouts/consistency/vendor_1")).json()
    assert report["batches_missing_record"] == [batch_id]

    backfill = await client.post("/v1/admin/payouts/batches/backfill", json={
        "vendor_id": "vendor_1", "amount_minor": 1500, "batch_id": batch_id,
    })
    assert backfill.status_code == 200
    body = backfill.json()
    assert body["success"] is True
    assert body["batch_id"] == batch_id
    assert body["batch"]["origin"] == "manual"
    assert body["logs"][0].startswith("Vendor vendor_1 found")

    report = (await client.get("/v1/admin/payouts/consistency/vendor_1")).json()
    assert report["is_consistent"] is True

    audit = (await client.get("/v1/admin/payouts/audit-logs", params={"vendor_id": "vendor_1"})).json()
    actions = {log["action"]: log["actor"] for log in audit["logs"]}
    assert actions["MANUAL_PAYOUT_RECONCILED"] == "ops@payouts"
    assert "PAYOUT_BATCH_BACKFILLED" in actions


@pytest.mark.asyncio
async def test_insufficient_balance_carries_logs(client):
    await _settle_order(client, amount_minor=1000)

    response = await client.post("/v1/admin/payouts/reconcile", json={"vendor_id": "vendor_1", "amount_minor": 5000})
    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "ERR_INSUFFICIENT_BALANCE"
    assert body["details"]["available_minor"] == 1000
    assert body["details"]["logs"]


@pytest.mark.asyncio
async def test_backfill_unknown_vendor(client):
    response = await client.post("/v1/admin/payouts/batches/backfill", json={
        "vendor_id": "vendor_x", "amount_minor": 100, "batch_id": "manual_payout_x",
    })
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_payout_run_and_history(client, bank):
    await _settle_order(client)
    await _verified_bank(client)

    preview = (await client.post("/v1/admin/payouts/run", json={
        "vendor_id": "vendor_1", "cycle_key": "2025-01-10", "dry_run": True,
    })).json()
    assert preview["status"] == "dry_run"
    assert preview["net_amount_minor"] == 5000

    result = (await client.post("/v1/admin/payouts/run", json={
        "vendor_id": "vendor_1", "cycle_key": "2025-01-10",
    })).json()
    assert result["status"] == "settled"
    assert bank.sent[0]["amount_minor"] == 5000

    payouts = (await client.get("/v1/vendors/vendor_1/payouts")).json()
    assert len(payouts) == 1
    assert payouts[0]["vendor_name"] == "Ada Foods"
    assert payouts[0]["status"] == "completed"

    transfers = (await client.get("/v1/admin/payouts/transfers", params={"vendor_id": "vendor_1"})).json()
    assert [t["status"] for t in transfers] == ["succeeded"]

    wallet = (await client.get("/v1/vendors/vendor_1/wallet")).json()
    assert wallet["eligible_balance_minor"] == 0
    assert wallet["last_payout_at"] is not None


@pytest.mark.asyncio
async def test_webhook_settles_pending_transfer(client, bank):
    await _settle_order(client)
    await _verified_bank(client)
    bank.outcome = TransferOutcome.PENDING

    result = (await client.post("/v1/admin/payouts/run", json={
        "vendor_id": "vendor_1", "cycle_key": "2025-01-10",
    })).json()
    assert result["status"] == "in_flight"

    response = await client.post("/v1/webhooks/transfers", json={"reference": result["batch_id"], "status": "success"})
    assert response.status_code == 200
    assert response.json()["status"] == "settled"

    unknown = await client.post("/v1/webhooks/transfers", json={"reference": "nope", "status": "success"})
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_dead_letter_list_and_retry(client, bank):
    await _settle_order(client)
    await _verified_bank(client)
    bank.initiate_errors = [TransientTransferError("connection refused")] * 3

    result = (await client.post("/v1/admin/payouts/run", json={
        "vendor_id": "vendor_1", "cycle_key": "2025-01-10",
    })).json()
    assert result["status"] == "failed"

    items = (await client.get("/v1/admin/payouts/dlq", params={"status": "FAILED"})).json()
    assert len(items) == 1
    assert items[0]["task_name"] == "payout_cycle"

    retried = await client.post(f"/v1/admin/payouts/dlq/{items[0]['id']}/retry")
    assert retried.status_code == 200
    assert retried.json()["status"] == "settled"

    missing = await client.post("/v1/admin/payouts/dlq/999/retry")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_schedule_and_fee_quote(client):
    response = await client.put("/v1/vendors/vendor_1/payout-schedule", json={"tier": "1day"})
    assert response.status_code == 200
    assert response.json()["label"] == "Instant"

    schedule = (await client.get("/v1/vendors/vendor_1/payout-schedule")).json()
    assert schedule["tier"] == "1day"

    quote = (await client.get("/v1/vendors/vendor_1/fee-quote", params={"amount_minor": 1000000})).json()
    assert quote["fee_minor"] == 80000
    assert quote["net_amount_minor"] == 920000

    weekly = (await client.get(
        "/v1/vendors/vendor_1/fee-quote", params={"amount_minor": 1000000, "tier": "weekly"}
    )).json()
    assert weekly["fee_minor"] == 0

    audit = (await client.get("/v1/admin/payouts/audit-logs", params={"action": "PAYOUT_SCHEDULE_CHANGED"})).json()
    assert audit["total"] == 1
    assert audit["logs"][0]["meta_data"] == {"from": "weekly", "to": "1day"}


@pytest.mark.asyncio
async def test_bank_name_mismatch_is_rejected(client, bank):
    await client.put("/v1/vendors/vendor_1/bank-account", json=BANK)
    bank.resolved_name = "Somebody Else"

    response = await client.post("/v1/vendors/vendor_1/bank-account/verify")
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_BANK_NAME_MISMATCH"
