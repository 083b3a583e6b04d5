"""
HTTP tests for the dunning router.

The lifespan is not run; each test installs its own runtime on app.state
with the fake gateway and a recording notification port.
"""
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.main import app
from app.modules.billing.domain.billing.runtime import build_dunning_runtime

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TOKEN = "test-operator-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def runtime(session_maker, test_settings, dunning_config, gateway, port, clock):
    runtime = build_dunning_runtime(
        session_maker,
        settings=test_settings,
        config=dunning_config,
        gateway=gateway,
        notification_port=port,
        clock=clock,
    )
    app.state.dunning = runtime
    yield runtime
    app.state.dunning = None


@pytest_asyncio.fixture
async def client(runtime):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac


class TestOperatorAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/api/v1/dunning/stats")

        assert response.status_code == 401
        assert response.json() == {
            "error": "http_error",
            "message": "Invalid operator token",
            "details": {},
        }

    @pytest.mark.asyncio
    async def test_wrong_token(self, client):
        response = await client.get(
            "/api/v1/dunning/stats", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401


class TestOperatorEndpoints:
    @pytest.mark.asyncio
    async def test_history(self, client, runtime, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        await runtime.engine.process_failure(sub_id, inv_id, "declined")

        response = await client.get(
            f"/api/v1/dunning/subscriptions/{sub_id}/history", headers=AUTH
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "past_due"
        assert body["total_attempts"] == 1
        assert body["attempts"][0]["outcome"] == "failed"
        assert body["notifications"][0]["notification_type"] == "first_failure"

    @pytest.mark.asyncio
    async def test_unknown_subscription_uses_error_shape(self, client):
        response = await client.get(
            f"/api/v1/dunning/subscriptions/{uuid4()}/history", headers=AUTH
        )

        assert response.status_code == 404
        assert set(response.json()) == {"error", "message", "details"}

    @pytest.mark.asyncio
    async def test_pending_retries(self, client, runtime, clock, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        await runtime.engine.process_failure(sub_id, inv_id, "declined")
        clock.set(T0 + timedelta(days=1))

        response = await client.get("/api/v1/dunning/retries/pending", headers=AUTH)

        assert response.status_code == 200
        [item] = response.json()
        assert item["invoice_id"] == str(inv_id)
        assert item["attempt_number"] == 2

    @pytest.mark.asyncio
    async def test_manual_retry(self, client, runtime, gateway, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        await runtime.engine.process_failure(sub_id, inv_id, "declined")
        gateway.succeed("txn_api")

        response = await client.post(
            f"/api/v1/dunning/invoices/{inv_id}/retry", headers=AUTH
        )

        assert response.status_code == 200
        assert response.json()["decision"] == "recovered"

    @pytest.mark.asyncio
    async def test_manual_retry_on_paid_invoice(self, client, seed_invoice):
        _, inv_id = await seed_invoice(invoice_status="paid")

        response = await client.post(
            f"/api/v1/dunning/invoices/{inv_id}/retry", headers=AUTH
        )

        assert response.status_code == 422
        assert response.json()["error"] == "invoice_not_retryable"

    @pytest.mark.asyncio
    async def test_grace_extension(self, client, runtime, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        await runtime.engine.process_failure(sub_id, inv_id, "declined")

        response = await client.post(
            f"/api/v1/dunning/subscriptions/{sub_id}/grace-extension",
            headers=AUTH,
            json={"invoice_id": str(inv_id), "days": 4},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["policy"] == "postpone"
        assert body["cycle_attempts"] == 1

    @pytest.mark.asyncio
    async def test_grace_extension_validates_days(self, client, seed_invoice):
        sub_id, inv_id = await seed_invoice()

        response = await client.post(
            f"/api/v1/dunning/subscriptions/{sub_id}/grace-extension",
            headers=AUTH,
            json={"invoice_id": str(inv_id), "days": 0},
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_sweep_and_stats(self, client, runtime, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        await runtime.engine.process_failure(sub_id, inv_id, "declined")

        sweep = await client.post("/api/v1/dunning/retries/sweep", headers=AUTH)
        stats = await client.get("/api/v1/dunning/stats", headers=AUTH)

        assert sweep.json() == {"scanned": 0, "enqueued": 0, "repaired": 0}
        assert stats.status_code == 200
        assert stats.json()["past_due_subscriptions"] == 1
        assert stats.json()["retry_jobs"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_reset_dunning(self, client, runtime, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        await runtime.engine.process_failure(sub_id, inv_id, "card expired")

        response = await client.post(
            f"/api/v1/dunning/subscriptions/{sub_id}/reset-dunning", headers=AUTH
        )

        assert response.status_code == 200
        assert response.json() == {
            "subscription_id": str(sub_id),
            "status": "active",
            "reset": True,
        }

    @pytest.mark.asyncio
    async def test_reset_dunning_unknown_subscription(self, client):
        response = await client.post(
            f"/api/v1/dunning/subscriptions/{uuid4()}/reset-dunning", headers=AUTH
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_expire_grace_periods(self, client, runtime, clock, seed_invoice):
        sub_id, inv_id = await seed_invoice()
        await runtime.engine.process_failure(sub_id, inv_id, "declined")
        clock.set(T0 + timedelta(days=15))

        response = await client.post(
            "/api/v1/dunning/grace-periods/expire", headers=AUTH
        )

        # The retry job is still pending, but it was due inside the grace window.
        assert response.json() == {"scanned": 1, "cancelled": 1}


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_signed_internal_event(self, client, seed_invoice):
        sub_id, inv_id = await seed_invoice(invoice_status="failed")
        payload = json.dumps(
            {
                "gateway_transaction_id": "txn_web",
                "outcome": "succeeded",
                "metadata": {"subscription_id": str(sub_id), "invoice_id": str(inv_id)},
            }
        ).encode()
        signature = hmac.new(TOKEN.encode(), payload, hashlib.sha256).hexdigest()

        response = await client.post(
            "/api/v1/dunning/webhooks/internal",
            content=payload,
            headers={"X-Signature": signature, "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["decision"] == "recovered"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client):
        response = await client.post(
            "/api/v1/dunning/webhooks/internal",
            content=b"{}",
            headers={"X-Signature": "bad"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_signature"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client):
        response = await client.post("/api/v1/dunning/webhooks/adyen", content=b"{}")
        assert response.status_code == 404


class TestRuntime:
    def test_registers_handlers_and_parsers(self, runtime):
        assert runtime.scheduler.get_status()["handlers"] == [
            "dunning_notification",
            "dunning_retry",
        ]
        assert set(runtime.webhooks.parsers) == {"internal"}

    def test_start_is_noop_when_disabled(self, runtime):
        runtime.start()
        assert runtime.scheduler.get_status()["running"] is False

    @pytest.mark.asyncio
    async def test_start_registers_maintenance_passes(
        self, session_maker, test_settings, dunning_config, gateway, port, clock
    ):
        runtime = build_dunning_runtime(
            session_maker,
            settings=test_settings.model_copy(update={"SCHEDULER_ENABLED": True}),
            config=dunning_config,
            gateway=gateway,
            notification_port=port,
            clock=clock,
        )
        runtime.start()
        try:
            jobs = runtime.scheduler.scheduler
            assert jobs.get_job("retry_scheduler_poll") is not None
            assert jobs.get_job("dunning_reconciliation_sweep") is not None
            assert jobs.get_job("dunning_grace_expiry") is not None
        finally:
            runtime.stop()
