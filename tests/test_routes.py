"""
API Route Tests.

Exercise the HTTP surface against a real test database: status code mapping
for rejections, workspace scoping, gateway authentication and settlement.
"""

from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from metering.api import routes
from metering.api.routes import get_rate_limiter
from metering.config import settings
from metering.exceptions import StorageFailureError
from metering.main import app
from metering.services.rate_limiter import RateLimiter
from metering.services.token_settings import TokenSettingsStore

from .conftest import WORKSPACE_ID, fund_wallet


async def fund(session_factory, amount: int) -> None:  # type: ignore[no-untyped-def]
    async with session_factory() as session:
        await fund_wallet(session, amount)


class TestConsumeEndpoint:
    """POST /v1/metering/consume"""

    async def test_allowed_charge(
        self, client: AsyncClient, session_factory, workspace_headers
    ) -> None:
        await fund(session_factory, 100)

        response = await client.post(
            "/v1/metering/consume", json={"action": "helper_chat"}, headers=workspace_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is True
        assert body["cost"] == 5
        assert body["balance"] == 95
        assert body["ledger_entry_id"] is not None

    async def test_insufficient_balance_is_402(
        self, client: AsyncClient, session_factory, workspace_headers
    ) -> None:
        await fund(session_factory, 10)

        response = await client.post(
            "/v1/metering/consume", json={"action": "tracks_generate"}, headers=workspace_headers
        )

        assert response.status_code == 402
        body = response.json()
        assert body["allowed"] is False
        assert body["reason"] == "insufficient_balance"
        assert body["balance"] == 10

    async def test_cap_exceeded_is_402_with_cap(
        self, client: AsyncClient, session_factory, workspace_headers
    ) -> None:
        await fund(session_factory, 10_000)
        async with session_factory() as session:
            await TokenSettingsStore(session).upsert(WORKSPACE_ID, monthly_cap=50)

        response = await client.post(
            "/v1/metering/consume", json={"action": "tracks_generate"}, headers=workspace_headers
        )

        assert response.status_code == 402
        assert response.json()["reason"] == "cap_exceeded"
        assert response.json()["cap"] == 50
        assert response.json()["used"] == 0

    async def test_unknown_action_is_400(self, client: AsyncClient, workspace_headers) -> None:
        response = await client.post(
            "/v1/metering/consume", json={"action": "teleport"}, headers=workspace_headers
        )

        assert response.status_code == 400
        assert response.json()["reason"] == "unknown_action"

    async def test_rate_limited_is_429_with_retry_after(
        self, client: AsyncClient, session_factory, workspace_headers
    ) -> None:
        await fund(session_factory, 100)
        strict_limiter = RateLimiter(window_ms=60_000, max_requests=1)
        app.dependency_overrides[get_rate_limiter] = lambda: strict_limiter

        first = await client.post(
            "/v1/metering/consume", json={"action": "helper_chat"}, headers=workspace_headers
        )
        second = await client.post(
            "/v1/metering/consume", json={"action": "helper_chat"}, headers=workspace_headers
        )

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["reason"] == "rate_limited"
        assert second.json()["reset_at"] is not None
        assert 1 <= int(second.headers["Retry-After"]) <= 60

    async def test_feature_locked_is_403(
        self, client: AsyncClient, session_factory, workspace_headers, monkeypatch
    ) -> None:
        await fund(session_factory, 100)
        monkeypatch.setattr(settings, "locked_features", "graph,tracks")

        response = await client.post(
            "/v1/metering/consume",
            json={"action": "graph_generate_image"},
            headers=workspace_headers,
        )

        assert response.status_code == 403
        assert response.json()["reason"] == "feature_locked"

    async def test_storage_failure_is_503(
        self, client: AsyncClient, workspace_headers, monkeypatch
    ) -> None:
        async def broken_consume(self, request):  # type: ignore[no-untyped-def]
            raise StorageFailureError("connection reset")

        monkeypatch.setattr(routes.MeteringService, "consume", broken_consume)

        response = await client.post(
            "/v1/metering/consume", json={"action": "helper_chat"}, headers=workspace_headers
        )

        assert response.status_code == 503

    async def test_missing_identity_headers_is_422(self, client: AsyncClient) -> None:
        response = await client.post("/v1/metering/consume", json={"action": "helper_chat"})

        assert response.status_code == 422

    async def test_empty_action_is_422(self, client: AsyncClient, workspace_headers) -> None:
        response = await client.post(
            "/v1/metering/consume", json={"action": ""}, headers=workspace_headers
        )

        assert response.status_code == 422


class TestGatewayAuth:
    """X-API-Key enforcement."""

    async def test_missing_key_is_401_when_configured(
        self, client: AsyncClient, workspace_headers, monkeypatch
    ) -> None:
        monkeypatch.setattr(settings, "api_key", "gateway-secret")

        response = await client.post(
            "/v1/metering/consume", json={"action": "helper_chat"}, headers=workspace_headers
        )

        assert response.status_code == 401

    async def test_wrong_key_is_401(
        self, client: AsyncClient, workspace_headers, monkeypatch
    ) -> None:
        monkeypatch.setattr(settings, "api_key", "gateway-secret")

        response = await client.get(
            f"/v1/workspaces/{WORKSPACE_ID}/wallet",
            headers={**workspace_headers, "X-API-Key": "nope"},
        )

        assert response.status_code == 401

    async def test_correct_key_passes(
        self, client: AsyncClient, workspace_headers, monkeypatch
    ) -> None:
        monkeypatch.setattr(settings, "api_key", "gateway-secret")

        response = await client.get(
            f"/v1/workspaces/{WORKSPACE_ID}/wallet",
            headers={**workspace_headers, "X-API-Key": "gateway-secret"},
        )

        assert response.status_code == 200


class TestWorkspaceEndpoints:
    """Wallet, ledger, usage and budget reads."""

    async def test_wallet_created_on_first_read(
        self, client: AsyncClient, workspace_headers
    ) -> None:
        response = await client.get(
            f"/v1/workspaces/{WORKSPACE_ID}/wallet", headers=workspace_headers
        )

        assert response.status_code == 200
        assert response.json()["balance"] == 0

    async def test_other_workspace_is_403(self, client: AsyncClient, workspace_headers) -> None:
        response = await client.get("/v1/workspaces/ws_other/wallet", headers=workspace_headers)

        assert response.status_code == 403

    async def test_ledger_pages(
        self, client: AsyncClient, session_factory, workspace_headers
    ) -> None:
        await fund(session_factory, 100)
        for _ in range(3):
            await client.post(
                "/v1/metering/consume", json={"action": "tag_added"}, headers=workspace_headers
            )

        response = await client.get(
            f"/v1/workspaces/{WORKSPACE_ID}/ledger",
            params={"page": 1, "page_size": 2},
            headers=workspace_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 4
        assert body["has_more"] is True
        assert [e["delta"] for e in body["entries"]] == [-1, -1]
        assert body["entries"][0]["entry_type"] == "spend"

    async def test_usage_overview(
        self, client: AsyncClient, session_factory, workspace_headers
    ) -> None:
        await fund(session_factory, 100)
        await client.post(
            "/v1/metering/consume", json={"action": "office_export"}, headers=workspace_headers
        )

        response = await client.get(
            f"/v1/workspaces/{WORKSPACE_ID}/usage", headers=workspace_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["balance"] == 80
        assert body["used"] == 20
        assert body["status"] == "normal"
        assert {c["event_type"]: c["total"] for c in body["counters"]} == {
            "office_export": 1,
            settings.budget_counter_event: 20,
        }

    async def test_budget_round_trip(self, client: AsyncClient, workspace_headers) -> None:
        put = await client.put(
            f"/v1/workspaces/{WORKSPACE_ID}/budget",
            json={"monthly_cap": 5000, "alert_threshold": 90},
            headers=workspace_headers,
        )
        get = await client.get(f"/v1/workspaces/{WORKSPACE_ID}/budget", headers=workspace_headers)

        assert put.status_code == 200
        assert get.json()["monthly_cap"] == 5000
        assert get.json()["alert_threshold"] == 90

    async def test_budget_zero_cap_clears(self, client: AsyncClient, workspace_headers) -> None:
        response = await client.put(
            f"/v1/workspaces/{WORKSPACE_ID}/budget",
            json={"monthly_cap": 0},
            headers=workspace_headers,
        )

        assert response.json()["monthly_cap"] is None

    async def test_budget_threshold_out_of_range_is_422(
        self, client: AsyncClient, workspace_headers
    ) -> None:
        response = await client.put(
            f"/v1/workspaces/{WORKSPACE_ID}/budget",
            json={"monthly_cap": 100, "alert_threshold": 150},
            headers=workspace_headers,
        )

        assert response.status_code == 422


class TestPaymentEndpoints:
    """Top-up intents and settlement notifications."""

    async def test_topup_then_settle(self, client: AsyncClient, workspace_headers) -> None:
        created = await client.post(
            "/v1/payments/topups",
            json={"package_key": "pkg_50k", "provider": "midtrans"},
            headers=workspace_headers,
        )
        assert created.status_code == 201
        intent_id = created.json()["id"]
        assert created.json()["meta"]["tokens"] == 50_000

        notification = {
            "provider": "midtrans",
            "provider_event_id": "evt_100",
            "payment_intent_id": intent_id,
            "status": "paid",
        }
        settled = await client.post("/v1/payments/notifications", json=notification)
        replayed = await client.post("/v1/payments/notifications", json=notification)

        assert settled.status_code == 200
        assert settled.json()["status"] == "settled"
        assert settled.json()["tokens_credited"] == 50_000
        assert replayed.status_code == 200
        assert replayed.json()["status"] == "duplicate"

        wallet = await client.get(
            f"/v1/workspaces/{WORKSPACE_ID}/wallet", headers=workspace_headers
        )
        assert wallet.json()["balance"] == 50_000

        intent = await client.get(f"/v1/payments/intents/{intent_id}", headers=workspace_headers)
        assert intent.json()["status"] == "paid"

    async def test_unknown_package_is_400(self, client: AsyncClient, workspace_headers) -> None:
        response = await client.post(
            "/v1/payments/topups",
            json={"package_key": "pkg_free", "provider": "midtrans"},
            headers=workspace_headers,
        )

        assert response.status_code == 400

    async def test_intent_of_other_workspace_is_404(
        self, client: AsyncClient, workspace_headers
    ) -> None:
        created = await client.post(
            "/v1/payments/topups",
            json={"package_key": "pkg_50k", "provider": "midtrans"},
            headers=workspace_headers,
        )

        response = await client.get(
            f"/v1/payments/intents/{created.json()['id']}",
            headers={"X-Workspace-Id": "ws_other", "X-User-Id": "intruder"},
        )

        assert response.status_code == 404

    async def test_missing_intent_is_404(self, client: AsyncClient, workspace_headers) -> None:
        response = await client.get(f"/v1/payments/intents/{uuid4()}", headers=workspace_headers)

        assert response.status_code == 404

    async def test_notification_for_unknown_intent_is_200(self, client: AsyncClient) -> None:
        response = await client.post(
            "/v1/payments/notifications",
            json={
                "provider": "midtrans",
                "provider_event_id": "evt_x",
                "payment_intent_id": str(uuid4()),
                "status": "paid",
            },
        )

        assert response.status_code == 200
        assert response.json()["status"] == "unknown_intent"

    async def test_notification_without_reference_is_422(self, client: AsyncClient) -> None:
        response = await client.post(
            "/v1/payments/notifications",
            json={"provider": "midtrans", "provider_event_id": "evt_x", "status": "paid"},
        )

        assert response.status_code == 422

    async def test_notification_requires_gateway_key(
        self, client: AsyncClient, monkeypatch
    ) -> None:
        monkeypatch.setattr(settings, "api_key", "gateway-secret")

        response = await client.post(
            "/v1/payments/notifications",
            json={
                "provider": "midtrans",
                "provider_event_id": "evt_x",
                "provider_ref": "order-1",
                "status": "paid",
            },
        )

        assert response.status_code == 401

    async def test_expire_without_stale_intents(self, client: AsyncClient, workspace_headers) -> None:
        await client.post(
            "/v1/payments/topups",
            json={"package_key": "pkg_50k", "provider": "midtrans"},
            headers=workspace_headers,
        )

        response = await client.post("/v1/payments/intents/expire", json={"older_than_hours": 1})

        assert response.status_code == 200
        assert response.json()["expired_count"] == 0


class TestServiceEndpoints:
    """Health, root and metrics."""

    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    async def test_root(self, client: AsyncClient) -> None:
        response = await client.get("/")

        assert response.json()["status"] == "running"

    async def test_metrics_exposes_metering_series(
        self, client: AsyncClient, workspace_headers
    ) -> None:
        await client.post(
            "/v1/metering/consume", json={"action": "teleport"}, headers=workspace_headers
        )

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "metering_consumptions_total" in response.text

    async def test_metrics_disabled_is_404(self, client: AsyncClient, monkeypatch) -> None:
        monkeypatch.setattr(settings, "metrics_enabled", False)

        response = await client.get("/metrics")

        assert response.status_code == 404



class TestStorageUnavailable:
    """Database errors on read and settings paths map to 503."""

    @pytest.fixture
    def broken_database(self, monkeypatch) -> None:  # type: ignore[no-untyped-def]
        async def failing_execute(self, statement, *args, **kwargs):  # type: ignore[no-untyped-def]
            raise OperationalError(str(statement), {}, Exception("connection refused"))

        monkeypatch.setattr(AsyncSession, "execute", failing_execute)

    @pytest.mark.parametrize(
        "method,path,body",
        [
            ("GET", f"/v1/workspaces/{WORKSPACE_ID}/wallet", None),
            ("GET", f"/v1/workspaces/{WORKSPACE_ID}/ledger", None),
            ("GET", f"/v1/workspaces/{WORKSPACE_ID}/usage", None),
            ("GET", f"/v1/workspaces/{WORKSPACE_ID}/budget", None),
            ("PUT", f"/v1/workspaces/{WORKSPACE_ID}/budget", {"monthly_cap": 1000}),
            ("GET", "/v1/payments/intents/00000000-0000-0000-0000-000000000001", None),
        ],
    )
    async def test_storage_error_is_503(
        self,
        client: AsyncClient,
        workspace_headers,
        broken_database,
        method: str,
        path: str,
        body: dict | None,
    ) -> None:
        response = await client.request(method, path, json=body, headers=workspace_headers)

        assert response.status_code == 503


class TestConsumeMetadata:
    """Structured metadata on metered actions."""

    async def test_metadata_reaches_ledger(
        self, client: AsyncClient, session_factory, workspace_headers
    ) -> None:
        await fund(session_factory, 100)

        consumed = await client.post(
            "/v1/metering/consume",
            json={
                "action": "meta_send_message",
                "ref_type": "conversation",
                "ref_id": "conv_9",
                "metadata": {"channel": "whatsapp", "recipients": 1},
            },
            headers=workspace_headers,
        )
        ledger = await client.get(
            f"/v1/workspaces/{WORKSPACE_ID}/ledger", headers=workspace_headers
        )

        assert consumed.status_code == 200
        spend = ledger.json()["entries"][0]
        assert spend["ref_id"] == "conv_9"
        assert spend["metadata"] == {"channel": "whatsapp", "recipients": 1}

    async def test_metadata_must_be_an_object(
        self, client: AsyncClient, workspace_headers
    ) -> None:
        response = await client.post(
            "/v1/metering/consume",
            json={"action": "helper_chat", "metadata": ["not", "an", "object"]},
            headers=workspace_headers,
        )

        assert response.status_code == 422


class TestTopupProviderRef:
    """Provider references are unique per provider."""

    async def test_reused_provider_ref_is_409(
        self, client: AsyncClient, workspace_headers
    ) -> None:
        body = {"package_key": "pkg_50k", "provider": "midtrans", "provider_ref": "order-42"}

        first = await client.post("/v1/payments/topups", json=body, headers=workspace_headers)
        second = await client.post("/v1/payments/topups", json=body, headers=workspace_headers)

        assert first.status_code == 201
        assert second.status_code == 409
