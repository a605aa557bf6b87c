from __future__ import annotations

import httpx
from httpx import ASGITransport, AsyncClient
import pytest

from crmbridge.apps.api.deps import get_app_settings, get_platform_client, get_queue_client
from crmbridge.apps.api.main import create_app
from crmbridge.core.config import Settings
from crmbridge.domain.models import CachedRecord, RecordReference, SubAccount
from crmbridge.services.install import encode_oauth_state
from crmbridge.services.outcomes import recent_soft_failures
from crmbridge.services.reconcile.queue import ReconcileQueueClient, task_id_for
from crmbridge.tests.utils.fakes import RecordingBackend
from crmbridge.tests.utils.seed import count_rows, fetch, seed_record, seed_sub_account


def _build_app(platform_client, backend: RecordingBackend, settings: Settings | None = None):
    settings = settings or Settings()
    app = create_app()
    app.dependency_overrides[get_platform_client] = lambda: platform_client
    app.dependency_overrides[get_queue_client] = lambda: ReconcileQueueClient(backend, settings)
    app.dependency_overrides[get_app_settings] = lambda: settings
    return app


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health(platform_client, queue_backend) -> None:
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["meta"]["api_version"] == "v1"
    assert response.headers["X-Request-Id"] == body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_uninstall_webhook_rejects_malformed_json(platform_client, queue_backend) -> None:
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post(
            "/v1/webhooks/platform/uninstall",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_JSON"


@pytest.mark.asyncio
async def test_uninstall_webhook_ignores_other_events(platform_client, queue_backend) -> None:
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post("/v1/webhooks/platform/uninstall", json={"type": "INSTALL"})
    assert response.status_code == 200
    assert response.json()["data"] == {"ok": True, "ignored": True}


@pytest.mark.asyncio
async def test_uninstall_webhook_marks_ownerless_sub_account(platform_client, queue_backend) -> None:
    await seed_sub_account("loc_1")
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post(
            "/v1/webhooks/platform/uninstall",
            json={"type": "UNINSTALL", "locationId": "loc_1"},
        )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["action"] == "marked"
    assert (await fetch(SubAccount, "loc_1")).installed is False


@pytest.mark.asyncio
async def test_record_delete_webhook_requires_identifiers(platform_client, queue_backend) -> None:
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post("/v1/webhooks/platform/record-delete", json={"locationId": "loc_1"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_IDENTIFIERS"


@pytest.mark.asyncio
async def test_record_delete_webhook_queues_grouped_records(platform_client, queue_backend) -> None:
    await seed_sub_account("loc_1")
    await seed_record("loc_1", "rec-1", {"contactId": "c1", "skiptraceData": {"groupId": "g1"}})
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post(
            "/v1/webhooks/platform/record-delete",
            json={"locationId": "loc_1", "contactId": "c1"},
        )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["ok"] is True
    assert data["records_marked"] == 1
    assert data["reconcile_queued"] == 1
    assert queue_backend.submitted[0][0] == task_id_for("loc_1", "g1", 0)


@pytest.mark.asyncio
async def test_record_delete_webhook_acknowledges_processing_failure(
    platform_client, queue_backend, monkeypatch
) -> None:
    async def failing_delete(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr("crmbridge.apps.api.routes.webhooks.process_record_delete", failing_delete)
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post(
            "/v1/webhooks/platform/record-delete",
            json={"locationId": "loc_1", "contactId": "c1"},
        )
    assert response.status_code == 200
    assert response.json()["data"] == {"ok": True, "soft_error": True}
    failures = recent_soft_failures("record_delete_webhook")
    assert [failure.message for failure in failures] == ["store unavailable"]
    assert failures[0].context == {"sub_account_id": "loc_1", "external_id": "c1"}


@pytest.mark.asyncio
async def test_oauth_callback_redirects_with_state(platform_client, queue_backend) -> None:
    settings = Settings()
    state = encode_oauth_state("nonce-1", "https://ui.example.com/done")
    async with _client(_build_app(platform_client, queue_backend, settings)) as client:
        response = await client.get(
            "/v1/oauth/callback",
            params={"code": "code-1", "state": state},
            headers={"Cookie": f"{settings.oauth_state_cookie}=nonce-1"},
        )
    assert response.status_code == 302
    assert response.headers["location"] == (
        "https://ui.example.com/done?installed=1&accountId=acct_1&subAccountId=loc_1"
    )
    assert settings.oauth_state_cookie in response.headers.get("set-cookie", "")
    assert (await fetch(SubAccount, "loc_1")).refresh_token == "install-refresh"


@pytest.mark.asyncio
async def test_oauth_callback_rejects_mismatched_state(platform_client, queue_backend) -> None:
    settings = Settings()
    async with _client(_build_app(platform_client, queue_backend, settings)) as client:
        response = await client.get(
            "/v1/oauth/callback",
            params={"code": "code-1", "state": encode_oauth_state("nonce-1")},
            headers={"Cookie": f"{settings.oauth_state_cookie}=someone-else"},
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_STATE"
    assert await count_rows(SubAccount) == 0


@pytest.mark.asyncio
async def test_oauth_callback_requires_code(platform_client, queue_backend) -> None:
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.get("/v1/oauth/callback")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_CODE"


@pytest.mark.asyncio
async def test_oauth_callback_exchange_failure_is_bad_gateway(
    fake_platform, platform_client, queue_backend
) -> None:
    fake_platform.exchange_error = httpx.Response(400, json={"error": "invalid_grant"})
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.get("/v1/oauth/callback", params={"code": "expired"})
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "TOKEN_EXCHANGE_FAILED"


@pytest.mark.asyncio
async def test_reconcile_task_requires_shared_token(platform_client, queue_backend) -> None:
    settings = Settings(reconcile_token="s3cret")
    app = _build_app(platform_client, queue_backend, settings)
    async with _client(app) as client:
        missing = await client.post("/v1/tasks/reconcile", json={"subAccountId": "loc_1", "groupKey": "g1"})
        wrong = await client.post(
            "/v1/tasks/reconcile",
            json={"subAccountId": "loc_1", "groupKey": "g1"},
            headers={"x-reconcile-token": "s3cres"},
        )
        invalid = await client.post(
            "/v1/tasks/reconcile",
            json={"subAccountId": "loc_1"},
            headers={"x-reconcile-token": "s3cret"},
        )
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "RECONCILE_UNAUTHORIZED"
    assert wrong.status_code == 401
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "MISSING_IDENTIFIERS"


@pytest.mark.asyncio
async def test_reconcile_task_resolves_deleted_group(platform_client, queue_backend) -> None:
    await seed_sub_account("loc_1", access_token="live-token", expires_in_s=3600)
    await seed_record("loc_1", "rec-1", {"contactId": "c1", "groupKey": "g1"})
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post("/v1/tasks/reconcile", json={"locationId": "loc_1", "groupId": "g1"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "resolved"
    assert data["records_deleted"] == 1
    assert await count_rows(CachedRecord) == 0


@pytest.mark.asyncio
async def test_reconcile_task_transient_failure_asks_for_redelivery(
    fake_platform, platform_client, queue_backend
) -> None:
    await seed_sub_account("loc_1", access_token="live-token", expires_in_s=3600)
    await seed_record("loc_1", "rec-1", {"contactId": "c1", "groupKey": "g1"})
    fake_platform.contact_errors["c1"] = httpx.Response(500, json={"message": "boom"})
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post("/v1/tasks/reconcile", json={"subAccountId": "loc_1", "groupKey": "g1"})
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "RECONCILE_RETRY"
    assert await count_rows(CachedRecord) == 1


@pytest.mark.asyncio
async def test_reconcile_task_token_unavailable_is_acknowledged(platform_client, queue_backend) -> None:
    await seed_sub_account("loc_1")
    await seed_record("loc_1", "rec-1", {"contactId": "c1", "groupKey": "g1"})
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post("/v1/tasks/reconcile", json={"subAccountId": "loc_1", "groupKey": "g1"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "token_unavailable"
    assert await count_rows(CachedRecord) == 1


@pytest.mark.asyncio
async def test_record_ingestion_stores_references_for_every_legacy_shape(platform_client, queue_backend) -> None:
    await seed_sub_account("loc_1")
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post(
            "/v1/records",
            json={
                "locationId": "loc_1",
                "recordId": "rec-1",
                "record": {
                    "ghl": {"contactId": "c1", "contactIds": ["c2", "c1"]},
                    "contactId": "c3",
                    "skiptraceData": {"groupId": "g1"},
                },
            },
        )
        deleted = await client.post(
            "/v1/webhooks/platform/record-delete",
            json={"locationId": "loc_1", "contactId": "c3"},
        )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["group_key"] == "g1"
    assert data["external_ids"] == ["c1", "c3", "c2"]
    assert await count_rows(RecordReference, RecordReference.record_id == "rec-1") == 3
    assert (await fetch(SubAccount, "loc_1")).active_record_count == 1
    assert deleted.json()["data"]["records_marked"] == 1


@pytest.mark.asyncio
async def test_record_ingestion_requires_record_object(platform_client, queue_backend) -> None:
    async with _client(_build_app(platform_client, queue_backend)) as client:
        response = await client.post("/v1/records", json={"subAccountId": "loc_1", "recordId": "rec-1"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_IDENTIFIERS"
