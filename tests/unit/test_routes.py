"""HTTP tests for the download, subscriber and webhook routes."""

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock, patch

import pytest
from conftest import sign_payload, signed, stripe_event, subscription_object
from httpx import AsyncClient

from entitlement_engine.dependencies import EntitlementServices
from entitlement_engine.exceptions import StoreUnavailableError, TransientStoreConflictError
from entitlement_engine.services.quota_arbiter import Permit
from entitlement_engine.store.memory import InMemoryEntitlementStore

Headers = Callable[..., dict[str, str]]


@pytest.mark.unit
class TestAuth:
    @pytest.mark.asyncio
    async def test_health_is_public(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_missing_token(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/downloads/check")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client: AsyncClient) -> None:
        response = await client.get(
            "/api/v1/downloads/check", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401


@pytest.mark.unit
class TestDownloadRoutes:
    @pytest.mark.asyncio
    async def test_check_does_not_consume(
        self, client: AsyncClient, store: InMemoryEntitlementStore, auth_headers: Headers
    ) -> None:
        await store.provision("u1")

        for _ in range(2):
            response = await client.get("/api/v1/downloads/check", headers=auth_headers("u1"))
            assert response.status_code == 200
            assert response.json() == {
                "canDownload": True,
                "remaining": 3,
                "needsUpgrade": False,
                "subscriptionStatus": "free",
            }

    @pytest.mark.asyncio
    async def test_check_unknown_subscriber(
        self, client: AsyncClient, auth_headers: Headers
    ) -> None:
        response = await client.get("/api/v1/downloads/check", headers=auth_headers("ghost"))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_track_until_quota_exceeded(
        self, client: AsyncClient, store: InMemoryEntitlementStore, auth_headers: Headers
    ) -> None:
        await store.provision("u1")
        headers = auth_headers("u1")

        remaining = []
        for index in range(3):
            response = await client.post(
                "/api/v1/downloads/track",
                json={"requestId": f"req-{index}", "fileName": "a.pdf", "fileSize": 10},
                headers=headers,
            )
            assert response.status_code == 200
            body = response.json()
            assert body["success"] is True
            assert body["wasFreeTier"] is True
            remaining.append(body["remaining"])

        denied = await client.post(
            "/api/v1/downloads/track",
            json={"requestId": "req-3", "fileName": "a.pdf"},
            headers=headers,
        )

        assert remaining == [2, 1, 0]
        assert denied.status_code == 403
        assert denied.json() == {"error": "QuotaExceeded", "needsUpgrade": True, "remaining": 0}
        assert await store.get_usage("req-3") is None

    @pytest.mark.asyncio
    async def test_retry_with_same_request_id_does_not_consume(
        self, client: AsyncClient, store: InMemoryEntitlementStore, auth_headers: Headers
    ) -> None:
        await store.provision("u1")
        body = {"requestId": "req-1", "fileName": "a.pdf"}

        first = await client.post("/api/v1/downloads/track", json=body, headers=auth_headers("u1"))
        retry = await client.post("/api/v1/downloads/track", json=body, headers=auth_headers("u1"))

        assert first.status_code == retry.status_code == 200
        assert retry.json()["downloadId"] == "req-1"
        record = await store.get("u1")
        assert record is not None
        assert record.quota_counter == 1

    @pytest.mark.asyncio
    async def test_request_id_of_another_subscriber(
        self, client: AsyncClient, store: InMemoryEntitlementStore, auth_headers: Headers
    ) -> None:
        await store.provision("u1")
        await store.provision("u2")
        body = {"requestId": "req-1", "fileName": "a.pdf"}
        await client.post("/api/v1/downloads/track", json=body, headers=auth_headers("u1"))

        response = await client.post(
            "/api/v1/downloads/track", json=body, headers=auth_headers("u2")
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_track_store_unavailable_is_retryable(
        self, client: AsyncClient, services: EntitlementServices, auth_headers: Headers
    ) -> None:
        with patch.object(
            services.arbiter,
            "check_and_consume",
            AsyncMock(side_effect=StoreUnavailableError("check_and_consume", "timed out")),
        ):
            response = await client.post(
                "/api/v1/downloads/track",
                json={"fileName": "a.pdf"},
                headers=auth_headers("u1"),
            )

        assert response.status_code == 503
        assert response.json() == {"error": "ServiceUnavailable", "retryable": True}

    @pytest.mark.asyncio
    async def test_concurrent_retries_consume_once(
        self, client: AsyncClient, services: EntitlementServices, auth_headers: Headers
    ) -> None:
        store = services.store
        await store.provision("u1")
        body = {"requestId": "req-1", "fileName": "a.pdf"}
        consume = services.arbiter.check_and_consume

        async def slow_consume(subscriber_id: str) -> Permit:
            await asyncio.sleep(0.01)
            return await consume(subscriber_id)

        with patch.object(services.arbiter, "check_and_consume", slow_consume):
            responses = await asyncio.gather(
                *(
                    client.post("/api/v1/downloads/track", json=body, headers=auth_headers("u1"))
                    for _ in range(3)
                )
            )

        assert sorted(r.status_code for r in responses) == [200, 409, 409]
        for response in responses:
            if response.status_code == 409:
                assert response.json() == {"error": "RequestInProgress", "retryable": True}
        record = await store.get("u1")
        assert record is not None
        assert record.quota_counter == 1
        assert len(await store.list_usage("u1")) == 1

        retry = await client.post("/api/v1/downloads/track", json=body, headers=auth_headers("u1"))
        assert retry.status_code == 200
        assert retry.json()["downloadId"] == "req-1"
        assert retry.json()["remaining"] == 2
        record = await store.get("u1")
        assert record is not None
        assert record.quota_counter == 1

    @pytest.mark.asyncio
    async def test_request_id_claimed_by_another_subscriber_in_flight(
        self, client: AsyncClient, services: EntitlementServices, auth_headers: Headers
    ) -> None:
        store = services.store
        await store.provision("u1")
        await store.provision("u2")
        body = {"requestId": "req-1", "fileName": "a.pdf"}
        consume = services.arbiter.check_and_consume

        async def slow_consume(subscriber_id: str) -> Permit:
            await asyncio.sleep(0.01)
            return await consume(subscriber_id)

        with patch.object(services.arbiter, "check_and_consume", slow_consume):
            first, second = await asyncio.gather(
                client.post("/api/v1/downloads/track", json=body, headers=auth_headers("u1")),
                client.post("/api/v1/downloads/track", json=body, headers=auth_headers("u2")),
            )

        assert sorted([first.status_code, second.status_code]) == [200, 409]
        loser, rejected = ("u2", second) if first.status_code == 200 else ("u1", first)
        assert rejected.json() == {"detail": "requestId already used"}
        record = await store.get(loser)
        assert record is not None
        assert record.quota_counter == 0

    @pytest.mark.asyncio
    async def test_unavailable_store_releases_request_id(
        self, client: AsyncClient, services: EntitlementServices, auth_headers: Headers
    ) -> None:
        await services.store.provision("u1")
        body = {"requestId": "req-1", "fileName": "a.pdf"}

        with patch.object(
            services.arbiter,
            "check_and_consume",
            AsyncMock(side_effect=StoreUnavailableError("check_and_consume", "timed out")),
        ):
            failed = await client.post(
                "/api/v1/downloads/track", json=body, headers=auth_headers("u1")
            )
        retry = await client.post("/api/v1/downloads/track", json=body, headers=auth_headers("u1"))

        assert failed.status_code == 503
        assert retry.status_code == 200
        assert retry.json()["remaining"] == 2

    @pytest.mark.asyncio
    async def test_track_requires_file_name(
        self, client: AsyncClient, store: InMemoryEntitlementStore, auth_headers: Headers
    ) -> None:
        await store.provision("u1")
        response = await client.post(
            "/api/v1/downloads/track", json={"requestId": "r"}, headers=auth_headers("u1")
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_history(
        self, client: AsyncClient, store: InMemoryEntitlementStore, auth_headers: Headers
    ) -> None:
        await store.provision("u1")
        await client.post(
            "/api/v1/downloads/track",
            json={"requestId": "req-1", "fileName": "a.pdf", "fileSize": 42},
            headers=auth_headers("u1"),
        )

        response = await client.get("/api/v1/downloads/history", headers=auth_headers("u1"))

        assert response.status_code == 200
        items = response.json()
        assert len(items) == 1
        assert items[0]["downloadId"] == "req-1"
        assert items[0]["fileName"] == "a.pdf"
        assert items[0]["fileSize"] == 42


@pytest.mark.unit
class TestSubscriberRoutes:
    @pytest.mark.asyncio
    async def test_provision_without_stripe(
        self, client: AsyncClient, store: InMemoryEntitlementStore, auth_headers: Headers
    ) -> None:
        response = await client.post(
            "/api/v1/subscribers/provision", headers=auth_headers("u1", email="u1@example.com")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["subscriberId"] == "u1"
        assert body["subscriptionStatus"] == "free"
        assert body["remaining"] == 3
        assert body["billingLinked"] is False
        record = await store.get("u1")
        assert record is not None
        assert record.email == "u1@example.com"

    @pytest.mark.asyncio
    async def test_me(
        self, client: AsyncClient, store: InMemoryEntitlementStore, auth_headers: Headers
    ) -> None:
        missing = await client.get("/api/v1/subscribers/me", headers=auth_headers("u1"))
        await store.provision("u1")
        found = await client.get("/api/v1/subscribers/me", headers=auth_headers("u1"))

        assert missing.status_code == 404
        assert found.status_code == 200
        assert found.json()["hasUnlimitedQuota"] is False


@pytest.mark.unit
class TestWebhookRoute:
    @pytest.mark.asyncio
    async def test_accepted(self, client: AsyncClient, store: InMemoryEntitlementStore) -> None:
        await store.provision("u1", billing_reference_id="cus_1")
        payload, header = signed(
            stripe_event("customer.subscription.created", subscription_object("cus_1"), created=5)
        )

        response = await client.post(
            "/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "applied": True}

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client: AsyncClient) -> None:
        payload = '{"id": "evt_1", "type": "x", "created": 1}'
        response = await client.post(
            "/api/v1/webhooks/stripe",
            content=payload.encode(),
            headers={"stripe-signature": sign_payload(payload, secret="whsec_wrong")},
        )

        assert response.status_code == 400
        assert response.json() == {"detail": "InvalidSignature"}

    @pytest.mark.asyncio
    async def test_unknown_subscriber(self, client: AsyncClient) -> None:
        payload, header = signed(
            stripe_event("customer.subscription.created", subscription_object("cus_x"), created=5)
        )
        response = await client.post(
            "/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header}
        )

        assert response.status_code == 400
        assert response.json() == {"detail": "UnknownSubscriber"}

    @pytest.mark.asyncio
    async def test_conflict_asks_for_redelivery(
        self, client: AsyncClient, services: EntitlementServices
    ) -> None:
        with (
            patch.object(
                services.ingestor,
                "ingest",
                AsyncMock(side_effect=TransientStoreConflictError("u1", 5)),
            ),
            patch("entitlement_engine.routes.webhooks.capture_exception") as capture,
        ):
            response = await client.post(
                "/api/v1/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1"}
            )

        assert response.status_code == 503
        capture.assert_called_once()
        assert isinstance(capture.call_args.args[0], TransientStoreConflictError)
