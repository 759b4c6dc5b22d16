"""HTTP-level tests for the v1 API.

Components are wired onto a fresh app against the SQLite test database
(the lifespan is not run), and requests go through httpx's ASGITransport.
"""

from __future__ import annotations

import json

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.dealsmart.assistance.provider import SuggestionProvider
from src.dealsmart.assistance.schemas import ProviderReply, SuggestionContext
from src.dealsmart.billing.signature import sign_payload
from src.dealsmart.config import Settings
from src.dealsmart.core.errors import TransientError
from src.dealsmart.crm.adapter import CRMClient
from src.dealsmart.main import create_app, wire_components

SECRET = "whsec_api_test"
STAFF = {"X-Actor-ID": "staff-1"}


class CannedProvider(SuggestionProvider):
    async def generate(self, context: SuggestionContext) -> ProviderReply:
        return ProviderReply(text="Great! What day works best for your test drive?", confidence=0.9)


class UnreachableCRM(CRMClient):
    """CRM whose every call fails as if the provider were down."""

    def __init__(self) -> None:
        self.calls = 0

    async def _fail(self) -> str:
        self.calls += 1
        raise TransientError("hubspot unreachable")

    async def upsert_contact(self, contact) -> str:
        return await self._fail()

    async def upsert_deal(self, deal) -> str:
        return await self._fail()

    async def append_activity(self, activity) -> str:
        return await self._fail()


def _make_settings(**overrides) -> Settings:
    defaults = {"BILLING_WEBHOOK_SECRET": SECRET}
    defaults.update(overrides)
    return Settings(**defaults)


@pytest_asyncio.fixture
async def app(session_factory, executor):
    application = create_app()
    wire_components(
        application.state,
        _make_settings(),
        session_factory,
        suggestion_provider=CannedProvider(),
        executor=executor,
    )
    yield application
    await application.state.task_runner.drain(timeout=5)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


async def _create_conversation(client: AsyncClient) -> str:
    response = await client.post(
        "/api/v1/conversations",
        json={"customer_id": "cust-1", "customer_email": "buyer@example.com"},
    )
    assert response.status_code == 201
    return response.json()["id"]


async def _post_customer_message(client: AsyncClient, conversation_id: str, body: str) -> dict:
    response = await client.post(
        f"/api/v1/conversations/{conversation_id}/messages",
        json={"sender": "customer", "body": body},
    )
    assert response.status_code == 201
    return response.json()


# ── Health & status ──────────────────────────────────────────────────────────


class TestHealth:
    """Liveness, readiness and the API index."""

    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_readiness_without_redis(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        checks = response.json()["checks"]
        assert checks["database"] == "ok"
        assert checks["redis"] == "disabled"
        assert checks["crm"] == "disabled"
        assert checks["llm"] == "ok"

    async def test_api_index_and_status(self, client):
        assert (await client.get("/api")).json()["versions"] == ["v1"]

        response = await client.get("/api/v1/status")
        assert response.status_code == 200
        assert "components" in response.json()

    async def test_metrics_endpoint(self, client):
        await client.get("/health")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text

    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


# ── Conversations ────────────────────────────────────────────────────────────


class TestConversationRoutes:
    """Conversation lifecycle over HTTP."""

    async def test_create_and_get(self, client):
        conversation_id = await _create_conversation(client)

        response = await client.get(f"/api/v1/conversations/{conversation_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "open"

    async def test_unknown_conversation_is_404(self, client):
        response = await client.get("/api/v1/conversations/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    async def test_blank_message_is_422(self, client):
        conversation_id = await _create_conversation(client)
        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            json={"sender": "customer", "body": "   "},
        )
        assert response.status_code == 422

    async def test_poll_since(self, client):
        conversation_id = await _create_conversation(client)
        first = await _post_customer_message(client, conversation_id, "first")
        await _post_customer_message(client, conversation_id, "second")

        response = await client.get(
            f"/api/v1/conversations/{conversation_id}/messages",
            params={"since": first["message"]["created_at"]},
        )
        assert [m["body"] for m in response.json()] == ["second"]

    async def test_staff_actions_require_actor(self, client):
        conversation_id = await _create_conversation(client)
        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/assign", json={"staff_id": "staff-1"}
        )
        assert response.status_code == 401

    async def test_assign_resolve_and_reopen(self, client):
        conversation_id = await _create_conversation(client)
        base = f"/api/v1/conversations/{conversation_id}"

        unassigned = await client.post(f"{base}/transition", json={"status": "resolved"}, headers=STAFF)
        assert unassigned.status_code == 409

        assert (await client.post(f"{base}/assign", json={"staff_id": "staff-1"}, headers=STAFF)).status_code == 200
        resolved = await client.post(f"{base}/transition", json={"status": "resolved"}, headers=STAFF)
        assert resolved.json()["status"] == "resolved"

        invalid = await client.post(f"{base}/transition", json={"status": "pending"}, headers=STAFF)
        assert invalid.status_code == 409
        assert invalid.json()["error"] == "InvalidTransitionError"

        reopened = await client.post(f"{base}/reopen", headers=STAFF)
        assert reopened.json()["status"] == "open"

        transitions = (await client.get(f"{base}/transitions")).json()
        assert [t["to_status"] for t in transitions] == ["resolved", "open"]
        assert all(t["actor"] == "staff-1" for t in transitions)

    async def test_customer_reply_moves_resolved_to_pending(self, client):
        conversation_id = await _create_conversation(client)
        base = f"/api/v1/conversations/{conversation_id}"
        await client.post(f"{base}/assign", json={"staff_id": "staff-1"}, headers=STAFF)
        await client.post(f"{base}/transition", json={"status": "resolved"}, headers=STAFF)

        result = await _post_customer_message(client, conversation_id, "Actually, one more question")

        assert result["conversation"]["status"] == "pending"
        assert result["transition"]["from_status"] == "resolved"


# ── Suggestions ──────────────────────────────────────────────────────────────


class TestSuggestionRoutes:
    """Suggestion request and dispositions over HTTP."""

    async def test_request_and_accept(self, client):
        conversation_id = await _create_conversation(client)
        await _post_customer_message(client, conversation_id, "I'd like to schedule a test drive")

        anonymous = await client.post(f"/api/v1/conversations/{conversation_id}/suggestions")
        assert anonymous.status_code == 401

        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/suggestions", json={"facts": {}}, headers=STAFF
        )
        assert response.status_code == 200
        payload = response.json()
        assert payload["suggestion"]["available"] is True
        assistance_id = payload["assistance"]["id"]

        accepted = await client.post(f"/api/v1/suggestions/{assistance_id}/accept", headers=STAFF)
        assert accepted.status_code == 200
        assert accepted.json()["message"]["body"] == "Great! What day works best for your test drive?"

        again = await client.post(f"/api/v1/suggestions/{assistance_id}/accept", headers=STAFF)
        assert again.json()["changed"] is False

        rejected = await client.post(f"/api/v1/suggestions/{assistance_id}/reject", headers=STAFF)
        assert rejected.status_code == 409

        messages = (await client.get(f"/api/v1/conversations/{conversation_id}/messages")).json()
        assert [m["sender"] for m in messages] == ["customer", "staff"]

    async def test_rate_out_of_range(self, client):
        conversation_id = await _create_conversation(client)
        await _post_customer_message(client, conversation_id, "Hello?")
        created = await client.post(
            f"/api/v1/conversations/{conversation_id}/suggestions", headers=STAFF
        )
        assistance_id = created.json()["assistance"]["id"]

        bad = await client.post(f"/api/v1/suggestions/{assistance_id}/rate", json={"score": 9}, headers=STAFF)
        assert bad.status_code == 422

        good = await client.post(f"/api/v1/suggestions/{assistance_id}/rate", json={"score": 5}, headers=STAFF)
        assert good.json()["assistance"]["rating"] == 5

    async def test_suggestion_without_customer_message(self, client):
        conversation_id = await _create_conversation(client)
        response = await client.post(
            f"/api/v1/conversations/{conversation_id}/suggestions", headers=STAFF
        )
        assert response.status_code == 422


# ── Webhooks & inbound events ────────────────────────────────────────────────


def _billing_body(event_id: str = "evt_api_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": "subscription.created",
            "created": 1_760_000_000,
            "data": {"subscription_id": "sub_api", "customer_email": "owner@dealer.com", "tier": "pro"},
        }
    ).encode()


class TestBillingWebhookRoute:
    """Status codes for webhook outcomes."""

    async def test_accepts_then_reports_duplicate(self, client):
        raw = _billing_body()
        headers = {"Billing-Signature": sign_payload(raw, SECRET), "Content-Type": "application/json"}

        first = await client.post("/api/v1/webhooks/billing", content=raw, headers=headers)
        assert first.status_code == 200
        assert first.json()["reason"] == "applied"
        assert first.json()["state"]["status"] == "active"

        second = await client.post("/api/v1/webhooks/billing", content=raw, headers=headers)
        assert second.status_code == 200
        assert second.json()["duplicate"] is True

    async def test_bad_signature_is_401(self, client):
        raw = _billing_body()
        response = await client.post(
            "/api/v1/webhooks/billing",
            content=raw,
            headers={"Billing-Signature": sign_payload(raw, "not-the-secret")},
        )
        assert response.status_code == 401

    async def test_malformed_is_400(self, client):
        raw = b'{"id": "evt_x"}'
        response = await client.post(
            "/api/v1/webhooks/billing", content=raw, headers={"Billing-Signature": sign_payload(raw, SECRET)}
        )
        assert response.status_code == 400

    async def test_disabled_without_secret(self, session_factory, executor):
        application = create_app()
        wire_components(application.state, _make_settings(BILLING_WEBHOOK_SECRET=""), session_factory, executor=executor)
        async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as http:
            response = await http.post("/api/v1/webhooks/billing", content=b"{}")
        assert response.status_code == 503


class TestInboundEvents:
    """User events posted by the auth service."""

    async def test_user_registered_accepted(self, client):
        response = await client.post(
            "/api/v1/events",
            json={
                "event_type": "user.registered",
                "entity_id": "user-1",
                "data": {"email": "owner@dealer.com"},
            },
        )
        assert response.status_code == 202
        body = response.json()
        assert body["event_type"] == "user.registered"
        assert body["targets"] == []

    async def test_unsupported_event_type_rejected(self, client):
        response = await client.post(
            "/api/v1/events",
            json={"event_type": "payment.succeeded", "entity_id": "sub_1"},
        )
        assert response.status_code == 422

    async def test_malformed_profile_rejected(self, client):
        response = await client.post(
            "/api/v1/events",
            json={
                "event_type": "user.registered",
                "entity_id": "user-1",
                "data": {"email": "ab", "customer_id": "c1"},
            },
        )
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"


# ── CRM outage ───────────────────────────────────────────────────────────────


class TestCRMOutage:
    """A CRM that is down never blocks recording a message."""

    @pytest_asyncio.fixture
    async def crm(self) -> UnreachableCRM:
        return UnreachableCRM()

    @pytest_asyncio.fixture
    async def crm_app(self, session_factory, executor, crm):
        application = create_app()
        wire_components(
            application.state,
            _make_settings(),
            session_factory,
            crm_client=crm,
            suggestion_provider=CannedProvider(),
            executor=executor,
        )
        yield application
        await application.state.task_runner.drain(timeout=5)

    @pytest_asyncio.fixture
    async def crm_client(self, crm_app):
        async with AsyncClient(transport=ASGITransport(app=crm_app), base_url="http://test") as http:
            yield http

    async def test_staff_message_recorded_and_failure_journaled(self, crm_app, crm_client, crm):
        conversation_id = await _create_conversation(crm_client)

        response = await crm_client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            json={"sender": "staff", "body": "Your car is ready for pickup"},
            headers=STAFF,
        )
        assert response.status_code == 201
        message_id = response.json()["message"]["id"]

        await crm_app.state.task_runner.drain(timeout=5)

        messages = (await crm_client.get(f"/api/v1/conversations/{conversation_id}/messages")).json()
        assert [m["id"] for m in messages] == [message_id]
        assert crm.calls > 0

        attempts = crm_app.state.sync_attempts
        failed = [
            a for a in await attempts.list_recent()
            if a.outcome.value == "failed" and a.payload["source"]["event_type"] == "message.sent"
        ]
        assert len(failed) == 1
        assert failed[0].system == "hubspot"
        assert failed[0].attempts == 3
        assert "hubspot unreachable" in failed[0].last_error

        journaled = await attempts.list_for_entity(failed[0].entity_id, system="hubspot")
        assert journaled[-1].outcome.value == "failed"
        assert journaled[-1].entity_id.startswith("cust-1:")
