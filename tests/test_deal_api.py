"""Integration tests for the deal REST API.

Uses a real DealLifecycleManager on in-memory SQLite and httpx AsyncClient
with the auth dependency overridden to a switchable acting user.

Covers:
- Proposal creation and listing
- Negotiation endpoints (counter, accept, turn, terms history)
- Escrow endpoints (invoice, pay, summary)
- Work, files, and audit endpoints
- Error rendering: {"error", "detail", ...context} with typed status codes
- 503 when the deal core is not initialized
"""

from __future__ import annotations

import uuid

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.app.api.deps import get_current_user_id
from src.app.api.v1.deals import deal_error_handler, router
from src.app.deals.errors import DealError

ADVERTISER = "adv-1001"
CREATOR = "cre-2002"
OUTSIDER = "usr-9999"

PROPOSAL = {
    "advertiser_id": ADVERTISER,
    "creator_id": CREATOR,
    "title": "Spring launch integration",
    "budget": 45000,
    "terms": {"placement_type": "video", "brief": "60-second integration"},
}


class ActingUser:
    """Switchable stand-in for the bearer-token identity."""

    def __init__(self, user_id: str = ADVERTISER) -> None:
        self.user_id = user_id

    def __call__(self) -> str:
        return self.user_id


def _make_mock_app(manager=None, acting: ActingUser | None = None) -> FastAPI:
    """Create a minimal FastAPI app with the deals router and mocked auth."""
    app = FastAPI()
    app.include_router(router, prefix="/v1")
    app.add_exception_handler(DealError, deal_error_handler)
    app.dependency_overrides[get_current_user_id] = acting or ActingUser()
    app.state.deal_manager = manager
    return app


@pytest_asyncio.fixture
async def api(manager):
    """(client, acting_user) bound to a fresh database."""
    acting = ActingUser()
    app = _make_mock_app(manager, acting)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, acting


async def _create(client) -> str:
    response = await client.post("/v1/deals", json=PROPOSAL)
    assert response.status_code == 201
    return response.json()["deal"]["id"]


# ── Deals ────────────────────────────────────────────────────────────────────


class TestDealEndpoints:
    """Tests for proposal creation, reads, and listing."""

    @pytest.mark.asyncio
    async def test_create_deal(self, api):
        client, _ = api
        response = await client.post("/v1/deals", json=PROPOSAL)
        assert response.status_code == 201
        body = response.json()
        assert body["deal"]["status"] == "pending"
        assert body["deal"]["budget"] == 45000
        assert body["audit_entries"][0]["category"] == "terms"

    @pytest.mark.asyncio
    async def test_create_deal_same_parties_rejected(self, api):
        client, _ = api
        response = await client.post(
            "/v1/deals", json={**PROPOSAL, "creator_id": ADVERTISER}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_and_list(self, api):
        client, acting = api
        deal_id = await _create(client)

        response = await client.get(f"/v1/deals/{deal_id}")
        assert response.status_code == 200
        assert response.json()["title"] == "Spring launch integration"

        acting.user_id = CREATOR
        listed = await client.get("/v1/deals", params={"status": "pending"})
        assert [d["id"] for d in listed.json()] == [deal_id]
        listed = await client.get("/v1/deals", params={"status": "completed"})
        assert listed.json() == []

    @pytest.mark.asyncio
    async def test_outsider_gets_403(self, api):
        client, acting = api
        deal_id = await _create(client)
        acting.user_id = OUTSIDER
        response = await client.get(f"/v1/deals/{deal_id}")
        assert response.status_code == 403
        assert response.json()["error"] == "not_authorized"

    @pytest.mark.asyncio
    async def test_unknown_deal_404(self, api):
        client, _ = api
        response = await client.get(f"/v1/deals/{uuid.uuid4()}")
        assert response.status_code == 404
        response = await client.get("/v1/deals/not-a-uuid")
        assert response.status_code == 404


# ── Negotiation ──────────────────────────────────────────────────────────────


class TestNegotiationEndpoints:
    """Tests for counter-offer, acceptance, and turn endpoints."""

    @pytest.mark.asyncio
    async def test_counter_then_accept(self, api):
        client, acting = api
        deal_id = await _create(client)

        turn = (await client.get(f"/v1/deals/{deal_id}/turn")).json()
        assert turn["awaiting"] == CREATOR

        acting.user_id = CREATOR
        countered = await client.post(
            f"/v1/deals/{deal_id}/terms/counter",
            json={
                "changes": {"deadline": "2026-04-15"},
                "rationale": "need more time",
                "expected_version": 1,
            },
        )
        assert countered.status_code == 200
        assert countered.json()["deal"]["status"] == "needs_changes"

        acting.user_id = ADVERTISER
        accepted = await client.post(
            f"/v1/deals/{deal_id}/terms/accept", json={"expected_version": 2}
        )
        assert accepted.status_code == 200
        assert accepted.json()["deal"]["status"] == "briefing"
        assert accepted.json()["deal"]["deadline"] == "2026-04-15"

        history = (await client.get(f"/v1/deals/{deal_id}/terms")).json()
        assert [v["version"] for v in history] == [1, 2]
        assert history[1]["status"] == "accepted"
        assert history[1]["changed_fields"] == ["deadline"]

    @pytest.mark.asyncio
    async def test_not_your_turn(self, api):
        client, _ = api
        deal_id = await _create(client)
        response = await client.post(f"/v1/deals/{deal_id}/terms/accept", json={})
        assert response.status_code == 403
        assert "not your turn" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_stale_version_409(self, api):
        client, acting = api
        deal_id = await _create(client)
        acting.user_id = CREATOR
        response = await client.post(
            f"/v1/deals/{deal_id}/terms/accept", json={"expected_version": 4}
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "version_conflict"
        assert body["current_version"] == 1

    @pytest.mark.asyncio
    async def test_missing_rationale_422(self, api):
        client, acting = api
        deal_id = await _create(client)
        acting.user_id = CREATOR
        response = await client.post(
            f"/v1/deals/{deal_id}/terms/counter", json={"changes": {"price": 1}}
        )
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_reject_and_invalid_transition(self, api):
        client, acting = api
        deal_id = await _create(client)
        acting.user_id = CREATOR
        rejected = await client.post(
            f"/v1/deals/{deal_id}/reject", json={"reason": "not my audience"}
        )
        assert rejected.json()["deal"]["status"] == "rejected"

        response = await client.post(f"/v1/deals/{deal_id}/dispute", json={})
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "invalid_state_transition"
        assert body["allowed"] == []


# ── Escrow & Work ────────────────────────────────────────────────────────────


class TestEscrowAndWorkEndpoints:
    """Tests for the paid path from acceptance to completion."""

    @pytest.mark.asyncio
    async def test_paid_deal_to_completion(self, api):
        client, acting = api
        response = await client.post("/v1/deals", json={**PROPOSAL, "escrow_required": True})
        deal_id = response.json()["deal"]["id"]

        acting.user_id = CREATOR
        accepted = await client.post(f"/v1/deals/{deal_id}/terms/accept", json={})
        assert accepted.json()["deal"]["status"] == "accepted"

        invoiced = await client.post(f"/v1/deals/{deal_id}/invoices", json={"amount": 45000})
        assert invoiced.json()["deal"]["status"] == "waiting_payment"
        assert len(invoiced.json()["audit_entries"]) == 2

        escrow = (await client.get(f"/v1/deals/{deal_id}/escrow")).json()
        invoice_id = escrow["invoices"][0]["id"]

        acting.user_id = ADVERTISER
        paid = await client.post(f"/v1/deals/{deal_id}/invoices/{invoice_id}/pay")
        assert paid.json()["deal"]["status"] == "briefing"

        acting.user_id = CREATOR
        await client.post(f"/v1/deals/{deal_id}/work/start")
        no_file = await client.post(f"/v1/deals/{deal_id}/draft/submit", json={})
        assert no_file.status_code == 422

        attached = await client.post(
            f"/v1/deals/{deal_id}/files",
            json={"file_name": "cut-v1.mp4", "category": "draft"},
        )
        assert attached.status_code == 201
        submitted = await client.post(
            f"/v1/deals/{deal_id}/draft/submit", json={"comment": "first cut"}
        )
        assert submitted.json()["deal"]["status"] == "review"

        acting.user_id = ADVERTISER
        done = await client.post(f"/v1/deals/{deal_id}/draft/accept")
        assert done.json()["deal"]["status"] == "completed"

        escrow = (await client.get(f"/v1/deals/{deal_id}/escrow")).json()
        assert escrow["released"] == 45000
        assert escrow["settled"] is True

        files = (await client.get(f"/v1/deals/{deal_id}/files")).json()
        assert [f["file_name"] for f in files] == ["cut-v1.mp4"]

    @pytest.mark.asyncio
    async def test_overdraw_409(self, api):
        client, acting = api
        response = await client.post("/v1/deals", json={**PROPOSAL, "escrow_required": True})
        deal_id = response.json()["deal"]["id"]
        acting.user_id = CREATOR
        await client.post(f"/v1/deals/{deal_id}/terms/accept", json={})

        response = await client.post(f"/v1/deals/{deal_id}/invoices", json={"amount": 90000})
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "illegal_operation"
        assert body["unallocated"] == 45000

    @pytest.mark.asyncio
    async def test_invalid_file_category_422(self, api):
        client, _ = api
        deal_id = await _create(client)
        response = await client.post(
            f"/v1/deals/{deal_id}/files", json={"file_name": "x", "category": "memes"}
        )
        assert response.status_code == 422


# ── Audit ────────────────────────────────────────────────────────────────────


class TestAuditEndpoint:
    @pytest.mark.asyncio
    async def test_audit_newest_first_with_limit(self, api):
        client, acting = api
        deal_id = await _create(client)
        acting.user_id = CREATOR
        await client.post(f"/v1/deals/{deal_id}/terms/accept", json={})

        entries = (await client.get(f"/v1/deals/{deal_id}/audit")).json()
        assert [e["action"] for e in entries] == [
            "Accepted terms v1",
            "Proposed deal 'Spring launch integration' (v1)",
        ]
        limited = (await client.get(f"/v1/deals/{deal_id}/audit", params={"limit": 1})).json()
        assert len(limited) == 1
        filtered = await client.get(
            f"/v1/deals/{deal_id}/audit", params={"category": "payments"}
        )
        assert filtered.json() == []

    @pytest.mark.asyncio
    async def test_audit_limit_bounds(self, api):
        client, _ = api
        deal_id = await _create(client)
        response = await client.get(f"/v1/deals/{deal_id}/audit", params={"limit": 0})
        assert response.status_code == 422


# ── 503 When Not Initialized ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_deals_api_503_when_not_initialized():
    """app.state.deal_manager = None -> 503."""
    app = _make_mock_app(manager=None)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/deals")
        assert response.status_code == 503
        assert "not initialized" in response.json()["detail"]
