"""HTTP layer tests: auth, error mapping, rate limits and main routes."""
import httpx
import pytest

from adrouter.utils.rate_limit import RateRule
from api_server import app

ADMIN = "admin-1"
TOKEN = "test-token"


def headers(actor=ADMIN, token=TOKEN):
    result = {"Authorization": f"Bearer {token}"}
    if actor:
        result["X-Actor-Id"] = actor
    return result


@pytest.fixture
async def client(container):
    app.state.container = container
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.state.container = None


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": True}


async def test_not_ready_without_container(client):
    app.state.container = None
    response = await client.get("/api/dispatch/queue", headers=headers())
    assert response.status_code == 503


async def test_auth_and_actor_required(client):
    assert (await client.get("/api/dispatch/queue")).status_code == 401
    assert (await client.get("/api/dispatch/queue", headers=headers(token="wrong"))).status_code == 401
    assert (await client.get("/api/dispatch/queue", headers=headers(actor=None))).status_code == 400

    response = await client.get("/api/dispatch/queue", headers={"X-Admin-Token": TOKEN, "X-Actor-Id": ADMIN})
    assert response.status_code == 200


async def test_module_flag_disables_routes(client, container):
    container.config.dispatch_enabled = False
    response = await client.get("/api/dispatch/queue", headers=headers())
    assert response.status_code == 503


async def test_capability_denied_maps_to_403(client):
    response = await client.get("/api/dispatch/queue", headers=headers(actor="stranger"))
    assert response.status_code == 403
    assert response.json()["error"] == "privilege_denied"


async def test_create_and_walk_lifecycle(client, add_listing, add_target):
    listing = await add_listing()
    target = await add_target(invite_link="https://chat.example/join")

    created = await client.post(f"/api/dispatch/listings/{listing.id}/dispatch", headers=headers())
    assert created.status_code == 200
    body = created.json()
    assert body["created"] == 1
    item_id = body["items"][0]["id"]

    started = await client.post(f"/api/dispatch/queue/{item_id}/start", headers=headers())
    assert started.json()["invite_link"] == "https://chat.example/join"

    again = await client.post(f"/api/dispatch/queue/{item_id}/start", headers=headers())
    assert again.status_code == 409
    assert again.json() == {
        "detail": "cannot start an item in status IN_PROGRESS",
        "error": "invalid_state",
        "required": "PENDING",
    }

    sent = await client.post(f"/api/dispatch/queue/{item_id}/confirm-sent", headers=headers())
    assert sent.json()["status"] == "SENT"

    override = await client.post(
        f"/api/dispatch/queue/{item_id}/override-resend", headers=headers(), json={"reason": ""}
    )
    assert override.status_code == 400
    assert override.json()["error"] == "validation_error"

    queue = await client.get("/api/dispatch/queue", params={"status": "sent"}, headers=headers())
    assert queue.json()["total"] == 1
    assert queue.json()["items"][0]["target_id"] == target.id

    history = await client.get(f"/api/dispatch/listings/{listing.id}/history", headers=headers())
    actions = [e["action"] for e in history.json()["entries"]]
    assert actions[0] == "mark_sent"
    assert "create_dispatch_items" in actions


async def test_unknown_listing_is_404(client):
    response = await client.post("/api/dispatch/listings/missing/dispatch", headers=headers())
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


async def test_invalid_status_filter(client):
    response = await client.get("/api/dispatch/queue", params={"status": "LOST"}, headers=headers())
    assert response.status_code == 400


async def test_rate_limit_returns_retry_after(client, container, add_listing, add_target):
    container.rate_limiter.rules["create"] = RateRule(limit=1, window_seconds=60)
    listing = await add_listing()
    await add_target()

    first = await client.post(f"/api/dispatch/listings/{listing.id}/dispatch", headers=headers())
    second = await client.post(f"/api/dispatch/listings/{listing.id}/dispatch", headers=headers())

    assert first.status_code == 200
    assert second.status_code == 429
    assert int(second.headers["Retry-After"]) > 0


async def test_target_routes(client, add_listing):
    created = await client.post(
        "/api/dispatch/targets",
        headers=headers(),
        json={"name": "Sales", "city_scopes": ["city-ta", 12], "daily_quota": 3},
    )
    assert created.status_code == 201
    target = created.json()
    assert target["scopes"]["cities"] == ["12", "city-ta"]

    stats = await client.get("/api/dispatch/targets/stats/today", headers=headers())
    assert stats.status_code == 200
    assert stats.json()["targets"][0]["target_id"] == target["id"]

    detail = await client.get(f"/api/dispatch/targets/{target['id']}", headers=headers())
    assert detail.json()["quota_today"]["total"] == 3

    patched = await client.patch(
        f"/api/dispatch/targets/{target['id']}", headers=headers(), json={"invite_link": "https://chat.example/x"}
    )
    assert patched.json()["invite_link"] == "https://chat.example/x"
    assert patched.json()["daily_quota"] == 3

    paused = await client.patch(
        f"/api/dispatch/targets/{target['id']}/status", headers=headers(), json={"status": "PAUSED"}
    )
    assert paused.json()["status"] == "PAUSED"

    listed = await client.get("/api/dispatch/targets", params={"status": "PAUSED"}, headers=headers())
    assert listed.json()["total"] == 1


async def test_suggestion_and_operator_routes(client):
    granted = await client.post(
        "/api/dispatch/operators", headers=headers(), json={"actor_id": "mod-1", "role": "MODERATOR"}
    )
    assert granted.status_code == 201
    assert "operate" in granted.json()["capabilities"]

    suggested = await client.post(
        "/api/dispatch/suggestions", headers=headers(actor="mod-1"), json={"name": "Neighbours"}
    )
    assert suggested.status_code == 201

    denied = await client.get("/api/dispatch/suggestions", headers=headers(actor="mod-1"))
    assert denied.status_code == 403

    approved = await client.post(
        f"/api/dispatch/suggestions/{suggested.json()['id']}/approve", headers=headers(), json={"notes": "ok"}
    )
    assert approved.json()["target"]["name"] == "Neighbours"

    me = await client.get("/api/dispatch/operators/me", headers=headers(actor="mod-1"))
    assert me.json()["capabilities"]["operate"] is True
    assert me.json()["capabilities"]["override"] is False

    revoked = await client.delete("/api/dispatch/operators/mod-1", headers=headers())
    assert revoked.status_code == 200
    missing = await client.delete("/api/dispatch/operators/mod-1", headers=headers())
    assert missing.status_code == 404


async def test_reports_and_audit_routes(client):
    dashboard = await client.get("/api/dispatch/dashboard", headers=headers())
    assert dashboard.status_code == 200
    assert dashboard.json()["pending"] == 0

    report = await client.get("/api/dispatch/reports/daily", params={"date": "2026-01-15"}, headers=headers())
    assert report.json()["date"] == "2026-01-15"

    stats = await client.get("/api/dispatch/audit/stats", headers=headers())
    assert stats.json()["actions"] == []

    purged = await client.post("/api/dispatch/audit/purge", headers=headers(), json={"days": 30})
    assert purged.json() == {"deleted": 0, "days": 30}
