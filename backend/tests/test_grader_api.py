from sqlalchemy import select

from metering.apikeys.models import ApiKey
from metering.auth.security import create_access_token
from metering.quota.service import get_recent_usage

SCAN = "/api/v1/grader/scan"


def _scan(client, key, scan_type="basic"):
    return client.post(
        SCAN,
        json={"url": "https://example.com", "scan_type": scan_type},
        headers={"X-Api-Key": key},
    )


def test_keyed_scan_is_queued_with_remaining_budgets(client, make_api_key, session_factory):
    key_id, key = make_api_key("u_pro", tier="pro")

    response = _scan(client, key)

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "queued"
    assert body["tier"] == "pro"
    assert body["cost"] == 1
    assert body["daily_remaining"] == 59
    assert body["monthly_remaining"] == 4999
    # The scan cost and the metered call both count against used_calls.
    assert body["calls_remaining"] == 4998

    with session_factory() as db:
        usage = get_recent_usage(db, "u_pro")
        key_row = db.execute(select(ApiKey).where(ApiKey.id == key_id)).scalar_one()
    assert len(usage) == 1
    assert usage[0].api_key_id == key_id
    assert usage[0].metadata_json["scan_id"] == body["scan_id"]
    assert key_row.last_used_at is not None


def test_free_key_gets_403_for_gtmetrix(client, make_api_key):
    _, key = make_api_key("u_free")

    response = _scan(client, key, scan_type="gtmetrix")

    assert response.status_code == 403
    assert response.json()["detail"]["error"] == "feature_not_allowed"
    assert response.headers["X-RateLimit-Tier"] == "free"


def test_anonymous_gtmetrix_is_refused(client):
    response = client.post(SCAN, json={"url": "https://example.com", "scan_type": "gtmetrix"})

    assert response.status_code == 403


def test_sixth_free_scan_hits_the_daily_limit(client, make_api_key):
    _, key = make_api_key("u_free")

    responses = [_scan(client, key) for _ in range(6)]

    assert [r.status_code for r in responses] == [202] * 5 + [429]
    detail = responses[-1].json()["detail"]
    assert detail["error"] == "daily_limit_reached"
    assert detail["daily_remaining"] == 0
    # Rate limit headers survive the quota rejection.
    assert responses[-1].headers["X-RateLimit-Remaining"] == "4"


def test_revoked_key_is_rejected(client, make_user, make_api_key):
    headers = make_user("u_owner")
    key_id, key = make_api_key("u_owner")

    revoked = client.post(f"/api/v1/api-keys/{key_id}/revoke", headers=headers)
    response = _scan(client, key)

    assert revoked.status_code == 200
    assert revoked.json()["is_active"] is False
    assert response.status_code == 401


def test_key_quota_endpoint_requires_a_key(client, make_api_key):
    missing = client.get("/api/v1/grader/quota")
    _, key = make_api_key("u_starter", tier="starter")
    present = client.get("/api/v1/grader/quota", headers={"X-Api-Key": key})

    assert missing.status_code == 401
    assert missing.json()["detail"]["error"] == "API key required"
    assert present.status_code == 200
    assert present.json() == {
        "tier": "starter",
        "daily_remaining": 30,
        "monthly_remaining": 1000,
        "calls_remaining": 1000,
    }


def test_api_key_lifecycle_for_portal_user(client, make_user):
    headers = make_user("u_portal")

    created = client.post("/api/v1/api-keys", json={"name": "CI"}, headers=headers)
    assert created.status_code == 201
    body = created.json()
    assert body["key"].startswith("tf_")
    assert len(body["key"]) == 3 + 64
    assert body["key_prefix"] == body["key"][:12]

    listed = client.get("/api/v1/api-keys", headers=headers).json()["keys"]
    assert [k["id"] for k in listed] == [body["id"]]
    assert "key" not in listed[0]

    assert client.delete(f"/api/v1/api-keys/{body['id']}", headers=headers).status_code == 200
    assert client.delete(f"/api/v1/api-keys/{body['id']}", headers=headers).status_code == 404


def test_portal_routes_require_a_token(client):
    assert client.get("/api/v1/quota").status_code == 401
    assert client.get("/api/v1/tokens/wallet").status_code == 401


def test_token_for_a_removed_user_is_rejected(client):
    orphan = create_access_token({"sub": "u_gone", "role": "admin"})

    response = client.get("/api/v1/quota", headers={"Authorization": f"Bearer {orphan}"})

    assert response.status_code == 401
    assert response.json()["detail"] == "User not found"


def test_quota_dashboard_and_admin_tier_change(client, make_user):
    user = make_user("u_dash")
    admin = make_user("u_admin", role="admin")

    before = client.get("/api/v1/quota", headers=user).json()
    changed = client.put("/api/v1/admin/quota/users/u_dash/tier", json={"tier": "pro"}, headers=admin)
    missing = client.put("/api/v1/admin/quota/users/u_dash/tier", json={"tier": "gold"}, headers=admin)
    forbidden = client.put("/api/v1/admin/quota/users/u_dash/tier", json={"tier": "pro"}, headers=user)
    after = client.get("/api/v1/quota", headers=user).json()

    assert before["tier"]["name"] == "free"
    assert changed.json()["subscription_calls"] == 5000
    assert missing.status_code == 404
    assert forbidden.status_code == 403
    assert after["tier"]["name"] == "pro"
    assert after["daily_remaining"] == 60


def test_admin_pack_purchase_shows_in_user_packs(client, make_user):
    user = make_user("u_buyer")
    admin = make_user("u_admin", role="admin")

    added = client.post(
        "/api/v1/admin/quota/users/u_buyer/packs",
        json={"calls": 500, "stripe_session_id": "cs_test_1"},
        headers=admin,
    )
    packs = client.get("/api/v1/quota/packs", headers=user).json()["packs"]

    assert added.status_code == 201
    assert packs[0]["calls_remaining"] == 500
    assert packs[0]["stripe_session_id"] == "cs_test_1"


def test_wallet_routes(client, make_user):
    user = make_user("u_wallet")
    admin = make_user("u_admin", role="admin")

    client.put(
        "/api/v1/admin/tokens/pricing/gtmetrix_scan",
        json={"feature_name": "GTmetrix scan", "tokens_required": 4},
        headers=admin,
    )
    credit = {"amount": 5, "description": "Welcome bonus", "idempotency_key": "welcome-u_wallet"}
    first = client.post("/api/v1/admin/tokens/users/u_wallet/credit", json=credit, headers=admin)
    replay = client.post("/api/v1/admin/tokens/users/u_wallet/credit", json=credit, headers=admin)
    spent = client.post("/api/v1/tokens/spend", json={"feature_code": "gtmetrix_scan"}, headers=user)
    short = client.post("/api/v1/tokens/spend", json={"feature_code": "gtmetrix_scan"}, headers=user)
    clawback = client.post(
        "/api/v1/admin/tokens/users/u_wallet/adjust",
        json={"amount": -2, "description": "clawback"},
        headers=admin,
    )
    wallet = client.get("/api/v1/tokens/wallet", headers=user).json()
    verify = client.get("/api/v1/admin/tokens/users/u_wallet/verify", headers=admin).json()

    assert first.json()["id"] == replay.json()["id"]
    assert spent.json()["balance"] == 1
    assert short.status_code == 402
    assert short.json()["detail"]["available"] == 1
    assert clawback.status_code == 409
    assert wallet == {"user_id": "u_wallet", "balance": 1, "total_earned": 5, "total_spent": 4}
    assert verify["ok"] is True
    assert verify["transactions"] == 2
