"""HTTP surface: authentication, metered actions, history, assets and admin."""

import pytest

from conftest import PNG, auth_headers
from visionstudio.services import accounts as accounts_service

pytestmark = pytest.mark.asyncio


def _path(url: str) -> str:
    return url.removeprefix("http://test")


async def test_requires_session_token(client):
    r = await client.get("/v1/credits/balance")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"

    r = await client.get("/v1/credits/balance", headers={"Authorization": "Bearer forged"})
    assert r.status_code == 401


async def test_session_cookie_accepted(client, make_account):
    account = await make_account()
    token = accounts_service.issue_session_token(account)
    r = await client.get("/v1/auth/me", headers={"Cookie": f"visionstudio_session={token}"})
    assert r.status_code == 200
    assert r.json()["username"] == "alice"


async def test_unapproved_account_sees_profile_but_cannot_act(client, make_account):
    account = await make_account(is_approved=False)
    headers = auth_headers(account)

    me = await client.get("/v1/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["active"] is False

    r = await client.post("/v1/actions/infographic", json={"topic": "volcanoes"}, headers=headers)
    assert r.status_code == 403


async def test_infographic_action_and_ledger(client, make_account, gateway):
    account = await make_account(balance=1000)
    headers = auth_headers(account)

    r = await client.post("/v1/actions/infographic", json={"topic": "volcanoes"}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["cost"] == 100
    assert body["balance"] == 900
    assert body["outputs"]["research"]["facts"] == ["fact one", "fact two"]

    asset = await client.get(_path(body["access_url"]))
    assert asset.status_code == 200
    assert asset.content == PNG
    assert asset.headers["content-type"] == "image/png"

    balance = await client.get("/v1/credits/balance", headers=headers)
    assert balance.json() == {"balance": 900}

    ledger = await client.get("/v1/credits/ledger", headers=headers)
    [entry] = ledger.json()["entries"]
    assert entry["delta"] == -100
    assert entry["reference_id"] == body["artifact"]["id"]

    week = await client.get("/v1/credits/ledger", params={"period": "week"}, headers=headers)
    assert week.json()["page"] is None
    assert len(week.json()["entries"]) == 1


async def test_stage_failure_maps_to_502(client, make_account, gateway, gateway_error):
    account = await make_account(balance=1000)
    gateway.fail["render"] = gateway_error("rate_limited")

    r = await client.post("/v1/actions/infographic", json={"topic": "volcanoes"}, headers=auth_headers(account))
    assert r.status_code == 502
    error = r.json()["error"]
    assert error["code"] == "PIPELINE_STAGE_FAILED"
    assert error["details"] == {"stage": "render", "reason": "rate_limited", "accrued_cost": 40}

    balance = await client.get("/v1/credits/balance", headers=auth_headers(account))
    assert balance.json() == {"balance": 1000}


async def test_edit_request_needs_exactly_one_source(client, make_account):
    account = await make_account()
    r = await client.post(
        "/v1/actions/infographic/edit",
        json={"instruction": "brighter", "artifact_id": "a", "image_base64": "b"},
        headers=auth_headers(account),
    )
    assert r.status_code == 422


async def test_pro_chat_gated_by_role(client, make_account, gateway):
    account = await make_account(role="user")
    r = await client.post("/v1/actions/chat", json={"message": "hi", "mode": "pro"}, headers=auth_headers(account))
    assert r.status_code == 403
    assert gateway.calls == []


async def test_chat_flow(client, make_account):
    account = await make_account(role="vip")
    headers = auth_headers(account)

    r = await client.post("/v1/actions/chat", json={"message": "hello"}, headers=headers)
    assert r.status_code == 200
    session_id = r.json()["session_id"]
    assert r.json()["title"] == "Short title"

    sessions = await client.get("/v1/chat/sessions", headers=headers)
    assert [s["id"] for s in sessions.json()["sessions"]] == [session_id]

    messages = await client.get(f"/v1/chat/sessions/{session_id}/messages", headers=headers)
    assert [m["role"] for m in messages.json()["messages"]] == ["user", "assistant"]

    renamed = await client.put(f"/v1/chat/sessions/{session_id}", json={"title": "Renamed"}, headers=headers)
    assert renamed.json()["title"] == "Renamed"

    deleted = await client.delete(f"/v1/chat/sessions/{session_id}", headers=headers)
    assert deleted.json() == {"ok": True}
    missing = await client.get(f"/v1/chat/sessions/{session_id}/messages", headers=headers)
    assert missing.status_code == 404


async def test_foreign_session_is_forbidden(client, make_account):
    owner = await make_account("owner")
    other = await make_account("other")
    created = await client.post("/v1/chat/sessions", json={"title": "mine"}, headers=auth_headers(owner))
    session_id = created.json()["id"]

    r = await client.get(f"/v1/chat/sessions/{session_id}/messages", headers=auth_headers(other))
    assert r.status_code == 403


async def test_image_history_and_url_refresh(client, make_account):
    account = await make_account()
    headers = auth_headers(account)
    created = await client.post("/v1/actions/infographic", json={"topic": "tides"}, headers=headers)
    artifact_id = created.json()["artifact"]["id"]

    listing = await client.get("/v1/images", headers=headers)
    [image] = listing.json()["images"]
    assert image["id"] == artifact_id
    assert image["prompt"] == "tides"

    fresh = await client.get(f"/v1/images/{artifact_id}/url", headers=headers)
    assert fresh.status_code == 200
    assert (await client.get(_path(fresh.json()["url"]))).content == PNG

    other = await make_account("other")
    assert (await client.get(f"/v1/images/{artifact_id}/url", headers=auth_headers(other))).status_code == 404


async def test_invalid_asset_token(client):
    r = await client.get("/v1/assets/not-a-token")
    assert r.status_code == 403


async def test_admin_endpoints_require_admin(client, make_account):
    account = await make_account(role="vip")
    r = await client.get("/v1/admin/accounts", headers=auth_headers(account))
    assert r.status_code == 403


async def test_admin_account_lifecycle(client, make_account):
    admin = await make_account("root", role="admin")
    headers = auth_headers(admin)

    created = await client.post("/v1/admin/accounts", json={"username": "bob", "role": "vip"}, headers=headers)
    assert created.status_code == 200
    bob = created.json()
    assert bob["role"] == "vip"
    assert bob["is_approved"] is True
    assert bob["expiration_date"] is not None

    dup = await client.post("/v1/admin/accounts", json={"username": "bob"}, headers=headers)
    assert dup.status_code == 409

    token = (await client.post(f"/v1/admin/accounts/{bob['id']}/session", headers=headers)).json()["token"]
    bob_headers = {"Authorization": f"Bearer {token}"}
    assert (await client.get("/v1/auth/me", headers=bob_headers)).status_code == 200

    updated = await client.put(
        f"/v1/admin/accounts/{bob['id']}",
        json={"token_balance": 42, "role": "user"},
        headers=headers,
    )
    assert updated.json()["token_balance"] == 42
    assert updated.json()["role"] == "user"
    # role change revokes the token issued earlier
    assert (await client.get("/v1/auth/me", headers=bob_headers)).status_code == 401

    usage = await client.get("/v1/admin/usage", headers=headers)
    [row] = usage.json()["entries"]
    assert row["username"] == "bob"
    assert row["label"] == "administrative adjustment"

    report = await client.get(f"/v1/admin/accounts/{bob['id']}/conservation", headers=headers)
    assert report.json()["holds"] is True

    listing = await client.get("/v1/admin/accounts", headers=headers)
    assert {a["username"] for a in listing.json()["accounts"]} == {"root", "bob"}

    deleted = await client.delete(f"/v1/admin/accounts/{bob['id']}", headers=headers)
    assert deleted.json() == {"ok": True}
    assert (await client.get(f"/v1/admin/accounts/{bob['id']}/conservation", headers=headers)).status_code == 404


async def test_admin_reconcile_endpoint(client, make_account):
    admin = await make_account("root", role="admin")
    r = await client.post("/v1/admin/reconcile", params={"grace_seconds": 0}, headers=auth_headers(admin))
    assert r.status_code == 200
    assert r.json() == {"examined": 0, "charged": 0, "already_charged": 0, "failed": []}
