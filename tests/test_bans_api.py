# tests/test_bans_api.py
from datetime import timedelta

import pytest
from httpx import AsyncClient

from account_guard.core.security import utcnow

pytestmark = pytest.mark.anyio

REASON = (
    "Someone else logged into my account from another country. I have reset "
    "my password and I would like to get my account back, thank you."
)


async def test_ban_appeal_approve_flow(client: AsyncClient, make_user, admin, auth_headers, do_login):
    """管理員封鎖 → 發申訴連結 → 使用者申訴、查進度 → 核准 → 可以再登入"""
    user = await make_user()
    admin_h = await auth_headers(admin)

    r = await client.post(
        "/api/v1/bans",
        json={"user_id": user.id, "reason": "spam", "duration": "1_week", "admin_notes": "reports #12"},
        headers=admin_h,
    )
    assert r.status_code == 201, r.text
    ban = r.json()
    assert ban["is_active"] is True
    assert ban["is_permanent"] is False
    assert ban["admin_notes"] == "reports #12"

    assert (await do_login(client, user.email)).status_code == 403

    r = await client.post(f"/api/v1/bans/{ban['id']}/appeal-link", headers=admin_h)
    assert r.status_code == 200
    link = r.json()["appeal_url_token"]

    r = await client.post(
        "/api/v1/appeals",
        json={"appeal_url_token": link, "reason": REASON, "terms_accepted": True},
    )
    assert r.status_code == 201, r.text
    created = r.json()
    assert created["status"] == "pending"
    appeal_h = {"X-Appeal-Token": created["appeal_token"]}

    r = await client.get("/api/v1/appeals/status", headers=appeal_h)
    assert r.status_code == 200
    assert r.json()["status"] == "pending"
    assert r.json()["user_ban_id"] == ban["id"]

    # 連結只能用一次
    r = await client.post(
        "/api/v1/appeals",
        json={"appeal_url_token": link, "reason": REASON, "terms_accepted": True},
    )
    assert r.status_code == 404

    r = await client.get("/api/v1/appeals", params={"status": "pending", "user_id": user.id}, headers=admin_h)
    assert r.status_code == 200
    page = r.json()
    assert page["total"] == 1
    assert page["items"][0]["id"] == created["appeal_id"]

    r = await client.post(
        f"/api/v1/appeals/{created['appeal_id']}/review",
        json={"decision": "approved"},
        headers=admin_h,
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "approved"

    r = await client.get("/api/v1/appeals/status", headers=appeal_h)
    assert r.json()["status"] == "approved"
    assert (await do_login(client, user.email)).status_code == 200


async def test_more_info_over_http(client: AsyncClient, make_user, admin, auth_headers):
    user = await make_user()
    admin_h = await auth_headers(admin)
    ban = (await client.post("/api/v1/bans", json={"user_id": user.id, "reason": "abuse"}, headers=admin_h)).json()
    link = (await client.post(f"/api/v1/bans/{ban['id']}/appeal-link", headers=admin_h)).json()["appeal_url_token"]
    created = (
        await client.post("/api/v1/appeals", json={"appeal_url_token": link, "reason": REASON, "terms_accepted": True})
    ).json()

    r = await client.post(
        f"/api/v1/appeals/{created['appeal_id']}/review",
        json={"decision": "more_info_requested", "admin_response": "Which country did the login come from?"},
        headers=admin_h,
    )
    assert r.json()["status"] == "more_info_requested"

    r = await client.post(
        "/api/v1/appeals/status/info",
        json={"appeal_token": created["appeal_token"], "info": "The login came from a data center abroad."},
    )
    assert r.status_code == 200
    assert r.json()["status"] == "pending"

    r = await client.post(f"/api/v1/appeals/{created['appeal_id']}/rotate-token", headers=admin_h)
    assert r.status_code == 200
    assert (await client.get("/api/v1/appeals/status", headers={"X-Appeal-Token": created["appeal_token"]})).status_code == 404
    rotated = {"X-Appeal-Token": r.json()["appeal_token"]}
    assert (await client.get("/api/v1/appeals/status", headers=rotated)).status_code == 200

    r = await client.get("/api/v1/appeals/statistics", headers=admin_h)
    assert r.status_code == 200
    assert r.json()["total"] >= 1

    r = await client.get(f"/api/v1/appeals/{created['appeal_id']}", headers=admin_h)
    assert r.json()["user_id"] == user.id


async def test_admin_routes_require_admin(client: AsyncClient, make_user, auth_headers):
    user = await make_user()
    h = await auth_headers(user)
    assert (await client.post("/api/v1/bans", json={"user_id": user.id, "reason": "x"}, headers=h)).status_code == 403
    assert (await client.get("/api/v1/appeals", headers=h)).status_code == 403
    assert (await client.post("/api/v1/bans/sync", headers=h)).status_code == 403
    assert (await client.post("/api/v1/bans", json={"user_id": user.id, "reason": "x"})).status_code == 401


async def test_domain_errors_map_to_http(client: AsyncClient, make_user, admin, auth_headers):
    admin_h = await auth_headers(admin)
    user = await make_user()

    # schema 層：缺目標 → 422
    r = await client.post("/api/v1/bans", json={"reason": "no target"}, headers=admin_h)
    assert r.status_code == 422

    # 服務層：不可撤銷卻有期限 → 422
    r = await client.post(
        "/api/v1/bans",
        json={"user_id": user.id, "reason": "fraud", "duration": "1_day", "is_irrevocable": True, "admin_notes": "x"},
        headers=admin_h,
    )
    assert r.status_code == 422
    assert "permanent" in r.json()["detail"]

    r = await client.post(
        "/api/v1/bans",
        json={"user_id": user.id, "reason": "fraud", "is_irrevocable": True, "admin_notes": "chargebacks"},
        headers=admin_h,
    )
    assert r.status_code == 201
    ban_id = r.json()["id"]

    # 不可撤銷 → 409
    r = await client.post(f"/api/v1/bans/{ban_id}/revoke", headers=admin_h)
    assert r.status_code == 409
    r = await client.post(f"/api/v1/bans/{ban_id}/appeal-link", headers=admin_h)
    assert r.status_code == 409

    # 不存在 → 404
    r = await client.post("/api/v1/bans/999999/revoke", headers=admin_h)
    assert r.status_code == 404
    assert r.json()["detail"]
    r = await client.get("/api/v1/bans/users/999999", headers=admin_h)
    assert r.status_code == 404


async def test_modify_revoke_and_history(client: AsyncClient, make_user, admin, auth_headers, do_login):
    user = await make_user()
    admin_h = await auth_headers(admin)
    ban = (
        await client.post("/api/v1/bans", json={"user_id": user.id, "reason": "spam", "duration": "1_day"}, headers=admin_h)
    ).json()

    until = (utcnow() + timedelta(days=3)).replace(microsecond=0)
    r = await client.patch(
        f"/api/v1/bans/{ban['id']}",
        json={"reason": "spam, repeated", "duration": "custom", "expires_at": until.isoformat() + "Z"},
        headers=admin_h,
    )
    assert r.status_code == 200, r.text
    assert r.json()["reason"] == "spam, repeated"
    assert r.json()["expires_at"].startswith(until.isoformat())

    r = await client.post(f"/api/v1/bans/{ban['id']}/revoke", headers=admin_h)
    assert r.status_code == 200
    assert r.json()["is_active"] is False
    assert (await do_login(client, user.email)).status_code == 200

    r = await client.get(f"/api/v1/bans/users/{user.id}", headers=admin_h)
    assert [b["id"] for b in r.json()] == [ban["id"]]

    r = await client.post("/api/v1/bans/sync", headers=admin_h)
    assert r.status_code == 200
    assert set(r.json()) == {"banned", "restored"}


async def test_expires_at_without_duration_is_honoured(client: AsyncClient, make_user, admin, auth_headers):
    admin_h = await auth_headers(admin)
    user = await make_user()
    until = (utcnow() + timedelta(days=7)).replace(microsecond=0)

    # 只給 expires_at：視為 custom，不會變成永久封鎖
    r = await client.post(
        "/api/v1/bans",
        json={"user_id": user.id, "reason": "spam", "expires_at": until.isoformat()},
        headers=admin_h,
    )
    assert r.status_code == 201, r.text
    assert r.json()["expires_at"].startswith(until.isoformat())
    assert r.json()["is_permanent"] is False

    # 不可撤銷 + 到期時間 → 一律 422
    r = await client.post(
        "/api/v1/bans",
        json={
            "user_id": user.id,
            "reason": "fraud",
            "is_irrevocable": True,
            "admin_notes": "chargebacks",
            "expires_at": until.isoformat(),
        },
        headers=admin_h,
    )
    assert r.status_code == 422
    assert "permanent" in r.json()["detail"]

    # 時長與 expires_at 衝突 → 422
    r = await client.post(
        "/api/v1/bans",
        json={"user_id": user.id, "reason": "spam", "duration": "1_day", "expires_at": until.isoformat()},
        headers=admin_h,
    )
    assert r.status_code == 422


async def test_modify_keeps_expires_at_without_duration(client: AsyncClient, make_user, admin, auth_headers):
    admin_h = await auth_headers(admin)
    user = await make_user()
    ban = (await client.post("/api/v1/bans", json={"user_id": user.id, "reason": "spam"}, headers=admin_h)).json()
    assert ban["is_permanent"] is True

    until = (utcnow() + timedelta(days=2)).replace(microsecond=0)
    r = await client.patch(
        f"/api/v1/bans/{ban['id']}",
        json={"reason": "spam", "expires_at": until.isoformat()},
        headers=admin_h,
    )
    assert r.status_code == 200, r.text
    assert r.json()["expires_at"].startswith(until.isoformat())

    r = await client.patch(
        f"/api/v1/bans/{ban['id']}",
        json={"reason": "spam", "duration": "permanent", "expires_at": until.isoformat()},
        headers=admin_h,
    )
    assert r.status_code == 422
