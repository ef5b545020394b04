import pytest
from httpx import AsyncClient

QUOTA = "/api/v1/quota"


@pytest.mark.integration
class TestQuotaApi:
    """Test the quota endpoints."""

    async def test_usage_lists_every_dimension(self, async_client: AsyncClient, user_headers):
        response = await async_client.get(f"{QUOTA}/usage", headers=user_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["plan"] == "free"
        videos = next(u for u in data["data"] if u["quotaType"] == "video_processing")
        assert videos["usedAmount"] == 0
        assert videos["maxAmount"] == 3
        assert len(data["data"]) == 6

    async def test_check(self, async_client: AsyncClient, user_headers):
        allowed = await async_client.post(
            f"{QUOTA}/check", json={"quotaType": "video_processing"}, headers=user_headers
        )
        denied = await async_client.post(
            f"{QUOTA}/check", json={"quotaType": "video_processing", "amount": 4}, headers=user_headers
        )

        assert allowed.json()["allowed"] is True
        assert denied.json()["allowed"] is False
        assert denied.json()["upgradeRequired"] is True
        assert denied.json()["suggestedPlan"] == "pro"

    async def test_check_video_duration(self, async_client: AsyncClient, user_headers):
        response = await async_client.post(
            f"{QUOTA}/check",
            json={"quotaType": "video_processing", "metadata": {"videoDurationMinutes": 45}},
            headers=user_headers,
        )

        assert response.json()["allowed"] is False
        assert response.json()["suggestedPlan"] == "pro"

    async def test_unknown_metadata_is_rejected(self, async_client: AsyncClient, user_headers):
        response = await async_client.post(
            f"{QUOTA}/check",
            json={"quotaType": "shares", "metadata": {"color": "blue"}},
            headers=user_headers,
        )

        assert response.status_code == 400

    async def test_record_requires_user(self, async_client: AsyncClient):
        response = await async_client.post(f"{QUOTA}/usage/record", json={"quotaType": "shares", "amount": 1})

        assert response.status_code == 401
        assert response.json()["code"] == "authentication_required"

    async def test_record_and_alerts(self, async_client: AsyncClient, user_headers):
        response = await async_client.post(
            f"{QUOTA}/usage/record",
            json={"quotaType": "shares", "amount": 4, "resourceId": "share-1", "resourceType": "share"},
            headers=user_headers,
        )
        assert response.status_code == 200
        assert response.json()["usedAmount"] == 4
        assert response.json()["percentage"] == 80.0

        alerts = await async_client.get(f"{QUOTA}/alerts", headers=user_headers)
        assert [a["alertType"] for a in alerts.json()["data"]] == ["warning"]

        alert_id = alerts.json()["data"][0]["id"]
        marked = await async_client.post(f"{QUOTA}/alerts/read", json={"alertIds": [alert_id]}, headers=user_headers)
        assert marked.json() == {"updated": 1}

        unread = await async_client.get(f"{QUOTA}/alerts", params={"unreadOnly": "true"}, headers=user_headers)
        assert unread.json()["data"] == []

    async def test_plans(self, async_client: AsyncClient):
        response = await async_client.get(f"{QUOTA}/plans")

        plans = {p["planType"]: p for p in response.json()["data"]}
        assert set(plans) == {"free", "pro", "max"}
        assert plans["free"]["limits"]["video_processing"] == 3
        assert plans["max"]["limits"]["exports"] == 0

    async def test_upgrade(self, async_client: AsyncClient, user_headers):
        current = await async_client.get(f"{QUOTA}/subscription", headers=user_headers)
        assert current.json() == {"planType": "free", "nextPlan": "pro"}

        upgraded = await async_client.post(f"{QUOTA}/upgrade", json={"planType": "pro"}, headers=user_headers)
        assert upgraded.json() == {"planType": "pro", "nextPlan": "max"}

        downgrade = await async_client.post(f"{QUOTA}/upgrade", json={"planType": "free"}, headers=user_headers)
        assert downgrade.status_code == 400

    async def test_plan_changes_are_rate_limited(self, async_client: AsyncClient, user_headers):
        statuses = []
        for plan in ("pro", "max", "max", "max"):
            response = await async_client.post(f"{QUOTA}/upgrade", json={"planType": plan}, headers=user_headers)
            statuses.append(response.status_code)

        assert statuses == [200, 200, 400, 429]

    async def test_101st_request_in_window_is_rate_limited(self, async_client: AsyncClient):
        for i in range(100):
            response = await async_client.get(f"{QUOTA}/usage")
            assert response.status_code == 200, i

        response = await async_client.get(f"{QUOTA}/usage")

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.json()["retryAfter"] > 0

    async def test_window_resets(self, async_client: AsyncClient, clock):
        for _ in range(101):
            await async_client.get(f"{QUOTA}/usage")

        clock.advance(15 * 60)
        response = await async_client.get(f"{QUOTA}/usage")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "99"


@pytest.mark.integration
class TestAdminApi:
    """Test administrative rate limit resets."""

    async def test_reset_clears_user_windows(self, async_client: AsyncClient, user_headers, admin_headers):
        for _ in range(100):
            await async_client.get(f"{QUOTA}/usage", headers=user_headers)
        assert (await async_client.get(f"{QUOTA}/usage", headers=user_headers)).status_code == 429

        response = await async_client.post(
            "/api/v1/admin/rate-limits/reset", json={"userId": "user-42"}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["reset"] >= 1
        assert (await async_client.get(f"{QUOTA}/usage", headers=user_headers)).status_code == 200

    async def test_requires_admin_key(self, async_client: AsyncClient):
        response = await async_client.post(
            "/api/v1/admin/rate-limits/reset", json={"userId": "user-42"}, headers={"X-Admin-Key": "wrong"}
        )

        assert response.status_code == 401

    async def test_requires_target(self, async_client: AsyncClient, admin_headers):
        response = await async_client.post("/api/v1/admin/rate-limits/reset", json={}, headers=admin_headers)

        assert response.status_code == 400


@pytest.mark.integration
class TestBlacklistAdminApi:
    """Test blacklist administration."""

    async def test_add_list_and_remove(self, async_client: AsyncClient, admin_headers):
        created = await async_client.post(
            "/api/v1/admin/blacklist",
            json={"type": "user", "value": "user-13", "reason": "chargeback"},
            headers={**admin_headers, "X-Admin-User": "ops"},
        )
        assert created.status_code == 201
        assert created.json()["createdBy"] == "ops"

        listed = await async_client.get("/api/v1/admin/blacklist", headers=admin_headers)
        assert [e["value"] for e in listed.json()["data"]] == ["user-13"]

        removed = await async_client.post(
            "/api/v1/admin/blacklist/remove", json={"type": "user", "value": "user-13"}, headers=admin_headers
        )
        assert removed.json() == {"removed": 1}
        assert (await async_client.get("/api/v1/admin/blacklist", headers=admin_headers)).json()["data"] == []

    async def test_blocked_user_cannot_submit(self, async_client: AsyncClient, admin_headers):
        await async_client.post(
            "/api/v1/admin/blacklist", json={"type": "user", "value": "user-13"}, headers=admin_headers
        )

        response = await async_client.post(
            "/api/v1/videos/process",
            json={"youtubeUrl": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"},
            headers={"X-User-Id": "user-13"},
        )

        assert response.status_code == 403
        assert response.json()["code"] == "user_blocked"
        assert response.json()["detail"] == "Account blocked"

    async def test_expiry_must_be_in_future(self, async_client: AsyncClient, admin_headers):
        response = await async_client.post(
            "/api/v1/admin/blacklist",
            json={"type": "ip", "value": "10.0.0.1", "expiresAt": "2020-01-01T00:00:00Z"},
            headers=admin_headers,
        )

        assert response.status_code == 400

    async def test_removing_unknown_entry(self, async_client: AsyncClient, admin_headers):
        response = await async_client.post(
            "/api/v1/admin/blacklist/remove", json={"type": "ip", "value": "10.9.9.9"}, headers=admin_headers
        )

        assert response.status_code == 404

    async def test_requires_admin_key(self, async_client: AsyncClient):
        response = await async_client.get("/api/v1/admin/blacklist")

        assert response.status_code == 401
