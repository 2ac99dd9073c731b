"""Linkage flow over HTTP: search, request, review, stats rebuild."""

from __future__ import annotations

import pytest
import pytest_asyncio

from tests.conftest import auth_headers, make_session, make_user


@pytest_asyncio.fixture
async def seeded(db_session):
    await make_session(db_session, "S1", 1, [
        {"driver_name": "Diego", "kart_number": 7, "final_position": 1, "best_time_ms": 42000},
        {"driver_name": "Rayo", "kart_number": 3, "final_position": 2, "best_time_ms": 43000},
    ])
    await make_session(db_session, "S2", 2, [{"driver_name": "Diego", "final_position": 5, "best_time_ms": 45000}])
    await make_session(db_session, "S3", 3, [{"driver_name": "diego", "final_position": 2, "best_time_ms": 41000}])
    user = await make_user(db_session, "diego@example.com", "Diego", "Soto")
    admin = await make_user(db_session, "admin@example.com", "Ada", "Admin", roles=["admin"])
    await db_session.commit()
    return {"user": user, "admin": admin}


class TestUserFlow:
    @pytest.mark.asyncio
    async def test_search_pick_session_and_request(self, client, seeded):
        headers = auth_headers(seeded["user"])

        search = await client.get("/api/v1/drivers/search", params={"q": "dieg"}, headers=headers)
        assert search.status_code == 200
        drivers = search.json()["drivers"]
        assert len(drivers) == 1
        assert drivers[0]["race_count"] == 3
        assert drivers[0]["is_linked"] is False

        session_drivers = await client.get("/api/v1/sessions/S1/drivers", headers=headers)
        assert [d["driver_name"] for d in session_drivers.json()["drivers"]] == ["Diego", "Rayo"]

        created = await client.post(
            "/api/v1/linkage/requests",
            json={"searched_name": "dieg", "selected_driver_name": "Diego", "selected_session_id": "S1"},
            headers=headers,
        )
        assert created.status_code == 201
        assert created.json()["status"] == "pending"
        assert created.json()["driver_snapshot"]["total_races"] == 3

        duplicate = await client.post(
            "/api/v1/linkage/requests",
            json={"searched_name": "Rayo", "selected_driver_name": "Rayo", "selected_session_id": "S1"},
            headers=headers,
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["code"] == "duplicate_pending_request"

        mine = await client.get("/api/v1/linkage/requests/me", headers=headers)
        assert [r["id"] for r in mine.json()] == [created.json()["id"]]

    @pytest.mark.asyncio
    async def test_cancel_own_request(self, client, seeded):
        headers = auth_headers(seeded["user"])
        created = await client.post(
            "/api/v1/linkage/requests",
            json={"searched_name": "Diego", "selected_driver_name": "Diego", "selected_session_id": "S1"},
            headers=headers,
        )
        request_id = created.json()["id"]

        cancelled = await client.post(f"/api/v1/linkage/requests/{request_id}/cancel", headers=headers)
        assert cancelled.json()["status"] == "cancelled"

        again = await client.post(f"/api/v1/linkage/requests/{request_id}/cancel", headers=headers)
        assert again.status_code == 409
        assert again.json()["code"] == "request_already_resolved"


class TestAdminReview:
    async def _submit(self, client, user) -> int:
        created = await client.post(
            "/api/v1/linkage/requests",
            json={"searched_name": "Diego", "selected_driver_name": "diego", "selected_session_id": "S1"},
            headers=auth_headers(user),
        )
        return created.json()["id"]

    @pytest.mark.asyncio
    async def test_approve_links_and_rebuilds_stats(self, client, seeded):
        request_id = await self._submit(client, seeded["user"])
        admin_headers = auth_headers(seeded["admin"])

        queue = await client.get("/api/v1/admin/linkage-requests", params={"status": "pending"}, headers=admin_headers)
        assert queue.json()["total"] == 1
        count = await client.get("/api/v1/admin/linkage-requests/pending-count", headers=admin_headers)
        assert count.json() == {"pending": 1}

        resolve = await client.get(
            "/api/v1/drivers/resolve", params={"name": "Diego", "session_id": "S1"}, headers=admin_headers,
        )
        top = resolve.json()["candidates"][0]
        assert top["account"]["id"] == seeded["user"].id
        assert top["confidence"] == "likely"

        approved = await client.post(
            f"/api/v1/admin/linkage-requests/{request_id}/approve", json={"notes": "ok"}, headers=admin_headers,
        )
        assert approved.status_code == 200
        assert approved.json()["status"] == "approved"
        assert approved.json()["selected_driver_name"] == "Diego"

        stats = await client.get("/api/v1/stats/me", headers=auth_headers(seeded["user"]))
        data = stats.json()
        assert data["status"] == "fresh"
        assert data["driver_name"] == "Diego"
        assert data["total_races"] == 3
        assert data["best_time_ms"] == 41000
        assert data["podium_finishes"] == 2

        resolve = await client.get("/api/v1/drivers/resolve", params={"name": "diego"}, headers=admin_headers)
        assert [c["confidence"] for c in resolve.json()["candidates"]] == ["confirmed"]

    @pytest.mark.asyncio
    async def test_approve_conflict_names_the_holder(self, client, db_session, seeded):
        holder = await make_user(db_session, "holder@example.com", driver_name="Diego")
        await db_session.commit()
        request_id = await self._submit(client, seeded["user"])

        response = await client.post(
            f"/api/v1/admin/linkage-requests/{request_id}/approve", json={}, headers=auth_headers(seeded["admin"]),
        )
        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "conflicting_link"
        assert body["conflicting_account_ids"] == [holder.id]

        still_pending = await client.get(
            f"/api/v1/admin/linkage-requests/{request_id}", headers=auth_headers(seeded["admin"]),
        )
        assert still_pending.json()["status"] == "pending"

    @pytest.mark.asyncio
    async def test_reject_then_resubmit(self, client, seeded):
        request_id = await self._submit(client, seeded["user"])
        admin_headers = auth_headers(seeded["admin"])

        blank = await client.post(
            f"/api/v1/admin/linkage-requests/{request_id}/reject", json={"reason": " "}, headers=admin_headers,
        )
        assert blank.status_code == 422

        rejected = await client.post(
            f"/api/v1/admin/linkage-requests/{request_id}/reject",
            json={"reason": "Kiosk photo does not match"},
            headers=admin_headers,
        )
        assert rejected.json()["status"] == "rejected"
        assert rejected.json()["rejection_reason"] == "Kiosk photo does not match"

        assert await self._submit(client, seeded["user"]) != request_id

    @pytest.mark.asyncio
    async def test_review_is_admin_only(self, client, seeded):
        request_id = await self._submit(client, seeded["user"])
        headers = auth_headers(seeded["user"])
        assert (await client.get("/api/v1/admin/linkage-requests", headers=headers)).status_code == 403
        response = await client.post(f"/api/v1/admin/linkage-requests/{request_id}/approve", json={}, headers=headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unlink(self, client, seeded):
        request_id = await self._submit(client, seeded["user"])
        admin_headers = auth_headers(seeded["admin"])
        await client.post(f"/api/v1/admin/linkage-requests/{request_id}/approve", json={}, headers=admin_headers)

        response = await client.post(f"/api/v1/admin/users/{seeded['user'].id}/unlink", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["link_status"] == "pending_first_race"
        assert response.json()["driver_name"] is None

        stats = await client.get("/api/v1/stats/me", headers=auth_headers(seeded["user"]))
        assert stats.json()["total_races"] == 0

        again = await client.post(f"/api/v1/admin/users/{seeded['user'].id}/unlink", headers=admin_headers)
        assert again.status_code == 422
