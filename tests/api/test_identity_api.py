"""Driver lookup endpoint tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from tests.conftest import auth_headers, make_session, make_user


@pytest_asyncio.fixture
async def accounts(db_session):
    await make_session(db_session, "S1", 1, [
        {"driver_name": "Maria Lopez", "kart_number": 4, "final_position": 1, "best_time_ms": 41500},
        {"driver_name": "Speedy", "kart_number": 9, "final_position": 2, "best_time_ms": 42500},
    ])
    maria = await make_user(db_session, "maria@example.com", "Maria", "Lopez")
    speedy = await make_user(db_session, "speedy@example.com", "Sam", "Reyes", driver_name="Speedy")
    admin = await make_user(db_session, "admin@example.com", roles=["admin"])
    await db_session.commit()
    return {"maria": maria, "speedy": speedy, "admin": admin}


@pytest.mark.asyncio
async def test_search_marks_linked_names(client, accounts):
    response = await client.get("/api/v1/drivers/search", params={"q": "p"}, headers=auth_headers(accounts["maria"]))
    assert response.status_code == 200
    by_name = {d["driver_name"]: d for d in response.json()["drivers"]}
    assert by_name["Speedy"]["is_linked"] is True
    assert by_name["Speedy"]["linked_user_id"] == accounts["speedy"].id
    assert by_name["Maria Lopez"]["is_linked"] is False


@pytest.mark.asyncio
async def test_search_requires_query(client, accounts):
    response = await client.get("/api/v1/drivers/search", params={"q": ""}, headers=auth_headers(accounts["maria"]))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_resolve_full_name(client, accounts):
    response = await client.get(
        "/api/v1/drivers/resolve", params={"name": "maria lopez"}, headers=auth_headers(accounts["admin"]),
    )
    candidates = response.json()["candidates"]
    assert candidates[0]["account"]["id"] == accounts["maria"].id
    assert candidates[0]["confidence"] == "likely"
    assert "full_name_match" in candidates[0]["evidence"]


@pytest.mark.asyncio
async def test_resolve_is_admin_only(client, accounts):
    response = await client.get(
        "/api/v1/drivers/resolve", params={"name": "Speedy"}, headers=auth_headers(accounts["maria"]),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_session_drivers(client, accounts):
    response = await client.get("/api/v1/sessions/S1/drivers", headers=auth_headers(accounts["maria"]))
    drivers = response.json()["drivers"]
    assert [(d["driver_name"], d["is_linked"]) for d in drivers] == [("Maria Lopez", False), ("Speedy", True)]

    missing = await client.get("/api/v1/sessions/S9/drivers", headers=auth_headers(accounts["maria"]))
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"
