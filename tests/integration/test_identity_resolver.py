"""Identity resolver tests: confidence levels over seeded accounts and sessions."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.db.models import LinkageRequest
from kartpark.errors import NotFoundError, ValidationError
from kartpark.identity.resolver import (
    CONFIRMED,
    CONFLICT,
    LIKELY,
    POSSIBLE,
    get_session_drivers,
    resolve_candidates,
    search_drivers,
)
from kartpark.time_utils import utcnow
from tests.conftest import make_session, make_user


async def _pending_request(db: AsyncSession, user_id: int, name: str, session_id: str) -> LinkageRequest:
    now = utcnow()
    req = LinkageRequest(
        web_user_id=user_id,
        searched_name=name,
        selected_driver_name=name,
        selected_session_id=session_id,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    db.add(req)
    await db.flush()
    return req


class TestLinkedMatches:
    @pytest.mark.asyncio
    async def test_single_linked_account_is_confirmed(self, db_session):
        user = await make_user(db_session, "diego@example.com", "Diego", "Soto", driver_name="Diego")
        await make_user(db_session, "other@example.com", "Diego", "Pérez")

        candidates = await resolve_candidates(db_session, "  diego ")
        assert len(candidates) == 1
        assert candidates[0].account.id == user.id
        assert candidates[0].confidence == CONFIRMED
        assert candidates[0].evidence == ["linked_driver_name"]

    @pytest.mark.asyncio
    async def test_two_linked_accounts_are_a_conflict(self, db_session):
        a = await make_user(db_session, "a@example.com", driver_name="Max")
        b = await make_user(db_session, "b@example.com", driver_name="MAX")

        candidates = await resolve_candidates(db_session, "Max")
        assert [c.account.id for c in candidates] == [a.id, b.id]
        assert {c.confidence for c in candidates} == {CONFLICT}


class TestProposedMatches:
    @pytest.mark.asyncio
    async def test_alias_and_full_name_are_likely(self, db_session):
        by_alias = await make_user(db_session, "speedy@example.com", "Ana", "Rojas", alias="Speedy")
        by_name = await make_user(db_session, "carla@example.com", "Carla", "Mena")

        alias_hits = await resolve_candidates(db_session, "speedy")
        assert [(c.account.id, c.confidence) for c in alias_hits] == [(by_alias.id, LIKELY)]
        assert alias_hits[0].evidence == ["alias_match"]

        name_hits = await resolve_candidates(db_session, "Mena Carla")
        assert name_hits[0].account.id == by_name.id
        assert name_hits[0].confidence == LIKELY
        assert "full_name_match" in name_hits[0].evidence

    @pytest.mark.asyncio
    async def test_name_tokens_inside_longer_name_are_possible(self, db_session):
        user = await make_user(db_session, "jp@example.com", "Juan", "Lagos")

        candidates = await resolve_candidates(db_session, "Juan Pablo Lagos")
        assert [(c.account.id, c.confidence) for c in candidates] == [(user.id, POSSIBLE)]
        assert candidates[0].evidence == ["name_tokens_match"]

    @pytest.mark.asyncio
    async def test_linked_to_another_name_is_not_proposed(self, db_session):
        await make_user(db_session, "carla@example.com", "Carla", "Mena", driver_name="CMena")
        assert await resolve_candidates(db_session, "Carla Mena") == []

    @pytest.mark.asyncio
    async def test_pending_request_in_same_session_is_likely(self, db_session):
        await make_session(db_session, "S1", 1, [{"driver_name": "Rayo", "final_position": 1}])
        user = await make_user(db_session, "x@example.com", "Xime", "Vera")
        await _pending_request(db_session, user.id, "Rayo", "S1")

        same = await resolve_candidates(db_session, "Rayo", session_id="S1")
        assert same[0].confidence == LIKELY
        assert same[0].evidence == ["pending_request_same_session"]

        anywhere = await resolve_candidates(db_session, "Rayo")
        assert anywhere[0].confidence == POSSIBLE
        assert anywhere[0].evidence == ["pending_request"]

    @pytest.mark.asyncio
    async def test_approved_history_is_likely(self, db_session):
        user = await make_user(db_session, "old@example.com", "Old", "Owner")
        req = await _pending_request(db_session, user.id, "Bolt", "S9")
        req.status = "approved"
        await db_session.flush()

        candidates = await resolve_candidates(db_session, "bolt")
        assert candidates[0].account.id == user.id
        assert candidates[0].confidence == LIKELY
        assert candidates[0].evidence == ["approved_request_history"]


class TestEdgeCases:
    @pytest.mark.asyncio
    async def test_no_match_is_empty_not_an_error(self, db_session):
        await make_user(db_session, "a@example.com", "Ana", "Rojas")
        assert await resolve_candidates(db_session, "Ghost Rider") == []

    @pytest.mark.asyncio
    async def test_blank_name_is_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await resolve_candidates(db_session, "   ")

    @pytest.mark.asyncio
    async def test_unknown_proof_session(self, db_session):
        with pytest.raises(NotFoundError):
            await resolve_candidates(db_session, "Diego", session_id="missing")

    @pytest.mark.asyncio
    async def test_name_absent_from_proof_session(self, db_session):
        await make_session(db_session, "S1", 1, [{"driver_name": "Rayo"}])
        await make_user(db_session, "d@example.com", driver_name="Diego")
        assert await resolve_candidates(db_session, "Diego", session_id="S1") == []


class TestDriverLookup:
    @pytest.mark.asyncio
    async def test_search_groups_spellings_and_flags_links(self, db_session):
        await make_session(db_session, "S1", 1, [{"driver_name": "Diego"}, {"driver_name": "Diega"}])
        await make_session(db_session, "S2", 2, [{"driver_name": "DIEGO"}])
        user = await make_user(db_session, "d@example.com", driver_name="diego")

        drivers = await search_drivers(db_session, "dieg")
        assert [d["race_count"] for d in drivers] == [2, 1]
        assert drivers[0]["driver_name"].lower() == "diego"
        assert drivers[0]["linked_user_id"] == user.id
        assert drivers[0]["is_linked"] is True
        assert drivers[1]["is_linked"] is False

    @pytest.mark.asyncio
    async def test_session_drivers_in_timing_order(self, db_session):
        await make_session(
            db_session,
            "S1",
            1,
            [
                {"driver_name": "Rayo", "final_position": 2, "best_time_ms": 0, "laps": [{"lap_number": 1, "time_ms": 40500}]},
                {"driver_name": "Diego", "final_position": 1, "best_time_ms": 40100},
            ],
        )
        await make_user(db_session, "d@example.com", driver_name="Diego")

        drivers = await get_session_drivers(db_session, "S1")
        assert [d["driver_name"] for d in drivers] == ["Rayo", "Diego"]
        assert drivers[0]["best_time_ms"] == 40500
        assert [d["is_linked"] for d in drivers] == [False, True]
