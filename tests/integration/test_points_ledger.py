"""Points ledger tests: append chain, idempotency, reverts, audit, ranking."""

from __future__ import annotations

import pytest
import pytest_asyncio

from kartpark.errors import (
    EntryAlreadyRevertedError,
    IdempotencyKeyReusedError,
    InvariantViolationError,
    NegativePointsTotalError,
    NotFoundError,
)
from kartpark.squadrons.ledger_service import (
    apply_delta,
    compute_ranking,
    current_total,
    get_history,
    refresh_total_cache,
    revert_entry,
    verify_ledger,
)
from kartpark.squadrons.membership_service import create_squadron, leave
from tests.conftest import make_user


async def _squadron(db, name: str, email: str | None = None):
    captain = await make_user(db, email or f"{name.lower()}@example.com")
    return await create_squadron(db, captain.id, name)


@pytest_asyncio.fixture
async def organizer(db_session):
    return await make_user(db_session, "org@example.com", roles=["organizer"])


class TestAppend:
    @pytest.mark.asyncio
    async def test_race_event_then_penalty_chains(self, db_session, organizer):
        squadron = await _squadron(db_session, "Apex")

        assert await apply_delta(db_session, squadron.id, 25, "GP 1 result", "race_event", organizer.id, race_event_id="GP-1") == 25
        assert await apply_delta(db_session, squadron.id, -10, "Track limits", "penalty", organizer.id) == 15

        assert await current_total(db_session, squadron.id) == 15
        assert squadron.total_points == 15
        entries, count = await get_history(db_session, squadron.id)
        assert count == 2
        chain = [(e.previous_total, e.new_total) for e in reversed(entries)]
        assert chain == [(0, 25), (25, 15)]
        assert entries[0].change_type == "penalty"
        assert entries[1].race_event_id == "GP-1"
        assert entries[1].modified_by == organizer.id

    @pytest.mark.asyncio
    async def test_race_event_retry_is_a_no_op(self, db_session, organizer):
        squadron = await _squadron(db_session, "Apex")
        await apply_delta(db_session, squadron.id, 25, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        assert await apply_delta(db_session, squadron.id, 25, "GP 1", "race_event", organizer.id, race_event_id="GP-1") == 25
        _, count = await get_history(db_session, squadron.id)
        assert count == 1

    @pytest.mark.asyncio
    async def test_same_event_counts_once_per_squadron(self, db_session, organizer):
        a = await _squadron(db_session, "Apex")
        b = await _squadron(db_session, "Blaze")
        await apply_delta(db_session, a.id, 25, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        await apply_delta(db_session, b.id, 18, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        assert await current_total(db_session, a.id) == 25
        assert await current_total(db_session, b.id) == 18

    @pytest.mark.asyncio
    async def test_explicit_key_from_another_squadron(self, db_session, organizer):
        a = await _squadron(db_session, "Apex")
        b = await _squadron(db_session, "Blaze")
        await apply_delta(db_session, a.id, 5, "Bonus", "bonus", organizer.id, idempotency_key="bonus-1")
        with pytest.raises(IdempotencyKeyReusedError):
            await apply_delta(db_session, b.id, 5, "Bonus", "bonus", organizer.id, idempotency_key="bonus-1")

    @pytest.mark.asyncio
    async def test_total_cannot_go_negative(self, db_session, organizer):
        squadron = await _squadron(db_session, "Apex")
        with pytest.raises(NegativePointsTotalError) as exc:
            await apply_delta(db_session, squadron.id, -5, "Penalty", "penalty", organizer.id)
        assert exc.value.context["previous_total"] == 0
        _, count = await get_history(db_session, squadron.id)
        assert count == 0

    @pytest.mark.asyncio
    async def test_unknown_squadron(self, db_session, organizer):
        with pytest.raises(NotFoundError):
            await apply_delta(db_session, 999, 5, "Bonus", "bonus", organizer.id)

    @pytest.mark.asyncio
    async def test_inactive_squadron_still_records(self, db_session, organizer):
        squadron = await _squadron(db_session, "Apex")
        await leave(db_session, squadron.captain_id)
        assert squadron.is_active is False
        assert await apply_delta(db_session, squadron.id, 10, "Late result", "manual_adjustment", organizer.id) == 10


class TestRevert:
    @pytest.mark.asyncio
    async def test_revert_negates_once(self, db_session, organizer):
        squadron = await _squadron(db_session, "Apex")
        await apply_delta(db_session, squadron.id, 25, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        entries, _ = await get_history(db_session, squadron.id)

        revert = await revert_entry(db_session, entries[0].id, organizer.id, "Result annulled")
        assert revert.points_change == -25
        assert revert.change_type == "revert"
        assert revert.entry_metadata == {"reverted_entry_id": entries[0].id}
        assert (revert.previous_total, revert.new_total) == (25, 0)
        assert await current_total(db_session, squadron.id) == 0

        with pytest.raises(EntryAlreadyRevertedError):
            await revert_entry(db_session, entries[0].id, organizer.id)
        with pytest.raises(InvariantViolationError):
            await revert_entry(db_session, revert.id, organizer.id)

    @pytest.mark.asyncio
    async def test_revert_that_would_go_negative(self, db_session, organizer):
        squadron = await _squadron(db_session, "Apex")
        await apply_delta(db_session, squadron.id, 25, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        await apply_delta(db_session, squadron.id, -10, "Penalty", "penalty", organizer.id)
        entries, _ = await get_history(db_session, squadron.id)
        with pytest.raises(NegativePointsTotalError):
            await revert_entry(db_session, entries[-1].id, organizer.id)

    @pytest.mark.asyncio
    async def test_missing_entry(self, db_session, organizer):
        with pytest.raises(NotFoundError):
            await revert_entry(db_session, 12345, organizer.id)


class TestAudit:
    @pytest.mark.asyncio
    async def test_clean_ledger_is_consistent(self, db_session, organizer):
        squadron = await _squadron(db_session, "Apex")
        await apply_delta(db_session, squadron.id, 25, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        await apply_delta(db_session, squadron.id, -10, "Penalty", "penalty", organizer.id)

        audit = await verify_ledger(db_session, squadron.id)
        assert audit.consistent
        assert audit.entry_count == 2
        assert audit.ledger_total == 15

    @pytest.mark.asyncio
    async def test_stale_cache_is_detected_and_refreshed(self, db_session, organizer):
        squadron = await _squadron(db_session, "Apex")
        await apply_delta(db_session, squadron.id, 25, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        squadron.total_points = 99
        await db_session.flush()

        audit = await verify_ledger(db_session, squadron.id)
        assert not audit.consistent
        assert audit.broken_entry_ids == []

        assert await refresh_total_cache(db_session, squadron.id) == 25
        assert (await verify_ledger(db_session, squadron.id)).consistent

    @pytest.mark.asyncio
    async def test_broken_chain_is_reported(self, db_session, organizer):
        squadron = await _squadron(db_session, "Apex")
        await apply_delta(db_session, squadron.id, 25, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        await apply_delta(db_session, squadron.id, 5, "Bonus", "bonus", organizer.id)
        entries, _ = await get_history(db_session, squadron.id)
        entries[0].previous_total = 3
        await db_session.flush()

        audit = await verify_ledger(db_session, squadron.id)
        assert audit.broken_entry_ids == [entries[0].id]


class TestRanking:
    @pytest.mark.asyncio
    async def test_orders_by_total_then_fair_racing_then_age(self, db_session, organizer):
        oldest = await _squadron(db_session, "Apex")
        younger = await _squadron(db_session, "Blaze")
        cleaner = await _squadron(db_session, "Comet")
        leader = await _squadron(db_session, "Drift")
        cleaner.fair_racing_average = 95
        await db_session.flush()

        for squadron in (oldest, younger, cleaner):
            await apply_delta(db_session, squadron.id, 20, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        await apply_delta(db_session, leader.id, 30, "GP 1", "race_event", organizer.id, race_event_id="GP-1")

        ranking = await compute_ranking(db_session)
        assert [(r.rank, r.squadron.id, r.total_points) for r in ranking] == [
            (1, leader.id, 30),
            (2, cleaner.id, 20),
            (3, oldest.id, 20),
            (4, younger.id, 20),
        ]

    @pytest.mark.asyncio
    async def test_inactive_squadrons_hidden_by_default(self, db_session, organizer):
        active = await _squadron(db_session, "Apex")
        gone = await _squadron(db_session, "Blaze")
        await apply_delta(db_session, gone.id, 50, "GP 1", "race_event", organizer.id, race_event_id="GP-1")
        await leave(db_session, gone.captain_id)

        assert [r.squadron.id for r in await compute_ranking(db_session)] == [active.id]
        everyone = await compute_ranking(db_session, include_inactive=True)
        assert [r.squadron.id for r in everyone] == [gone.id, active.id]
        assert everyone[0].total_points == 50
