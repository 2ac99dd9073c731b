"""Statistics service tests: full recompute, incremental folding, staleness."""

from __future__ import annotations

import pytest
from sqlalchemy import insert, select

from kartpark.db.models import RaceSession, UserStatistics
from kartpark.errors import NotFoundError, StaleStateError
from kartpark.stats import service as stats_service
from kartpark.stats.aggregator import StatisticsSnapshot
from kartpark.stats.service import (
    apply_session,
    get_statistics,
    mark_statistics_stale,
    process_pending_sessions,
    recompute_stale_statistics,
    recompute_statistics,
)
from tests.conftest import make_session, make_user


async def _seed_diego(db):
    await make_session(db, "S1", 1, [{"driver_name": "Diego", "final_position": 1, "best_time_ms": 42000, "kart_number": 7}])
    await make_session(db, "S2", 2, [
        {"driver_name": "Rayo", "final_position": 1, "best_time_ms": 40000},
        {"driver_name": "diego", "final_position": 5, "best_time_ms": 45000, "kart_number": 3},
    ])
    await make_session(db, "S3", 3, [{"driver_name": "DIEGO", "final_position": 2, "best_time_ms": 41000, "kart_number": 7}])


class TestRecompute:
    @pytest.mark.asyncio
    async def test_three_race_scenario(self, db_session):
        await _seed_diego(db_session)
        user = await make_user(db_session, "d@example.com", driver_name="Diego")

        snap = await recompute_statistics(db_session, user.id)
        assert snap.total_races == 3
        assert snap.best_time_ms == 41000
        assert snap.podium_finishes == 2
        assert snap.favorite_kart == 7
        assert [r["session_id"] for r in snap.recent_sessions] == ["S3", "S2", "S1"]

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(self, db_session):
        await _seed_diego(db_session)
        user = await make_user(db_session, "d@example.com", driver_name="Diego")

        first = await recompute_statistics(db_session, user.id)
        second = await recompute_statistics(db_session, user.id)
        assert first == second

        row = await db_session.get(UserStatistics, user.id)
        assert StatisticsSnapshot.from_row(row) == second

    @pytest.mark.asyncio
    async def test_unlinked_account_has_empty_stats(self, db_session):
        await _seed_diego(db_session)
        user = await make_user(db_session, "d@example.com", "Diego", "Soto")
        snap = await recompute_statistics(db_session, user.id)
        assert snap.total_races == 0
        assert snap.driver_name is None

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session):
        with pytest.raises(NotFoundError):
            await recompute_statistics(db_session, 999)


class TestStaleness:
    @pytest.mark.asyncio
    async def test_missing_row_is_computed_on_read(self, db_session):
        await _seed_diego(db_session)
        user = await make_user(db_session, "d@example.com", driver_name="Diego")
        snap, status = await get_statistics(db_session, user.id)
        assert status == "fresh"
        assert snap.total_races == 3

    @pytest.mark.asyncio
    async def test_stale_row_is_labelled_or_refused(self, db_session):
        await _seed_diego(db_session)
        user = await make_user(db_session, "d@example.com", driver_name="Diego")
        await recompute_statistics(db_session, user.id)
        await mark_statistics_stale(db_session, user.id)

        snap, status = await get_statistics(db_session, user.id)
        assert status == "recomputing"
        assert snap.total_races == 3
        with pytest.raises(StaleStateError):
            await get_statistics(db_session, user.id, strict=True)

    @pytest.mark.asyncio
    async def test_stale_rows_are_recomputed_in_batch(self, db_session):
        await _seed_diego(db_session)
        user = await make_user(db_session, "d@example.com", driver_name="Diego")
        await mark_statistics_stale(db_session, user.id)

        assert await recompute_stale_statistics(db_session) == [user.id]
        _, status = await get_statistics(db_session, user.id, strict=True)
        assert status == "fresh"
        assert await recompute_stale_statistics(db_session) == []

    @pytest.mark.asyncio
    async def test_row_created_by_concurrent_reader(self, db_session, monkeypatch):
        """Another transaction inserts the row after this one saw it missing."""
        await _seed_diego(db_session)
        user = await make_user(db_session, "d@example.com", driver_name="Diego")
        await db_session.execute(insert(UserStatistics).values(user_id=user.id, covered_through_id=0))
        await db_session.commit()

        lookup = stats_service._get_stats_row
        calls = []

        async def miss_first_lookup(db, user_id, *, lock=False):
            calls.append(user_id)
            if len(calls) == 1:
                return None
            return await lookup(db, user_id, lock=lock)

        monkeypatch.setattr(stats_service, "_get_stats_row", miss_first_lookup)
        snap = await recompute_statistics(db_session, user.id)
        await db_session.commit()

        assert snap.total_races == 3
        assert len(calls) == 2
        result = await db_session.execute(select(UserStatistics).where(UserStatistics.user_id == user.id))
        rows = result.scalars().all()
        assert len(rows) == 1
        assert rows[0].is_stale is False


class TestIncremental:
    @pytest.mark.asyncio
    async def test_new_session_folds_into_fresh_row(self, db_session):
        await _seed_diego(db_session)
        user = await make_user(db_session, "d@example.com", driver_name="Diego")
        await process_pending_sessions(db_session)
        await recompute_statistics(db_session, user.id)

        s4 = await make_session(db_session, "S4", 4, [{"driver_name": "Diego", "final_position": 3, "best_time_ms": 40500}])
        assert await apply_session(db_session, s4.id) == [user.id]
        assert s4.processed is True

        incremental, status = await get_statistics(db_session, user.id)
        assert status == "fresh"
        assert incremental.total_races == 4
        assert incremental.best_time_ms == 40500
        assert incremental.podium_finishes == 3
        assert incremental.covered_through_id == s4.id

        full = await recompute_statistics(db_session, user.id)
        assert incremental == full

    @pytest.mark.asyncio
    async def test_session_behind_coverage_marks_stale(self, db_session):
        user = await make_user(db_session, "d@example.com", driver_name="Diego")
        s1 = await make_session(db_session, "S1", 1, [{"driver_name": "Diego", "final_position": 1}])
        await make_session(db_session, "S2", 2, [{"driver_name": "Diego", "final_position": 2}])
        await recompute_statistics(db_session, user.id)

        # S1 was stored before the recompute, so it is already covered.
        await apply_session(db_session, s1.id)
        row = await db_session.get(UserStatistics, user.id)
        assert row.is_stale is True
        assert row.total_races == 2

    @pytest.mark.asyncio
    async def test_processed_session_is_left_alone(self, db_session):
        user = await make_user(db_session, "d@example.com", driver_name="Diego")
        s1 = await make_session(db_session, "S1", 1, [{"driver_name": "Diego", "final_position": 1}])
        assert await apply_session(db_session, s1.id) == [user.id]
        assert await apply_session(db_session, s1.id) == []

    @pytest.mark.asyncio
    async def test_process_pending_marks_every_session(self, db_session):
        await _seed_diego(db_session)
        await make_user(db_session, "d@example.com", driver_name="Diego")
        assert await process_pending_sessions(db_session) == 3

        result = await db_session.execute(select(RaceSession.processed))
        assert all(result.scalars().all())
        assert await process_pending_sessions(db_session) == 0
