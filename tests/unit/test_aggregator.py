"""Statistics folding tests: session times, podiums, karts, recent window, months."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from kartpark.stats.aggregator import (
    DEFAULT_RECENT_LIMIT,
    RaceEntry,
    StatisticsAccumulator,
    effective_best_time,
    fold,
    half_up_mean,
)

BASE = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)


def _entry(pk: int, position: int | None, best: int | None, kart: int | None = None, laps: tuple = ()) -> RaceEntry:
    return RaceEntry(
        race_session_pk=pk,
        session_id=f"S{pk}",
        session_name=f"Heat {pk}",
        session_date=BASE + timedelta(days=pk),
        session_type="race",
        kart_number=kart,
        final_position=position,
        best_time_ms=best,
        total_laps=10,
        laps=laps,
    )


DIEGO = [_entry(1, 1, 42000, kart=7), _entry(2, 5, 45000, kart=3), _entry(3, 2, 41000, kart=7)]


def _on(pk: int, when: datetime, position: int | None, best: int | None) -> RaceEntry:
    return RaceEntry(
        race_session_pk=pk,
        session_id=f"S{pk}",
        session_name=f"Heat {pk}",
        session_date=when,
        session_type="race",
        final_position=position,
        best_time_ms=best,
    )


ACROSS_MONTHS = [
    _on(1, datetime(2026, 2, 27, 20, 0, tzinfo=timezone.utc), 1, 43000),
    _on(2, datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc), 4, 42500),
    _on(3, datetime(2026, 3, 20, 18, 0, tzinfo=timezone.utc), 2, None),
    _on(4, datetime(2025, 12, 31, 23, 30, tzinfo=timezone.utc), 3, 44000),
]


class TestEffectiveBestTime:
    def test_positive_reported_best_wins(self):
        assert effective_best_time(42000, [{"time_ms": 40000}]) == 42000

    def test_falls_back_to_best_positive_lap(self):
        laps = [{"time_ms": 0}, {"time_ms": 43000}, {"time_ms": 41500}]
        assert effective_best_time(0, laps) == 41500

    def test_no_valid_time(self):
        assert effective_best_time(None) is None
        assert effective_best_time(-1, [{"time_ms": 0}, {"time_ms": None}]) is None


class TestHalfUpMean:
    def test_rounds_half_up(self):
        assert half_up_mean(3, 2) == 2
        assert half_up_mean(5, 4) == 1

    def test_fair_racing_style_average(self):
        assert half_up_mean(85 + 85 + 85 + 70, 4) == 81

    def test_empty_is_zero(self):
        assert half_up_mean(0, 0) == 0


class TestFold:
    def test_three_race_scenario(self):
        snap = fold(DIEGO, "Diego")
        assert snap.total_races == 3
        assert snap.best_time_ms == 41000
        assert snap.podium_finishes == 2
        assert snap.first_places == 1
        assert snap.second_places == 1
        assert snap.third_places == 0
        assert snap.best_position == 1
        assert snap.average_time_ms == 42667
        assert snap.total_laps == 30

    def test_no_races_is_all_zero(self):
        snap = fold([], "Nobody")
        assert snap.total_races == 0
        assert snap.best_time_ms == 0
        assert snap.average_time_ms == 0
        assert snap.favorite_kart is None
        assert snap.recent_sessions == []

    def test_untimed_session_counts_as_race_only(self):
        snap = fold([_entry(1, 4, None), _entry(2, None, 50000)], "Ana")
        assert snap.total_races == 2
        assert snap.timed_races == 1
        assert snap.average_time_ms == 50000
        assert snap.best_position == 4
        assert snap.podium_finishes == 0

    def test_lap_fallback_feeds_best_time(self):
        snap = fold([_entry(1, 3, 0, laps=({"time_ms": 39999}, {"time_ms": 41000}))], "Lap")
        assert snap.best_time_ms == 39999
        assert snap.recent_sessions[0]["best_time_ms"] == 39999

    def test_favorite_kart_tie_goes_to_lowest_number(self):
        entries = [_entry(1, 5, 1, kart=7), _entry(2, 5, 1, kart=3), _entry(3, 5, 1, kart=7), _entry(4, 5, 1, kart=3)]
        assert fold(entries).favorite_kart == 3

    def test_first_and_last_race(self):
        snap = fold(DIEGO)
        assert snap.first_race_at == BASE + timedelta(days=1)
        assert snap.last_race_at == BASE + timedelta(days=3)

    def test_recent_window_keeps_newest_first(self):
        entries = [_entry(pk, 5, 40000 + pk) for pk in range(1, 8)]
        snap = fold(entries, recent_limit=5)
        assert [r["session_id"] for r in snap.recent_sessions] == ["S7", "S6", "S5", "S4", "S3"]

    def test_order_does_not_matter(self):
        assert fold(DIEGO, "Diego") == fold(list(reversed(DIEGO)), "Diego")

    def test_covered_through_tracks_highest_pk(self):
        assert fold(DIEGO).covered_through_id == 3


class TestIncremental:
    def test_resume_matches_full_fold(self):
        partial = fold(DIEGO[:2], "Diego")
        acc = StatisticsAccumulator.resume(partial)
        acc.add(DIEGO[2])
        assert acc.snapshot() == fold(DIEGO, "Diego")

    def test_resume_does_not_mutate_stored_snapshot(self):
        partial = fold(DIEGO[:2], "Diego")
        acc = StatisticsAccumulator.resume(partial)
        acc.add(DIEGO[2])
        assert partial.total_races == 2
        assert len(partial.recent_sessions) == 2
        assert partial.kart_counts == {"7": 1, "3": 1}

    def test_covered_through_only_moves_forward(self):
        acc = StatisticsAccumulator("Diego")
        acc.extend(DIEGO)
        assert acc.snapshot(covered_through_id=10).covered_through_id == 10
        assert acc.snapshot(covered_through_id=1).covered_through_id == 3

    def test_resume_matches_full_fold_with_months(self):
        partial = fold(ACROSS_MONTHS[:2], "Diego")
        acc = StatisticsAccumulator.resume(partial)
        acc.extend(ACROSS_MONTHS[2:])
        assert acc.snapshot() == fold(ACROSS_MONTHS, "Diego")


class TestMonthlyStats:
    def test_months_are_grouped_newest_first(self):
        snap = fold(ACROSS_MONTHS)
        assert snap.monthly_stats == [
            {"year": 2026, "month": 3, "races": 2, "best_time_ms": 42500, "podiums": 1},
            {"year": 2026, "month": 2, "races": 1, "best_time_ms": 43000, "podiums": 1},
            {"year": 2025, "month": 12, "races": 1, "best_time_ms": 44000, "podiums": 1},
        ]

    def test_month_follows_utc_date(self):
        late = datetime(2026, 3, 31, 23, 30, tzinfo=timezone(timedelta(hours=-4)))
        snap = fold([_on(1, late, 6, 41000)])
        assert snap.monthly_stats == [{"year": 2026, "month": 4, "races": 1, "best_time_ms": 41000, "podiums": 0}]

    def test_untimed_month_keeps_zero_best(self):
        snap = fold([_on(1, BASE, 2, None)])
        assert snap.monthly_stats[0]["best_time_ms"] == 0
        assert snap.monthly_stats[0]["podiums"] == 1

    def test_order_does_not_matter(self):
        assert fold(ACROSS_MONTHS).monthly_stats == fold(list(reversed(ACROSS_MONTHS))).monthly_stats


class TestPodiumPercentage:
    def test_rounded_share_of_races(self):
        assert fold(DIEGO).podium_percentage == 67
        assert fold(ACROSS_MONTHS).podium_percentage == 75

    def test_no_races(self):
        assert fold([]).podium_percentage == 0


def test_default_recent_window_is_ten():
    entries = [_entry(pk, 5, 40000 + pk) for pk in range(1, 13)]
    snap = fold(entries)
    assert DEFAULT_RECENT_LIMIT == 10
    assert [r["session_id"] for r in snap.recent_sessions] == [f"S{pk}" for pk in range(12, 2, -1)]
