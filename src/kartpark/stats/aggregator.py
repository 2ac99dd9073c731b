"""Pure folding of race results into per-user statistics.

No I/O here. The service feeds :class:`RaceEntry` values into a
:class:`StatisticsAccumulator` either from a full scan or one session at a
time; both paths must end in the same :class:`StatisticsSnapshot`.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from kartpark.time_utils import as_utc

PODIUM_POSITIONS = frozenset({1, 2, 3})
DEFAULT_RECENT_LIMIT = 10


@dataclass(frozen=True)
class RaceEntry:
    """One driver line joined with its session."""

    race_session_pk: int
    session_id: str
    session_name: str
    session_date: datetime
    session_type: str
    kart_number: int | None = None
    final_position: int | None = None
    best_time_ms: int | None = None
    total_laps: int = 0
    laps: tuple[Mapping[str, Any], ...] = ()


def effective_best_time(best_time_ms: int | None, laps: Iterable[Mapping[str, Any]] = ()) -> int | None:
    """Session time for a driver: the reported best if positive, else the best positive lap.

    Zero or negative times are timing-system placeholders and never count.
    """
    if best_time_ms is not None and best_time_ms > 0:
        return best_time_ms
    lap_times = [lap.get("time_ms") for lap in laps]
    valid = [t for t in lap_times if isinstance(t, int) and not isinstance(t, bool) and t > 0]
    return min(valid) if valid else None


def half_up_mean(total: int, count: int) -> int:
    """Integer mean rounded half up. 0 for an empty set."""
    if count <= 0:
        return 0
    return (2 * total + count) // (2 * count)


def _recent_key(item: Mapping[str, Any]) -> tuple[datetime, str]:
    return item["session_date"], item["session_id"]


def _month_key(item: Mapping[str, Any]) -> tuple[int, int]:
    return item["year"], item["month"]


@dataclass
class StatisticsSnapshot:
    """Materialized statistics for one account. ``computed_at`` is not compared."""

    driver_name: str | None = None
    total_races: int = 0
    timed_races: int = 0
    best_time_ms: int = 0
    average_time_ms: int = 0
    time_sum_ms: int = 0
    podium_finishes: int = 0
    first_places: int = 0
    second_places: int = 0
    third_places: int = 0
    best_position: int = 0
    total_laps: int = 0
    favorite_kart: int | None = None
    kart_counts: dict[str, int] = field(default_factory=dict)
    first_race_at: datetime | None = None
    last_race_at: datetime | None = None
    recent_sessions: list[dict[str, Any]] = field(default_factory=list)
    monthly_stats: list[dict[str, int]] = field(default_factory=list)
    covered_through_id: int = 0
    computed_at: datetime | None = field(default=None, compare=False)

    @property
    def podium_percentage(self) -> int:
        """Share of races finished on the podium, as a whole percentage."""
        return half_up_mean(self.podium_finishes * 100, self.total_races)

    def to_row_values(self) -> dict[str, Any]:
        """Column values for a UserStatistics row (JSON-safe recent sessions)."""
        values = {
            "driver_name": self.driver_name,
            "total_races": self.total_races,
            "timed_races": self.timed_races,
            "best_time_ms": self.best_time_ms,
            "average_time_ms": self.average_time_ms,
            "time_sum_ms": self.time_sum_ms,
            "podium_finishes": self.podium_finishes,
            "first_places": self.first_places,
            "second_places": self.second_places,
            "third_places": self.third_places,
            "best_position": self.best_position,
            "total_laps": self.total_laps,
            "favorite_kart": self.favorite_kart,
            "kart_counts": dict(self.kart_counts),
            "first_race_at": self.first_race_at,
            "last_race_at": self.last_race_at,
            "recent_sessions": [
                {**item, "session_date": item["session_date"].isoformat()} for item in self.recent_sessions
            ],
            "monthly_stats": [dict(item) for item in self.monthly_stats],
            "covered_through_id": self.covered_through_id,
            "computed_at": self.computed_at,
        }
        return values

    @classmethod
    def from_row(cls, row: Any) -> StatisticsSnapshot:  # noqa: ANN401
        """Rebuild a snapshot from a UserStatistics row."""
        return cls(
            driver_name=row.driver_name,
            total_races=row.total_races,
            timed_races=row.timed_races,
            best_time_ms=row.best_time_ms,
            average_time_ms=row.average_time_ms,
            time_sum_ms=row.time_sum_ms,
            podium_finishes=row.podium_finishes,
            first_places=row.first_places,
            second_places=row.second_places,
            third_places=row.third_places,
            best_position=row.best_position,
            total_laps=row.total_laps,
            favorite_kart=row.favorite_kart,
            kart_counts={str(k): int(v) for k, v in (row.kart_counts or {}).items()},
            first_race_at=as_utc(row.first_race_at),
            last_race_at=as_utc(row.last_race_at),
            recent_sessions=[
                {**item, "session_date": as_utc(datetime.fromisoformat(item["session_date"]))}
                for item in (row.recent_sessions or [])
            ],
            monthly_stats=[{k: int(v) for k, v in item.items()} for item in (row.monthly_stats or [])],
            covered_through_id=row.covered_through_id,
            computed_at=as_utc(row.computed_at),
        )


def _copy(snap: StatisticsSnapshot) -> StatisticsSnapshot:
    return replace(
        snap,
        kart_counts=dict(snap.kart_counts),
        recent_sessions=[dict(item) for item in snap.recent_sessions],
        monthly_stats=[dict(item) for item in snap.monthly_stats],
    )


class StatisticsAccumulator:
    """Folds race entries one by one.

    Every field is order-independent. ``recent_sessions`` and ``monthly_stats``
    are re-sorted after each fold, so full and incremental paths agree.
    """

    def __init__(self, driver_name: str | None = None, recent_limit: int = DEFAULT_RECENT_LIMIT) -> None:
        self.recent_limit = recent_limit
        self._snap = StatisticsSnapshot(driver_name=driver_name)

    @classmethod
    def resume(cls, snapshot: StatisticsSnapshot, recent_limit: int = DEFAULT_RECENT_LIMIT) -> StatisticsAccumulator:
        """Continue folding on top of a stored snapshot."""
        acc = cls(snapshot.driver_name, recent_limit)
        acc._snap = _copy(snapshot)
        return acc

    def add(self, entry: RaceEntry) -> None:
        snap = self._snap
        date = as_utc(entry.session_date)
        snap.total_races += 1

        session_time = effective_best_time(entry.best_time_ms, entry.laps)
        if session_time is not None:
            snap.timed_races += 1
            snap.time_sum_ms += session_time
            if snap.best_time_ms == 0 or session_time < snap.best_time_ms:
                snap.best_time_ms = session_time
        snap.average_time_ms = half_up_mean(snap.time_sum_ms, snap.timed_races)

        position = entry.final_position
        if position is not None and position > 0:
            if position in PODIUM_POSITIONS:
                snap.podium_finishes += 1
            if position == 1:
                snap.first_places += 1
            elif position == 2:
                snap.second_places += 1
            elif position == 3:
                snap.third_places += 1
            if snap.best_position == 0 or position < snap.best_position:
                snap.best_position = position

        snap.total_laps += max(entry.total_laps, 0)

        if entry.kart_number is not None:
            key = str(entry.kart_number)
            snap.kart_counts[key] = snap.kart_counts.get(key, 0) + 1
            favorite = min(snap.kart_counts, key=lambda k: (-snap.kart_counts[k], int(k)))
            snap.favorite_kart = int(favorite)

        if snap.first_race_at is None or date < snap.first_race_at:
            snap.first_race_at = date
        if snap.last_race_at is None or date > snap.last_race_at:
            snap.last_race_at = date

        snap.recent_sessions.append(
            {
                "session_id": entry.session_id,
                "session_name": entry.session_name,
                "session_date": date,
                "session_type": entry.session_type,
                "final_position": entry.final_position,
                "best_time_ms": session_time,
                "kart_number": entry.kart_number,
            }
        )
        snap.recent_sessions.sort(key=_recent_key, reverse=True)
        del snap.recent_sessions[self.recent_limit:]

        self._add_to_month(snap, date, session_time, position)

        snap.covered_through_id = max(snap.covered_through_id, entry.race_session_pk)

    @staticmethod
    def _add_to_month(
        snap: StatisticsSnapshot, date: datetime, session_time: int | None, position: int | None,
    ) -> None:
        month = next((m for m in snap.monthly_stats if _month_key(m) == (date.year, date.month)), None)
        if month is None:
            month = {"year": date.year, "month": date.month, "races": 0, "best_time_ms": 0, "podiums": 0}
            snap.monthly_stats.append(month)
            snap.monthly_stats.sort(key=_month_key, reverse=True)
        month["races"] += 1
        if position in PODIUM_POSITIONS:
            month["podiums"] += 1
        if session_time is not None and (month["best_time_ms"] == 0 or session_time < month["best_time_ms"]):
            month["best_time_ms"] = session_time

    def extend(self, entries: Iterable[RaceEntry]) -> None:
        for entry in entries:
            self.add(entry)

    def snapshot(self, covered_through_id: int | None = None, computed_at: datetime | None = None) -> StatisticsSnapshot:
        """Current state. ``covered_through_id`` may only move forward."""
        snap = _copy(self._snap)
        if covered_through_id is not None:
            snap.covered_through_id = max(snap.covered_through_id, covered_through_id)
        snap.computed_at = computed_at
        return snap


def fold(
    entries: Iterable[RaceEntry],
    driver_name: str | None = None,
    recent_limit: int = DEFAULT_RECENT_LIMIT,
) -> StatisticsSnapshot:
    """Full fold over ``entries``."""
    acc = StatisticsAccumulator(driver_name, recent_limit)
    acc.extend(entries)
    return acc.snapshot()
