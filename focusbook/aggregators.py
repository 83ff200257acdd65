from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .crud import RecordBook
from .sessions import SessionRecord, SessionTracker
from .timeutils import local_date_string


@dataclass(frozen=True)
class DailyLog:
    total_minutes: int
    total_paused_minutes: int


@dataclass(frozen=True)
class DashboardData:
    date: str
    sessions: tuple[SessionRecord, ...]
    daily_log: DailyLog
    subjects: tuple[dict[str, Any], ...]
    todos: tuple[dict[str, Any], ...]


@dataclass(frozen=True)
class SubjectTimeStat:
    subject: str
    total_minutes: int
    session_count: int


def get_dashboard_data(
    records: RecordBook,
    sessions: SessionTracker,
    date: str | None = None,
) -> DashboardData:
    """Everything the timer view needs for one local day."""

    day = date or local_date_string()
    stats = sessions.get_daily_stats_by_date(day)
    return DashboardData(
        date=day,
        sessions=tuple(sessions.get_sessions_for_date(day)),
        daily_log=DailyLog(
            total_minutes=sum(stat.time_in_subject for stat in stats),
            total_paused_minutes=sum(stat.pause_minutes for stat in stats),
        ),
        subjects=tuple(records.query("subjects", order_by="name")),
        todos=tuple(records.get_todos_by_date(day)),
    )


def get_subject_time_stats(
    sessions: SessionTracker,
    start_date: str | None = None,
    end_date: str | None = None,
) -> list[SubjectTimeStat]:
    """Per-subject minutes from daily stats, largest first.

    `session_count` counts the daily buckets a subject appears in.
    """

    totals: dict[str, list[int]] = {}
    for stat in sessions.get_daily_stats_between(start_date, end_date):
        bucket = totals.setdefault(stat.subject, [0, 0])
        bucket[0] += stat.time_in_subject
        bucket[1] += 1
    ordered = sorted(totals.items(), key=lambda item: item[1][0], reverse=True)
    return [
        SubjectTimeStat(subject=subject, total_minutes=minutes, session_count=count)
        for subject, (minutes, count) in ordered
    ]
