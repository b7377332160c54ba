from __future__ import annotations

import calendar
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Sequence

from .models import (
    DaySummary,
    FastingWindow,
    HistoryEntry,
    HistorySection,
    WindowSource,
    WindowType,
)

HISTORY_DAYS = 7


def day_bounds(anchor: datetime) -> tuple[datetime, datetime]:
    start = datetime.combine(anchor.date(), time.min)
    return start, start + timedelta(days=1)


def week_bounds(anchor: datetime, first_weekday: int = calendar.SUNDAY) -> tuple[datetime, datetime]:
    start_of_today, _ = day_bounds(anchor)
    offset = (anchor.weekday() - first_weekday) % 7
    start = start_of_today - timedelta(days=offset)
    return start, start + timedelta(days=7)


def history_bounds(anchor: datetime, days: int = HISTORY_DAYS) -> tuple[datetime, datetime]:
    clamped = max(days, 1)
    start_of_today, end_of_today = day_bounds(anchor)
    return start_of_today - timedelta(days=clamped - 1), end_of_today


def build_week_summary(
    windows: Sequence[FastingWindow],
    anchor: datetime,
    fast_duration: float,
    feed_duration: float,
    first_weekday: int = calendar.SUNDAY,
    fallback_target: float = 16 * 3600,
) -> list[DaySummary]:
    """Share of the daily fasting target reached on each day of the anchor's week.

    Fasts that cross midnight count toward both days by overlap.
    """
    week_start, _ = week_bounds(anchor, first_weekday)
    fasts = [w for w in windows if w.type is WindowType.FAST]
    target = fast_duration if fast_duration > 0 else fallback_target
    label = regimen_target_label(fast_duration, feed_duration)

    summaries: list[DaySummary] = []
    for index in range(7):
        day_start = week_start + timedelta(days=index)
        day_end = day_start + timedelta(days=1)
        total = sum(w.overlap_seconds(day_start, day_end) for w in fasts)
        achieved = min(max(total / target, 0.0), 1.0) if target > 0 else 0.0
        summaries.append(
            DaySummary(
                weekday=calendar.day_abbr[day_start.weekday()],
                target=label,
                achieved=achieved,
            )
        )
    return summaries


def build_history(
    windows: Sequence[FastingWindow],
    anchor: datetime,
    days: int = HISTORY_DAYS,
) -> list[HistorySection]:
    start, end = history_bounds(anchor, days)
    grouped: dict[date, list[FastingWindow]] = defaultdict(list)
    for window in windows:
        if window.start < end and window.end > start:
            grouped[window.start.date()].append(window)

    sections: list[HistorySection] = []
    for day in sorted(grouped, reverse=True):
        entries = [
            HistoryEntry(window_id=w.id, type=w.type, start=w.start, end=w.end)
            for w in sorted(grouped[day], key=lambda w: w.start)
        ]
        sections.append(HistorySection(day=day, title=format_history_date(day), entries=entries))
    return sections


def default_daily_schedule(
    anchor: datetime,
    fast_duration: float,
    feed_duration: float,
) -> list[FastingWindow]:
    """Placeholder schedule shown before anything is stored: the fast ends at noon."""
    fast_end = datetime.combine(anchor.date(), time(hour=12))
    fast_start = fast_end - timedelta(seconds=max(fast_duration, 0))
    windows = [FastingWindow.new(WindowType.FAST, fast_start, fast_end, source=WindowSource.SYSTEM)]
    if feed_duration > 0:
        windows.append(
            FastingWindow.new(
                WindowType.EAT,
                fast_end,
                fast_end + timedelta(seconds=feed_duration),
                source=WindowSource.SYSTEM,
            )
        )
    return windows


def format_duration(total_seconds: float) -> str:
    seconds = max(0, int(total_seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60

    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"


def format_hours(total_seconds: float) -> str:
    hours = max(0, int(total_seconds)) // 3600
    return f"{hours}h"


def format_time_of_day(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def format_history_date(day: date) -> str:
    return f"{calendar.month_abbr[day.month]} {day.day}, {day.year}"


def regimen_target_label(fast_duration: float, feed_duration: float) -> str:
    fast_label = format_hours(max(fast_duration, 0))
    if feed_duration <= 0:
        return fast_label
    return f"{fast_label} · {format_hours(feed_duration)}"


def interval_description(window: FastingWindow) -> str:
    start = format_time_of_day(window.start)
    end = format_time_of_day(window.end)
    if window.type is WindowType.FAST:
        return f"Fasting from {start} to {end}"
    return f"Eating between {start} and {end}"


def history_detail(entry: HistoryEntry) -> str:
    start = format_time_of_day(entry.start)
    end = format_time_of_day(entry.end)
    if entry.duration_seconds > 0:
        return f"{start} – {end} • {format_duration(entry.duration_seconds)}"
    return f"{start} – {end}"
