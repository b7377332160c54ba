from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class WindowType(str, Enum):
    FAST = "fast"
    EAT = "eat"


class WindowSource(str, Enum):
    USER = "user"
    SYSTEM = "system"


def new_identifier() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class FastingWindow:
    """A half-open ``[start, end)`` interval tagged fast or eat."""

    id: str
    type: WindowType
    start: datetime
    end: datetime
    note: str | None = None
    source: WindowSource = WindowSource.USER
    created_at: datetime | None = field(default=None, compare=False)
    updated_at: datetime | None = field(default=None, compare=False)

    @classmethod
    def new(
        cls,
        type: WindowType,
        start: datetime,
        end: datetime,
        note: str | None = None,
        source: WindowSource = WindowSource.USER,
    ) -> FastingWindow:
        return cls(id=new_identifier(), type=type, start=start, end=end, note=note, source=source)

    @property
    def duration_seconds(self) -> float:
        return max((self.end - self.start).total_seconds(), 0.0)

    @property
    def title(self) -> str:
        return "Fasting Window" if self.type is WindowType.FAST else "Eating Window"

    def contains(self, at: datetime) -> bool:
        return self.start <= at < self.end

    def overlap_seconds(self, start: datetime, end: datetime) -> float:
        lower = max(self.start, start)
        upper = min(self.end, end)
        if upper <= lower:
            return 0.0
        return (upper - lower).total_seconds()


@dataclass(frozen=True)
class FastingRegimen:
    id: str
    name: str
    fast_duration: float
    feed_duration: float
    is_active: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def fast_hours(self) -> float:
        return self.fast_duration / 3600

    @property
    def feed_hours(self) -> float:
        return self.feed_duration / 3600

    @property
    def summary_label(self) -> str:
        return f"{_hours_label(self.fast_duration)} • {_hours_label(self.feed_duration)}"


@dataclass(frozen=True)
class ReminderEvent:
    identifier: str
    fire_at: datetime
    title: str
    body: str


@dataclass(frozen=True)
class DaySummary:
    weekday: str
    target: str
    achieved: float


@dataclass(frozen=True)
class HistoryEntry:
    window_id: str
    type: WindowType
    start: datetime
    end: datetime

    @property
    def duration_seconds(self) -> float:
        return max((self.end - self.start).total_seconds(), 0.0)


@dataclass(frozen=True)
class HistorySection:
    day: date
    title: str
    entries: list[HistoryEntry]


def _hours_label(seconds: float) -> str:
    hours = max(seconds, 0) / 3600
    if hours == int(hours):
        return f"{int(hours)}h"
    return f"{hours:.1f}h"
