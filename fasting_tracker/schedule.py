"""
Timeline reconciliation for fast and eat windows.

Every entry point turns one user action into a sequence of store calls that
leaves the timeline without overlapping fasts, then reloads the derived state
and resyncs reminders. Store calls commit individually; the placeholder reuse
rules make a retried start or stop converge instead of piling up duplicates.
"""

from __future__ import annotations

import calendar
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from .config import DEFAULT_LEAD_TIME, Settings
from .database import FastingDatabaseError
from .logger import get_logger
from .models import (
    DaySummary,
    FastingRegimen,
    FastingWindow,
    HistorySection,
    ReminderEvent,
    WindowSource,
    WindowType,
    new_identifier,
)
from .reminders import DEFAULT_CANDIDATE_LIMIT, ReminderScheduler, collect_reminder_candidates
from .store import FastingStore
from .summary import (
    build_history,
    build_week_summary,
    day_bounds,
    default_daily_schedule,
    format_duration,
    history_bounds,
    interval_description,
    week_bounds,
)

logger = get_logger(__name__)

FALLBACK_FAST_DURATION = 16 * 3600
FALLBACK_FEED_DURATION = 8 * 3600

_STORE_ERRORS = (FastingDatabaseError,)
_IMPORT_ERRORS = (FastingDatabaseError, ValueError, OSError)


def effective_durations(regimen: FastingRegimen | None) -> tuple[float, float]:
    """Fast and feed seconds to plan with; 16h/8h when there is no regimen."""
    if regimen is None:
        return float(FALLBACK_FAST_DURATION), float(FALLBACK_FEED_DURATION)
    return max(float(regimen.fast_duration), 0.0), max(float(regimen.feed_duration), 0.0)


class FastingSchedule:
    PLACEHOLDER_TOLERANCE = timedelta(minutes=10)
    OVERLAP_LOOKBACK_MARGIN = timedelta(hours=1)
    REMINDER_CANDIDATE_LIMIT = DEFAULT_CANDIDATE_LIMIT

    def __init__(
        self,
        store: FastingStore,
        reminders: ReminderScheduler | None = None,
        settings: Settings | None = None,
        now: Callable[[], datetime] = datetime.now,
        first_weekday: int = calendar.SUNDAY,
    ):
        self._store = store
        self._reminders = reminders
        self._settings = settings
        self._now = now
        self._first_weekday = first_weekday
        self._lead_time = float(DEFAULT_LEAD_TIME)
        self._lock = threading.RLock()

        current = now()
        self.today_windows: list[FastingWindow] = default_daily_schedule(
            current, FALLBACK_FAST_DURATION, FALLBACK_FEED_DURATION
        )
        self.active_window: FastingWindow | None = next(
            (w for w in self.today_windows if w.contains(current)), None
        )
        self.is_fasting = self.active_window is not None and self.active_window.type is WindowType.FAST
        self.active_regimen: FastingRegimen | None = None
        self.last_fast_window: FastingWindow | None = None
        self.weekly_summary: list[DaySummary] = []
        self.recent_history: list[HistorySection] = []
        self.scheduled_reminders: list[ReminderEvent] = []
        self.last_error: str | None = None

    @property
    def store(self) -> FastingStore:
        return self._store

    @property
    def settings(self) -> Settings | None:
        return self._settings

    # Derived state

    @property
    def configured_durations(self) -> tuple[float, float]:
        return effective_durations(self.active_regimen)

    @property
    def lead_time(self) -> float:
        if self._settings is not None:
            return self._settings.lead_time
        return self._lead_time

    @property
    def progress(self) -> float:
        if self.active_window is None:
            return 0.0
        total = self.active_window.duration_seconds
        if total <= 0:
            return 0.0
        elapsed = (self._now() - self.active_window.start).total_seconds()
        return min(max(elapsed, 0.0), total) / total

    @property
    def remaining_time_label(self) -> str:
        if self.active_window is None:
            return "No session in progress"
        now = self._now()
        if now >= self.active_window.end:
            return "Window complete"
        return format_duration((self.active_window.end - now).total_seconds())

    @property
    def headline(self) -> str:
        return "You're fasting" if self.is_fasting else "Feeding window"

    @property
    def subheadline(self) -> str:
        if self.active_window is None:
            return "Tap start to begin tracking."
        return interval_description(self.active_window)

    @property
    def next_window_after_active(self) -> FastingWindow | None:
        if self.active_window is None:
            return None
        ids = [w.id for w in self.today_windows]
        if self.active_window.id not in ids:
            return None
        index = ids.index(self.active_window.id)
        if index + 1 < len(self.today_windows):
            return self.today_windows[index + 1]
        return None

    # Start / stop

    def start_fast_now(self) -> bool:
        return self.start_fast(self._now())

    def stop_fast_now(self) -> bool:
        return self.stop_fast(self._now())

    def start_fast(self, at: datetime) -> bool:
        with self._lock:
            try:
                self._start_fast(at)
            except _STORE_ERRORS as exc:
                return self._fail("start fast", exc)
            self.last_error = None
            return True

    def stop_fast(self, at: datetime) -> bool:
        with self._lock:
            try:
                stopped = self._stop_fast(at)
            except _STORE_ERRORS as exc:
                return self._fail("stop fast", exc)
            if not stopped:
                self.last_error = "There is no fast to stop."
                logger.info("Stop requested at %s with no fast to close", at)
                return False
            self.last_error = None
            return True

    def _start_fast(self, at: datetime) -> None:
        fast_seconds, feed_seconds = self._load_durations()
        expected_end = at + timedelta(seconds=fast_seconds)

        active = self._store.fetch_active_window(at)
        if active is not None and active.type is WindowType.FAST:
            # Already fasting at ``at``; a repeated start only resyncs.
            self._refresh_state()
            return
        if active is not None:
            self._store.save_window(replace(active, end=max(at, active.start)))
        else:
            recent_eat = self._store.fetch_most_recent_window(at, WindowType.EAT)
            if recent_eat is not None and recent_eat.end > at:
                self._store.save_window(replace(recent_eat, end=at))

        placeholder = self._store.fetch_next_window(at, WindowType.FAST)
        if placeholder is not None and placeholder.start <= at + self.PLACEHOLDER_TOLERANCE:
            fast = self._store.save_window(
                replace(placeholder, start=at, end=expected_end),
                source=WindowSource.USER,
            )
        else:
            fast = self._store.save_window(FastingWindow.new(WindowType.FAST, at, expected_end))

        if feed_seconds > 0:
            self._ensure_planned_eating_window(at, expected_end, timedelta(seconds=feed_seconds))
        else:
            self._delete_eating_windows(at, expected_end + self.PLACEHOLDER_TOLERANCE)

        self._resolve_fast_overlaps(fast)
        logger.info("Started fast %s at %s", fast.id, at)
        self._refresh_state()

    def _stop_fast(self, at: datetime) -> bool:
        fast_seconds, feed_seconds = self._load_durations()
        target = self._resolve_fast_to_stop(at)
        if target is None:
            return False

        planned_end = target.end
        closed = self._store.save_window(
            replace(target, end=max(at, target.start)),
            source=WindowSource.USER,
        )
        self._trim_overlapping_fasts(at, closed.id, fast_seconds)
        self._finalize_eating_window(closed, planned_end, feed_seconds, fast_seconds)
        logger.info("Stopped fast %s at %s", closed.id, at)

        self.active_window = None
        self.is_fasting = False
        self._refresh_state()
        return True

    def _resolve_fast_to_stop(self, at: datetime) -> FastingWindow | None:
        cached = self.active_window
        if cached is not None and cached.type is WindowType.FAST:
            stored = self._store.fetch_window(cached.id)
            if stored is None:
                # An unsaved default-schedule fast; stopping it persists it.
                return cached
            if stored.type is WindowType.FAST:
                return stored
        active = self._store.fetch_active_window(at)
        if active is not None and active.type is WindowType.FAST:
            return active
        return self._store.fetch_most_recent_window(at, WindowType.FAST)

    def _ensure_planned_eating_window(
        self, fast_start: datetime, expected_end: datetime, feed: timedelta
    ) -> None:
        existing = self._store.fetch_next_window(fast_start, WindowType.EAT)
        if existing is not None and existing.start <= expected_end + self.PLACEHOLDER_TOLERANCE:
            self._store.save_window(
                replace(existing, start=expected_end, end=expected_end + feed),
                source=WindowSource.SYSTEM,
            )
        else:
            self._store.save_window(
                FastingWindow.new(
                    WindowType.EAT,
                    expected_end,
                    expected_end + feed,
                    source=WindowSource.SYSTEM,
                )
            )

    def _delete_eating_windows(self, after: datetime, until: datetime) -> None:
        """Delete eat windows starting in ``[after, until]``."""
        while True:
            eat = self._store.fetch_next_window(after, WindowType.EAT)
            if eat is None or eat.start > until:
                return
            self._store.delete_window(eat.id)

    def _resolve_fast_overlaps(self, fast: FastingWindow) -> None:
        upper = max(fast.end, fast.start + timedelta(seconds=1))
        for other in self._store.fetch_windows(fast.start, upper):
            if other.type is not WindowType.FAST or other.id == fast.id:
                continue
            if other.start < fast.start:
                self._store.save_window(replace(other, end=fast.start))
            elif other.start < fast.end:
                self._store.delete_window(other.id)

    def _trim_overlapping_fasts(self, at: datetime, keep_id: str, fast_seconds: float) -> None:
        lookback = timedelta(seconds=fast_seconds) + self.OVERLAP_LOOKBACK_MARGIN
        for other in self._store.fetch_windows(at - lookback, at + timedelta(seconds=1)):
            if other.type is not WindowType.FAST or other.id == keep_id or other.end <= at:
                continue
            if other.start < at:
                self._store.save_window(replace(other, end=at), source=WindowSource.USER)
            else:
                self._store.delete_window(other.id)

    def _finalize_eating_window(
        self,
        fast: FastingWindow,
        planned_end: datetime,
        feed_seconds: float,
        next_fast_seconds: float,
    ) -> None:
        fast_end = fast.end
        horizon = max(fast_end, planned_end) + self.PLACEHOLDER_TOLERANCE
        if feed_seconds <= 0:
            self._delete_eating_windows(fast.start, horizon)
            self._ensure_upcoming_fast(fast_end, next_fast_seconds, exclude=fast.id)
            return

        eat_end = fast_end + timedelta(seconds=feed_seconds)
        existing = self._store.fetch_next_window(fast.start, WindowType.EAT)
        if existing is not None and existing.start <= horizon:
            eat = self._store.save_window(
                replace(existing, start=fast_end, end=eat_end),
                source=WindowSource.USER,
            )
        else:
            eat = self._store.save_window(FastingWindow.new(WindowType.EAT, fast_end, eat_end))

        self._ensure_upcoming_fast(eat.end, next_fast_seconds, exclude=fast.id)
        for other in self._store.fetch_windows(eat.start, eat.end):
            if other.type is WindowType.EAT and other.id != eat.id and other.start >= eat.start:
                self._store.delete_window(other.id)

    def _ensure_upcoming_fast(self, start: datetime, fast_seconds: float, exclude: str) -> None:
        if fast_seconds <= 0:
            return
        end = start + timedelta(seconds=fast_seconds)
        earliest = start - self.OVERLAP_LOOKBACK_MARGIN
        latest = start + self.PLACEHOLDER_TOLERANCE
        nearby = [
            w
            for w in self._store.fetch_windows(earliest, latest + timedelta(microseconds=1))
            if w.type is WindowType.FAST and w.id != exclude and earliest <= w.start <= latest
        ]
        if nearby:
            existing = min(nearby, key=lambda w: w.start)
            self._store.save_window(
                replace(existing, start=start, end=end),
                source=WindowSource.SYSTEM,
            )
        else:
            self._store.save_window(
                FastingWindow.new(WindowType.FAST, start, end, source=WindowSource.SYSTEM)
            )

    # Manual edits

    def create_window(
        self,
        type: WindowType,
        start: datetime,
        end: datetime,
        note: str | None = None,
    ) -> bool:
        with self._lock:
            if end < start:
                return self._reject("End time must not be before start time.")
            try:
                window = self._store.save_window(
                    FastingWindow.new(type, start, end, note=note),
                    source=WindowSource.USER,
                )
            except _STORE_ERRORS as exc:
                return self._fail("create window", exc)
            logger.info("Created %s window %s", type.value, window.id)
            self._refresh_state()
            return True

    def update_window(
        self,
        window_id: str,
        type: WindowType,
        start: datetime,
        end: datetime,
        note: str | None = None,
    ) -> bool:
        with self._lock:
            if end < start:
                return self._reject("End time must not be before start time.")
            try:
                existing = self._store.fetch_window(window_id)
                if existing is not None:
                    updated = replace(existing, type=type, start=start, end=end)
                else:
                    updated = FastingWindow(id=window_id, type=type, start=start, end=end)
                self._store.save_window(updated, note=note, source=WindowSource.USER)
            except _STORE_ERRORS as exc:
                return self._fail("update window", exc)
            self._refresh_state()
            return True

    def delete_window(self, window_id: str) -> bool:
        with self._lock:
            try:
                self._store.delete_window(window_id)
            except _STORE_ERRORS as exc:
                return self._fail("delete window", exc)
            if self.active_window is not None and self.active_window.id == window_id:
                self.active_window = None
                self.is_fasting = False
            self._refresh_state()
            return True

    def window_details(self, window_id: str) -> FastingWindow | None:
        try:
            return self._store.fetch_window(window_id)
        except _STORE_ERRORS as exc:
            self._fail("fetch window", exc)
            return None

    # Regimens

    def regimens(self) -> list[FastingRegimen]:
        try:
            return self._store.fetch_regimens()
        except _STORE_ERRORS as exc:
            self._fail("load regimens", exc)
            return []

    def save_regimen(
        self,
        name: str,
        fast_hours: float,
        feed_hours: float,
        set_active: bool = False,
        existing: FastingRegimen | None = None,
    ) -> bool:
        trimmed = name.strip()
        with self._lock:
            if not trimmed:
                return self._reject("Please provide a name for the regimen.")

            now = self._now()
            should_activate = set_active or (existing is not None and existing.is_active)
            regimen = FastingRegimen(
                id=existing.id if existing is not None else new_identifier(),
                name=trimmed,
                fast_duration=max(float(fast_hours), 0.0) * 3600,
                feed_duration=max(float(feed_hours), 0.0) * 3600,
                is_active=should_activate,
                created_at=existing.created_at if existing is not None else now,
                updated_at=now,
            )
            try:
                self._store.save_regimen(regimen)
            except _STORE_ERRORS as exc:
                return self._fail("save regimen", exc)
            logger.info("Saved regimen %s (%s)", regimen.name, regimen.summary_label)
            self._refresh_state()
            return True

    def set_active_regimen(self, regimen_id: str) -> bool:
        with self._lock:
            try:
                self._store.set_active_regimen(regimen_id)
            except _STORE_ERRORS as exc:
                return self._fail("activate regimen", exc)
            self._refresh_state()
            return True

    def delete_regimen(self, regimen_id: str) -> bool:
        with self._lock:
            try:
                self._store.delete_regimen(regimen_id)
            except _STORE_ERRORS as exc:
                return self._fail("delete regimen", exc)
            self._refresh_state()
            return True

    # Data management

    def export_database(self) -> bytes | None:
        with self._lock:
            try:
                return self._store.export_snapshot()
            except _STORE_ERRORS as exc:
                self._fail("export database", exc)
                return None

    def import_database(self, source: Path) -> bool:
        with self._lock:
            try:
                self._store.import_snapshot(Path(source))
            except _IMPORT_ERRORS as exc:
                return self._fail("import database", exc)
            self.active_window = None
            self._refresh_state()
            return True

    def reset_database(self) -> bool:
        with self._lock:
            try:
                self._store.reset()
            except _STORE_ERRORS as exc:
                return self._fail("reset database", exc)
            self.active_window = None
            self.is_fasting = False
            self._refresh_state()
            return True

    # Refresh

    def set_lead_time(self, seconds: float) -> None:
        with self._lock:
            if self._settings is not None:
                self._settings.lead_time = seconds
            else:
                self._lead_time = max(float(seconds), 0.0)
            self.refresh_scheduled_notifications()

    def refresh_state(self) -> None:
        with self._lock:
            self._refresh_state()

    def refresh_scheduled_notifications(self) -> None:
        with self._lock:
            self._sync_reminders(self.today_windows, self.active_window, self._now())

    def _refresh_state(self) -> None:
        now = self._now()
        try:
            regimen = self._store.fetch_active_regimen()
            fast_seconds, feed_seconds = effective_durations(regimen)

            schedule = self._store.fetch_windows(*day_bounds(now))
            if not schedule:
                schedule = default_daily_schedule(now, fast_seconds, feed_seconds)
            schedule.sort(key=lambda w: w.start)

            active = self._store.fetch_active_window(now)
            if active is None:
                active = next((w for w in schedule if w.contains(now)), None)

            week_windows = self._store.fetch_windows(*week_bounds(now, self._first_weekday))
            history_windows = self._store.fetch_windows(*history_bounds(now))
            latest_fast = self._store.fetch_most_recent_window(now, WindowType.FAST)
        except _STORE_ERRORS as exc:
            self._fail("refresh state", exc)
            return

        self.active_regimen = regimen
        self.today_windows = schedule
        self.active_window = active
        self.is_fasting = active is not None and active.type is WindowType.FAST
        self.weekly_summary = build_week_summary(
            week_windows, now, fast_seconds, feed_seconds, self._first_weekday
        )
        self.recent_history = build_history(history_windows, now)
        self.last_fast_window = latest_fast
        self._sync_reminders(schedule, active, now)

    def _sync_reminders(
        self,
        schedule: list[FastingWindow],
        active: FastingWindow | None,
        now: datetime,
    ) -> None:
        if self._reminders is None:
            return
        try:
            candidates = collect_reminder_candidates(
                self._store, schedule, active, now, self.REMINDER_CANDIDATE_LIMIT
            )
        except _STORE_ERRORS as exc:
            self._fail("collect reminder candidates", exc)
            return
        self.scheduled_reminders = self._reminders.update_notifications(candidates, self.lead_time, now)

    # Helpers

    def _load_durations(self) -> tuple[float, float]:
        self.active_regimen = self._store.fetch_active_regimen()
        return effective_durations(self.active_regimen)

    def _reject(self, message: str) -> bool:
        self.last_error = message
        logger.warning(message)
        return False

    def _fail(self, action: str, exc: Exception) -> bool:
        message = getattr(exc, "message", None) or str(exc)
        self.last_error = message
        logger.error("Failed to %s: %s", action, message)
        return False
