from __future__ import annotations

import tempfile
import threading
import unittest
from datetime import datetime, timedelta
from itertools import combinations
from pathlib import Path

from fasting_tracker.config import Settings
from fasting_tracker.database import ExecutionError, FastingDatabase
from fasting_tracker.models import FastingRegimen, FastingWindow, WindowSource, WindowType
from fasting_tracker.reminders import InMemoryNotificationCenter, ReminderKind, ReminderScheduler, reminder_identifier
from fasting_tracker.schedule import FastingSchedule, effective_durations
from fasting_tracker.store import InMemoryFastingStore

T0 = datetime(2026, 3, 4, 8, 0, 0)
HOUR = timedelta(hours=1)


class FakeClock:
    def __init__(self, current: datetime):
        self.current = current

    def __call__(self) -> datetime:
        return self.current


def _all_windows(store) -> list[FastingWindow]:
    return store.fetch_windows(datetime(2000, 1, 1), datetime(2100, 1, 1))


def _spans(windows: list[FastingWindow], type: WindowType) -> list[tuple[datetime, datetime]]:
    return [(w.start, w.end) for w in windows if w.type is type]


class _ScheduleCases:
    def make_store(self, clock: FakeClock):
        raise NotImplementedError

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_dir = Path(self._tmp.name)
        self.clock = FakeClock(T0)
        self.store = self.make_store(self.clock)
        self.center = InMemoryNotificationCenter()
        self.schedule = FastingSchedule(
            self.store,
            reminders=ReminderScheduler(self.center),
            now=self.clock,
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _start(self, at: datetime) -> bool:
        self.clock.current = at
        return self.schedule.start_fast(at)

    def _stop(self, at: datetime) -> bool:
        self.clock.current = at
        return self.schedule.stop_fast(at)

    def assertNoOverlappingFasts(self) -> None:
        fasts = [w for w in _all_windows(self.store) if w.type is WindowType.FAST]
        for a, b in combinations(fasts, 2):
            self.assertFalse(
                a.start < b.end and b.start < a.end,
                f"fasts overlap: {a.start}-{a.end} and {b.start}-{b.end}",
            )

    # Start / stop

    def test_start_creates_fast_and_planned_eating_window(self) -> None:
        self.assertTrue(self._start(T0))

        windows = _all_windows(self.store)
        self.assertEqual(_spans(windows, WindowType.FAST), [(T0, T0 + 16 * HOUR)])
        self.assertEqual(_spans(windows, WindowType.EAT), [(T0 + 16 * HOUR, T0 + 24 * HOUR)])
        eat = next(w for w in windows if w.type is WindowType.EAT)
        self.assertEqual(eat.source, WindowSource.SYSTEM)
        self.assertTrue(self.schedule.is_fasting)
        self.assertEqual(self.schedule.headline, "You're fasting")
        self.assertIsNone(self.schedule.last_error)

    def test_start_twice_is_idempotent(self) -> None:
        self._start(T0)
        before = _all_windows(self.store)
        self.assertTrue(self._start(T0))
        self.assertEqual(_all_windows(self.store), before)

    def test_repeated_start_restores_dropped_reminder(self) -> None:
        self._start(T0)
        fast = self.schedule.active_window
        end_reminder = reminder_identifier(fast.id, ReminderKind.END_REMINDER)
        self.center.remove([end_reminder])
        self.assertNotIn(end_reminder, self.center.pending_identifiers())

        self.assertTrue(self._start(T0))
        self.assertIn(end_reminder, self.center.pending_identifiers())

    def test_stop_closes_fast_and_plans_next_cycle(self) -> None:
        self._start(T0)
        t1 = T0 + 10 * HOUR
        self.assertTrue(self._stop(t1))

        windows = _all_windows(self.store)
        self.assertEqual(
            _spans(windows, WindowType.FAST),
            [(T0, t1), (t1 + 8 * HOUR, t1 + 24 * HOUR)],
        )
        self.assertEqual(_spans(windows, WindowType.EAT), [(t1, t1 + 8 * HOUR)])
        upcoming = [w for w in windows if w.type is WindowType.FAST][1]
        self.assertEqual(upcoming.source, WindowSource.SYSTEM)
        self.assertFalse(self.schedule.is_fasting)
        self.assertEqual(self.schedule.headline, "Feeding window")
        self.assertEqual(self.schedule.last_fast_window.end, t1)

    def test_stop_twice_is_idempotent(self) -> None:
        self._start(T0)
        t1 = T0 + 10 * HOUR
        self._stop(t1)
        before = [(w.id, w.type, w.start, w.end) for w in _all_windows(self.store)]

        self.assertTrue(self._stop(t1))
        after = [(w.id, w.type, w.start, w.end) for w in _all_windows(self.store)]
        self.assertEqual(after, before)

    def test_stop_with_nothing_to_stop(self) -> None:
        # 14:00 falls in the default eating window, so nothing is cached as fasting.
        afternoon = T0.replace(hour=14)
        self.clock.current = afternoon
        self.schedule.refresh_state()
        self.assertFalse(self.schedule.is_fasting)

        self.assertFalse(self._stop(afternoon))
        self.assertEqual(self.schedule.last_error, "There is no fast to stop.")
        self.assertEqual(_all_windows(self.store), [])

    def test_stop_persists_default_schedule_fast(self) -> None:
        self.schedule.refresh_state()
        placeholder = self.schedule.active_window
        self.assertTrue(self.schedule.is_fasting)

        self.assertTrue(self._stop(T0))
        stored = self.store.fetch_window(placeholder.id)
        self.assertEqual((stored.start, stored.end), (datetime(2026, 3, 3, 20), T0))
        self.assertEqual(stored.source, WindowSource.USER)
        windows = _all_windows(self.store)
        self.assertEqual(_spans(windows, WindowType.EAT), [(T0, T0 + 8 * HOUR)])
        self.assertEqual(
            _spans(windows, WindowType.FAST),
            [(datetime(2026, 3, 3, 20), T0), (T0 + 8 * HOUR, T0 + 24 * HOUR)],
        )

    def test_stop_after_missed_day_leaves_old_fast_alone(self) -> None:
        old = self.store.save_window(
            FastingWindow.new(WindowType.FAST, datetime(2026, 3, 2, 8), datetime(2026, 3, 2, 20))
        )
        morning = T0.replace(hour=9)
        self.clock.current = morning
        self.schedule.refresh_state()

        self.assertTrue(self._stop(morning))
        unchanged = self.store.fetch_window(old.id)
        self.assertEqual((unchanged.start, unchanged.end), (old.start, old.end))
        closed = self.store.fetch_most_recent_window(morning, WindowType.FAST)
        self.assertEqual((closed.start, closed.end), (datetime(2026, 3, 3, 20), morning))

    def test_stop_trims_and_deletes_overlapping_fasts(self) -> None:
        self._start(T0)
        t1 = T0 + 10 * HOUR
        earlier = self.store.save_window(FastingWindow.new(WindowType.FAST, T0 + 2 * HOUR, T0 + 20 * HOUR))
        at_stop = self.store.save_window(FastingWindow.new(WindowType.FAST, t1, t1 + 16 * HOUR))

        self.assertTrue(self._stop(t1))

        self.assertEqual(self.store.fetch_window(earlier.id).end, t1)
        self.assertIsNone(self.store.fetch_window(at_stop.id))
        upcoming = self.store.fetch_next_window(t1, WindowType.FAST)
        self.assertEqual((upcoming.start, upcoming.end), (t1 + 8 * HOUR, t1 + 24 * HOUR))

    def test_start_during_eating_window_truncates_it(self) -> None:
        self._start(T0)
        t1 = T0 + 10 * HOUR
        self._stop(t1)
        t2 = t1 + 5 * HOUR
        self.assertTrue(self._start(t2))

        windows = _all_windows(self.store)
        self.assertEqual(_spans(windows, WindowType.EAT), [(t1, t2), (t2 + 16 * HOUR, t2 + 24 * HOUR)])
        self.assertEqual(_spans(windows, WindowType.FAST), [(T0, t1), (t2, t2 + 16 * HOUR)])
        self.assertNoOverlappingFasts()

    def test_start_near_planned_fast_reuses_it(self) -> None:
        self._start(T0)
        t1 = T0 + 10 * HOUR
        self._stop(t1)
        planned = self.store.fetch_next_window(t1, WindowType.FAST)

        early = planned.start - timedelta(minutes=5)
        self.assertTrue(self._start(early))

        reused = self.store.fetch_window(planned.id)
        self.assertEqual((reused.start, reused.end), (early, early + 16 * HOUR))
        self.assertEqual(reused.source, WindowSource.USER)
        fasts = _spans(_all_windows(self.store), WindowType.FAST)
        self.assertEqual(fasts, [(T0, t1), (early, early + 16 * HOUR)])

    def test_placeholder_exactly_at_tolerance_is_reused(self) -> None:
        planned = self.store.save_window(
            FastingWindow.new(WindowType.FAST, T0 + timedelta(minutes=10), T0 + 16 * HOUR, source=WindowSource.SYSTEM)
        )
        self.assertTrue(self._start(T0))

        fasts = [w for w in _all_windows(self.store) if w.type is WindowType.FAST]
        self.assertEqual([(w.id, w.start, w.end) for w in fasts], [(planned.id, T0, T0 + 16 * HOUR)])

    def test_placeholder_past_tolerance_is_replaced(self) -> None:
        planned = self.store.save_window(
            FastingWindow.new(WindowType.FAST, T0 + timedelta(minutes=11), T0 + 16 * HOUR, source=WindowSource.SYSTEM)
        )
        self.assertTrue(self._start(T0))

        fasts = [w for w in _all_windows(self.store) if w.type is WindowType.FAST]
        self.assertEqual([(w.start, w.end) for w in fasts], [(T0, T0 + 16 * HOUR)])
        self.assertNotEqual(fasts[0].id, planned.id)
        self.assertIsNone(self.store.fetch_window(planned.id))

    def test_start_within_planned_fast_is_noop(self) -> None:
        self._start(T0)
        self._stop(T0 + 10 * HOUR)
        before = _all_windows(self.store)

        self.assertTrue(self._start(T0 + 18 * HOUR + timedelta(minutes=5)))
        self.assertEqual(_all_windows(self.store), before)

    def test_repeated_cycles_never_overlap(self) -> None:
        self._start(T0)
        self._stop(T0 + 14 * HOUR)
        self._start(T0 + 21 * HOUR)
        self._stop(T0 + 37 * HOUR)
        self._start(T0 + 45 * HOUR + timedelta(minutes=5))
        self._stop(T0 + 60 * HOUR)

        windows = _all_windows(self.store)
        self.assertEqual(
            _spans(windows, WindowType.FAST),
            [
                (T0, T0 + 14 * HOUR),
                (T0 + 21 * HOUR, T0 + 37 * HOUR),
                (T0 + 45 * HOUR, T0 + 60 * HOUR),
                (T0 + 68 * HOUR, T0 + 84 * HOUR),
            ],
        )
        for a, b in combinations(windows, 2):
            self.assertFalse(a.start < b.end and b.start < a.end)

    def test_zero_feed_regimen_plans_back_to_back_fasts(self) -> None:
        self.assertTrue(self.schedule.save_regimen("Full day", 24, 0, set_active=True))
        self._start(T0)
        self.assertEqual(_spans(_all_windows(self.store), WindowType.EAT), [])

        t1 = T0 + 20 * HOUR
        self._stop(t1)
        windows = _all_windows(self.store)
        self.assertEqual(_spans(windows, WindowType.EAT), [])
        self.assertEqual(_spans(windows, WindowType.FAST), [(T0, t1), (t1, t1 + 24 * HOUR)])
        self.assertNoOverlappingFasts()

    def test_active_regimen_drives_planned_durations(self) -> None:
        self.schedule.save_regimen("18 · 6", 18, 6, set_active=True)
        self._start(T0)

        windows = _all_windows(self.store)
        self.assertEqual(_spans(windows, WindowType.FAST), [(T0, T0 + 18 * HOUR)])
        self.assertEqual(_spans(windows, WindowType.EAT), [(T0 + 18 * HOUR, T0 + 24 * HOUR)])
        self.assertEqual(self.schedule.configured_durations, (18 * 3600.0, 6 * 3600.0))

    # Derived state

    def test_progress_and_remaining_time(self) -> None:
        self._start(T0)
        self.clock.current = T0 + 4 * HOUR
        self.schedule.refresh_state()

        self.assertAlmostEqual(self.schedule.progress, 0.25)
        self.assertEqual(self.schedule.remaining_time_label, "12h")
        self.assertEqual(self.schedule.subheadline, "Fasting from 8:00 AM to 12:00 AM")
        self.assertEqual(len(self.schedule.weekly_summary), 7)

    def test_empty_store_shows_default_schedule(self) -> None:
        self.schedule.refresh_state()
        today = self.schedule.today_windows
        self.assertEqual([w.type for w in today], [WindowType.FAST, WindowType.EAT])
        self.assertEqual(today[0].end, datetime(2026, 3, 4, 12, 0))
        self.assertEqual(_all_windows(self.store), [])
        self.assertIs(self.schedule.active_window, today[0])
        self.assertEqual(self.schedule.next_window_after_active, today[1])

    # Manual edits

    def test_create_window_rejects_inverted_range(self) -> None:
        self.assertFalse(self.schedule.create_window(WindowType.FAST, T0, T0 - HOUR))
        self.assertEqual(self.schedule.last_error, "End time must not be before start time.")
        self.assertEqual(_all_windows(self.store), [])

    def test_update_keeps_note_when_none_given(self) -> None:
        self.assertTrue(self.schedule.create_window(WindowType.EAT, T0, T0 + 2 * HOUR, note="brunch"))
        window = _all_windows(self.store)[0]

        self.assertTrue(self.schedule.update_window(window.id, WindowType.EAT, T0, T0 + 3 * HOUR))
        updated = self.schedule.window_details(window.id)
        self.assertEqual(updated.end, T0 + 3 * HOUR)
        self.assertEqual(updated.note, "brunch")

        self.assertTrue(self.schedule.update_window(window.id, WindowType.FAST, T0, T0 + 3 * HOUR, note="changed"))
        updated = self.schedule.window_details(window.id)
        self.assertEqual(updated.type, WindowType.FAST)
        self.assertEqual(updated.note, "changed")

    def test_delete_window(self) -> None:
        self._start(T0)
        fast = self.schedule.active_window
        self.assertTrue(self.schedule.delete_window(fast.id))
        self.assertIsNone(self.schedule.window_details(fast.id))
        self.assertNotEqual(getattr(self.schedule.active_window, "id", None), fast.id)

    # Regimens

    def test_regimen_name_is_required(self) -> None:
        self.assertFalse(self.schedule.save_regimen("   ", 16, 8))
        self.assertEqual(self.schedule.last_error, "Please provide a name for the regimen.")

    def test_exactly_one_regimen_stays_active(self) -> None:
        self.schedule.save_regimen("18 · 6", 18, 6)
        self.schedule.save_regimen("20 · 4", 20, 4, set_active=True)
        regimens = self.schedule.regimens()
        self.assertEqual(len(regimens), 3)
        self.assertEqual([r.name for r in regimens if r.is_active], ["20 · 4"])

        first = regimens[0]
        self.assertTrue(self.schedule.set_active_regimen(first.id))
        self.assertEqual([r.id for r in self.schedule.regimens() if r.is_active], [first.id])
        self.assertEqual(self.schedule.active_regimen.id, first.id)

    def test_editing_active_regimen_keeps_it_active(self) -> None:
        active = self.schedule.regimens()[0]
        self.clock.current = T0 + HOUR
        self.assertTrue(self.schedule.save_regimen("Renamed", 17, 7, existing=active))
        regimens = self.schedule.regimens()
        self.assertEqual(len(regimens), 1)
        self.assertEqual(regimens[0].id, active.id)
        self.assertTrue(regimens[0].is_active)
        self.assertEqual(regimens[0].fast_duration, 17 * 3600)

    def test_deleting_only_regimen_reseeds_default(self) -> None:
        only = self.schedule.regimens()[0]
        self.assertTrue(self.schedule.delete_regimen(only.id))
        regimens = self.schedule.regimens()
        self.assertEqual(len(regimens), 1)
        self.assertTrue(regimens[0].is_active)
        self.assertNotEqual(regimens[0].id, only.id)
        self.assertIsNotNone(self.schedule.active_regimen)

    # Data management

    def test_reset_database(self) -> None:
        self._start(T0)
        self.schedule.save_regimen("20 · 4", 20, 4, set_active=True)
        self.assertTrue(self.schedule.reset_database())
        self.assertEqual(_all_windows(self.store), [])
        self.assertEqual(len(self.schedule.regimens()), 1)
        self.assertEqual(self.schedule.configured_durations, (16 * 3600.0, 8 * 3600.0))

    def test_import_missing_file_reports_error(self) -> None:
        self.assertFalse(self.schedule.import_database(self.tmp_dir / "missing.snapshot"))
        self.assertTrue(self.schedule.last_error)

    # Reminders

    def test_reminders_follow_the_timeline(self) -> None:
        self._start(T0)
        fast = self.schedule.active_window
        self.assertEqual(
            set(self.center.pending_identifiers()),
            {
                reminder_identifier(fast.id, ReminderKind.END_EXACT),
                reminder_identifier(fast.id, ReminderKind.END_REMINDER),
            },
        )

        t1 = T0 + 10 * HOUR
        self._stop(t1)
        planned = self.store.fetch_next_window(t1, WindowType.FAST)
        self.assertEqual(
            set(self.center.pending_identifiers()),
            {reminder_identifier(planned.id, kind) for kind in ReminderKind},
        )
        fire_times = {e.identifier: e.fire_at for e in self.center.pending_events()}
        self.assertEqual(
            fire_times[reminder_identifier(planned.id, ReminderKind.START_REMINDER)],
            planned.start - timedelta(minutes=30),
        )

    def test_zero_lead_time_keeps_only_exact_reminders(self) -> None:
        self._start(T0)
        self.schedule.set_lead_time(0)
        fast = self.schedule.active_window
        self.assertEqual(self.schedule.lead_time, 0)
        self.assertEqual(
            self.center.pending_identifiers(),
            [reminder_identifier(fast.id, ReminderKind.END_EXACT)],
        )

    def test_lead_time_persists_through_settings(self) -> None:
        settings = Settings(self.tmp_dir / "config.json")
        schedule = FastingSchedule(self.store, settings=settings, now=self.clock)
        schedule.set_lead_time(15 * 60)
        self.assertEqual(Settings(self.tmp_dir / "config.json").lead_time, 15 * 60)
        schedule.set_lead_time(-5)
        self.assertEqual(schedule.lead_time, 0)


class InMemoryScheduleTests(_ScheduleCases, unittest.TestCase):
    def make_store(self, clock: FakeClock):
        return InMemoryFastingStore(now=clock)


class SQLiteScheduleTests(_ScheduleCases, unittest.TestCase):
    def make_store(self, clock: FakeClock):
        return FastingDatabase(self.tmp_dir / "fasting.sqlite", now=clock)


class _BrokenStore(InMemoryFastingStore):
    def save_window(self, window, note=None, source=None):
        raise ExecutionError("disk I/O error")


class FailureTests(unittest.TestCase):
    def test_store_failure_is_reported_not_raised(self) -> None:
        clock = FakeClock(T0)
        schedule = FastingSchedule(_BrokenStore(now=clock), now=clock)
        self.assertFalse(schedule.start_fast(T0))
        self.assertEqual(schedule.last_error, "disk I/O error")
        self.assertFalse(schedule.create_window(WindowType.EAT, T0, T0 + HOUR))

    def test_effective_durations(self) -> None:
        self.assertEqual(effective_durations(None), (16 * 3600.0, 8 * 3600.0))
        regimen = FastingRegimen(id="r", name="odd", fast_duration=-5, feed_duration=3600)
        self.assertEqual(effective_durations(regimen), (0.0, 3600.0))


class LockingTests(unittest.TestCase):
    def test_rejected_edit_waits_for_lock(self) -> None:
        clock = FakeClock(T0)
        schedule = FastingSchedule(InMemoryFastingStore(now=clock), now=clock)
        worker = threading.Thread(
            target=schedule.create_window, args=(WindowType.FAST, T0, T0 - HOUR)
        )

        with schedule._lock:
            worker.start()
            worker.join(0.2)
            self.assertTrue(worker.is_alive())
            self.assertIsNone(schedule.last_error)

        worker.join(5)
        self.assertFalse(worker.is_alive())
        self.assertEqual(schedule.last_error, "End time must not be before start time.")


if __name__ == "__main__":
    unittest.main()
