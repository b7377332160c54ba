"""
Reminder derivation and sync.

Reminders are never stored. They are recomputed from the fast windows around
the reference time and diffed against whatever the notification service
reports as pending, so repeated syncs converge on the same set.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Protocol, Sequence

from .logger import get_logger
from .models import FastingWindow, ReminderEvent, WindowType
from .store import FastingStore
from .summary import format_time_of_day

logger = get_logger(__name__)

REMINDER_PREFIX = "fasting.switch"
DEFAULT_CANDIDATE_LIMIT = 6


class ReminderKind(str, Enum):
    START_REMINDER = "startReminder"
    START_EXACT = "startExact"
    END_REMINDER = "endReminder"
    END_EXACT = "endExact"


class AuthorizationStatus(str, Enum):
    NOT_DETERMINED = "not_determined"
    DENIED = "denied"
    AUTHORIZED = "authorized"
    PROVISIONAL = "provisional"


_SCHEDULABLE = {AuthorizationStatus.AUTHORIZED, AuthorizationStatus.PROVISIONAL}


def reminder_identifier(window_id: str, kind: ReminderKind) -> str:
    return f"{REMINDER_PREFIX}.{window_id}.{kind.value}"


class NotificationCenter(Protocol):
    """The platform notification service."""

    def authorization_status(self) -> AuthorizationStatus: ...

    def request_authorization(self) -> bool: ...

    def pending_identifiers(self) -> list[str]: ...

    def add(self, event: ReminderEvent) -> None:
        """Schedule ``event``, replacing any pending request with its identifier."""
        ...

    def remove(self, identifiers: Iterable[str]) -> None: ...


class InMemoryNotificationCenter:
    """Notification center that only remembers what it was asked to deliver."""

    def __init__(self, grant: bool = True):
        self._grant = grant
        self._status = AuthorizationStatus.NOT_DETERMINED
        self._pending: dict[str, ReminderEvent] = {}
        self._lock = threading.Lock()
        self.added: list[str] = []
        self.removed: list[str] = []

    def authorization_status(self) -> AuthorizationStatus:
        return self._status

    def request_authorization(self) -> bool:
        self._status = AuthorizationStatus.AUTHORIZED if self._grant else AuthorizationStatus.DENIED
        return self._grant

    def pending_identifiers(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def pending_events(self) -> list[ReminderEvent]:
        with self._lock:
            return sorted(self._pending.values(), key=lambda e: e.fire_at)

    def add(self, event: ReminderEvent) -> None:
        with self._lock:
            self._pending[event.identifier] = event
            self.added.append(event.identifier)

    def remove(self, identifiers: Iterable[str]) -> None:
        with self._lock:
            for identifier in identifiers:
                if self._pending.pop(identifier, None) is not None:
                    self.removed.append(identifier)


def build_reminder_events(
    windows: Sequence[FastingWindow],
    lead_time: float,
    reference: datetime,
) -> list[ReminderEvent]:
    lead = timedelta(seconds=max(lead_time, 0))
    fasts = sorted((w for w in windows if w.type is WindowType.FAST), key=lambda w: w.start)

    events: list[ReminderEvent] = []
    for window in fasts:
        if window.start > reference:
            events.append(
                ReminderEvent(
                    identifier=reminder_identifier(window.id, ReminderKind.START_EXACT),
                    fire_at=window.start,
                    title="Start Fasting",
                    body="It's time to start your fast.",
                )
            )
            if lead and window.start - lead > reference:
                events.append(
                    ReminderEvent(
                        identifier=reminder_identifier(window.id, ReminderKind.START_REMINDER),
                        fire_at=window.start - lead,
                        title="Fast Starting Soon",
                        body=f"Your fast begins at {format_time_of_day(window.start)}.",
                    )
                )

        if window.end > reference:
            events.append(
                ReminderEvent(
                    identifier=reminder_identifier(window.id, ReminderKind.END_EXACT),
                    fire_at=window.end,
                    title="Stop Fasting",
                    body="You can end your fast now.",
                )
            )
            if lead and window.end - lead > reference:
                events.append(
                    ReminderEvent(
                        identifier=reminder_identifier(window.id, ReminderKind.END_REMINDER),
                        fire_at=window.end - lead,
                        title="Fast Ending Soon",
                        body=f"Your fast ends at {format_time_of_day(window.end)}.",
                    )
                )

    return sorted(events, key=lambda e: e.fire_at)


def collect_reminder_candidates(
    store: FastingStore,
    schedule: Sequence[FastingWindow],
    active_window: FastingWindow | None,
    reference: datetime,
    limit: int = DEFAULT_CANDIDATE_LIMIT,
) -> list[FastingWindow]:
    """Fast windows worth reminding about, deduplicated by id and ordered by start."""
    candidates: dict[str, FastingWindow] = {}
    if active_window is not None and active_window.type is WindowType.FAST:
        candidates[active_window.id] = active_window
    for window in schedule:
        if window.type is WindowType.FAST:
            candidates[window.id] = window

    cursor = reference
    attempts = 0
    while len(candidates) < limit and attempts < limit * 2:
        upcoming = store.fetch_next_window(cursor, WindowType.FAST)
        if upcoming is None:
            break
        candidates.setdefault(upcoming.id, upcoming)
        cursor = max(upcoming.end, upcoming.start) + timedelta(seconds=1)
        attempts += 1

    return sorted(candidates.values(), key=lambda w: w.start)


class ReminderScheduler:
    def __init__(self, center: NotificationCenter):
        self._center = center

    def request_authorization_if_needed(self) -> None:
        if self._center.authorization_status() is AuthorizationStatus.NOT_DETERMINED:
            granted = self._center.request_authorization()
            logger.info("Notification authorization %s", "granted" if granted else "denied")

    def pending_identifiers(self) -> list[str]:
        return [i for i in self._center.pending_identifiers() if i.startswith(REMINDER_PREFIX)]

    def clear_all(self) -> None:
        identifiers = self.pending_identifiers()
        if identifiers:
            self._center.remove(identifiers)

    def update_notifications(
        self,
        windows: Sequence[FastingWindow],
        lead_time: float,
        reference: datetime,
    ) -> list[ReminderEvent]:
        if not windows:
            self.clear_all()
            return []

        self.request_authorization_if_needed()
        if self._center.authorization_status() not in _SCHEDULABLE:
            return []

        events = build_reminder_events(windows, lead_time, reference)
        if not events:
            self.clear_all()
            return []

        wanted = {event.identifier for event in events}
        obsolete = sorted(set(self.pending_identifiers()) - wanted)
        if obsolete:
            self._center.remove(obsolete)

        # add() replaces a pending request with the same identifier, so an
        # event whose window moved picks up its new fire time.
        for event in events:
            try:
                self._center.add(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to schedule notification %s: %s", event.identifier, exc)
        return events
