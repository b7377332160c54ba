from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol

from .models import FastingRegimen, FastingWindow, WindowSource, WindowType, new_identifier

DEFAULT_REGIMEN_NAME = "Standard 16 · 8"
DEFAULT_FAST_DURATION = 16 * 3600
DEFAULT_FEED_DURATION = 8 * 3600

SNAPSHOT_FORMAT = "fasting-tracker-snapshot"


def default_regimen(now: datetime) -> FastingRegimen:
    return FastingRegimen(
        id=new_identifier(),
        name=DEFAULT_REGIMEN_NAME,
        fast_duration=DEFAULT_FAST_DURATION,
        feed_duration=DEFAULT_FEED_DURATION,
        is_active=True,
        created_at=now,
        updated_at=now,
    )


class FastingStore(Protocol):
    """Persistence contract for windows and regimens.

    Each call is atomic with respect to the others. Sequences of calls are
    not, so callers that need several steps must serialize themselves.
    """

    def fetch_windows(self, start: datetime, end: datetime) -> list[FastingWindow]: ...

    def fetch_window(self, window_id: str) -> FastingWindow | None: ...

    def fetch_active_window(self, at: datetime) -> FastingWindow | None: ...

    def fetch_most_recent_window(
        self, before: datetime, type: WindowType | None = None
    ) -> FastingWindow | None: ...

    def fetch_next_window(
        self, after: datetime, type: WindowType | None = None
    ) -> FastingWindow | None: ...

    def save_window(
        self,
        window: FastingWindow,
        note: str | None = None,
        source: WindowSource | None = None,
    ) -> FastingWindow: ...

    def delete_window(self, window_id: str) -> None: ...

    def fetch_regimens(self) -> list[FastingRegimen]: ...

    def fetch_active_regimen(self) -> FastingRegimen | None: ...

    def save_regimen(self, regimen: FastingRegimen) -> None: ...

    def delete_regimen(self, regimen_id: str) -> None: ...

    def set_active_regimen(self, regimen_id: str | None) -> None: ...

    def export_snapshot(self) -> bytes: ...

    def import_snapshot(self, source: Path) -> None: ...

    def reset(self) -> None: ...


class InMemoryFastingStore:
    """Mapping-backed store for tests and previews.

    Snapshots are JSON documents rather than SQLite files.
    """

    def __init__(
        self,
        windows: list[FastingWindow] | None = None,
        regimens: list[FastingRegimen] | None = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self._now = now
        self._lock = threading.Lock()
        self._windows: dict[str, FastingWindow] = {}
        for window in windows or []:
            self._windows[window.id] = window
        self._regimens: dict[str, FastingRegimen] = {}
        for regimen in regimens or []:
            self._regimens[regimen.id] = regimen
        with self._lock:
            self._ensure_active()

    # Windows

    def fetch_windows(self, start: datetime, end: datetime) -> list[FastingWindow]:
        with self._lock:
            matches = [w for w in self._windows.values() if w.start < end and w.end > start]
        return sorted(matches, key=lambda w: w.start)

    def fetch_window(self, window_id: str) -> FastingWindow | None:
        with self._lock:
            return self._windows.get(window_id)

    def fetch_active_window(self, at: datetime) -> FastingWindow | None:
        with self._lock:
            covering = [w for w in self._windows.values() if w.start <= at < w.end]
        if not covering:
            return None
        return max(covering, key=lambda w: w.start)

    def fetch_most_recent_window(
        self, before: datetime, type: WindowType | None = None
    ) -> FastingWindow | None:
        with self._lock:
            matches = [
                w
                for w in self._windows.values()
                if w.start <= before and (type is None or w.type is type)
            ]
        if not matches:
            return None
        return max(matches, key=lambda w: w.start)

    def fetch_next_window(
        self, after: datetime, type: WindowType | None = None
    ) -> FastingWindow | None:
        with self._lock:
            matches = [
                w
                for w in self._windows.values()
                if w.start >= after and (type is None or w.type is type)
            ]
        if not matches:
            return None
        return min(matches, key=lambda w: w.start)

    def save_window(
        self,
        window: FastingWindow,
        note: str | None = None,
        source: WindowSource | None = None,
    ) -> FastingWindow:
        with self._lock:
            existing = self._windows.get(window.id)
            created_at = existing.created_at if existing is not None else window.start
            stored = replace(
                window,
                note=note if note is not None else window.note,
                source=source if source is not None else window.source,
                created_at=created_at,
                updated_at=self._now(),
            )
            self._windows[window.id] = stored
            return stored

    def delete_window(self, window_id: str) -> None:
        with self._lock:
            self._windows.pop(window_id, None)

    # Regimens

    def fetch_regimens(self) -> list[FastingRegimen]:
        with self._lock:
            self._ensure_active()
            return self._sorted_regimens()

    def fetch_active_regimen(self) -> FastingRegimen | None:
        with self._lock:
            self._ensure_active()
            for regimen in self._regimens.values():
                if regimen.is_active:
                    return regimen
        return None

    def save_regimen(self, regimen: FastingRegimen) -> None:
        with self._lock:
            self._regimens[regimen.id] = regimen
            if regimen.is_active:
                self._activate(regimen.id)
            else:
                self._ensure_active()

    def delete_regimen(self, regimen_id: str) -> None:
        with self._lock:
            self._regimens.pop(regimen_id, None)
            self._ensure_active()

    def set_active_regimen(self, regimen_id: str | None) -> None:
        with self._lock:
            if regimen_id is not None and regimen_id not in self._regimens:
                return
            if regimen_id is None:
                ordered = self._sorted_regimens()
                if not ordered:
                    self._ensure_active()
                    return
                regimen_id = ordered[0].id
            self._activate(regimen_id)

    # Snapshots

    def export_snapshot(self) -> bytes:
        with self._lock:
            payload = {
                "format": SNAPSHOT_FORMAT,
                "windows": [_window_to_dict(w) for w in self._windows.values()],
                "regimens": [_regimen_to_dict(r) for r in self._regimens.values()],
            }
        return json.dumps(payload, indent=2).encode("utf-8")

    def import_snapshot(self, source: Path) -> None:
        try:
            payload = json.loads(Path(source).read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"Unable to read snapshot: {exc}") from exc
        if not isinstance(payload, dict) or payload.get("format") != SNAPSHOT_FORMAT:
            raise ValueError("Source is not a fasting tracker snapshot.")
        try:
            windows = {w.id: w for w in (_window_from_dict(item) for item in payload.get("windows", []))}
            regimens = {r.id: r for r in (_regimen_from_dict(item) for item in payload.get("regimens", []))}
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Snapshot contains invalid records: {exc}") from exc
        with self._lock:
            self._windows = windows
            self._regimens = regimens
            self._ensure_active()

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._regimens.clear()
            self._ensure_active()

    def _sorted_regimens(self) -> list[FastingRegimen]:
        return sorted(self._regimens.values(), key=lambda r: r.created_at)

    def _activate(self, regimen_id: str) -> None:
        now = self._now()
        for key, regimen in list(self._regimens.items()):
            if key == regimen_id:
                self._regimens[key] = replace(regimen, is_active=True, updated_at=now)
            elif regimen.is_active:
                self._regimens[key] = replace(regimen, is_active=False, updated_at=now)

    def _ensure_active(self) -> None:
        if not self._regimens:
            seeded = default_regimen(self._now())
            self._regimens[seeded.id] = seeded
            return
        active = [r for r in self._regimens.values() if r.is_active]
        if len(active) == 1:
            return
        self._activate(self._sorted_regimens()[0].id)


def _window_to_dict(window: FastingWindow) -> dict[str, object]:
    return {
        "id": window.id,
        "type": window.type.value,
        "start": window.start.timestamp(),
        "end": window.end.timestamp(),
        "note": window.note,
        "source": window.source.value,
        "created_at": window.created_at.timestamp() if window.created_at else window.start.timestamp(),
        "updated_at": window.updated_at.timestamp() if window.updated_at else None,
    }


def _window_from_dict(item: dict) -> FastingWindow:
    updated_at = item.get("updated_at")
    return FastingWindow(
        id=str(item["id"]),
        type=WindowType(item["type"]),
        start=datetime.fromtimestamp(float(item["start"])),
        end=datetime.fromtimestamp(float(item["end"])),
        note=item.get("note"),
        source=WindowSource(item.get("source", WindowSource.USER.value)),
        created_at=datetime.fromtimestamp(float(item["created_at"])),
        updated_at=datetime.fromtimestamp(float(updated_at)) if updated_at is not None else None,
    )


def _regimen_to_dict(regimen: FastingRegimen) -> dict[str, object]:
    return {
        "id": regimen.id,
        "name": regimen.name,
        "fast_duration": regimen.fast_duration,
        "feed_duration": regimen.feed_duration,
        "is_active": regimen.is_active,
        "created_at": regimen.created_at.timestamp(),
        "updated_at": regimen.updated_at.timestamp(),
    }


def _regimen_from_dict(item: dict) -> FastingRegimen:
    return FastingRegimen(
        id=str(item["id"]),
        name=str(item["name"]),
        fast_duration=float(item["fast_duration"]),
        feed_duration=float(item["feed_duration"]),
        is_active=bool(item["is_active"]),
        created_at=datetime.fromtimestamp(float(item["created_at"])),
        updated_at=datetime.fromtimestamp(float(item["updated_at"])),
    )
