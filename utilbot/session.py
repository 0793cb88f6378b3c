# -*- coding: utf-8 -*-
"""
Per-user mode/session registry.

One SessionState per user holds the active Mode and the payload for each mode
the user has touched. Only the payload matching the active mode is addressable
through `mutate_payload`; mode-entry commands reset it via `enter_mode`.
KML payloads are mirrored to disk after every mutation.
"""

# --- IMPORTS ---
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

# Local Imports
from .constants import (
    LAST_MEASUREMENT_RETENTION_SECONDS, MEASUREMENT_TIMEOUT_SECONDS, TRANSPORT_FOOT
)
from .errors import SessionInvariantError

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)


# --- MODES ---
class Mode(str, Enum):
    NONE = "none"
    MENU = "menu"
    LOCATION = "location"
    ARCHIVE = "archive"
    WORKBOOK = "workbook"
    OCR = "ocr"
    KML = "kml"
    GEOTAGS = "geotags"


MODE_LABELS = {
    Mode.NONE: "None",
    Mode.MENU: "Menu",
    Mode.LOCATION: "Location",
    Mode.ARCHIVE: "Archive",
    Mode.WORKBOOK: "Workbook",
    Mode.OCR: "OCR",
    Mode.KML: "KML",
    Mode.GEOTAGS: "Geotags",
}

ENTRY_COMMANDS = {
    Mode.MENU: "/menu",
    Mode.LOCATION: "/lokasi",
    Mode.ARCHIVE: "/rar",
    Mode.WORKBOOK: "/workbook",
    Mode.OCR: "/ocr",
    Mode.KML: "/kml",
    Mode.GEOTAGS: "/geotags",
}


# --- PAYLOADS ---
@dataclass
class Point:
    latitude: float
    longitude: float
    address: str | None = None


@dataclass
class ArchivePayload:
    intent: str | None = None  # "zip" | "extract" | "search"
    files: list = field(default_factory=list)
    search_pattern: str | None = None


@dataclass
class MeasurementPayload:
    is_active: bool = False
    first_point: Point | None = None
    second_point: Point | None = None
    transport_mode: str = TRANSPORT_FOOT
    updated_at: float = 0.0


@dataclass
class OcrPayload:
    processing_image: bool = False
    images_processed: int = 0
    last_image_path: str | None = None


@dataclass
class Placemark:
    name: str
    latitude: float
    longitude: float


@dataclass
class LineTrack:
    name: str
    points: list = field(default_factory=list)  # [(lat, lon), ...]


@dataclass
class KmlPayload:
    placemarks: list = field(default_factory=list)
    lines: list = field(default_factory=list)
    current_line: LineTrack | None = None
    persistent_point_name: str | None = None
    # Queued by "/addpoint X"; consumed by the next point. Not persisted.
    pending_point_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "placemarks": [
                {"name": p.name, "latitude": p.latitude, "longitude": p.longitude}
                for p in self.placemarks
            ],
            "lines": [{"name": l.name, "points": [list(pt) for pt in l.points]} for l in self.lines],
            "current_line": (
                {"name": self.current_line.name, "points": [list(pt) for pt in self.current_line.points]}
                if self.current_line else None
            ),
            "persistent_point_name": self.persistent_point_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KmlPayload":
        """Builds a payload from its JSON form. Raises on structurally invalid input."""
        if not isinstance(data, dict):
            raise ValueError("KML data must be a JSON object")
        current = data.get("current_line")
        return cls(
            placemarks=[
                Placemark(str(p["name"]), float(p["latitude"]), float(p["longitude"]))
                for p in data.get("placemarks", [])
            ],
            lines=[
                LineTrack(str(l["name"]), [(float(a), float(b)) for a, b in l["points"]])
                for l in data.get("lines", [])
            ],
            current_line=(
                LineTrack(str(current["name"]), [(float(a), float(b)) for a, b in current["points"]])
                if current else None
            ),
            persistent_point_name=data.get("persistent_point_name") or None,
        )


@dataclass
class WorkbookPayload:
    sheet_path: str = ""
    image_counter: int = 0
    download_count: int = 0


@dataclass
class GeotagsPayload:
    pending_photo_file_id: str | None = None
    pending_location: Point | None = None
    sticky_location: Point | None = None
    waiting_for_sticky: bool = False
    custom_datetime: datetime | None = None


PAYLOAD_FACTORIES = {
    Mode.ARCHIVE: ArchivePayload,
    Mode.LOCATION: MeasurementPayload,
    Mode.OCR: OcrPayload,
    Mode.KML: KmlPayload,
    Mode.WORKBOOK: WorkbookPayload,
}


# --- SIDE RECORDS ---
@dataclass
class ArchiveStats:
    zip_count: int = 0
    extract_count: int = 0
    search_count: int = 0
    files_sent: int = 0
    files_received: int = 0
    last_used: float = 0.0


@dataclass
class LastMeasurement:
    first_point: Point
    second_point: Point
    completed_at: float


@dataclass
class SessionState:
    mode: Mode = Mode.NONE
    last_activity: float = 0.0
    payloads: dict = field(default_factory=dict)


# --- ADVISORY LOCKS ---
class AdvisoryLocks:
    """Per-user, per-feature asyncio locks."""

    def __init__(self):
        self._locks: dict[tuple[int, str], asyncio.Lock] = {}

    def _lock(self, user_id: int, feature: str) -> asyncio.Lock:
        key = (user_id, feature)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_busy(self, user_id: int, feature: str) -> bool:
        return self._lock(user_id, feature).locked()

    @asynccontextmanager
    async def hold(self, user_id: int, feature: str):
        async with self._lock(user_id, feature):
            yield


# --- SESSION STORE ---
class SessionStore:
    def __init__(self, kml_files=None, clock: Callable[[], float] = time.time):
        self.kml_files = kml_files
        self.clock = clock
        self.locks = AdvisoryLocks()
        self._sessions: dict[int, SessionState] = {}
        self._chat_geotags: dict[int, GeotagsPayload] = {}
        self._stats: dict[int, ArchiveStats] = {}
        self._last_measurements: dict[int, LastMeasurement] = {}
        self._processed: set[tuple[int, int]] = set()

    def _session(self, user_id: int) -> SessionState:
        state = self._sessions.get(user_id)
        if state is None:
            state = SessionState(last_activity=self.clock())
            self._sessions[user_id] = state
        return state

    # Mode
    def get_mode(self, user_id: int) -> Mode:
        state = self._sessions.get(user_id)
        return state.mode if state else Mode.NONE

    def set_mode(self, user_id: int, mode: Mode) -> None:
        state = self._session(user_id)
        previous = state.mode
        state.mode = mode
        state.last_activity = self.clock()
        logger.info(f"User {user_id} mode: {previous.value} -> {mode.value}")

    def touch(self, user_id: int) -> None:
        self._session(user_id).last_activity = self.clock()

    def require_mode(self, user_id: int, mode: Mode) -> None:
        current = self.get_mode(user_id)
        if current != mode:
            raise SessionInvariantError(
                f"User {user_id} payload for mode '{mode.value}' touched while in mode '{current.value}'"
            )

    def enter_mode(self, user_id: int, mode: Mode) -> Any:
        """Switches to `mode` and resets its payload to the default. Returns the fresh payload."""
        self.set_mode(user_id, mode)
        state = self._session(user_id)
        if mode == Mode.KML:
            payload = self._load_kml(user_id)
            payload.current_line = None
            payload.pending_point_name = None
            state.payloads[mode] = payload
            self._save_kml(user_id, payload)
            return payload
        factory = PAYLOAD_FACTORIES.get(mode)
        if factory is None:
            return None
        state.payloads[mode] = factory()
        return state.payloads[mode]

    # Payloads
    def get_or_init_payload(self, user_id: int, mode: Mode) -> Any:
        state = self._session(user_id)
        if mode not in state.payloads:
            if mode == Mode.KML:
                state.payloads[mode] = self._load_kml(user_id)
            elif mode in PAYLOAD_FACTORIES:
                state.payloads[mode] = PAYLOAD_FACTORIES[mode]()
            else:
                raise SessionInvariantError(f"Mode '{mode.value}' has no per-user payload")
        return state.payloads[mode]

    def mutate_payload(self, user_id: int, mode: Mode, fn: Callable[[Any], Any]) -> Any:
        """
        Applies `fn` to the payload of `mode`. The user must currently be in
        `mode`; anything else is a routing bug and raises SessionInvariantError.
        KML payloads are written to disk after every mutation.
        """
        self.require_mode(user_id, mode)
        payload = self.get_or_init_payload(user_id, mode)
        result = fn(payload)
        self.touch(user_id)
        if mode == Mode.KML:
            self._save_kml(user_id, payload)
        return result

    def _load_kml(self, user_id: int) -> KmlPayload:
        if self.kml_files is None:
            return KmlPayload()
        return self.kml_files.load(user_id)

    def _save_kml(self, user_id: int, payload: KmlPayload) -> None:
        if self.kml_files is not None:
            self.kml_files.save(user_id, payload)

    # Geotags state is keyed by chat, not by user.
    def geotags_for_chat(self, chat_id: int) -> GeotagsPayload:
        if chat_id not in self._chat_geotags:
            self._chat_geotags[chat_id] = GeotagsPayload()
        return self._chat_geotags[chat_id]

    def reset_geotags(self, chat_id: int) -> GeotagsPayload:
        self._chat_geotags[chat_id] = GeotagsPayload()
        return self._chat_geotags[chat_id]

    # Measurement helpers
    def expire_measurement_if_stale(self, user_id: int) -> bool:
        """Resets an active measurement idle for longer than the timeout. Returns True if it did."""
        payload = self.get_or_init_payload(user_id, Mode.LOCATION)
        elapsed = self.clock() - payload.updated_at
        if payload.is_active and elapsed > MEASUREMENT_TIMEOUT_SECONDS:
            logger.info(f"Measurement for user {user_id} expired after {round(elapsed)}s")
            self._session(user_id).payloads[Mode.LOCATION] = MeasurementPayload(updated_at=self.clock())
            return True
        return False

    def remember_measurement(self, user_id: int, first_point: Point, second_point: Point) -> None:
        self._last_measurements[user_id] = LastMeasurement(first_point, second_point, self.clock())

    def recent_measurement(self, user_id: int) -> LastMeasurement | None:
        last = self._last_measurements.get(user_id)
        if last is None:
            return None
        if self.clock() - last.completed_at > LAST_MEASUREMENT_RETENTION_SECONDS:
            del self._last_measurements[user_id]
            return None
        return last

    def forget_measurement(self, user_id: int) -> None:
        self._last_measurements.pop(user_id, None)

    # Archive usage counters (process lifetime)
    def stats(self, user_id: int) -> ArchiveStats:
        if user_id not in self._stats:
            self._stats[user_id] = ArchiveStats(last_used=self.clock())
        return self._stats[user_id]

    def bump_stats(self, user_id: int, **increments: int) -> ArchiveStats:
        stats = self.stats(user_id)
        for name, amount in increments.items():
            setattr(stats, name, getattr(stats, name) + amount)
        stats.last_used = self.clock()
        return stats

    # Duplicate-dispatch guard
    def mark_processed(self, chat_id: int, message_id: int | None) -> bool:
        """Returns False if this message was already seen. Message ids are only unique per chat."""
        if message_id is None:
            return True
        key = (chat_id, message_id)
        if key in self._processed:
            return False
        self._processed.add(key)
        return True

    def clear_processed(self) -> None:
        self._processed.clear()
