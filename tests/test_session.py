import json

import pytest

from utilbot.errors import SessionInvariantError
from utilbot.persistence import KmlFileStore
from utilbot.session import (
    ArchivePayload, KmlPayload, LineTrack, Mode, Placemark, Point, SessionStore, WorkbookPayload
)
from utilbot.storage import UserDirectories

from conftest import FakeClock

USER = 42


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dirs(tmp_path):
    return UserDirectories(tmp_path)


@pytest.fixture
def store(dirs, clock):
    return SessionStore(kml_files=KmlFileStore(dirs), clock=clock)


def test_mode_defaults_to_none_and_tracks_last_transition(store):
    assert store.get_mode(USER) == Mode.NONE
    store.enter_mode(USER, Mode.ARCHIVE)
    assert store.get_mode(USER) == Mode.ARCHIVE
    store.set_mode(USER, Mode.MENU)
    assert store.get_mode(USER) == Mode.MENU
    store.enter_mode(USER, Mode.OCR)
    assert store.get_mode(USER) == Mode.OCR


def test_set_mode_updates_last_activity(store, clock):
    store.set_mode(USER, Mode.MENU)
    clock.advance(50)
    store.set_mode(USER, Mode.LOCATION)
    assert store._sessions[USER].last_activity == clock.now


def test_enter_mode_resets_payload(store):
    store.enter_mode(USER, Mode.ARCHIVE)

    def _fill(p: ArchivePayload):
        p.intent = "zip"
        p.files.append("/tmp/a.txt")

    store.mutate_payload(USER, Mode.ARCHIVE, _fill)
    assert store.get_or_init_payload(USER, Mode.ARCHIVE).files == ["/tmp/a.txt"]

    fresh = store.enter_mode(USER, Mode.ARCHIVE)
    assert fresh == ArchivePayload()
    assert store.get_or_init_payload(USER, Mode.ARCHIVE) is fresh


def test_enter_workbook_clears_selected_sheet(store):
    store.enter_mode(USER, Mode.WORKBOOK)
    store.mutate_payload(USER, Mode.WORKBOOK, lambda p: setattr(p, "sheet_path", "/tmp/sheet1"))
    assert store.enter_mode(USER, Mode.WORKBOOK) == WorkbookPayload()


def test_mutate_payload_for_other_mode_fails_fast(store):
    store.enter_mode(USER, Mode.OCR)
    with pytest.raises(SessionInvariantError):
        store.mutate_payload(USER, Mode.ARCHIVE, lambda p: p.files.append("x"))


def test_return_to_menu_leaves_old_payload_inert(store):
    store.enter_mode(USER, Mode.ARCHIVE)
    store.mutate_payload(USER, Mode.ARCHIVE, lambda p: setattr(p, "intent", "zip"))
    store.set_mode(USER, Mode.MENU)
    with pytest.raises(SessionInvariantError):
        store.mutate_payload(USER, Mode.ARCHIVE, lambda p: setattr(p, "intent", None))
    # Still there, just not addressable until the mode is re-entered.
    assert store.get_or_init_payload(USER, Mode.ARCHIVE).intent == "zip"


def test_kml_mutations_are_flushed_to_disk(store, dirs):
    store.enter_mode(USER, Mode.KML)
    store.mutate_payload(USER, Mode.KML, lambda p: p.placemarks.append(Placemark("Home", -6.2, 106.8)))
    with open(dirs.user_root(USER) / "kml_data.json", encoding="utf-8") as f:
        data = json.load(f)
    assert data["placemarks"] == [{"name": "Home", "latitude": -6.2, "longitude": 106.8}]
    assert "pending_point_name" not in data


def test_enter_kml_keeps_saved_data_but_drops_draft_line(store, dirs, clock):
    store.enter_mode(USER, Mode.KML)

    def _fill(p: KmlPayload):
        p.placemarks.append(Placemark("A", 1.0, 2.0))
        p.current_line = LineTrack("Draft", [(1.0, 2.0)])
        p.pending_point_name = "Next"

    store.mutate_payload(USER, Mode.KML, _fill)

    # A fresh process reloads from disk.
    reloaded = SessionStore(kml_files=KmlFileStore(dirs), clock=clock)
    payload = reloaded.enter_mode(USER, Mode.KML)
    assert [p.name for p in payload.placemarks] == ["A"]
    assert payload.current_line is None
    assert payload.pending_point_name is None


def test_corrupt_kml_file_is_quarantined(dirs):
    root = dirs.ensure_user_root(USER)
    (root / "kml_data.json").write_text("{not json", encoding="utf-8")

    payload = KmlFileStore(dirs).load(USER)

    assert payload == KmlPayload()
    backups = list(root.glob("kml_data_backup_*.json"))
    assert len(backups) == 1
    assert backups[0].read_text(encoding="utf-8") == "{not json"
    with open(root / "kml_data.json", encoding="utf-8") as f:
        assert json.load(f)["placemarks"] == []


def test_structurally_invalid_kml_file_is_quarantined(dirs):
    root = dirs.ensure_user_root(USER)
    (root / "kml_data.json").write_text(json.dumps({"placemarks": [{"name": "x"}]}), encoding="utf-8")
    assert KmlFileStore(dirs).load(USER) == KmlPayload()
    assert list(root.glob("kml_data_backup_*.json"))


def test_unreadable_kml_path_is_moved_aside(dirs):
    root = dirs.ensure_user_root(USER)
    (root / "kml_data.json").mkdir()

    assert KmlFileStore(dirs).load(USER) == KmlPayload()
    backups = list(root.glob("kml_data_backup_*.json"))
    assert len(backups) == 1
    assert backups[0].is_dir()
    assert (root / "kml_data.json").is_file()


def test_failed_quarantine_still_yields_default_payload(dirs, monkeypatch):
    root = dirs.ensure_user_root(USER)
    (root / "kml_data.json").write_text("{not json", encoding="utf-8")

    def _refuse(src, dst):
        raise PermissionError("read-only")

    monkeypatch.setattr("utilbot.persistence.os.replace", _refuse)
    assert KmlFileStore(dirs).load(USER) == KmlPayload()
    assert (root / "kml_data.json").read_text(encoding="utf-8") == "{not json"


def test_measurement_expires_after_ten_minutes(store, clock):
    store.enter_mode(USER, Mode.LOCATION)

    def _start(p):
        p.is_active = True
        p.updated_at = clock.now

    store.mutate_payload(USER, Mode.LOCATION, _start)
    clock.advance(599)
    assert not store.expire_measurement_if_stale(USER)
    clock.advance(2)
    assert store.expire_measurement_if_stale(USER)
    assert not store.get_or_init_payload(USER, Mode.LOCATION).is_active


def test_recent_measurement_is_kept_thirty_seconds(store, clock):
    store.remember_measurement(USER, Point(1, 2), Point(3, 4))
    clock.advance(30)
    assert store.recent_measurement(USER) is not None
    clock.advance(1)
    assert store.recent_measurement(USER) is None


def test_processed_message_cache_is_per_chat(store):
    chat, other_chat = 10, 20
    assert store.mark_processed(chat, 1)
    assert not store.mark_processed(chat, 1)
    # Telegram numbers messages per chat, so the same id elsewhere is a new message.
    assert store.mark_processed(other_chat, 1)
    store.clear_processed()
    assert store.mark_processed(chat, 1)


def test_geotags_state_is_per_chat(store):
    store.geotags_for_chat(1).waiting_for_sticky = True
    assert not store.geotags_for_chat(2).waiting_for_sticky
    assert store.reset_geotags(1).waiting_for_sticky is False


@pytest.mark.asyncio
async def test_advisory_lock_reports_busy(store):
    assert not store.locks.is_busy(USER, "ocr")
    async with store.locks.hold(USER, "ocr"):
        assert store.locks.is_busy(USER, "ocr")
        assert not store.locks.is_busy(USER, "archive")
    assert not store.locks.is_busy(USER, "ocr")
