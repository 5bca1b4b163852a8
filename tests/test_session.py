from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
from fakes import FakePage, FakePlaywright, make_session

from bank_portal_export.errors import LaunchError, SessionClosedError
from bank_portal_export.models import SessionState
from bank_portal_export.portal.session import BrowserSessionManager, SessionOptions


def _manager(pw: FakePlaywright) -> BrowserSessionManager:
    return BrowserSessionManager(playwright_factory=lambda: pw)


def test_create_opens_isolated_context(tmp_path: Path) -> None:
    pw = FakePlaywright()
    session = _manager(pw).create(SessionOptions(headless=True, debug_dir=str(tmp_path)))

    assert session.state == SessionState.INITIALIZING
    assert session.id.startswith("session_")
    assert pw.launches[0]["headless"] is True
    assert "--disable-blink-features=AutomationControlled" in pw.launches[0]["args"]
    ctx_kwargs = pw.browsers[0].context_kwargs
    assert ctx_kwargs["viewport"] == {"width": 1280, "height": 720}
    assert "storage_state" not in ctx_kwargs
    session.close()


def test_close_is_idempotent_and_releases_once(tmp_path: Path) -> None:
    pw = FakePlaywright()
    session = _manager(pw).create(SessionOptions(debug_dir=str(tmp_path)))
    browser = pw.browsers[0]

    session.close()
    session.close()

    assert session.state == SessionState.CLOSED
    assert session.is_released
    assert pw.stopped == 1
    assert browser.closed == 1
    assert browser.contexts[0].closed == 1
    assert session.page.closed


def test_close_keeps_failed_state(tmp_path: Path) -> None:
    session = make_session(FakePage(), tmp_path)
    session.transition(SessionState.FAILED)
    session.close()
    assert session.state == SessionState.FAILED
    assert session.is_released


def test_no_transition_out_of_terminal_state(tmp_path: Path) -> None:
    session = make_session(FakePage(), tmp_path)
    session.transition(SessionState.FAILED)
    session.transition(SessionState.ACTIVE)
    assert session.state == SessionState.FAILED


def test_open_releases_on_error(tmp_path: Path) -> None:
    pw = FakePlaywright()
    seen = []
    with pytest.raises(RuntimeError):
        with _manager(pw).open(SessionOptions(debug_dir=str(tmp_path))) as session:
            seen.append(session)
            raise RuntimeError("boom")

    assert seen[0].is_released
    assert pw.stopped == 1


def test_launch_failure_raises_launch_error_and_stops_driver() -> None:
    pw = FakePlaywright(launch_errors={None: RuntimeError("crashed on start")})
    with pytest.raises(LaunchError):
        _manager(pw).create()
    assert pw.stopped == 1


def test_missing_bundled_chromium_falls_back_to_system_channel() -> None:
    pw = FakePlaywright(launch_errors={None: RuntimeError("Executable doesn't exist at /ms-playwright/chromium")})
    session = _manager(pw).create()
    assert [x.get("channel") for x in pw.launches] == [None, "chrome"]
    session.close()


def test_no_usable_browser_raises_launch_error() -> None:
    missing = RuntimeError("Executable doesn't exist")
    pw = FakePlaywright(launch_errors={None: missing, "chrome": missing, "msedge": missing})
    with pytest.raises(LaunchError):
        _manager(pw).create()
    assert pw.stopped == 1


def test_context_failure_closes_browser() -> None:
    pw = FakePlaywright(context_error=RuntimeError("context refused"))
    with pytest.raises(LaunchError):
        _manager(pw).create()
    assert pw.browsers[0].closed == 1
    assert pw.stopped == 1


def test_close_from_other_thread_only_requests_cancel(tmp_path: Path) -> None:
    session = make_session(FakePage(), tmp_path)
    t = threading.Thread(target=session.close)
    t.start()
    t.join()

    assert session.close_requested
    assert not session.is_released
    with pytest.raises(SessionClosedError):
        session.check_open()
    with pytest.raises(SessionClosedError):
        session.pause(10)

    session.close()
    assert session.is_released


def test_storage_state_is_loaded_when_valid(tmp_path: Path) -> None:
    state = tmp_path / "storage_state.json"
    state.write_text(json.dumps({"cookies": [], "origins": []}), encoding="utf-8")
    pw = FakePlaywright()
    session = _manager(pw).create(SessionOptions(storage_state_path=str(state)))
    assert pw.browsers[0].context_kwargs["storage_state"] == str(state)
    session.close()


def test_corrupt_storage_state_is_quarantined(tmp_path: Path) -> None:
    state = tmp_path / "storage_state.json"
    state.write_text("{not json", encoding="utf-8")
    pw = FakePlaywright()
    session = _manager(pw).create(SessionOptions(storage_state_path=str(state)))

    assert "storage_state" not in pw.browsers[0].context_kwargs
    assert not state.exists()
    assert list(tmp_path.glob("storage_state.json.corrupt-*"))
    session.close()


def test_save_storage_state_writes_atomically(tmp_path: Path) -> None:
    state = tmp_path / "state" / "storage_state.json"
    session = make_session(FakePage(), tmp_path, storage_state_path=str(state))
    session.save_storage_state()

    assert json.loads(state.read_text(encoding="utf-8")) == {"cookies": [], "origins": []}
    assert not list(state.parent.glob("*.tmp"))


def test_step_debug_saves_numbered_screenshots(tmp_path: Path) -> None:
    session = make_session(FakePage(), tmp_path, step_debug=True)
    session.step("after goto")
    session.step("username filled")
    names = sorted(p.name for p in (tmp_path / "debug").iterdir())
    assert names == ["step_01_after_goto.png", "step_02_username_filled.png"]
