from __future__ import annotations

from pathlib import Path

import pytest
from fakes import LOGIN_URL, FakeElement, FakePage, FakePlaywright, login_page, make_session, show_dashboard
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from bank_portal_export.errors import AuthenticationError, LoginFormNotFoundError, MFATimeout, NavigationTimeout
from bank_portal_export.models import Credentials, SessionState
from bank_portal_export.portal.login import LoginOrchestrator, login_failure_reason
from bank_portal_export.portal.mfa import MFAChallengeHandler
from bank_portal_export.portal.session import BrowserSessionManager, SessionOptions


CREDS = Credentials(username="alice", secret="s3cret-pw", institution="bank")


def _orchestrator(**mfa_kwargs: object) -> LoginOrchestrator:
    mfa_kwargs.setdefault("manual_timeout_seconds", 0.05)
    mfa_kwargs.setdefault("poll_interval_ms", 1)
    return LoginOrchestrator(mfa_handler=MFAChallengeHandler(**mfa_kwargs))


def test_login_without_mfa_becomes_active(tmp_path: Path) -> None:
    page = login_page()
    session = make_session(page, tmp_path)

    _orchestrator().login(session, CREDS, LOGIN_URL)

    assert session.state == SessionState.ACTIVE
    assert session.mfa_challenge is None
    assert page.visited == [LOGIN_URL]


def test_credentials_are_filled_and_submitted_once(tmp_path: Path) -> None:
    page = login_page()
    user, pwd, btn = page.get("#username"), page.get("#password"), page.get("#login-btn")
    session = make_session(page, tmp_path)

    _orchestrator().login(session, CREDS, LOGIN_URL)

    assert user.value == "alice"
    assert pwd.value == "s3cret-pw"
    assert btn.clicks == 1


def test_enter_is_pressed_when_no_submit_control(tmp_path: Path) -> None:
    page = FakePage()
    page.set("#username", FakeElement())
    pwd = page.set("#password", FakeElement())
    session = make_session(page, tmp_path)
    show_dashboard(page)

    _orchestrator().login(session, CREDS, LOGIN_URL)

    assert pwd.pressed == ["Enter"]
    assert session.state == SessionState.ACTIVE


def test_two_step_login_reveals_password_after_next(tmp_path: Path) -> None:
    page = FakePage()
    page.set("#username", FakeElement())

    def _reveal_password(p: FakePage) -> None:
        p.remove('button:has-text("Next")')
        p.set("#password", FakeElement())
        p.set("#login-btn", FakeElement("Log in", on_click=show_dashboard))

    page.set('button:has-text("Next")', FakeElement("Next", on_click=_reveal_password))
    session = make_session(page, tmp_path)

    _orchestrator().login(session, CREDS, LOGIN_URL)

    assert page.get("#password").value == "s3cret-pw"
    assert session.state == SessionState.ACTIVE


def test_rejected_credentials_fail_and_release_session(tmp_path: Path) -> None:
    def _reject(p: FakePage) -> None:
        p.url = LOGIN_URL + "?error=1"
        p.body_text = "Invalid username or password. Please try again."

    pw = FakePlaywright(page_factory=lambda: login_page(on_submit=_reject))
    manager = BrowserSessionManager(playwright_factory=lambda: pw)
    seen = []

    with pytest.raises(AuthenticationError) as exc_info:
        with manager.open(SessionOptions(debug_dir=str(tmp_path))) as session:
            seen.append(session)
            _orchestrator().login(session, CREDS, LOGIN_URL)

    assert "username or password is incorrect" in str(exc_info.value)
    assert exc_info.value.stage == "verify"
    assert seen[0].state == SessionState.FAILED
    assert seen[0].is_released
    assert pw.stopped == 1
    assert "s3cret-pw" not in str(exc_info.value)


def test_navigation_timeout_is_not_a_failed_session(tmp_path: Path) -> None:
    page = login_page()
    page.goto_error = PlaywrightTimeoutError("Timeout 30000ms exceeded.")
    session = make_session(page, tmp_path)

    with pytest.raises(NavigationTimeout) as exc_info:
        _orchestrator().login(session, CREDS, LOGIN_URL)

    assert exc_info.value.retryable
    assert exc_info.value.url == LOGIN_URL
    assert session.state == SessionState.INITIALIZING


def test_missing_login_form_lists_selectors_tried(tmp_path: Path) -> None:
    page = FakePage(body_text="Scheduled maintenance")
    session = make_session(page, tmp_path)
    # Lands off the login URL with no form and no dashboard.
    page.goto_lands_on = "https://bank.example.com/maintenance"

    with pytest.raises(LoginFormNotFoundError) as exc_info:
        _orchestrator().login(session, CREDS, LOGIN_URL)

    assert "#username" in exc_info.value.tried
    assert session.state == SessionState.FAILED
    assert (tmp_path / "debug" / "login_form_not_found.png").exists()


def test_already_logged_in_skips_credentials(tmp_path: Path) -> None:
    page = FakePage()
    page.goto_lands_on = "https://bank.example.com/home"
    page.set(".account-summary", FakeElement("Balances"))
    session = make_session(page, tmp_path)

    _orchestrator().login(session, CREDS, LOGIN_URL)

    assert session.state == SessionState.ACTIVE


def test_mfa_timeout_marks_session_failed(tmp_path: Path) -> None:
    def _ask_for_code(p: FakePage) -> None:
        p.url = "https://bank.example.com/login/verify"
        p.body_text = "We sent a code by text message"
        p.set("#mfa-code", FakeElement())

    page = login_page(on_submit=_ask_for_code)
    session = make_session(page, tmp_path)

    with pytest.raises(MFATimeout):
        _orchestrator().login(session, CREDS, LOGIN_URL)

    assert session.state == SessionState.FAILED
    assert session.mfa_challenge is not None
    assert session.mfa_challenge.is_terminal


def test_login_persists_storage_state(tmp_path: Path) -> None:
    state = tmp_path / "storage_state.json"
    session = make_session(login_page(), tmp_path, storage_state_path=str(state))

    _orchestrator().login(session, CREDS, LOGIN_URL)

    assert state.exists()


def test_login_failure_reason() -> None:
    assert login_failure_reason("") is None
    assert login_failure_reason("Welcome!") is None
    assert "locked" in (login_failure_reason("Your account has been locked.") or "")
    assert "incorrect" in (login_failure_reason("Incorrect password. 2 attempts remaining.") or "")
