from __future__ import annotations

import logging
import re
from typing import Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from ..errors import AuthenticationError, LoginFormNotFoundError, MFATimeout, NavigationTimeout
from ..models import Credentials, SessionState
from .mfa import MFAChallengeHandler
from .probes import describe_probes, first_match, selector_probes
from .selectors import PortalSelectors
from .session import Session
from .verifier import SessionVerifier


logger = logging.getLogger(__name__)


_FAILURE_HINTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(invalid|incorrect|wrong).{0,40}(user\s*(name|id)|password|credentials)", re.I),
        "Login failed: the portal reports the username or password is incorrect.",
    ),
    (
        re.compile(r"account\s+(is\s+|has\s+been\s+|will\s+be\s+)?locked|too\s+many\s+(failed\s+)?attempts", re.I),
        "Login failed: the portal indicates the account is locked or out of attempts.",
    ),
    (
        re.compile(r"session\s+(has\s+)?expired", re.I),
        "Login failed: the portal session expired before login completed.",
    ),
)


def login_failure_reason(body_text: str) -> Optional[str]:
    """
    Turn the portal's own rejection wording into an actionable message, or None if nothing recognisable.
    """
    txt = (body_text or "").strip()
    if not txt:
        return None
    for pattern, reason in _FAILURE_HINTS:
        if pattern.search(txt):
            return reason
    return None


class LoginOrchestrator:
    """
    Navigate to the portal, submit credentials, delegate MFA, and verify the end state.

    Credentials are submitted at most once per call; a rejection is terminal for the attempt.
    """

    def __init__(
        self,
        selectors: Optional[PortalSelectors] = None,
        *,
        mfa_handler: Optional[MFAChallengeHandler] = None,
        verifier: Optional[SessionVerifier] = None,
        navigation_timeout_ms: int = 30_000,
        probe_timeout_ms: int = 3_000,
        settle_timeout_ms: int = 10_000,
    ) -> None:
        self.selectors = selectors or PortalSelectors()
        self.mfa_handler = mfa_handler or MFAChallengeHandler(self.selectors)
        self.verifier = verifier or SessionVerifier(self.selectors)
        self.navigation_timeout_ms = navigation_timeout_ms
        self.probe_timeout_ms = probe_timeout_ms
        self.settle_timeout_ms = settle_timeout_ms

    def login(self, session: Session, credentials: Credentials, login_url: str) -> Session:
        session.check_open()
        self._navigate(session, login_url)

        try:
            if self._already_authenticated(session):
                logger.info("Portal already shows an authenticated page; skipping credential entry.")
                session.step("already_logged_in")
            else:
                self._submit_credentials(session, credentials)
                self.mfa_handler.handle(session)
            verified = self.verifier.verify(session)
        except (AuthenticationError, MFATimeout):
            session.transition(SessionState.FAILED)
            raise
        except PlaywrightError as e:
            session.transition(SessionState.FAILED)
            session.save_debug(name_prefix="login_failure")
            raise AuthenticationError(f"Browser error during login: {e}", stage="login", url=session.url) from e

        if not verified:
            session.transition(SessionState.FAILED)
            session.save_debug(name_prefix="login_not_completed")
            reason = login_failure_reason(self._body_text(session))
            raise AuthenticationError(
                reason or "Portal login did not complete (not authenticated after credentials/MFA).",
                stage="verify",
                url=session.url,
                tried=self.selectors.success_indicators,
            )

        session.transition(SessionState.ACTIVE)
        session.save_storage_state()
        session.step("login_complete")
        return session

    def _navigate(self, session: Session, login_url: str) -> None:
        logger.info("Navigating to login page: %s", login_url)
        try:
            session.page.goto(login_url, wait_until="networkidle", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(
                f"Login page did not settle within {self.navigation_timeout_ms}ms",
                stage="navigate",
                url=login_url,
            ) from e
        except PlaywrightError as e:
            # DNS/connection errors are as transient as a timeout from the caller's point of view.
            raise NavigationTimeout(f"Navigation failed: {e}", stage="navigate", url=login_url) from e
        session.touch()
        session.step("after_goto")

    def _already_authenticated(self, session: Session) -> bool:
        username_visible = first_match(session.page, selector_probes(self.selectors.username_inputs), timeout_ms=0)
        if username_visible is not None:
            return False
        return self.verifier.has_success_indicator(session, timeout_ms=0)

    def _submit_credentials(self, session: Session, credentials: Credentials) -> None:
        page = session.page
        user_probes = selector_probes(self.selectors.username_inputs)
        user_input = first_match(page, user_probes, timeout_ms=self.probe_timeout_ms, before_each=session.check_open)
        if user_input is None:
            session.save_debug(name_prefix="login_form_not_found")
            raise LoginFormNotFoundError(
                "Could not find login form (username field) on page",
                stage="credentials",
                url=session.url,
                tried=describe_probes(user_probes),
            )
        user_input.locator.fill(credentials.username)
        session.step("username_filled")

        pwd_probes = selector_probes(self.selectors.password_inputs)
        pwd_input = first_match(page, pwd_probes, timeout_ms=0)
        if pwd_input is None:
            # Two-step login: username -> Next -> password.
            if self._click_submit(session):
                self._settle(session)
            pwd_input = first_match(page, pwd_probes, timeout_ms=self.probe_timeout_ms, before_each=session.check_open)
        if pwd_input is None:
            session.save_debug(name_prefix="login_password_not_found")
            raise LoginFormNotFoundError(
                "Could not find login form (password field) on page",
                stage="credentials",
                url=session.url,
                tried=describe_probes(pwd_probes),
            )
        pwd_input.locator.fill(credentials.secret)
        session.step("password_filled")

        if not self._click_submit(session):
            logger.info("No login submit control matched; pressing Enter in the password field.")
            pwd_input.locator.press("Enter")
        self._settle(session)
        session.step("after_submit")

    def _click_submit(self, session: Session) -> bool:
        match = first_match(
            session.page,
            selector_probes(self.selectors.login_submits),
            timeout_ms=self.probe_timeout_ms,
            before_each=session.check_open,
        )
        if match is None:
            return False
        match.locator.click()
        return True

    def _settle(self, session: Session) -> None:
        """
        Bounded wait for the post-submit navigation; a busy page that never goes idle is not an error.
        """
        try:
            session.page.wait_for_load_state("networkidle", timeout=self.settle_timeout_ms)
        except PlaywrightError:
            logger.debug("Page did not reach networkidle within %sms; continuing.", self.settle_timeout_ms)
        session.touch()

    @staticmethod
    def _body_text(session: Session) -> str:
        try:
            return session.page.inner_text("body")
        except PlaywrightError:
            return ""
