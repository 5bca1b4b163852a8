from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Locator

from ..errors import MFATimeout
from ..models import MFAChallenge, MFAKind, MFAResolution, SessionState
from .code_sources import CodeSource, mask_code
from .probes import describe_probes, first_match, selector_probes
from .selectors import PortalSelectors
from .session import Session


logger = logging.getLogger(__name__)


# Page-text hints used to classify a detected challenge; first pattern that matches wins.
_KIND_HINTS: tuple[tuple[MFAKind, re.Pattern[str]], ...] = (
    (MFAKind.TOTP, re.compile(r"authenticator|authentication\s+app|totp", re.I)),
    (MFAKind.PUSH, re.compile(r"push\s+notification|approve\s+(?:the\s+)?(?:sign[-\s]?in|login|request)", re.I)),
    (MFAKind.SMS, re.compile(r"text\s+message|\bsms\b|sent\s+to\s+(?:your\s+)?(?:phone|mobile)", re.I)),
    (MFAKind.EMAIL, re.compile(r"e-?mail", re.I)),
)


def classify_challenge_text(body_text: str) -> MFAKind:
    for kind, pattern in _KIND_HINTS:
        if pattern.search(body_text or ""):
            return kind
    return MFAKind.UNKNOWN


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MFAChallengeHandler:
    """
    Detect, classify and resolve an optional MFA challenge after credential submission.

    State machine: NoChallenge -> ChallengeDetected -> Resolved | TimedOut.

    Detection probes an ordered list of indicator selectors with a short wait each; none matching means the
    portal did not ask (e.g. trusted device). Resolution tries every configured automated code source (those
    matching the classified kind first), then falls back to waiting for a human to type the code into the page.
    """

    def __init__(
        self,
        selectors: Optional[PortalSelectors] = None,
        *,
        code_sources: Sequence[CodeSource] = (),
        probe_timeout_ms: int = 3_000,
        submit_probe_timeout_ms: int = 2_000,
        settle_timeout_ms: int = 30_000,
        manual_timeout_seconds: float = 120,
        min_code_length: int = 4,
        code_complete: Optional[Callable[[str], bool]] = None,
        allow_manual: bool = True,
        poll_interval_ms: int = 500,
    ) -> None:
        self.selectors = selectors or PortalSelectors()
        self.code_sources = list(code_sources)
        self.probe_timeout_ms = probe_timeout_ms
        self.submit_probe_timeout_ms = submit_probe_timeout_ms
        self.settle_timeout_ms = settle_timeout_ms
        self.manual_timeout_seconds = manual_timeout_seconds
        self.min_code_length = min_code_length
        self.code_complete = code_complete or self._default_code_complete
        self.allow_manual = allow_manual
        self.poll_interval_ms = poll_interval_ms

    def _default_code_complete(self, value: str) -> bool:
        return len((value or "").strip()) >= self.min_code_length

    def handle(self, session: Session) -> Optional[MFAChallenge]:
        challenge = self.detect(session)
        if challenge is None:
            return None
        session.transition(SessionState.AWAITING_MFA)
        return self.resolve(session, challenge)

    def detect(self, session: Session) -> Optional[MFAChallenge]:
        probes = selector_probes(self.selectors.mfa_indicators)
        match = first_match(
            session.page,
            probes,
            timeout_ms=self.probe_timeout_ms,
            before_each=session.check_open,
        )
        if match is None:
            logger.info("No MFA challenge detected (tried %d indicators).", len(probes))
            return None

        challenge = MFAChallenge(kind=self.classify(session), indicator=match.probe.describe())
        session.mfa_challenge = challenge
        session.step("mfa_detected")
        logger.info("MFA challenge detected (kind=%s indicator=%s).", challenge.kind.value, challenge.indicator)
        return challenge

    def classify(self, session: Session) -> MFAKind:
        try:
            body = session.page.inner_text("body")
        except PlaywrightError:
            body = ""
        return classify_challenge_text(body)

    def ordered_sources(self, kind: MFAKind) -> list[CodeSource]:
        # The page-text kind is a hint only: sources matching it go first, every configured source is tried.
        return sorted(self.code_sources, key=lambda source: 0 if source.supports(kind) else 1)

    def resolve(self, session: Session, challenge: MFAChallenge) -> MFAChallenge:
        code_input = session.page.locator(challenge.indicator).first
        self._check_remember_device(session)

        if challenge.kind == MFAKind.PUSH and not self.code_sources and not self._is_fillable(code_input):
            logger.info("Push MFA: approve the sign-in on your device (waiting up to %ss).", self.manual_timeout_seconds)
            self._wait_until(session, challenge, lambda: not self._still_present(code_input), what="push approval")
            return self._mark(challenge, MFAResolution.MANUAL)

        for source in self.ordered_sources(challenge.kind):
            try:
                code = source.get_code(check=session.check_open)
            except TimeoutError as e:
                logger.warning("MFA code source %s gave no code (%s); trying next strategy.", source.name, e)
                continue
            logger.info(
                "Entering MFA code from %s (kind=%s code=%s).", source.name, challenge.kind.value, mask_code(code)
            )
            code_input.fill(code)
            self.submit(session)
            return self._mark(challenge, MFAResolution.AUTOMATED)

        if not self.allow_manual:
            self._mark(challenge, MFAResolution.TIMED_OUT)
            session.save_debug(name_prefix="mfa_no_source")
            raise MFATimeout(
                "No automated MFA source produced a code and manual entry is disabled",
                stage="mfa",
                url=session.url,
            )

        logger.info(
            "Manual MFA: enter the %s code in the browser (waiting up to %ss).",
            challenge.kind.value,
            self.manual_timeout_seconds,
        )
        state = {"advanced": False}

        def _code_entered() -> bool:
            if not self._still_present(code_input):
                # The human submitted it themselves and the portal moved on.
                state["advanced"] = True
                return True
            return self.code_complete(self._input_value(code_input))

        self._wait_until(session, challenge, _code_entered, what="manual code entry")
        if not state["advanced"]:
            self.submit(session)
        return self._mark(challenge, MFAResolution.MANUAL)

    def submit(self, session: Session) -> bool:
        """
        Click the first matching submit control and wait for the resulting navigation.

        Returns False when no control was found; that is tolerated because some portals auto-advance.
        """
        probes = selector_probes(self.selectors.mfa_submits)
        match = first_match(
            session.page,
            probes,
            timeout_ms=self.submit_probe_timeout_ms,
            before_each=session.check_open,
        )
        if match is None:
            logger.info("No MFA submit control found (tried %s); assuming auto-advance.", describe_probes(probes))
            return False

        match.locator.click()
        try:
            session.page.wait_for_load_state("networkidle", timeout=self.settle_timeout_ms)
        except PlaywrightError:
            logger.debug("Page did not reach networkidle after MFA submit; continuing.", exc_info=True)
        session.touch()
        session.step("mfa_after_submit")
        return True

    def _wait_until(
        self,
        session: Session,
        challenge: MFAChallenge,
        done: Callable[[], bool],
        *,
        what: str,
    ) -> None:
        deadline = time.monotonic() + float(self.manual_timeout_seconds)
        while time.monotonic() < deadline:
            session.check_open()
            if done():
                return
            session.pause(self.poll_interval_ms)

        self._mark(challenge, MFAResolution.TIMED_OUT)
        session.save_debug(name_prefix="mfa_timeout")
        raise MFATimeout(
            f"Timed out after {self.manual_timeout_seconds}s waiting for {what}",
            stage="mfa",
            url=session.url,
        )

    def _check_remember_device(self, session: Session) -> None:
        # Best-effort: a trusted-device cookie lets later runs skip MFA (persisted via storage_state).
        match = first_match(session.page, selector_probes(self.selectors.mfa_remember_device), timeout_ms=0)
        if match is None:
            return
        try:
            match.locator.check()
            logger.info("Checked 'remember device' option during MFA.")
        except PlaywrightError:
            logger.debug("Could not check 'remember device' option.", exc_info=True)

    @staticmethod
    def _still_present(loc: Locator) -> bool:
        try:
            return loc.count() > 0
        except PlaywrightError:
            return False

    @staticmethod
    def _is_fillable(loc: Locator) -> bool:
        try:
            return loc.is_editable(timeout=1_000)
        except PlaywrightError:
            return False

    @staticmethod
    def _input_value(loc: Locator) -> str:
        try:
            return loc.input_value(timeout=1_000)
        except PlaywrightError:
            return ""

    @staticmethod
    def _mark(challenge: MFAChallenge, resolution: MFAResolution) -> MFAChallenge:
        challenge.resolution = resolution
        challenge.resolved_at = _utcnow()
        return challenge
