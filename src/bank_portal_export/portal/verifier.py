from __future__ import annotations

import logging
from typing import Optional

from .probes import first_match, selector_probes
from .selectors import PortalSelectors
from .session import Session


logger = logging.getLogger(__name__)


class SessionVerifier:
    """
    Decide from the final page state whether authentication succeeded.
    """

    def __init__(self, selectors: Optional[PortalSelectors] = None, *, probe_timeout_ms: int = 5_000) -> None:
        self.selectors = selectors or PortalSelectors()
        self.probe_timeout_ms = probe_timeout_ms

    def has_success_indicator(self, session: Session, *, timeout_ms: Optional[int] = None) -> bool:
        probes = selector_probes(self.selectors.success_indicators)
        match = first_match(
            session.page,
            probes,
            timeout_ms=self.probe_timeout_ms if timeout_ms is None else timeout_ms,
            before_each=session.check_open,
        )
        if match is not None:
            logger.debug("Success indicator matched: %s", match.probe.describe())
            return True
        return False

    def still_on_login_page(self, session: Session) -> bool:
        marker = (self.selectors.login_url_marker or "").lower()
        return bool(marker) and marker in session.url.lower()

    def verify(self, session: Session) -> bool:
        session.check_open()
        session.touch()
        if self.has_success_indicator(session):
            return True

        if self.still_on_login_page(session):
            logger.info("Verification failed: still on login page (url=%s).", session.url)
            return False

        # Weak heuristic kept on purpose: error/interstitial pages off the login URL also pass here.
        logger.warning(
            "No success indicator matched; treating non-login URL as authenticated (url=%s).",
            session.url,
        )
        return True
