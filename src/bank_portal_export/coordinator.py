from __future__ import annotations

import logging
import threading
import time
from datetime import date
from pathlib import Path
from typing import Optional, Sequence, Union

from .config import AppConfig, selector_overrides
from .errors import SessionAlreadyActiveError
from .export import CsvExportSink, default_export_path
from .models import Credentials, ExportResult, ExtractionRequest, SessionState
from .portal.code_sources import CodeSource, build_code_sources
from .portal.extractor import TransactionExtractor
from .portal.login import LoginOrchestrator
from .portal.mfa import MFAChallengeHandler
from .portal.selectors import PortalSelectors
from .portal.session import BrowserSessionManager, Session, SessionOptions
from .portal.verifier import SessionVerifier


logger = logging.getLogger(__name__)


class SessionStore:
    """
    Map from an external request identifier to its live Session.

    One writer per key: reserving a key that is already held is rejected, not queued. A close that arrives
    while the key is reserved but its Session is still launching is remembered and applied on attach.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, Optional[Session]] = {}
        self._pending_close: set[str] = set()

    def reserve(self, key: str) -> None:
        with self._lock:
            if key in self._sessions:
                raise SessionAlreadyActiveError(f"A session is already active for {key!r}")
            self._sessions[key] = None

    def attach(self, key: str, session: Session) -> None:
        with self._lock:
            if key not in self._sessions:
                raise KeyError(f"No reservation for {key!r}")
            self._sessions[key] = session
            close_now = key in self._pending_close
            self._pending_close.discard(key)
        if close_now:
            logger.info("Applying close requested during launch (key=%s session=%s)", key, session.id)
            session.close()

    def release(self, key: str) -> None:
        with self._lock:
            self._sessions.pop(key, None)
            self._pending_close.discard(key)

    def get(self, key: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(key)

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._sessions

    def active_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def close(self, key: str) -> bool:
        """
        Ask the Session held for `key` to close. Pending waits abort; the owning run tears down.

        Returns False only when nothing is reserved under `key`.
        """
        with self._lock:
            if key not in self._sessions:
                return False
            session = self._sessions[key]
            if session is None:
                self._pending_close.add(key)
                return True
        session.close()
        return True


class ExtractionCoordinator:
    """
    Runs one extraction end to end: Session -> login (MFA, verify) -> extract -> export.

    Every run owns its Session; the browser is released on every exit path before the export is written.
    """

    def __init__(
        self,
        *,
        session_manager: Optional[BrowserSessionManager] = None,
        store: Optional[SessionStore] = None,
        login: Optional[LoginOrchestrator] = None,
        extractor: Optional[TransactionExtractor] = None,
        sink: Optional[CsvExportSink] = None,
        session_options: Optional[SessionOptions] = None,
        out_dir: Union[str, Path] = "data/exports",
    ) -> None:
        self.session_manager = session_manager or BrowserSessionManager()
        self.store = store or SessionStore()
        self.login = login or LoginOrchestrator()
        self.extractor = extractor or TransactionExtractor()
        self.sink = sink or CsvExportSink()
        self.session_options = session_options or SessionOptions()
        self.out_dir = Path(out_dir)

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        code_sources: Optional[Sequence[CodeSource]] = None,
        allow_manual_mfa: bool = True,
        store: Optional[SessionStore] = None,
        **session_overrides: object,
    ) -> "ExtractionCoordinator":
        t = cfg.timeouts
        selectors = PortalSelectors().with_overrides(selector_overrides(cfg))
        mfa = MFAChallengeHandler(
            selectors,
            code_sources=build_code_sources(cfg) if code_sources is None else code_sources,
            probe_timeout_ms=t.probe_ms,
            submit_probe_timeout_ms=t.submit_probe_ms,
            settle_timeout_ms=t.navigation_ms,
            manual_timeout_seconds=t.mfa_manual_seconds,
            min_code_length=t.mfa_min_code_length,
            allow_manual=allow_manual_mfa,
        )
        login = LoginOrchestrator(
            selectors,
            mfa_handler=mfa,
            verifier=SessionVerifier(selectors, probe_timeout_ms=t.verify_probe_ms),
            navigation_timeout_ms=t.navigation_ms,
            probe_timeout_ms=t.probe_ms,
            settle_timeout_ms=t.settle_ms,
        )
        extractor = TransactionExtractor(selectors, probe_timeout_ms=t.probe_ms, table_settle_ms=t.table_settle_ms)
        return cls(
            store=store,
            login=login,
            extractor=extractor,
            session_options=SessionOptions.from_config(cfg.browser, **session_overrides),
            out_dir=cfg.export.out_dir,
        )

    def extract(
        self,
        account_fragment: str,
        period_start: date,
        period_end: date,
        login_url: str,
        credentials: Credentials,
        *,
        destination: Union[str, Path, None] = None,
        request_id: Optional[str] = None,
    ) -> ExportResult:
        request = ExtractionRequest(
            account_selector=account_fragment,
            period_start=period_start,
            period_end=period_end,
        )
        key = request_id or f"{credentials.institution or 'portal'}:{request.account_selector}"
        dest = Path(destination) if destination else default_export_path(
            self.out_dir, request, institution=credentials.institution
        )

        self.store.reserve(key)
        t0 = time.time()
        try:
            with self.session_manager.open(self.session_options) as session:
                self.store.attach(key, session)
                logger.info("Run started (key=%s session=%s period=%s)", key, session.id, request.period_label())
                self.login.login(session, credentials, login_url)
                records = self.extractor.extract(session, request)
            result = self.sink.export(records, dest)
        except Exception as e:
            logger.error("Run failed (key=%s): %s: %s", key, type(e).__name__, e)
            raise
        finally:
            self.store.release(key)

        logger.info("Run complete (key=%s records=%d seconds=%.2f)", key, result.record_count, time.time() - t0)
        return result

    def check_login(self, login_url: str, credentials: Credentials, *, request_id: Optional[str] = None) -> SessionState:
        key = request_id or f"{credentials.institution or 'portal'}:check-login"
        self.store.reserve(key)
        try:
            with self.session_manager.open(self.session_options) as session:
                self.store.attach(key, session)
                self.login.login(session, credentials, login_url)
                return session.state
        finally:
            self.store.release(key)

    def cancel(self, request_id: str) -> bool:
        return self.store.close(request_id)
