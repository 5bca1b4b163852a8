from __future__ import annotations

import json
import logging
import os
import re
import threading
import uuid
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from playwright.sync_api import sync_playwright

from ..config import BrowserConfig
from ..errors import LaunchError, SessionClosedError
from ..models import MFAChallenge, SessionState


logger = logging.getLogger(__name__)


DEFAULT_LAUNCH_ARGS: tuple[str, ...] = (
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
)


@dataclass(frozen=True)
class SessionOptions:
    headless: bool = True
    slow_mo_ms: int = 0
    user_agent: str = ""
    viewport_width: int = 1280
    viewport_height: int = 720
    accept_language: str = "en-US,en;q=0.9"
    launch_args: tuple[str, ...] = DEFAULT_LAUNCH_ARGS
    # Cookie jar of a previously trusted device; loaded into a fresh, isolated context.
    storage_state_path: str = ""
    debug_dir: str = "data/debug"
    step_debug: bool = False
    default_timeout_ms: int = 30_000

    @classmethod
    def from_config(cls, cfg: BrowserConfig, **overrides: Any) -> "SessionOptions":
        values: dict[str, Any] = {
            "headless": cfg.headless,
            "slow_mo_ms": cfg.slow_mo_ms,
            "user_agent": cfg.user_agent,
            "viewport_width": cfg.viewport_width,
            "viewport_height": cfg.viewport_height,
            "accept_language": cfg.accept_language,
            "storage_state_path": cfg.storage_state_path,
            "debug_dir": cfg.debug_dir,
        }
        values.update(overrides)
        return cls(**values)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session:
    """
    One browser process + isolated context + page, owned exclusively by one login/extraction flow.

    Resources are registered on an ExitStack as they are acquired and released exactly once by `close()`.
    Playwright's sync API is bound to the thread that started it, so a `close()` from any other thread only
    requests cancellation: the owner's next wait raises `SessionClosedError` and its scoped cleanup releases.
    """

    def __init__(
        self,
        *,
        page: Any,
        context: Any,
        browser: Any,
        resources: ExitStack,
        options: SessionOptions,
    ) -> None:
        self.id = f"session_{uuid.uuid4().hex}"
        self.created_at = _utcnow()
        self.last_activity_at = self.created_at
        self.state = SessionState.INITIALIZING
        self.page = page
        self.context = context
        self.browser = browser
        self.options = options
        self.mfa_challenge: Optional[MFAChallenge] = None

        self._resources = resources
        self._owner_thread = threading.get_ident()
        self._cancel = threading.Event()
        self._release_lock = threading.Lock()
        self._released = False
        self._step_counter = 0

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, state={self.state.value})"

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_released(self) -> bool:
        return self._released

    @property
    def close_requested(self) -> bool:
        return self._cancel.is_set()

    @property
    def url(self) -> str:
        try:
            return self.page.url or ""
        except Exception:
            return ""

    def touch(self) -> None:
        self.last_activity_at = _utcnow()

    def transition(self, state: SessionState) -> None:
        if self.state in (SessionState.CLOSED, SessionState.FAILED) and state != SessionState.CLOSED:
            logger.debug("Ignoring transition %s -> %s for %s", self.state.value, state.value, self.id)
            return
        if self.state != state:
            logger.info("Session %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state
        self.touch()

    def check_open(self) -> None:
        if self._cancel.is_set() or self._released:
            raise SessionClosedError("Session was closed while work was pending", stage="wait", url=self.url)

    def pause(self, ms: int) -> None:
        """
        Cooperative sleep on the page's event loop that honours a pending close.
        """
        self.check_open()
        self.page.wait_for_timeout(ms)
        self.check_open()

    def close(self) -> None:
        self._cancel.set()
        if threading.get_ident() != self._owner_thread:
            logger.info("Close requested for %s from another thread; owner will release resources.", self.id)
            return

        with self._release_lock:
            if self._released:
                return
            self._released = True

        try:
            self._resources.close()
        except Exception:
            logger.warning("Error while releasing browser resources for %s.", self.id, exc_info=True)

        # A failed login stays visibly Failed after teardown.
        if self.state != SessionState.FAILED:
            self.state = SessionState.CLOSED
        logger.info("Session %s closed.", self.id)

    def save_debug(self, *, name_prefix: str) -> None:
        try:
            out_dir = Path(self.options.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            self.page.screenshot(path=str(out_dir / f"{name_prefix}.png"), full_page=True)
            (out_dir / f"{name_prefix}.html").write_text(self.page.content(), encoding="utf-8")
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)

    def step(self, name: str) -> None:
        """
        If step debugging is enabled, log progress and save a screenshot per step.
        """
        if not self.options.step_debug:
            return

        self._step_counter += 1
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name).strip("_")[:60] or "step"
        prefix = f"step_{self._step_counter:02d}_{safe}"
        logger.info("Step %02d %s (url=%s)", self._step_counter, name, self.url)

        try:
            out_dir = Path(self.options.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            self.page.screenshot(path=str(out_dir / f"{prefix}.png"), full_page=True)
        except Exception:
            logger.debug("Failed to save step screenshot (name=%s).", name, exc_info=True)

    def save_storage_state(self) -> None:
        """
        Best-effort: persist cookies so the next run may skip MFA on a trusted device.
        """
        path_str = self.options.storage_state_path
        if not path_str:
            return
        try:
            path = Path(path_str)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f".{path.name}.{self.id}.tmp")
            self.context.storage_state(path=str(tmp))
            os.replace(tmp, path)
        except Exception:
            logger.debug("Failed to persist storage_state.", exc_info=True)


def _storage_state_usable(path: Path) -> bool:
    """
    Return True if `path` looks like a Playwright storage_state file.

    A corrupted file is quarantined so later runs start clean instead of failing on it again.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, dict) and ("cookies" in data or "origins" in data):
            return True
    except Exception:
        pass

    logger.warning("storage_state file is invalid; ignoring it: %s", path)
    try:
        stamp = _utcnow().strftime("%Y%m%dT%H%M%SZ")
        path.replace(path.with_name(f"{path.name}.corrupt-{stamp}"))
    except Exception:
        logger.debug("Failed to quarantine file=%s", path, exc_info=True)
    return False


def _release(label: str, fn: Callable[[], Any]) -> Callable[[], None]:
    def _do() -> None:
        try:
            fn()
        except Exception:
            logger.debug("Failed to release %s.", label, exc_info=True)

    return _do


class BrowserSessionManager:
    """
    Creates isolated browser Sessions. Each Session gets its own Playwright driver, browser, context and page,
    so nothing (cookies, storage, page state) is shared between concurrently running Sessions.
    """

    def __init__(self, *, playwright_factory: Callable[[], Any] = sync_playwright) -> None:
        self._playwright_factory = playwright_factory

    def create(self, options: Optional[SessionOptions] = None) -> Session:
        options = options or SessionOptions()
        resources = ExitStack()
        try:
            try:
                pw = self._playwright_factory().start()
            except Exception as e:
                raise LaunchError(f"Could not start Playwright driver: {e}", stage="launch") from e
            resources.callback(_release("playwright", pw.stop))

            browser = self._launch_browser(pw, options)
            resources.callback(_release("browser", browser.close))

            try:
                context = browser.new_context(**self._context_kwargs(options))
                resources.callback(_release("context", context.close))
                context.set_default_timeout(options.default_timeout_ms)
                page = context.new_page()
                resources.callback(_release("page", page.close))
            except Exception as e:
                raise LaunchError(f"Could not open a browser context: {e}", stage="launch") from e
        except BaseException:
            resources.close()
            raise

        session = Session(page=page, context=context, browser=browser, resources=resources, options=options)
        logger.info("Session %s created (headless=%s).", session.id, options.headless)
        return session

    def close(self, session: Session) -> None:
        session.close()

    @contextmanager
    def open(self, options: Optional[SessionOptions] = None) -> Iterator[Session]:
        """
        Scoped acquisition: the Session is closed on every exit path.
        """
        session = self.create(options)
        try:
            yield session
        finally:
            session.close()

    def _launch_browser(self, pw: Any, options: SessionOptions) -> Any:
        launch_kwargs: dict[str, Any] = {
            "headless": options.headless,
            "slow_mo": int(options.slow_mo_ms or 0),
            "args": list(options.launch_args),
        }
        try:
            return pw.chromium.launch(**launch_kwargs)
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise LaunchError(f"Chromium launch failed: {msg}", stage="launch") from e
            logger.warning(
                "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                msg.splitlines()[0] if msg else msg,
            )

        # Bundled Chromium is absent: try installed Chrome, then Edge.
        last_error: Optional[BaseException] = None
        for channel in ("chrome", "msedge"):
            try:
                return pw.chromium.launch(channel=channel, **launch_kwargs)
            except Exception as e:
                last_error = e
                logger.debug("Browser channel %s unavailable.", channel, exc_info=True)
        raise LaunchError(
            f"No usable browser found (bundled Chromium, chrome, msedge): {last_error}", stage="launch"
        ) from last_error

    def _context_kwargs(self, options: SessionOptions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "viewport": {"width": options.viewport_width, "height": options.viewport_height},
            "color_scheme": "light",
        }
        if options.user_agent:
            kwargs["user_agent"] = options.user_agent
        if options.accept_language:
            kwargs["extra_http_headers"] = {"Accept-Language": options.accept_language}
        if options.storage_state_path:
            state_path = Path(options.storage_state_path)
            if state_path.exists() and _storage_state_usable(state_path):
                kwargs["storage_state"] = str(state_path)
        return kwargs
