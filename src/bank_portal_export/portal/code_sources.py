from __future__ import annotations

import html as _html
import imaplib
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from email import message_from_bytes
from email.message import Message
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Callable, Optional

import pyotp

from ..config import AppConfig, CodeFileConfig, ImapCodeConfig, TotpConfig
from ..models import MFAKind


logger = logging.getLogger(__name__)


def _noop() -> None:
    return None


def mask_code(code: str) -> str:
    return "*" * len(code) or "***"


class CodeSource:
    """
    An automated way of obtaining an MFA code (generated, or polled from a side channel).

    `get_code` blocks for at most the source's own bound and raises TimeoutError when no code arrives.
    `check` is called on every poll so a closed Session aborts the wait.
    """

    name = "code-source"
    kinds: frozenset[MFAKind] = frozenset({MFAKind.SMS, MFAKind.EMAIL, MFAKind.TOTP, MFAKind.UNKNOWN})

    def supports(self, kind: MFAKind) -> bool:
        return kind in self.kinds

    def get_code(self, *, check: Callable[[], None] = _noop) -> str:
        raise NotImplementedError


class TotpCodeSource(CodeSource):
    name = "totp"
    kinds = frozenset({MFAKind.TOTP, MFAKind.UNKNOWN})

    def __init__(self, cfg: TotpConfig) -> None:
        if not cfg.secret:
            raise ValueError("TOTP secret is required")
        self._totp = pyotp.TOTP(cfg.secret.replace(" ", ""), digits=cfg.digits, interval=cfg.interval)

    def get_code(self, *, check: Callable[[], None] = _noop) -> str:
        check()
        # Avoid handing out a code that expires while it is being typed and submitted.
        remaining = self._totp.interval - (int(time.time()) % self._totp.interval)
        if remaining < 3:
            time.sleep(remaining)
            check()
        return self._totp.now()


class CallableCodeSource(CodeSource):
    """
    Wrap any `() -> str` (e.g. a chat reply relayed by the triggering surface).
    """

    name = "callable"

    def __init__(self, fn: Callable[[], str], *, kinds: Optional[frozenset[MFAKind]] = None) -> None:
        self._fn = fn
        if kinds is not None:
            self.kinds = kinds

    def get_code(self, *, check: Callable[[], None] = _noop) -> str:
        check()
        code = (self._fn() or "").strip()
        if not code:
            raise TimeoutError("Code provider returned no code")
        return code


class FileCodeSource(CodeSource):
    """
    Wait for an operator (or a bot) to drop the code into a file. The file is consumed once read.
    """

    name = "file"

    def __init__(self, cfg: CodeFileConfig, *, timeout_seconds: int = 120, poll_interval_seconds: float = 1.0) -> None:
        if not cfg.path:
            raise ValueError("code file path is required")
        self.path = Path(cfg.path)
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def get_code(self, *, check: Callable[[], None] = _noop) -> str:
        # A leftover file belongs to an earlier login; never reuse it.
        self.path.unlink(missing_ok=True)
        logger.info("Waiting for MFA code file: %s", self.path)

        deadline = time.monotonic() + self.timeout_seconds
        while time.monotonic() < deadline:
            check()
            if self.path.exists():
                code = self.path.read_text(encoding="utf-8").strip()
                if code:
                    self.path.unlink(missing_ok=True)
                    logger.info("Read MFA code from file (code=%s)", mask_code(code))
                    return code
            time.sleep(self.poll_interval_seconds)

        raise TimeoutError(f"Timed out waiting for MFA code file after {self.timeout_seconds}s")


class ImapCodeSource(CodeSource):
    name = "imap"
    kinds = frozenset({MFAKind.EMAIL, MFAKind.UNKNOWN})

    def __init__(self, cfg: ImapCodeConfig) -> None:
        self.cfg = cfg

    def get_code(self, *, check: Callable[[], None] = _noop) -> str:
        return poll_imap_for_code(self.cfg, check=check)


def build_code_sources(cfg: AppConfig) -> list[CodeSource]:
    """
    Automated sources for the configured MFA method, in priority order. Empty means manual entry.
    """
    method = cfg.portal.mfa_method
    manual_bound = cfg.timeouts.mfa_manual_seconds
    if method == "totp":
        return [TotpCodeSource(cfg.totp)]
    if method == "email":
        return [ImapCodeSource(cfg.imap)]
    if method == "file":
        return [FileCodeSource(cfg.code_file, timeout_seconds=manual_bound)]
    return []


# --- IMAP polling -----------------------------------------------------------------------------------------------

_PREFERRED_RES = [
    re.compile(r"verification\s+code[^0-9]{0,30}(\d{4,8})", re.I),
    re.compile(r"security\s+code[^0-9]{0,30}(\d{4,8})", re.I),
    re.compile(r"authori[sz]ation\s+code[^0-9]{0,30}(\d{4,8})", re.I),
    re.compile(r"one[-\s]?time[^0-9]{0,30}(\d{4,8})", re.I),
    re.compile(r"\bcode\s*(?:is|:)\s*(\d{4,8})", re.I),
]


def _safe_imap_logout(mail: Optional[imaplib.IMAP4_SSL]) -> None:
    if mail is None:
        return
    try:
        mail.close()
    except Exception:
        pass
    try:
        mail.logout()
    except Exception:
        pass


def _imap_connect_and_select(cfg: ImapCodeConfig) -> imaplib.IMAP4_SSL:
    mail = imaplib.IMAP4_SSL(cfg.host, cfg.port)
    mail.login(cfg.user, cfg.app_password)
    sel_status, _ = mail.select(cfg.folder)
    if sel_status != "OK":
        raise RuntimeError(f"IMAP select failed for folder={cfg.folder!r}: {sel_status}")
    return mail


def poll_imap_for_code(cfg: ImapCodeConfig, *, check: Callable[[], None] = _noop) -> str:
    """
    Poll an IMAP mailbox for a fresh MFA email and extract the code.

    Only messages received after polling started (minus a small clock-skew tolerance) are considered, so an
    older code still sitting in the folder is never reused.
    """
    deadline = time.monotonic() + cfg.timeout_seconds
    code_re = re.compile(cfg.code_regex)
    min_received_at = datetime.now(timezone.utc) - timedelta(seconds=30)
    checked_msg_ids: set[bytes] = set()

    mail: Optional[imaplib.IMAP4_SSL] = None
    try:
        while time.monotonic() < deadline:
            check()
            try:
                if mail is None:
                    mail = _imap_connect_and_select(cfg)
                else:
                    try:
                        mail.noop()
                    except Exception:
                        _safe_imap_logout(mail)
                        mail = _imap_connect_and_select(cfg)

                code = _try_fetch_code_once(
                    cfg,
                    mail=mail,
                    code_re=code_re,
                    min_received_at=min_received_at,
                    checked_msg_ids=checked_msg_ids,
                )
                if code:
                    return code
            except Exception:
                logger.debug("IMAP poll attempt failed; reconnecting.", exc_info=True)
                _safe_imap_logout(mail)
                mail = None

            time.sleep(cfg.poll_interval_seconds)
    finally:
        _safe_imap_logout(mail)

    raise TimeoutError(f"Timed out waiting for MFA code email after {cfg.timeout_seconds}s")


def _try_fetch_code_once(
    cfg: ImapCodeConfig,
    *,
    mail: imaplib.IMAP4_SSL,
    code_re: re.Pattern[str],
    min_received_at: datetime,
    checked_msg_ids: set[bytes],
) -> Optional[str]:
    sel_status, _ = mail.select(cfg.folder)
    if sel_status != "OK":
        raise RuntimeError(f"IMAP select failed for folder={cfg.folder!r}: {sel_status}")

    search_parts: list[str] = ["ALL"]
    if cfg.sender_hint:
        search_parts += ["FROM", f"\"{cfg.sender_hint}\""]
    if cfg.subject_hint:
        search_parts += ["SUBJECT", f"\"{cfg.subject_hint}\""]

    status, data = mail.search(None, *search_parts)
    if status != "OK":
        raise RuntimeError(f"IMAP search failed: {status} {data}")

    ids = data[0].split()
    # Newest first
    for msg_id in reversed(ids[-25:]):
        if msg_id in checked_msg_ids:
            continue
        status, msg_data = mail.fetch(msg_id, "(RFC822)")
        if status != "OK" or not msg_data or not msg_data[0]:
            continue
        checked_msg_ids.add(msg_id)

        msg = message_from_bytes(msg_data[0][1])
        received_at = _best_effort_msg_datetime_utc(msg)
        if not received_at or received_at < min_received_at:
            continue

        code = _extract_code(_extract_best_effort_body(msg), preferred_res=_PREFERRED_RES, fallback_re=code_re)
        if not code:
            continue
        try:
            mail.store(msg_id, "+FLAGS", "\\Seen")
        except Exception:
            logger.debug("Failed to mark message as seen (msg_id=%s).", msg_id, exc_info=True)

        logger.info(
            "Fetched MFA code from email (received_at=%s subject=%r code=%s)",
            received_at.isoformat(),
            (msg.get("Subject") or "").strip(),
            mask_code(code),
        )
        return code

    return None


def _extract_best_effort_body(msg: Message) -> str:
    if msg.is_multipart():
        parts = []
        for part in msg.walk():
            if "attachment" in (part.get("Content-Disposition") or "").lower():
                continue
            if part.get_content_type() in ("text/plain", "text/html"):
                payload = part.get_payload(decode=True) or b""
                charset = part.get_content_charset() or "utf-8"
                try:
                    parts.append(payload.decode(charset, errors="replace"))
                except LookupError:
                    parts.append(payload.decode("utf-8", errors="replace"))
        return "\n".join(parts)

    payload = msg.get_payload(decode=True) or b""
    charset = msg.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _best_effort_msg_datetime_utc(msg: Message) -> Optional[datetime]:
    raw_date = (msg.get("Date") or "").strip()
    if not raw_date:
        return None
    try:
        dt = parsedate_to_datetime(raw_date)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _extract_code(body: str, *, preferred_res: list[re.Pattern[str]], fallback_re: re.Pattern[str]) -> Optional[str]:
    # Phrase-anchored patterns first, on the plain text so markup between label and digits doesn't matter.
    text = _strip_html_to_text(body)
    for r in preferred_res:
        m = r.search(text)
        if m:
            return m.group(1)

    for m in fallback_re.finditer(text):
        start = m.start(1)
        # CSS hex colours like "#265179" are not codes.
        if start > 0 and text[start - 1] == "#":
            continue
        return m.group(1)

    return None


def _strip_html_to_text(s: str) -> str:
    s = re.sub(r"(?is)<style[^>]*>.*?</style>", " ", s)
    s = re.sub(r"(?is)<script[^>]*>.*?</script>", " ", s)
    s = re.sub(r"(?is)<!--.*?-->", " ", s)
    s = re.sub(r"(?is)<[^>]+>", " ", s)
    s = _html.unescape(s)
    s = re.sub(r"\s+", " ", s).strip()
    return s
