from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from .config import AppConfig, load_config
from .coordinator import ExtractionCoordinator
from .errors import PortalError, SessionAlreadyActiveError, describe_failure
from .export import default_export_path
from .logging_config import configure_logging
from .models import ExtractionRequest
from .util.dates import month_bounds, parse_date
from .util.debug_bundle import create_debug_bundle


logger = logging.getLogger("bank_portal_export")


def _add_browser_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    p.add_argument("--headful", action="store_true", help="Run browser headful (debug, or to type MFA codes)")
    p.add_argument(
        "--manual-mfa",
        action="store_true",
        help="Ignore automated MFA sources and wait for the code to be typed into the browser (requires --headful).",
    )
    p.add_argument(
        "--fresh-session",
        action="store_true",
        help="Do not reuse the stored browser session (cookies). Helpful for weird redirects.",
    )
    p.add_argument("--slowmo-ms", type=int, default=0, help="Playwright slow motion in milliseconds (debug).")
    p.add_argument("--step-debug", action="store_true", help="Save step-by-step screenshots under the debug dir.")
    p.add_argument(
        "--debug-bundle",
        action="store_true",
        help="On failure, zip screenshots + log into a shareable bundle (no secrets).",
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bank-portal-export")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    extract = sub.add_parser("extract", help="Log into the portal and export one account's transactions to CSV")
    _add_browser_flags(extract)
    extract.add_argument("--account", required=True, help="Identifying fragment of the account, e.g. last 4 digits")
    extract.add_argument("--period-start", default="", help="First day of the period (YYYY-MM-DD)")
    extract.add_argument("--period-end", default="", help="Last day of the period (YYYY-MM-DD)")
    extract.add_argument("--month", type=int, default=0, help="Statement month (1-12); alternative to --period-*")
    extract.add_argument("--year", type=int, default=0, help="Statement year; used with --month")
    extract.add_argument("--out", default="", help="Output CSV path (default: <export.out_dir>/transactions_...csv)")

    check = sub.add_parser("check-login", help="Log in (including MFA) and verify the session, then exit")
    _add_browser_flags(check)

    bundle = sub.add_parser("debug-bundle", help="Zip debug captures + log for sharing (secrets excluded)")
    bundle.add_argument("--debug-dir", default=os.getenv("DEBUG_DIR", "data/debug"), help="Debug captures directory")
    bundle.add_argument("--log-file", default=os.getenv("LOG_FILE", "data/export.log"), help="Log file to include")
    bundle.add_argument("--institution", default=os.getenv("BANK_INSTITUTION_ID", ""), help="Tag for the zip name")
    bundle.add_argument("--out-dir", default="data", help="Where to write the zip (default: data)")

    return p


def _resolve_period(args: argparse.Namespace):
    if args.month:
        if not (1 <= args.month <= 12) or not args.year:
            raise SystemExit("--month must be 1-12 and requires --year.")
        return month_bounds(args.year, args.month)
    if not args.period_start:
        raise SystemExit("Provide --period-start/--period-end, or --month with --year.")
    try:
        start = parse_date(args.period_start)
        end = parse_date(args.period_end) if args.period_end else start
    except (ValueError, OverflowError) as e:
        raise SystemExit(f"Invalid period date: {e}")
    return start, end


def _build_request(args: argparse.Namespace) -> ExtractionRequest:
    start, end = _resolve_period(args)
    try:
        return ExtractionRequest(account_selector=args.account, period_start=start, period_end=end)
    except ValidationError as e:
        raise SystemExit("Invalid extraction request: " + "; ".join(err["msg"] for err in e.errors()))


def _build_coordinator(cfg: AppConfig, args: argparse.Namespace) -> ExtractionCoordinator:
    if args.manual_mfa and not args.headful:
        raise SystemExit("--manual-mfa requires --headful (you must be able to interact with the browser).")

    overrides: dict = {"step_debug": bool(args.step_debug)}
    if args.headful:
        overrides["headless"] = False
    if args.slowmo_ms:
        overrides["slow_mo_ms"] = args.slowmo_ms
    if args.fresh_session:
        overrides["storage_state_path"] = ""

    return ExtractionCoordinator.from_config(
        cfg,
        code_sources=[] if args.manual_mfa else None,
        allow_manual_mfa=bool(args.headful),
        **overrides,
    )


def _maybe_bundle(cfg: AppConfig, args: argparse.Namespace) -> None:
    if not getattr(args, "debug_bundle", False):
        return
    try:
        path = create_debug_bundle(
            debug_dir=cfg.browser.debug_dir,
            log_file=cfg.logging.file_path,
            institution=cfg.portal.institution,
        )
        logger.info("Debug bundle written: %s", path)
    except OSError:
        logger.warning("Failed to create debug bundle.", exc_info=True)


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.cmd == "debug-bundle":
        # No config needed: this must work even when the config itself is what is broken.
        path = create_debug_bundle(
            debug_dir=args.debug_dir,
            log_file=args.log_file,
            out_dir=args.out_dir,
            institution=args.institution,
        )
        print(path)
        return 0

    cfg = load_config(args.config)
    configure_logging(
        level=cfg.logging.level,
        file_path=cfg.logging.file_path,
        redact=(cfg.portal.password, cfg.totp.secret, cfg.imap.app_password),
    )

    coordinator = _build_coordinator(cfg, args)
    creds = cfg.portal.credentials()

    if args.cmd == "check-login":
        logger.info("Checking login (institution=%s)", cfg.portal.institution)
        try:
            state = coordinator.check_login(cfg.portal.login_url, creds)
        except (PortalError, SessionAlreadyActiveError) as e:
            logger.error("Login check failed: %s", e)
            _maybe_bundle(cfg, args)
            print(f"FAILED: {describe_failure(e)}")
            return 1
        print(f"OK: session {state.value}")
        return 0

    if args.cmd == "extract":
        request = _build_request(args)
        dest = Path(args.out) if args.out else default_export_path(
            cfg.export.out_dir, request, institution=cfg.portal.institution
        )
        logger.info("Starting extraction (institution=%s period=%s)", cfg.portal.institution, request.period_label())
        try:
            result = coordinator.extract(
                request.account_selector,
                request.period_start,
                request.period_end,
                cfg.portal.login_url,
                creds,
                destination=dest,
            )
        except (PortalError, SessionAlreadyActiveError, OSError) as e:
            _maybe_bundle(cfg, args)
            print(f"FAILED: {describe_failure(e)}")
            return 1
        print(f"OK: {result.record_count} transactions written to {result.path}")
        return 0

    raise SystemExit(f"Unknown command: {args.cmd}")
