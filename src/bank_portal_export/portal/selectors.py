from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Mapping


@dataclass(frozen=True)
class PortalSelectors:
    """
    Bank portals are web UIs; markup drifts over time.
    Keep every candidate selector here, in priority order, for easy maintenance.
    """

    # Login
    username_inputs: tuple[str, ...] = (
        "#username",
        'input[name="username"]',
        'input[id*="user" i]',
        'input[name*="user" i]',
        'input[type="email"]',
        'input[autocomplete="username"]',
    )
    password_inputs: tuple[str, ...] = (
        "#password",
        'input[name="password"]',
        'input[type="password"]',
        'input[autocomplete="current-password"]',
    )
    login_submits: tuple[str, ...] = (
        "#login-btn",
        'button[type="submit"]',
        'input[type="submit"]',
        'button:has-text("Log in")',
        'button:has-text("Sign in")',
        'button:has-text("Continue")',
        'button:has-text("Next")',
    )
    # Substring of the URL that means "still on the login page".
    login_url_marker: str = "login"

    # MFA
    mfa_indicators: tuple[str, ...] = (
        '[data-testid="mfa-code"]',
        "#mfa-code",
        ".mfa-input",
        'input[name*="code"]',
        'input[placeholder*="code"]',
    )
    mfa_submits: tuple[str, ...] = (
        'button[type="submit"]',
        "#mfa-submit",
        ".mfa-submit",
        'button:has-text("Submit")',
        'button:has-text("Verify")',
        'button:has-text("Continue")',
    )
    mfa_remember_device: tuple[str, ...] = (
        'input[type="checkbox"][name*="remember" i]',
        'input[type="checkbox"][id*="remember" i]',
        'input[type="checkbox"][name*="trust" i]',
    )

    # Post-login
    success_indicators: tuple[str, ...] = (
        ".account-summary",
        ".dashboard",
        "#account-balance",
        '[data-testid="account-overview"]',
        ".welcome-message",
    )

    # Transactions page
    account_selects: tuple[str, ...] = (
        'select[name="card"]',
        'select[id*="card"]',
        'select[class*="card"]',
        'select[name*="account" i]',
        'select[id*="account" i]',
        "select",
    )
    date_range_start_inputs: tuple[str, ...] = (
        'input[name="fromDate"]',
        'input[name*="start" i][type="date"]',
        'input[id*="from" i][type="date"]',
    )
    date_range_end_inputs: tuple[str, ...] = (
        'input[name="toDate"]',
        'input[name*="end" i][type="date"]',
        'input[id*="to" i][type="date"]',
    )
    date_range_applies: tuple[str, ...] = (
        'button:has-text("Apply")',
        'button:has-text("Search")',
        'button:has-text("Show")',
    )
    month_selects: tuple[str, ...] = ('select[name="month"]', 'select[id*="month" i]')
    year_selects: tuple[str, ...] = ('select[name="year"]', 'select[id*="year" i]')
    transaction_rows: tuple[str, ...] = (".transaction-row", "table tbody tr")
    transaction_cell: str = "td"

    def with_overrides(self, overrides: Mapping[str, tuple[str, ...]]) -> "PortalSelectors":
        """
        Replace candidate lists by field name (e.g. from the `selectors:` block of the YAML config).
        """
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown selector override(s): {unknown}")
        updates: dict[str, object] = {}
        for name, value in overrides.items():
            if isinstance(getattr(self, name), str):
                updates[name] = value[0] if value else getattr(self, name)
            else:
                updates[name] = tuple(value)
        return replace(self, **updates)
