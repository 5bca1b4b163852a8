from __future__ import annotations

import sys
from typing import Any
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
TESTS = ROOT / "tests"
if str(TESTS) not in sys.path:
    sys.path.insert(0, str(TESTS))


def pytest_configure(config: Any) -> None:
    config.addinivalue_line(
        "markers",
        "portal: integration smoke tests that require real bank portal credentials",
    )


_ENV_KEYS = (
    "BANK_LOGIN_URL",
    "BANK_INSTITUTION_ID",
    "BANK_USERNAME",
    "BANK_PASSWORD",
    "BANK_MFA_METHOD",
    "MFA_TOTP_SECRET",
    "MFA_IMAP_USER",
    "MFA_IMAP_APP_PASSWORD",
    "MFA_CODE_FILE",
    "BROWSER_HEADFUL",
    "BROWSER_STORAGE_STATE",
    "EXPORT_DIR",
)


@pytest.fixture(autouse=True)
def _isolated_env(request: pytest.FixtureRequest, monkeypatch: pytest.MonkeyPatch) -> None:
    # Config falls back to env vars; a developer's real credentials must not leak into unit tests.
    if request.node.get_closest_marker("portal") is not None:
        return
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
