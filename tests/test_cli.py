from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any

import pytest

from bank_portal_export import cli
from bank_portal_export.errors import AuthenticationError
from bank_portal_export.models import ExportResult


class _StubCoordinator:
    def __init__(self, outcome: Any = None) -> None:
        self.outcome = outcome
        self.calls: list[dict[str, Any]] = []

    def extract(self, account, start, end, login_url, credentials, *, destination=None):
        self.calls.append(
            {"account": account, "start": start, "end": end, "login_url": login_url, "destination": destination}
        )
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return ExportResult(path=Path(destination), record_count=3)


@pytest.fixture
def portal_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("BANK_LOGIN_URL", "https://www.max.co.il/login")
    monkeypatch.setenv("BANK_USERNAME", "alice")
    monkeypatch.setenv("BANK_PASSWORD", "s3cret-pw")
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "export.log"))
    monkeypatch.setenv("EXPORT_DIR", str(tmp_path / "exports"))
    return tmp_path


def _argv(tmp_path: Path, *args: str) -> list[str]:
    return ["--env-file", str(tmp_path / "missing.env"), *args, "--config", str(tmp_path / "missing.yaml")]


def test_extract_month_prints_summary(
    portal_env: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    stub = _StubCoordinator()
    monkeypatch.setattr(cli, "_build_coordinator", lambda cfg, args: stub)

    rc = cli.main(_argv(portal_env, "extract", "--account", "1234", "--month", "9", "--year", "2024"))

    assert rc == 0
    call = stub.calls[0]
    assert (call["start"], call["end"]) == (date(2024, 9, 1), date(2024, 9, 30))
    assert call["login_url"] == "https://www.max.co.il/login"
    assert call["destination"] == portal_env / "exports" / "transactions_max_1234_2024-09-01_2024-09-30.csv"
    out = capsys.readouterr().out
    assert out.startswith("OK: 3 transactions written to ")
    assert "s3cret-pw" not in out


def test_extract_failure_prints_reason(
    portal_env: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    stub = _StubCoordinator(AuthenticationError("rejected", stage="verify"))
    monkeypatch.setattr(cli, "_build_coordinator", lambda cfg, args: stub)

    rc = cli.main(
        _argv(portal_env, "extract", "--account", "1234", "--period-start", "2024-09-01", "--period-end", "2024-09-15")
    )

    assert rc == 1
    assert capsys.readouterr().out.strip() == "FAILED: Login failed. Check the username and password."


def test_extract_requires_a_period(portal_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "_build_coordinator", lambda cfg, args: _StubCoordinator())
    with pytest.raises(SystemExit):
        cli.main(_argv(portal_env, "extract", "--account", "1234"))


def test_inverted_period_exits_with_message(portal_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _StubCoordinator()
    monkeypatch.setattr(cli, "_build_coordinator", lambda cfg, args: stub)

    with pytest.raises(SystemExit) as exc_info:
        cli.main(
            _argv(portal_env, "extract", "--account", "1234", "--period-start", "2024-09-30", "--period-end", "2024-09-01")
        )

    assert "must not be after period_end" in str(exc_info.value.code)
    assert stub.calls == []


def test_unparseable_period_exits_with_message(portal_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "_build_coordinator", lambda cfg, args: _StubCoordinator())

    with pytest.raises(SystemExit) as exc_info:
        cli.main(_argv(portal_env, "extract", "--account", "1234", "--period-start", "not-a-date"))

    assert str(exc_info.value.code).startswith("Invalid period date:")


def test_manual_mfa_requires_headful(portal_env: Path) -> None:
    with pytest.raises(SystemExit):
        cli.main(_argv(portal_env, "check-login", "--manual-mfa"))


def test_debug_bundle_command_needs_no_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    debug_dir = tmp_path / "debug"
    debug_dir.mkdir()
    (debug_dir / "login_not_completed.png").write_bytes(b"png")

    rc = cli.main(
        [
            "--env-file",
            str(tmp_path / "missing.env"),
            "debug-bundle",
            "--debug-dir",
            str(debug_dir),
            "--log-file",
            str(tmp_path / "missing.log"),
            "--out-dir",
            str(tmp_path / "bundles"),
        ]
    )

    assert rc == 0
    out = Path(capsys.readouterr().out.strip())
    assert out.exists()
    assert out.parent == tmp_path / "bundles"
