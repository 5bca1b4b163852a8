from __future__ import annotations

from bank_portal_export.errors import (
    AuthenticationError,
    ExportError,
    ExtractionError,
    LoginFormNotFoundError,
    MFATimeout,
    NavigationTimeout,
    SessionAlreadyActiveError,
    describe_failure,
)


def test_error_context_in_message() -> None:
    err = LoginFormNotFoundError(
        "Could not find login form",
        stage="credentials",
        url="https://bank.example.com/login",
        tried=["#username", "input[type=email]"],
    )
    text = str(err)
    assert "stage=credentials" in text
    assert "https://bank.example.com/login" in text
    assert "#username" in text
    assert isinstance(err, AuthenticationError)


def test_extraction_error_names_account_and_period() -> None:
    err = ExtractionError("Could not find the transaction table", account="1234", period="2024-09-01..2024-09-30")
    assert err.stage == "extract"
    assert "account='1234'" in str(err)
    assert "period=2024-09-01..2024-09-30" in str(err)


def test_retryable_flags() -> None:
    assert NavigationTimeout("x").retryable
    assert ExportError("x").retryable
    assert not AuthenticationError("x").retryable
    assert not MFATimeout("x").retryable


def test_describe_failure_prefers_most_specific() -> None:
    assert "login form" in describe_failure(LoginFormNotFoundError("x"))
    assert "username and password" in describe_failure(AuthenticationError("x"))
    assert "verification code" in describe_failure(MFATimeout("x"))
    assert "already running" in describe_failure(SessionAlreadyActiveError("x"))
    assert describe_failure(ValueError("x")) == "Extraction failed unexpectedly."
