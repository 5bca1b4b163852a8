from __future__ import annotations

from typing import Optional, Sequence


class PortalError(RuntimeError):
    """
    Base class for everything that can go wrong while driving the portal.

    Carries enough context (stage, last URL, selectors tried) to diagnose a failure from the log line alone.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        stage: str = "",
        url: str = "",
        tried: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.url = url
        self.tried = tuple(tried or ())

    def __str__(self) -> str:
        parts = [self.message]
        if self.stage:
            parts.append(f"stage={self.stage}")
        if self.url:
            parts.append(f"url={self.url!r}")
        if self.tried:
            parts.append(f"tried={list(self.tried)!r}")
        return " ".join(parts)


class LaunchError(PortalError):
    """Browser runtime is unavailable. Fatal; never retried internally."""


class NavigationTimeout(PortalError):
    retryable = True


class AuthenticationError(PortalError):
    """Credentials rejected, or the post-login state could not be verified."""


class LoginFormNotFoundError(AuthenticationError):
    """
    Raised when we cannot locate the portal login form after trying every candidate selector.
    """


class MFATimeout(PortalError):
    pass


class ExtractionError(PortalError):
    def __init__(
        self,
        message: str,
        *,
        account: str = "",
        period: str = "",
        stage: str = "extract",
        url: str = "",
        tried: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(message, stage=stage, url=url, tried=tried)
        self.account = account
        self.period = period

    def __str__(self) -> str:
        base = super().__str__()
        ctx = []
        if self.account:
            ctx.append(f"account={self.account!r}")
        if self.period:
            ctx.append(f"period={self.period}")
        return " ".join([base, *ctx])


class ExportError(OSError):
    """Writing the export file failed. Nothing is left at the destination."""

    retryable = True


class SessionClosedError(PortalError):
    """A pending wait was aborted because its Session was closed."""


class SessionAlreadyActiveError(RuntimeError):
    pass


_REASONS = (
    (LaunchError, "Browser could not be started on this machine."),
    (NavigationTimeout, "The bank portal did not respond in time. Try again shortly."),
    (LoginFormNotFoundError, "Could not find the login form; the portal layout may have changed."),
    (AuthenticationError, "Login failed. Check the username and password."),
    (MFATimeout, "Timed out waiting for the verification code."),
    (ExtractionError, "Could not read transactions; the portal layout may have changed."),
    (ExportError, "Could not write the export file."),
    (SessionClosedError, "The session was closed before it finished."),
    (SessionAlreadyActiveError, "An extraction is already running for this request."),
)


def describe_failure(exc: BaseException) -> str:
    """
    Short human-readable reason for a failed run, suitable for a chat/notification reply.
    """
    for kind, reason in _REASONS:
        if isinstance(exc, kind):
            return reason
    return "Extraction failed unexpectedly."
