from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_MFA = "awaiting_mfa"
    ACTIVE = "active"
    CLOSED = "closed"
    FAILED = "failed"


class MFAKind(str, Enum):
    SMS = "sms"
    EMAIL = "email"
    TOTP = "totp"
    PUSH = "push"
    UNKNOWN = "unknown"


class MFAResolution(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"
    TIMED_OUT = "timed_out"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Credentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    secret: str = Field(repr=False)
    institution: str = ""


class MFAChallenge(BaseModel):
    kind: MFAKind = MFAKind.UNKNOWN
    indicator: str = ""
    detected_at: datetime = Field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None
    resolution: Optional[MFAResolution] = None

    @property
    def is_terminal(self) -> bool:
        return self.resolution is not None


class ExtractionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_selector: str
    period_start: date
    period_end: date

    @model_validator(mode="after")
    def _validate_period(self) -> "ExtractionRequest":
        if not self.account_selector.strip():
            raise ValueError("account_selector must not be empty")
        if self.period_start > self.period_end:
            raise ValueError(
                f"period_start ({self.period_start}) must not be after period_end ({self.period_end})"
            )
        return self

    def period_label(self) -> str:
        return f"{self.period_start.isoformat()}..{self.period_end.isoformat()}"


class TransactionRecord(BaseModel):
    # Cell text exactly as the portal renders it; formats differ per institution.
    date: str
    merchant: str = ""
    category: str = ""
    transaction_type: str = ""
    foreign_amount: str = ""
    local_amount: str = ""
    running_balance: str = ""

    @classmethod
    def from_cells(cls, cells: list[str]) -> "TransactionRecord":
        """
        Map ordered table cells by fixed column position. Missing trailing cells become "".
        """
        padded = [c.strip() for c in cells[:7]] + [""] * max(0, 7 - len(cells))
        return cls(
            date=padded[0],
            merchant=padded[1],
            category=padded[2],
            transaction_type=padded[3],
            foreign_amount=padded[4],
            local_amount=padded[5],
            running_balance=padded[6],
        )


class ExportResult(BaseModel):
    path: Path
    record_count: int
    written_at: datetime = Field(default_factory=_utcnow)
