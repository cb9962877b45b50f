from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    WAITING_CONFIRMATION = "WAITING_CONFIRMATION"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# A job waiting for a human does not produce more log lines on its own, so streams can stop there.
SETTLED_STATUSES = TERMINAL_STATUSES | {JobStatus.WAITING_CONFIRMATION}

ALLOWED_TRANSITIONS: Mapping[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.WAITING_CONFIRMATION, JobStatus.CANCELLED}
    ),
    JobStatus.WAITING_CONFIRMATION: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    # Only reachable through an explicit manual retry.
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class JobKind(str, Enum):
    SUBMIT_DEDUCTION = "SUBMIT_DEDUCTION"
    # Login + reach the application only; used to check stored credentials.
    VALIDATE_CREDENTIALS = "VALIDATE_CREDENTIALS"


class FailureKind(str, Enum):
    PRECONDITION = "precondition"
    CHALLENGE = "challenge"
    PROTOCOL = "protocol"
    INFRASTRUCTURE = "infrastructure"


class DeductionStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    PREVIEW_READY = "PREVIEW_READY"
    SUBMITTED = "SUBMITTED"


class UserProfile(BaseModel):
    id: str
    email: str
    # When disabled, runs stop at WAITING_CONFIRMATION instead of saving the form.
    auto_submit: bool = False


class StoredCredential(BaseModel):
    user_id: str
    cuit: str
    ciphertext: str = Field(repr=False)
    iv: str = Field(repr=False)
    auth_tag: str = Field(repr=False)


class DeductionRecord(BaseModel):
    id: str
    user_id: str
    category: str
    provider_cuit: str
    invoice_type: str
    amount: Decimal
    fiscal_month: int = Field(ge=1, le=12)
    fiscal_year: int
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    status: DeductionStatus = DeductionStatus.PENDING


class ScreenshotMeta(BaseModel):
    step: int = Field(ge=1)
    name: str
    label: str
    timestamp: Optional[datetime] = None


class AutomationJob(BaseModel):
    id: str
    user_id: str
    deduction_id: Optional[str] = None
    kind: JobKind = JobKind.SUBMIT_DEDUCTION
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    error_message: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    logs: list[str] = Field(default_factory=list)
    # Legacy single-screenshot reference (filename of the preview shown for confirmation).
    screenshot_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _completed_iff_terminal(self) -> "AutomationJob":
        if is_terminal(self.status) and self.completed_at is None:
            raise ValueError(f"job {self.id}: terminal status {self.status.value} requires completed_at")
        if not is_terminal(self.status) and self.completed_at is not None:
            raise ValueError(f"job {self.id}: non-terminal status {self.status.value} must not set completed_at")
        return self

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def challenge_detected(self) -> bool:
        return self.failure_kind == FailureKind.CHALLENGE
