"""Data models for the VerifyStream batch verification engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Category(str, Enum):
    """Verification outcome label assigned by the remote service."""
    valid = "valid"
    invalid = "invalid"
    risky = "risky"
    custom = "custom"


class RunStatus(str, Enum):
    """Lifecycle status of a single batch run."""
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class CategoryTotals(BaseModel):
    """Per-category counts as reported by the producer."""
    valid: int = 0
    invalid: int = 0
    risky: int = 0
    custom: int = 0

    @property
    def folded_risky(self) -> int:
        # custom labels count as risky so the three counters add up to processed
        return self.risky + self.custom

    @property
    def processed(self) -> int:
        return self.valid + self.invalid + self.folded_risky


# --- Stream events ---

class Started(BaseModel):
    """First record of a batch stream: the producer assigned a job id."""
    batch_id: str


class ResultRecord(BaseModel):
    """Verification outcome for one email."""
    email: str
    category: Category
    provider: Optional[str] = None
    timestamp: Optional[Union[str, float]] = None


class Completed(BaseModel):
    """Final record of a batch stream, carrying authoritative totals."""
    batch_id: str
    totals: CategoryTotals = Field(default_factory=CategoryTotals)
    total_emails: Optional[int] = None


VerificationEvent = Union[Started, ResultRecord, Completed]


# --- Run state ---

class BatchRun(BaseModel):
    """Mutable state of one verification job. Owned by the tracker."""
    id: Optional[str] = None
    display_name: str = ""
    requested_name: Optional[str] = None
    total: int = 0
    processed: int = 0
    valid: int = 0
    invalid: int = 0
    risky: int = 0
    status: RunStatus = RunStatus.pending
    started_at: float = 0.0
    updated_at: float = 0.0
    finished_at: Optional[float] = None
    failure_reason: Optional[str] = None


class RunSnapshot(BaseModel):
    """Read-only view of a BatchRun handed to collaborators."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    display_name: str = ""
    total: int = 0
    processed: int = 0
    valid: int = 0
    invalid: int = 0
    risky: int = 0
    status: RunStatus = RunStatus.pending
    started_at: float = 0.0
    progress: int = 0
    elapsed_seconds: float = 0.0
    estimated_remaining_seconds: Optional[float] = None
    failure_reason: Optional[str] = None

    @property
    def time_elapsed(self) -> str:
        return format_duration(self.elapsed_seconds)

    @property
    def time_remaining(self) -> str:
        if self.estimated_remaining_seconds is None:
            return "Calculating..."
        return format_duration(self.estimated_remaining_seconds)

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.completed, RunStatus.failed)


# --- API payloads ---

class StatusSnapshot(BaseModel):
    """Point-in-time batch status from GET verify/status/{job_id}."""
    job_id: str
    status: str = ""
    total_emails: int = 0
    verified_emails: int = 0
    results: CategoryTotals = Field(default_factory=CategoryTotals)
    timestamp: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == RunStatus.completed.value


class EmailResult(BaseModel):
    """Per-email row of a batch result listing."""
    email: str
    category: Category = Category.risky
    provider: Optional[str] = None
    timestamp: Optional[Union[str, float]] = None


class BatchDetails(BaseModel):
    """Full result listing from GET results/batch/{batch_id}."""
    job_id: str
    status: str = ""
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    total_emails: int = 0
    verified_emails: int = 0
    results: CategoryTotals = Field(default_factory=CategoryTotals)
    email_results: dict[str, EmailResult] = Field(default_factory=dict)

    @property
    def emails(self) -> list[EmailResult]:
        return list(self.email_results.values())

    def by_category(self, category: Category) -> list[EmailResult]:
        return [r for r in self.email_results.values() if r.category == category]


class BatchSummary(BaseModel):
    """One row of the batch listing shown to the user."""
    id: str
    name: str
    date: str = ""
    total: int = 0
    processed: int = 0
    valid: int = 0
    invalid: int = 0
    risky: int = 0
    progress: int = 0
    status: str = ""

    @property
    def is_running(self) -> bool:
        return self.status != RunStatus.completed.value


class BatchListing(BaseModel):
    """Known batches split into running and recently completed."""
    running: list[BatchSummary] = Field(default_factory=list)
    recent: list[BatchSummary] = Field(default_factory=list)
    refreshed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CategoryStats(BaseModel):
    """Global lifetime category counts from GET statistics/category."""
    valid: int = 0
    invalid: int = 0
    risky: int = 0
    total: int = 0
    timestamp: Optional[str] = None

    @property
    def verification_rate(self) -> float:
        return rate(self.valid, self.total)


def percent(part: int, whole: int) -> int:
    """Whole-number percentage clamped to [0, 100]; zero whole yields 0."""
    if whole <= 0:
        return 0
    return max(0, min(100, round(part / whole * 100)))


def rate(part: int, whole: int) -> float:
    """Percentage rounded to one decimal place; zero whole yields 0."""
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 1)


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    seconds = max(0, int(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
