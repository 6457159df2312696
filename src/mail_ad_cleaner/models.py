"""Data models for Mail Ad Cleaner."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """A single message as fetched from a mailbox location."""

    id: str  # provider UID, unique within `location` for one session
    subject: str = ""
    sender: str = ""  # Full From header value
    recipient: str = ""
    date: datetime = field(default_factory=_utcnow)
    body: str = ""
    text: str = ""
    html: str = ""
    labels: list[str] = field(default_factory=list)
    location: str = ""

    @property
    def age_in_days(self) -> int:
        """Whole days between the Date header and now, recomputed on every access."""
        date = self.date if self.date.tzinfo else self.date.replace(tzinfo=timezone.utc)
        return math.floor((_utcnow() - date).total_seconds() / 86400)

    def has_label(self, label: str) -> bool:
        return label.lower() in (value.lower() for value in self.labels)


@dataclass
class FetchCriteria:
    """What to pull from a location: age bound, batch cap and read state."""

    max_age_days: int | None
    batch_size: int
    include_read: bool = True
    include_unread: bool = True
    exclude_processed: bool = True  # label providers only

    def __post_init__(self) -> None:
        if self.max_age_days is not None and self.max_age_days <= 0:
            raise ValueError(f"max_age_days must be positive, got {self.max_age_days}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying one message."""

    is_advertising: bool
    confidence: float
    reason: str

    @classmethod
    def fail_safe(cls, reason: str = "Error during classification") -> ClassificationResult:
        """The result used whenever the classifier cannot be trusted: never advertising."""
        return cls(is_advertising=False, confidence=0.0, reason=reason)


@dataclass
class ClassificationReport:
    """Counts for one classification pass."""

    fetched: int = 0
    processed: int = 0
    skipped: int = 0  # already carried the Processed label
    marked_advertising: int = 0
    marked_processed: int = 0
    failed: int = 0


@dataclass
class CleanupReport:
    """Counts for one cleanup pass."""

    found: int = 0
    deleted: int = 0  # would-delete under dry run
    skipped_for_age: int = 0
    failed: int = 0
    dry_run: bool = False


@dataclass
class RunReport:
    """Result of a full run."""

    classification: ClassificationReport = field(default_factory=ClassificationReport)
    cleanup: CleanupReport = field(default_factory=CleanupReport)
