"""Models for ShardBuffer delivery bookkeeping."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .message import Message


class TransmissionState(Enum):
    """Lifecycle of one transmission."""
    PLANNED = "planned"
    INITIALIZING = "initializing"
    WRITING = "writing"
    RECONCILING = "reconciling"
    VERIFIED = "verified"
    CLOSED = "closed"
    FAILED = "failed"


class SubmissionStatus(Enum):
    """Outcome of one message in a broadcast batch."""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SubmissionOutcome:
    """What happened to one message of a batch."""
    index: int
    message: Message
    status: SubmissionStatus
    signature: Optional[str] = None
    error: Optional[Exception] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == SubmissionStatus.CONFIRMED


@dataclass
class BroadcastReport:
    """Per-message outcomes of a broadcast batch, in input order."""
    outcomes: list[SubmissionOutcome] = field(default_factory=list)
    window_refreshes: int = 0

    @property
    def ok(self) -> bool:
        """Whether every message confirmed."""
        return all(o.ok for o in self.outcomes)

    def confirmed(self) -> list[SubmissionOutcome]:
        return [o for o in self.outcomes if o.status == SubmissionStatus.CONFIRMED]

    def failed(self) -> list[SubmissionOutcome]:
        return [o for o in self.outcomes if o.status == SubmissionStatus.FAILED]

    def cancelled(self) -> list[SubmissionOutcome]:
        return [o for o in self.outcomes if o.status == SubmissionStatus.CANCELLED]

    def first_error(self) -> Optional[Exception]:
        """The error of the first failed message, if any."""
        for outcome in self.outcomes:
            if outcome.error is not None:
                return outcome.error
        return None


@dataclass
class ReconcileReport:
    """Result of the read-verify-resubmit loop."""

    rounds: int = 0
    """Resubmission passes performed."""

    resubmitted: list[list[Message]] = field(default_factory=list)
    """Messages resubmitted in each pass."""

    broadcasts: list[BroadcastReport] = field(default_factory=list)

    @property
    def resubmitted_count(self) -> int:
        return sum(len(batch) for batch in self.resubmitted)


@dataclass
class UploadResult:
    """Result of a completed upload."""
    address: bytes
    checksum: bytes
    frame_count: int
    initialize: BroadcastReport
    writes: BroadcastReport
    reconcile: ReconcileReport
