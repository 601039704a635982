"""
changefeed_verify/errors.py - Error and Finding Taxonomy

Errors are contracts, not strings.

Control flow:
- Transient StoreError: retried by the enclosing operation, never seen by callers
- Non-transient StoreError: fatal, aborts the run
- ProtocolError: fatal, harness and store disagree on the log format
- Finding: observational, recorded in the report, the run continues
"""
from enum import Enum
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional


class StoreErrorCode(str, Enum):
    # Transient (safe to retry)
    NOT_COMMITTED = "NOT_COMMITTED"
    TRANSACTION_TOO_OLD = "TRANSACTION_TOO_OLD"
    FUTURE_VERSION = "FUTURE_VERSION"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    TIMED_OUT = "TIMED_OUT"

    # Non-transient (fatal)
    UNKNOWN_CHANGE_FEED = "UNKNOWN_CHANGE_FEED"
    CHANGE_FEED_POPPED = "CHANGE_FEED_POPPED"
    INVALID_RANGE = "INVALID_RANGE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


TRANSIENT_CODES = frozenset({
    StoreErrorCode.NOT_COMMITTED,
    StoreErrorCode.TRANSACTION_TOO_OLD,
    StoreErrorCode.FUTURE_VERSION,
    StoreErrorCode.CONNECTION_FAILED,
    StoreErrorCode.TIMED_OUT,
})


class StoreError(Exception):
    """Failure reported by the key-value store."""

    def __init__(self, code: StoreErrorCode, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message or code.value
        self.details = details
        super().__init__(self.message)

    @property
    def transient(self) -> bool:
        return self.code in TRANSIENT_CODES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.code.value,
            "transient": self.transient,
            "message": self.message,
            "details": self.details or {},
        }


class ProtocolError(Exception):
    """The mutation log contains something the harness cannot apply."""


class RetryExhausted(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message=None, *, error_code=None, attempts=None, last_error=None):
        super().__init__(message or "Retry attempts exhausted")
        self.error_code = error_code
        self.attempts = attempts
        self.last_error = last_error


class WriterFailed(Exception):
    """Raised when a background writer died on a non-transient error."""

    def __init__(self, message, failures=()):
        super().__init__(message)
        self.failures = list(failures)


class VerificationStatus(str, Enum):
    """Final verification outcome."""
    PASS = "PASS"
    FAIL = "FAIL"


class FindingType(str, Enum):
    SIZE_MISMATCH = "SIZE_MISMATCH"
    CONTENT_MISMATCH = "CONTENT_MISMATCH"


@dataclass
class Finding:
    """Individual divergence between predicted and observed state."""
    finding_type: FindingType
    message: str
    index: Optional[int] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.finding_type.value,
            "message": self.message,
            "index": self.index,
            "details": self.details or {},
        }


@dataclass
class CycleReport:
    """Outcome of one snapshot / replay / compare cycle."""
    cycle: int
    first_version: int
    second_version: int
    predicted_size: int
    observed_size: int
    batch_count: int
    mutation_count: int
    findings: List[Finding] = field(default_factory=list)
    popped: bool = False

    @property
    def matched(self) -> bool:
        return not self.findings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "first_version": self.first_version,
            "second_version": self.second_version,
            "predicted_size": self.predicted_size,
            "observed_size": self.observed_size,
            "batch_count": self.batch_count,
            "mutation_count": self.mutation_count,
            "matched": self.matched,
            "popped": self.popped,
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass
class RunReport:
    """Every cycle one verification run completed."""
    feed_id: str
    cycles: List[CycleReport] = field(default_factory=list)

    @property
    def mismatch_count(self) -> int:
        return sum(1 for c in self.cycles if not c.matched)

    @property
    def status(self) -> VerificationStatus:
        if self.mismatch_count:
            return VerificationStatus.FAIL
        return VerificationStatus.PASS

    @property
    def exit_code(self) -> int:
        """0 = PASS, 2 = FAIL."""
        if self.status == VerificationStatus.PASS:
            return 0
        return 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "status": self.status.value,
            "cycle_count": len(self.cycles),
            "mismatch_count": self.mismatch_count,
            "cycles": [c.to_dict() for c in self.cycles],
            "exit_code": self.exit_code,
        }
