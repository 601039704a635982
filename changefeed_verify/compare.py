"""
changefeed_verify/compare.py - State Comparator

Compares predicted state against observed state.

A mismatch is a finding, not an error: nothing here raises, so the driver
can keep running and collect evidence across cycles. Every differing index
is reported, not only the first.
"""
import logging
from dataclasses import dataclass, field
from typing import List

from .errors import Finding, FindingType
from .mutations import KeyedState

logger = logging.getLogger(__name__)


@dataclass
class Comparison:
    predicted_size: int
    observed_size: int
    findings: List[Finding] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return not self.findings

    def __bool__(self) -> bool:
        return self.matched


def log_event(level: int, event: str, details: dict) -> None:
    """Emit a structured diagnostic event."""
    logger.log(
        level,
        "%s %s",
        event,
        " ".join(f"{k}={v!r}" for k, v in details.items()),
        extra={"event": event, "details": details},
    )


def compare_states(predicted: KeyedState, observed: KeyedState) -> Comparison:
    result = Comparison(predicted_size=len(predicted), observed_size=len(observed))

    if len(predicted) != len(observed):
        details = {"predicted_size": len(predicted), "observed_size": len(observed)}
        log_event(logging.ERROR, "ChangeFeedSizeMismatch", details)
        result.findings.append(Finding(
            finding_type=FindingType.SIZE_MISMATCH,
            message=f"Predicted {len(predicted)} keys, observed {len(observed)}",
            details=details,
        ))
        return result

    for i, (p, o) in enumerate(zip(predicted, observed)):
        if p == o:
            continue
        details = {
            "index": i,
            "predicted_key": p.key,
            "observed_key": o.key,
            "predicted_value": p.value,
            "observed_value": o.value,
        }
        log_event(logging.ERROR, "ChangeFeedMutationMismatch", details)
        result.findings.append(Finding(
            finding_type=FindingType.CONTENT_MISMATCH,
            message=f"Entry {i} differs",
            index=i,
            details=details,
        ))

    return result
