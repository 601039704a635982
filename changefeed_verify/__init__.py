"""
changefeed_verify - Change Feed Correctness Verification

Proves that snapshot(A) + change feed mutations [A, B) == snapshot(B)
against a store with concurrent writers.
"""
from .compare import Comparison, compare_states
from .driver import ChangeFeedVerifier
from .errors import (
    CycleReport,
    Finding,
    FindingType,
    ProtocolError,
    RetryExhausted,
    RunReport,
    StoreError,
    StoreErrorCode,
    VerificationStatus,
    WriterFailed,
)
from .feed_reader import FeedCursor, read_mutations
from .mutations import (
    NORMAL_KEYS,
    KeyRange,
    KeyValue,
    KeyedState,
    Mutation,
    MutationBatch,
    MutationType,
    make_state,
)
from .reconstruct import advance_state
from .snapshot import Snapshot, read_snapshot

__all__ = [
    "ChangeFeedVerifier",
    "Comparison",
    "CycleReport",
    "FeedCursor",
    "Finding",
    "FindingType",
    "KeyRange",
    "KeyValue",
    "KeyedState",
    "Mutation",
    "MutationBatch",
    "MutationType",
    "NORMAL_KEYS",
    "ProtocolError",
    "RetryExhausted",
    "RunReport",
    "Snapshot",
    "StoreError",
    "StoreErrorCode",
    "VerificationStatus",
    "WriterFailed",
    "advance_state",
    "compare_states",
    "make_state",
    "read_mutations",
    "read_snapshot",
]
