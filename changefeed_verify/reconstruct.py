"""
changefeed_verify/reconstruct.py - State Reconstructor

Pure function: base state + ordered mutation batches -> predicted state.

Apply semantics match the store:
- Batches in ascending version order, mutations in batch order
- SET_VALUE: last writer wins
- CLEAR_RANGE: removes [begin, end), end exclusive
"""
import bisect
from typing import Dict, Iterable, List, Optional

from .errors import ProtocolError
from .mutations import KeyValue, KeyedState, MutationBatch, MutationType, Version


class _WorkingMap:
    """Sorted key index plus value dict."""

    __slots__ = ("_keys", "_values")

    def __init__(self, state: KeyedState):
        self._keys: List[str] = [kv.key for kv in state]
        self._values: Dict[str, str] = {kv.key: kv.value for kv in state}

    def set(self, key: str, value: str) -> None:
        if key not in self._values:
            bisect.insort(self._keys, key)
        self._values[key] = value

    def clear_range(self, begin: str, end: str) -> None:
        lo = bisect.bisect_left(self._keys, begin)
        hi = bisect.bisect_left(self._keys, end)
        if lo >= hi:
            return
        for key in self._keys[lo:hi]:
            del self._values[key]
        del self._keys[lo:hi]

    def to_state(self) -> KeyedState:
        return tuple(KeyValue(k, self._values[k]) for k in self._keys)


def advance_state(base: KeyedState, batches: Iterable[MutationBatch]) -> KeyedState:
    """
    Replay batches onto base.

    Raises:
        ProtocolError: On an unknown mutation type or batches out of version order
    """
    data = _WorkingMap(base)
    prev_version: Optional[Version] = None
    for batch in batches:
        if prev_version is not None and batch.version <= prev_version:
            raise ProtocolError(
                f"Batch version {batch.version} does not follow {prev_version}"
            )
        prev_version = batch.version
        for m in batch.mutations:
            if m.type == MutationType.SET_VALUE:
                data.set(m.param1, m.param2)
            elif m.type == MutationType.CLEAR_RANGE:
                data.clear_range(m.param1, m.param2)
            else:
                raise ProtocolError(
                    f"Unknown mutation type {m.type!r} at version {batch.version}"
                )
    return data.to_state()
