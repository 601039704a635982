"""
changefeed_verify/snapshot.py - Snapshot Reader

Reads a whole key range as one consistent point-in-time view.

A transient failure restarts the read from scratch with a new transaction
and a new read version. Partial output is never carried across read
versions, since a snapshot stitched from two versions is not a snapshot.
"""
import logging
from dataclasses import dataclass
from typing import List

from .mutations import KeyRange, KeyValue, KeyedState, Version
from .retry import Backoff, retry_transient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    state: KeyedState
    version: Version


async def read_snapshot(
    store,
    key_range: KeyRange,
    *,
    backoff: Backoff,
    chunk_size: int = 1000,
    max_attempts=None,
    sleep=None,
) -> Snapshot:
    """
    Read every key in key_range at a single store-chosen version.

    Args:
        store: Store exposing create_transaction() and is_transient()
        key_range: Range to read
        backoff: Delay policy between restarts
        chunk_size: Rows requested per stream chunk
        max_attempts: Restart budget, None for unbounded
        sleep: Awaitable delay override (tests)

    Returns:
        Snapshot with the concatenated chunks and the read version
    """

    async def attempt() -> Snapshot:
        tr = store.create_transaction()
        version = await tr.get_read_version()
        output: List[KeyValue] = []
        async for chunk in tr.get_range_stream(key_range.begin, key_range.end, chunk_size):
            output.extend(chunk)
        # Stream exhaustion is the success path
        return Snapshot(state=tuple(output), version=version)

    kwargs = {"sleep": sleep} if sleep is not None else {}
    snapshot = await retry_transient(
        attempt,
        is_transient=store.is_transient,
        backoff=backoff,
        max_attempts=max_attempts,
        describe="read_snapshot",
        **kwargs,
    )
    logger.debug("Snapshot of %d keys at version %d", len(snapshot.state), snapshot.version)
    return snapshot
