"""
changefeed_verify/feed_reader.py - Mutation Log Reader

Reads a change feed's batches for [begin, end).

Unlike snapshots, the log is append-only and keyed by version, so a
transient failure resumes the stream one version past the last fully
consumed batch instead of starting over. No batch is delivered twice
and none is skipped.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from .mutations import KeyRange, MutationBatch, Version
from .retry import Backoff, retry_transient

logger = logging.getLogger(__name__)


@dataclass
class FeedCursor:
    """Resume position in a change feed stream."""
    begin: Version
    last_consumed_version: Optional[Version] = None

    @property
    def next_version(self) -> Version:
        if self.last_consumed_version is None:
            return self.begin
        return self.last_consumed_version + 1

    def advance(self, batch: MutationBatch) -> None:
        self.last_consumed_version = batch.version


async def read_mutations(
    store,
    feed_id: str,
    begin: Version,
    end: Version,
    key_range: KeyRange,
    *,
    backoff: Backoff,
    batches_per_chunk: int = 100,
    max_attempts=None,
    sleep=None,
) -> List[MutationBatch]:
    """
    Collect every batch of feed_id with begin <= version < end.

    Returns:
        Batches in ascending version order
    """
    cursor = FeedCursor(begin=begin)
    output: List[MutationBatch] = []

    async def attempt() -> List[MutationBatch]:
        stream = store.get_change_feed_stream(
            feed_id, cursor.next_version, end, key_range, batches_per_chunk
        )
        async for chunk in stream:
            for batch in chunk:
                output.append(batch)
                cursor.advance(batch)
        return output

    kwargs = {"sleep": sleep} if sleep is not None else {}
    batches = await retry_transient(
        attempt,
        is_transient=store.is_transient,
        backoff=backoff,
        max_attempts=max_attempts,
        describe="read_mutations",
        **kwargs,
    )
    logger.debug(
        "Read %d batches of feed %s in [%d, %d)", len(batches), feed_id, begin, end
    )
    return batches
