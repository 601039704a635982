"""
changefeed_verify/test_readers.py - Snapshot and Mutation Log Readers

Tests:
- Snapshot restarts from scratch on a transient failure, never mixing versions
- Mutation log resumes one version past the last consumed batch
- Fatal errors propagate from both readers
"""
import random

import pytest

from .errors import StoreError, StoreErrorCode
from .feed_reader import FeedCursor, read_mutations
from .mutations import NORMAL_KEYS, KeyValue, Mutation, MutationBatch
from .retry import Backoff
from .snapshot import read_snapshot


def transient():
    return StoreError(StoreErrorCode.NOT_COMMITTED)


class ScriptedTransaction:
    def __init__(self, version, chunks, fail_after):
        self.version = version
        self.chunks = chunks
        self.fail_after = fail_after

    async def get_read_version(self):
        return self.version

    async def get_range_stream(self, begin, end, chunk_size):
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i == self.fail_after:
                raise self.fail_error
            yield chunk


class ScriptedSnapshotStore:
    """Each transaction reads at the next scripted version."""

    def __init__(self, attempts):
        # [(version, chunks, fail_after_n_chunks_or_None, error)]
        self.attempts = list(attempts)
        self.transactions = 0

    def create_transaction(self):
        version, chunks, fail_after, error = self.attempts[self.transactions]
        self.transactions += 1
        tr = ScriptedTransaction(version, chunks, fail_after)
        tr.fail_error = error
        return tr

    @staticmethod
    def is_transient(error):
        return isinstance(error, StoreError) and error.transient


class ScriptedFeedStore:
    """Serves a fixed log, failing once after each scripted chunk count."""

    def __init__(self, batches, failures, per_chunk=2):
        self.batches = batches
        self.failures = list(failures)
        self.per_chunk = per_chunk
        self.requests = []

    async def get_change_feed_stream(self, feed_id, begin, end, key_range, batches_per_chunk):
        self.requests.append((begin, end))
        fail_after = self.failures.pop(0) if self.failures else None
        selected = [b for b in self.batches if begin <= b.version < end]
        for n, i in enumerate(range(0, len(selected), self.per_chunk)):
            if fail_after is not None and n == fail_after:
                raise fail_after_error(fail_after)
            yield selected[i:i + self.per_chunk]

    @staticmethod
    def is_transient(error):
        return isinstance(error, StoreError) and error.transient


def fail_after_error(n):
    return StoreError(StoreErrorCode.CONNECTION_FAILED, f"dropped after {n} chunks")


@pytest.fixture
def backoff():
    return Backoff(min_wait=0.001, max_wait=0.01, rng=random.Random(0))


class TestSnapshotReader:

    @pytest.mark.asyncio
    async def test_chunks_concatenated(self, backoff, clock):
        store = ScriptedSnapshotStore([
            (10, [[KeyValue("a", "1")], [KeyValue("b", "2"), KeyValue("c", "3")]], None, None),
        ])
        snap = await read_snapshot(store, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep)

        assert snap.version == 10
        assert [kv.key for kv in snap.state] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_restart_discards_partial_output(self, backoff, clock):
        store = ScriptedSnapshotStore([
            (10, [[KeyValue("a", "old")], [KeyValue("z", "old")]], 1, transient()),
            (12, [[KeyValue("a", "new")], [KeyValue("b", "new")]], None, None),
        ])
        snap = await read_snapshot(store, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep)

        assert store.transactions == 2
        assert snap.version == 12
        assert snap.state == (KeyValue("a", "new"), KeyValue("b", "new"))
        assert len(clock.sleeps) == 1

    @pytest.mark.asyncio
    async def test_fatal_error_propagates(self, backoff, clock):
        store = ScriptedSnapshotStore([
            (10, [[KeyValue("a", "1")]], 0, StoreError(StoreErrorCode.INTERNAL_ERROR)),
        ])
        with pytest.raises(StoreError) as exc:
            await read_snapshot(store, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep)
        assert exc.value.code == StoreErrorCode.INTERNAL_ERROR
        assert store.transactions == 1

    @pytest.mark.asyncio
    async def test_empty_range(self, backoff, clock):
        store = ScriptedSnapshotStore([(3, [], None, None)])
        snap = await read_snapshot(store, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep)
        assert snap.state == ()
        assert snap.version == 3


def log(*versions):
    return [MutationBatch(v, (Mutation.set(f"k{v}", str(v)),)) for v in versions]


class TestMutationLogReader:

    @pytest.mark.asyncio
    async def test_reads_interval(self, backoff, clock):
        store = ScriptedFeedStore(log(1, 3, 5, 7, 9), [])
        batches = await read_mutations(store, "f", 3, 9, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep)

        assert [b.version for b in batches] == [3, 5, 7]
        assert store.requests == [(3, 9)]

    @pytest.mark.asyncio
    async def test_resume_after_last_consumed_batch(self, backoff, clock):
        # First stream dies after one chunk (versions 2 and 4)
        store = ScriptedFeedStore(log(2, 4, 6, 8, 10), [1])
        batches = await read_mutations(store, "f", 0, 11, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep)

        assert [b.version for b in batches] == [2, 4, 6, 8, 10]
        assert store.requests == [(0, 11), (5, 11)]

    @pytest.mark.asyncio
    async def test_failure_before_any_batch_restarts_at_begin(self, backoff, clock):
        store = ScriptedFeedStore(log(2, 4), [0, 0])
        batches = await read_mutations(store, "f", 1, 5, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep)

        assert [b.version for b in batches] == [2, 4]
        assert store.requests == [(1, 5), (1, 5), (1, 5)]

    @pytest.mark.asyncio
    async def test_repeated_failures_never_duplicate(self, backoff, clock):
        store = ScriptedFeedStore(log(*range(1, 20)), [1, 1, 1, 1], per_chunk=3)
        batches = await read_mutations(store, "f", 0, 20, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep)

        versions = [b.version for b in batches]
        assert versions == list(range(1, 20))
        assert [r[0] for r in store.requests] == [0, 4, 7, 10, 13]

    @pytest.mark.asyncio
    async def test_empty_interval(self, backoff, clock):
        store = ScriptedFeedStore(log(1, 2, 3), [])
        assert await read_mutations(store, "f", 2, 2, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep) == []

    @pytest.mark.asyncio
    async def test_fatal_error_propagates(self, backoff, clock):
        class PoppedStore(ScriptedFeedStore):
            async def get_change_feed_stream(self, *args):
                raise StoreError(StoreErrorCode.CHANGE_FEED_POPPED)
                yield  # pragma: no cover

        with pytest.raises(StoreError) as exc:
            await read_mutations(PoppedStore([], []), "f", 0, 5, NORMAL_KEYS, backoff=backoff, sleep=clock.sleep)
        assert exc.value.code == StoreErrorCode.CHANGE_FEED_POPPED


class TestFeedCursor:

    def test_starts_at_begin(self):
        assert FeedCursor(begin=7).next_version == 7

    def test_advances_past_consumed(self):
        cursor = FeedCursor(begin=7)
        cursor.advance(MutationBatch(9, ()))
        assert cursor.next_version == 10
