"""
changefeed_verify/store.py - Reference Versioned Store

A small multi-version key-value store with change feeds, used to run the
harness end to end. It implements exactly the surface the harness consumes:

- Transaction: read version, streaming range read, writes, feed registration, commit
- Change feed stream for a feed id, version interval and key range
- Popping consumed feed mutations
- Transient / fatal error classification

Snapshot reads are served from an MVCC key history, change feeds from a
separate per-feed log, so the two paths never share state.
"""
import asyncio
import logging
import random
from typing import AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import (
    create_engine, Column, String, Integer, Text, Index, and_, func, select
)
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from .errors import StoreError, StoreErrorCode, TRANSIENT_CODES
from .mutations import (
    KeyRange, KeyValue, Mutation, MutationBatch, MutationType, Version,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class KeyHistoryRow(Base):
    """One key at one version. NULL value = cleared at that version."""
    __tablename__ = "key_history"

    key = Column(Text, primary_key=True)
    version = Column(Integer, primary_key=True)
    value = Column(Text, nullable=True)


class ChangeFeedRow(Base):
    """Registered change feed."""
    __tablename__ = "change_feeds"

    feed_id = Column(String(64), primary_key=True)
    begin_key = Column(Text, nullable=False)
    end_key = Column(Text, nullable=False)
    registered_version = Column(Integer, nullable=False)
    # Entries below this version have been discarded
    popped_version = Column(Integer, nullable=False, default=0)


class FeedMutationRow(Base):
    """One mutation as recorded in one feed's log."""
    __tablename__ = "feed_mutations"

    feed_id = Column(String(64), primary_key=True)
    version = Column(Integer, primary_key=True)
    seq = Column(Integer, primary_key=True)
    mutation_type = Column(String(16), nullable=False)
    param1 = Column(Text, nullable=False)
    param2 = Column(Text, nullable=False)

    __table_args__ = (
        Index("ix_feed_version", "feed_id", "version"),
    )


class FaultInjector:
    """Raises transient store errors at suspension points with probability `rate`."""

    def __init__(self, rate: float = 0.0, rng: Optional[random.Random] = None):
        self.rate = rate
        self.rng = rng or random.Random()
        self.injected = 0

    def maybe_fail(self, point: str) -> None:
        if self.rate <= 0 or self.rng.random() >= self.rate:
            return
        code = self.rng.choice(sorted(TRANSIENT_CODES - {StoreErrorCode.FUTURE_VERSION}))
        self.injected += 1
        logger.debug("Injecting %s at %s", code.value, point)
        raise StoreError(code, f"injected fault at {point}", details={"point": point})


def _validate_range(begin: str, end: str) -> None:
    if begin > end:
        raise StoreError(
            StoreErrorCode.INVALID_RANGE,
            f"Inverted range [{begin!r}, {end!r})",
            details={"begin": begin, "end": end},
        )


class Transaction:
    """
    One unit of work against the store.

    Reads observe the version fixed by the first get_read_version();
    writes become visible atomically at commit.
    """

    def __init__(self, store: "VersionedStore"):
        self._store = store
        self._read_version: Optional[Version] = None
        self._mutations: List[Mutation] = []
        self._feeds: List[Tuple[str, KeyRange]] = []
        self.committed_version: Optional[Version] = None

    async def get_read_version(self) -> Version:
        if self._read_version is None:
            await asyncio.sleep(0)
            self._store.faults.maybe_fail("get_read_version")
            # Sees every commit below the read version
            self._read_version = self._store.committed_version + 1
        return self._read_version

    async def get_range_stream(
        self, begin: str, end: str, chunk_size: int = 1000
    ) -> AsyncIterator[List[KeyValue]]:
        """Yield the live keys of [begin, end) at the read version, in key order."""
        _validate_range(begin, end)
        read_version = await self.get_read_version()
        after: Optional[str] = None
        while True:
            await asyncio.sleep(0)
            self._store.faults.maybe_fail("range_stream")
            chunk = self._store._read_chunk(begin, end, read_version, after, chunk_size)
            if not chunk:
                return
            yield chunk
            if len(chunk) < chunk_size:
                return
            after = chunk[-1].key

    def set(self, key: str, value: str) -> None:
        self._mutations.append(Mutation.set(key, value))

    def clear_range(self, begin: str, end: str) -> None:
        _validate_range(begin, end)
        self._mutations.append(Mutation.clear_range(begin, end))

    async def register_change_feed(self, feed_id: str, key_range: KeyRange) -> None:
        _validate_range(key_range.begin, key_range.end)
        await asyncio.sleep(0)
        self._feeds.append((feed_id, KeyRange(*key_range)))

    async def commit(self) -> Version:
        await asyncio.sleep(0)
        self._store.faults.maybe_fail("commit")
        self.committed_version = self._store._apply(self._mutations, self._feeds)
        return self.committed_version


class VersionedStore:
    """
    Multi-version store with change feeds, persisted through SQLAlchemy.

    Invariants:
    - Versions only increase; each write commit gets exactly one new version
    - A read at version V sees exactly the commits with version < V, so the
      feed batches in [A, B) take a snapshot at A to a snapshot at B
    - A feed records every mutation committed after its registration,
      clipped to its key range, in commit order
    - Popping never moves a feed's boundary backwards
    """

    def __init__(self, database_url: str = "sqlite://", faults: Optional[FaultInjector] = None):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # A single shared connection, otherwise each checkout is a new empty database
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(database_url)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine)
        self.faults = faults or FaultInjector()
        self.committed_version = self._load_version()

    def _load_version(self) -> Version:
        db = self.Session()
        try:
            latest = db.execute(select(func.max(KeyHistoryRow.version))).scalar()
            feeds = db.execute(select(func.max(ChangeFeedRow.registered_version))).scalar()
            return max(latest or 0, feeds or 0)
        finally:
            db.close()

    def close(self) -> None:
        self.engine.dispose()

    def create_transaction(self) -> Transaction:
        return Transaction(self)

    @staticmethod
    def is_transient(error: BaseException) -> bool:
        return isinstance(error, StoreError) and error.transient

    def _read_chunk(
        self, begin: str, end: str, read_version: Version, after: Optional[str], limit: int
    ) -> List[KeyValue]:
        db = self.Session()
        try:
            latest = (
                select(KeyHistoryRow.key, func.max(KeyHistoryRow.version).label("version"))
                .where(KeyHistoryRow.key >= begin)
                .where(KeyHistoryRow.key < end)
                .where(KeyHistoryRow.version < read_version)
                .group_by(KeyHistoryRow.key)
                .subquery()
            )
            query = (
                select(KeyHistoryRow.key, KeyHistoryRow.value)
                .join(latest, and_(
                    KeyHistoryRow.key == latest.c.key,
                    KeyHistoryRow.version == latest.c.version,
                ))
                .where(KeyHistoryRow.value.isnot(None))
                .order_by(KeyHistoryRow.key)
                .limit(limit)
            )
            if after is not None:
                query = query.where(KeyHistoryRow.key > after)
            return [KeyValue(key, value) for key, value in db.execute(query)]
        finally:
            db.close()

    def _apply(self, mutations: List[Mutation], feeds: List[Tuple[str, KeyRange]]) -> Version:
        """Write one transaction's effects at the next version and return it."""
        if not mutations and not feeds:
            return self.committed_version

        version = self.committed_version + 1
        db = self.Session()
        try:
            # 1. Key history, last write to a key in this version wins
            pending: Dict[str, Optional[str]] = {}
            for m in mutations:
                if m.type == MutationType.SET_VALUE:
                    pending[m.param1] = m.param2
                else:
                    for key in self._live_keys(db, m.param1, m.param2, version - 1):
                        pending[key] = None
                    for key in pending:
                        if m.param1 <= key < m.param2:
                            pending[key] = None
            for key, value in pending.items():
                db.merge(KeyHistoryRow(key=key, version=version, value=value))

            # 2. Feed logs, for feeds registered before this version
            live_feeds = db.execute(
                select(ChangeFeedRow).where(ChangeFeedRow.registered_version < version)
            ).scalars().all()
            for feed in live_feeds:
                feed_range = KeyRange(feed.begin_key, feed.end_key)
                seq = 0
                for m in mutations:
                    clipped = _clip(m, feed_range)
                    if clipped is None:
                        continue
                    db.add(FeedMutationRow(
                        feed_id=feed.feed_id,
                        version=version,
                        seq=seq,
                        mutation_type=clipped.type.value,
                        param1=clipped.param1,
                        param2=clipped.param2,
                    ))
                    seq += 1

            # 3. New feeds see mutations from the next version on
            for feed_id, key_range in feeds:
                if db.get(ChangeFeedRow, feed_id) is not None:
                    continue
                db.add(ChangeFeedRow(
                    feed_id=feed_id,
                    begin_key=key_range.begin,
                    end_key=key_range.end,
                    registered_version=version,
                    popped_version=0,
                ))
                logger.info("Registered change feed %s at version %d", feed_id, version)

            db.commit()
        finally:
            db.close()

        self.committed_version = version
        return version

    @staticmethod
    def _live_keys(db, begin: str, end: str, at_version: Version) -> List[str]:
        latest = (
            select(KeyHistoryRow.key, func.max(KeyHistoryRow.version).label("version"))
            .where(KeyHistoryRow.key >= begin)
            .where(KeyHistoryRow.key < end)
            .where(KeyHistoryRow.version <= at_version)
            .group_by(KeyHistoryRow.key)
            .subquery()
        )
        query = (
            select(KeyHistoryRow.key)
            .join(latest, and_(
                KeyHistoryRow.key == latest.c.key,
                KeyHistoryRow.version == latest.c.version,
            ))
            .where(KeyHistoryRow.value.isnot(None))
        )
        return list(db.execute(query).scalars())

    def _get_feed(self, db, feed_id: str) -> ChangeFeedRow:
        feed = db.get(ChangeFeedRow, feed_id)
        if feed is None:
            raise StoreError(
                StoreErrorCode.UNKNOWN_CHANGE_FEED,
                f"Unknown change feed {feed_id}",
                details={"feed_id": feed_id},
            )
        return feed

    async def get_change_feed_stream(
        self,
        feed_id: str,
        begin: Version,
        end: Version,
        key_range: KeyRange,
        batches_per_chunk: int = 100,
    ) -> AsyncIterator[List[MutationBatch]]:
        """
        Yield the feed's mutation batches with begin <= version < end.

        Batches arrive in ascending version order, grouped into chunks.
        """
        await asyncio.sleep(0)
        self.faults.maybe_fail("feed_stream")
        if end > self.committed_version + 1:
            raise StoreError(
                StoreErrorCode.FUTURE_VERSION,
                f"Feed end version {end} is past committed version {self.committed_version}",
                details={"end": end, "committed_version": self.committed_version},
            )

        cursor = begin
        while cursor < end:
            chunk = self._read_feed_chunk(feed_id, cursor, end, key_range, batches_per_chunk)
            if chunk is None:
                return
            batches, last_version = chunk
            if batches:
                yield batches
            cursor = last_version + 1
            await asyncio.sleep(0)
            self.faults.maybe_fail("feed_stream")

    def _read_feed_chunk(
        self, feed_id: str, begin: Version, end: Version, key_range: KeyRange, limit: int
    ) -> Optional[Tuple[List[MutationBatch], Version]]:
        db = self.Session()
        try:
            feed = self._get_feed(db, feed_id)
            if begin < feed.popped_version:
                raise StoreError(
                    StoreErrorCode.CHANGE_FEED_POPPED,
                    f"Feed {feed_id} popped through {feed.popped_version}, cannot read from {begin}",
                    details={"feed_id": feed_id, "begin": begin, "popped_version": feed.popped_version},
                )
            versions = list(db.execute(
                select(FeedMutationRow.version)
                .where(FeedMutationRow.feed_id == feed_id)
                .where(FeedMutationRow.version >= begin)
                .where(FeedMutationRow.version < end)
                .distinct()
                .order_by(FeedMutationRow.version)
                .limit(limit)
            ).scalars())
            if not versions:
                return None
            rows = db.execute(
                select(FeedMutationRow)
                .where(FeedMutationRow.feed_id == feed_id)
                .where(FeedMutationRow.version.in_(versions))
                .order_by(FeedMutationRow.version, FeedMutationRow.seq)
            ).scalars().all()

            grouped: Dict[Version, List[Mutation]] = {}
            for row in rows:
                clipped = _clip(
                    Mutation(MutationType(row.mutation_type), row.param1, row.param2), key_range
                )
                if clipped is not None:
                    grouped.setdefault(row.version, []).append(clipped)
            batches = [MutationBatch(v, tuple(grouped[v])) for v in versions if v in grouped]
            return batches, versions[-1]
        finally:
            db.close()

    async def pop_change_feed_mutations(self, feed_id: str, version: Version) -> None:
        """Discard the feed's entries below `version`."""
        await asyncio.sleep(0)
        self.faults.maybe_fail("pop")
        db = self.Session()
        try:
            feed = self._get_feed(db, feed_id)
            if version <= feed.popped_version:
                return
            feed.popped_version = version
            db.query(FeedMutationRow).filter(
                FeedMutationRow.feed_id == feed_id,
                FeedMutationRow.version < version,
            ).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()


def _clip(mutation: Mutation, key_range: KeyRange) -> Optional[Mutation]:
    """Restrict a mutation to key_range, None if nothing is left."""
    if mutation.type == MutationType.SET_VALUE:
        return mutation if key_range.contains(mutation.param1) else None
    clipped = KeyRange(mutation.param1, mutation.param2).intersect(key_range)
    if clipped is None:
        return None
    return Mutation.clear_range(clipped.begin, clipped.end)
