"""
changefeed_verify/driver.py - Verification Driver

One subscription lifecycle:
1. Register a fresh change feed over the target range
2. Loop: snapshot A, wait, snapshot B, read feed [A, B), replay onto A,
   compare with B, pop the feed through B
3. Stop between cycles on request, or abandon the in-flight cycle on cancel

Mismatches are recorded and logged; the loop keeps going.
Fatal store and protocol errors propagate out of run().
"""
import asyncio
import logging
import random
import time
import uuid
from typing import Optional

from .compare import compare_states, log_event
from .config import Settings, settings as default_settings
from .errors import CycleReport, RetryExhausted, RunReport
from .feed_reader import read_mutations
from .mutations import NORMAL_KEYS, KeyRange
from .reconstruct import advance_state
from .retry import Backoff, retry_transient
from .snapshot import read_snapshot

logger = logging.getLogger(__name__)


class ChangeFeedVerifier:
    """
    Proves snapshot(A) + feed(A, B) == snapshot(B) against a live store.

    Randomness (feed id, delays, backoff jitter) comes from one injected
    rng, and every wait goes through the injected sleep, so a seeded run
    against a deterministic store is reproducible.
    """

    def __init__(
        self,
        store,
        key_range: KeyRange = NORMAL_KEYS,
        *,
        config: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
        sleep=asyncio.sleep,
        clock=time.monotonic,
    ):
        self.store = store
        self.key_range = key_range
        self.config = config or default_settings
        self.rng = rng or random.Random(self.config.SEED)
        self.sleep = sleep
        self.clock = clock
        self.backoff = Backoff(
            min_wait=self.config.RETRY_MIN_WAIT,
            max_wait=self.config.RETRY_MAX_WAIT,
            rng=self.rng,
        )
        self.feed_id: Optional[str] = None
        self.report: Optional[RunReport] = None
        self.running = False

    def new_feed_id(self) -> str:
        return uuid.UUID(int=self.rng.getrandbits(128), version=4).hex

    async def register(self) -> str:
        """Register a fresh feed over key_range and commit it."""
        feed_id = self.new_feed_id()

        async def attempt():
            tr = self.store.create_transaction()
            await tr.register_change_feed(feed_id, self.key_range)
            return await tr.commit()

        version = await retry_transient(
            attempt,
            is_transient=self.store.is_transient,
            backoff=self.backoff,
            max_attempts=self.config.RETRY_MAX_ATTEMPTS,
            sleep=self.sleep,
            describe="register_change_feed",
        )
        self.feed_id = feed_id
        self.report = RunReport(feed_id=feed_id)
        logger.info(
            "Change feed %s registered over [%r, %r) at version %d",
            feed_id, self.key_range.begin, self.key_range.end, version,
        )
        return feed_id

    async def _snapshot(self):
        return await read_snapshot(
            self.store,
            self.key_range,
            backoff=self.backoff,
            chunk_size=self.config.CHUNK_SIZE,
            max_attempts=self.config.RETRY_MAX_ATTEMPTS,
            sleep=self.sleep,
        )

    async def run_cycle(self, cycle: int) -> CycleReport:
        if self.feed_id is None:
            raise RuntimeError("No change feed registered")

        await self.sleep(self.rng.random() * self.config.FIRST_DELAY_MAX)
        first = await self._snapshot()

        await self.sleep(self.rng.random() * self.config.SECOND_DELAY_MAX)
        second = await self._snapshot()

        batches = await read_mutations(
            self.store,
            self.feed_id,
            first.version,
            second.version,
            self.key_range,
            backoff=self.backoff,
            batches_per_chunk=self.config.FEED_BATCHES_PER_CHUNK,
            max_attempts=self.config.RETRY_MAX_ATTEMPTS,
            sleep=self.sleep,
        )

        advanced = advance_state(first.state, batches)
        comparison = compare_states(advanced, second.state)

        report = CycleReport(
            cycle=cycle,
            first_version=first.version,
            second_version=second.version,
            predicted_size=len(advanced),
            observed_size=len(second.state),
            batch_count=len(batches),
            mutation_count=sum(len(b.mutations) for b in batches),
            findings=comparison.findings,
        )

        if not comparison.matched:
            log_event(logging.ERROR, "ChangeFeedMismatch", {
                "feed_id": self.feed_id,
                "first_version": first.version,
                "second_version": second.version,
            })
            for i, kv in enumerate(second.state):
                log_event(logging.INFO, "ChangeFeedBase", {"index": i, "k": kv.key, "v": kv.value})
            for i, kv in enumerate(advanced):
                log_event(logging.INFO, "ChangeFeedAdvanced", {"index": i, "k": kv.key, "v": kv.value})

        report.popped = await self.pop(second.version)
        return report

    async def pop(self, version: int) -> bool:
        """
        Let the store discard feed entries below version.

        Best effort: any error from the pop path, store-classified or not,
        is retried a bounded number of times, then logged. Only future
        resource usage depends on it.
        """

        async def attempt():
            await self.store.pop_change_feed_mutations(self.feed_id, version)

        try:
            await retry_transient(
                attempt,
                is_transient=lambda e: True,
                backoff=self.backoff,
                max_attempts=self.config.POP_MAX_ATTEMPTS,
                sleep=self.sleep,
                describe="pop_change_feed_mutations",
            )
        except RetryExhausted as e:
            logger.warning(
                "Pop of feed %s through %d abandoned: %s", self.feed_id, version, e
            )
            return False
        return True

    def stop(self) -> None:
        """Finish the current cycle, then return from run()."""
        self.running = False

    async def run(self, duration: Optional[float] = None,
                  max_cycles: Optional[int] = None) -> RunReport:
        """
        Register a feed and verify cycles until stopped.

        Args:
            duration: Seconds after which no new cycle starts, None to run until stopped
            max_cycles: Cycle limit, None for no limit
        """
        self.running = True
        await self.register()
        deadline = None if duration is None else self.clock() + duration

        cycle = 0
        while self.running:
            if deadline is not None and self.clock() >= deadline:
                break
            if max_cycles is not None and cycle >= max_cycles:
                break
            result = await self.run_cycle(cycle)
            self.report.cycles.append(result)
            cycle += 1
            logger.info(
                "Cycle %d: versions [%d, %d) %d batches, %s",
                result.cycle, result.first_version, result.second_version,
                result.batch_count, "match" if result.matched else "MISMATCH",
            )

        self.running = False
        logger.info(
            "Verifier for feed %s stopped after %d cycles (%d mismatches)",
            self.feed_id, len(self.report.cycles), self.report.mismatch_count,
        )
        return self.report
