"""
changefeed_verify/workload.py - Writers and Workload Lifecycle

RandomWriter commits random sets and range clears so a verification run
has concurrent writers it does not control.

ChangeFeedsWorkload wraps one verifier in the setup / start / check
lifecycle a test framework drives.
"""
import asyncio
import logging
import random
from typing import List, Optional

from .config import Settings, settings as default_settings
from .driver import ChangeFeedVerifier
from .errors import RunReport
from .mutations import NORMAL_KEYS, KeyRange

logger = logging.getLogger(__name__)


class RandomWriter:
    def __init__(
        self,
        store,
        rng: Optional[random.Random] = None,
        key_count: int = 100,
        max_ops: int = 5,
        clear_rate: float = 0.2,
        max_delay: float = 0.05,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.rng = rng or random.Random()
        self.key_count = key_count
        self.max_ops = max_ops
        self.clear_rate = clear_rate
        self.max_delay = max_delay
        self.sleep = sleep
        self.is_running = False
        self.commits = 0
        self.conflicts = 0

    def _key(self, index: Optional[int] = None) -> str:
        if index is None:
            index = self.rng.randrange(self.key_count)
        return f"key{index:05d}"

    def fill(self, tr) -> None:
        """Add 1..max_ops random mutations to tr."""
        for _ in range(self.rng.randint(1, self.max_ops)):
            if self.rng.random() < self.clear_rate:
                # Distinct bounds, so the range is never empty
                lo, hi = sorted(self.rng.sample(range(self.key_count), 2))
                tr.clear_range(self._key(lo), self._key(hi))
            else:
                tr.set(self._key(), f"v{self.rng.getrandbits(32):08x}")

    async def write_once(self) -> bool:
        tr = self.store.create_transaction()
        self.fill(tr)
        try:
            await tr.commit()
        except Exception as e:
            if not self.store.is_transient(e):
                raise
            # Writers don't retry, the next transaction is as good as this one
            self.conflicts += 1
            return False
        self.commits += 1
        return True

    async def run(self) -> None:
        """Commit random transactions until stop()."""
        self.is_running = True
        while self.is_running:
            await self.write_once()
            await self.sleep(self.rng.random() * self.max_delay)
        logger.info("Writer stopped after %d commits (%d failed)", self.commits, self.conflicts)

    def stop(self) -> None:
        self.is_running = False


class ChangeFeedsWorkload:
    """
    Test-framework facing wrapper.

    start() runs the verification client for TEST_DURATION seconds, then
    abandons whatever cycle is in flight. check() passes when no completed
    cycle found a mismatch.
    """

    def __init__(
        self,
        store,
        config: Optional[Settings] = None,
        key_range: KeyRange = NORMAL_KEYS,
        rng: Optional[random.Random] = None,
        sleep=asyncio.sleep,
    ):
        self.config = config or default_settings
        self.test_duration = self.config.TEST_DURATION
        self.sleep = sleep
        self.verifier = ChangeFeedVerifier(
            store, key_range, config=self.config, rng=rng, sleep=sleep
        )
        self.client: Optional[asyncio.Task] = None

    def description(self) -> str:
        return "ChangeFeedsWorkload"

    async def setup(self) -> None:
        pass

    async def start(self) -> None:
        self.client = asyncio.create_task(self.verifier.run())
        try:
            await self.sleep(self.test_duration)
            if self.client.done():
                # A fatal error ended the client early
                self.client.result()
                return
        finally:
            await self._stop_client()
        logger.info("Verification client stopped after %.1fs", self.test_duration)

    async def _stop_client(self) -> None:
        """Cancel the client if still running and wait for it to unwind."""
        if self.client.done():
            return
        self.client.cancel()
        try:
            await self.client
        except asyncio.CancelledError:
            pass

    @property
    def report(self) -> Optional[RunReport]:
        return self.verifier.report

    async def check(self) -> bool:
        report = self.report
        return report is not None and report.mismatch_count == 0

    def get_metrics(self) -> List:
        return []
