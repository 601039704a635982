#!/usr/bin/env python3
"""
changefeed_verify/cli.py - Command-Line Interface

Usage:
    python -m changefeed_verify.cli run
    python -m changefeed_verify.cli run --duration 30 --seed 7 --fault-rate 0.05
    python -m changefeed_verify.cli run --output report.json

Runs random writers and one verifier against the reference store.

Exit Codes:
    0 = PASS
    2 = FAIL (mismatch found, or a fatal error ended the run)
"""
import argparse
import asyncio
import json
import logging
import random
import sys

from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, settings
from .driver import ChangeFeedVerifier
from .errors import ProtocolError, RetryExhausted, StoreError, WriterFailed
from .store import FaultInjector, VersionedStore
from .workload import RandomWriter

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="changefeed-verify",
        description="Change feed correctness verifier",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Verify change feeds against the reference store")
    run_parser.add_argument("--duration", type=float, default=settings.TEST_DURATION,
                            help="Seconds to run (testDuration)")
    run_parser.add_argument("--seed", type=int, default=settings.SEED,
                            help="RNG seed for reproducibility")
    run_parser.add_argument("--fault-rate", type=float, default=settings.FAULT_RATE,
                            help="Probability of an injected transient store error")
    run_parser.add_argument("--writers", type=int, default=2,
                            help="Number of concurrent random writers")
    run_parser.add_argument("--output", "-o", help="Path to write the run report as JSON")
    run_parser.add_argument("--quiet", "-q", action="store_true", help="Only output exit code")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING if args.quiet else settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "run":
        run_command(args)


async def run_verification(config: Settings, writers: int):
    """Run writers plus one verifier for config.TEST_DURATION seconds."""
    rng = random.Random(config.SEED)
    store = VersionedStore(
        config.DATABASE_URL,
        faults=FaultInjector(config.FAULT_RATE, random.Random(rng.getrandbits(64))),
    )
    writer_list = [
        RandomWriter(store, rng=random.Random(rng.getrandbits(64))) for _ in range(writers)
    ]
    writer_tasks = [asyncio.create_task(w.run()) for w in writer_list]
    verifier = ChangeFeedVerifier(store, config=config, rng=random.Random(rng.getrandbits(64)))
    try:
        report = await verifier.run(duration=config.TEST_DURATION)
    finally:
        for w in writer_list:
            w.stop()
        results = await asyncio.gather(*writer_tasks, return_exceptions=True)
        failed = [r for r in results if isinstance(r, BaseException)]
        for error in failed:
            logger.error("Writer failed: %r", error)
        logger.info("Injected %d transient faults", store.faults.injected)
        store.close()

    if failed:
        raise WriterFailed(f"{len(failed)} of {writers} writers failed", failed)
    return report


def run_command(args):
    config = Settings(TEST_DURATION=args.duration, SEED=args.seed, FAULT_RATE=args.fault_rate)
    try:
        report = asyncio.run(run_verification(config, args.writers))
    except (StoreError, ProtocolError, RetryExhausted, WriterFailed) as e:
        print(f"Error: Verification aborted: {e}", file=sys.stderr)
        sys.exit(2)
    except SQLAlchemyError as e:
        logger.exception("Reference store failure")
        print(f"Error: Reference store failure: {e}", file=sys.stderr)
        sys.exit(2)

    report_dict = report.to_dict()

    if args.output:
        with open(args.output, 'w') as f:
            json.dump(report_dict, f, indent=2)
        if not args.quiet:
            print(f"Report written to: {args.output}")

    if not args.quiet:
        print(f"\n{'='*60}")
        print(f"VERIFICATION RESULT: {report.status.value}")
        print(f"{'='*60}")
        print(f"Feed ID:          {report.feed_id}")
        print(f"Cycles:           {len(report.cycles)}")
        print(f"Mismatches:       {report.mismatch_count}")
        mutations = sum(c.mutation_count for c in report.cycles)
        print(f"Mutations Checked: {mutations}")

        for c in report.cycles:
            for f in c.findings:
                print(f"  [cycle {c.cycle}] {f.finding_type.value}: {f.message}")

        print(f"\nExit Code: {report.exit_code}")

    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
