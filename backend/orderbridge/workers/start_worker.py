#!/usr/bin/env python3
"""Start the conversion worker.

WHAT:
    Runs the ARQ conversion worker (queue polling + daily summary), or with
    --once processes a single batch, logs queue stats and exits.

USAGE:
    # From backend directory:
    python -m orderbridge.workers.start_worker
    python -m orderbridge.workers.start_worker --once

    # Or directly with arq:
    arq orderbridge.workers.conversion_worker.WorkerSettings

PRODUCTION:
    # [program:orderbridge-worker]
    # command=python -m orderbridge.workers.start_worker
    # directory=/app/backend
    # autostart=true
    # autorestart=true
"""

import argparse
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


async def run_once() -> dict:
    """Process one batch, then log queue stats."""
    from orderbridge.database import get_sync_session
    from orderbridge.services.conversion_queue import get_queue_stats
    from orderbridge.telemetry import init_sentry
    from orderbridge.workers.conversion_worker import run_queue_batch

    init_sentry()
    results = await run_queue_batch({})
    with get_sync_session() as db:
        stats = get_queue_stats(db)
    logger.info(f"[WORKER] Batch: {results}")
    logger.info(f"[WORKER] Queue stats: {stats.to_dict()}")
    return results


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Conversion queue worker")
    parser.add_argument("--once", action="store_true", help="process one batch and exit")
    args = parser.parse_args(argv)

    if args.once:
        try:
            asyncio.run(run_once())
        except Exception as e:
            logger.exception(f"[WORKER] Single run failed: {e}")
            return 1
        return 0

    try:
        from arq import run_worker
        from orderbridge.workers.conversion_worker import WorkerSettings

        logger.info("=" * 60)
        logger.info("Starting conversion worker")
        logger.info("=" * 60)
        run_worker(WorkerSettings)
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.exception(f"Worker failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
