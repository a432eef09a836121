#!/usr/bin/env python3
"""
Run the background sweep once, for an external scheduler (cron, k8s CronJob).

Expires soft locks and payment windows, times out unanswered bids, cancels
jobs past the recirculation cap and releases elapsed warranty holds. Safe to
run concurrently with the API and with other sweep runs.

Run:
  python scripts/run_sweep.py            # sweep once at the current time
  python scripts/run_sweep.py --loop     # keep sweeping every SWEEP_INTERVAL_SECONDS
"""

import argparse
import asyncio
import json
import logging
import sys

from app.config import settings
from app.database import async_session_factory, engine
from app.services.sweep import run_background_sweep

logger = logging.getLogger("run_sweep")


async def _sweep_once() -> dict:
    async with async_session_factory() as db:
        report = await run_background_sweep(db)
    return report.to_dict()


async def main(loop: bool) -> int:
    try:
        while True:
            report = await _sweep_once()
            print(json.dumps(report), flush=True)
            if not loop:
                return 0
            await asyncio.sleep(settings.sweep_interval_seconds)
    except Exception:
        logger.exception("Sweep run failed")
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--loop", action="store_true", help="sweep repeatedly instead of once")
    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level.upper())
    sys.exit(asyncio.run(main(args.loop)))
