from __future__ import annotations

import argparse
import asyncio

from rostersync.core.logging import configure_logging
from rostersync.services.integrations.scheduler import SyncScheduler, build_job_queue


async def _run() -> None:
    # Re-arm schedules for every enabled, active integration after a deploy.
    queue = build_job_queue()
    await queue.start()
    try:
        armed = await SyncScheduler(queue).initialize_scheduled_syncs()
        print(f"schedules_armed={armed}")
    finally:
        await queue.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-arm scheduled roster syncs")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)
    asyncio.run(_run())


if __name__ == "__main__":
    main()
