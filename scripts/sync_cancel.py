from __future__ import annotations

import argparse
import asyncio

from rostersync.core.logging import configure_logging
from rostersync.services.integrations.scheduler import SyncScheduler, build_job_queue


async def _run(integration_id: str) -> None:
    # Drop pending runs; a sync already in progress still finishes.
    queue = build_job_queue()
    await queue.start()
    try:
        removed = await SyncScheduler(queue).cancel_scheduled(integration_id)
        print(f"jobs_removed={removed}")
    finally:
        await queue.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Cancel pending roster syncs for an integration")
    parser.add_argument("integration_id")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)
    asyncio.run(_run(args.integration_id))


if __name__ == "__main__":
    main()
