from __future__ import annotations

import argparse
import asyncio

from rostersync.core.logging import configure_logging
from rostersync.services.integrations.scheduler import SyncScheduler, build_job_queue


async def _run(integration_id: str, wait_s: float | None) -> None:
    # Enqueue an operator-requested sync on the priority queue.
    queue = build_job_queue()
    await queue.start()
    try:
        handle = await SyncScheduler(queue).trigger_immediate(integration_id)
        if handle is None:
            print("job_id=duplicate")
            return
        print(f"job_id={handle.job_id}")
        if wait_s is not None:
            result = await handle.result(timeout=wait_s)
            print(f"result={result}")
    finally:
        await queue.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Trigger an immediate roster sync")
    parser.add_argument("integration_id")
    parser.add_argument("--wait", type=float, default=None, help="Seconds to wait for the job result")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)
    asyncio.run(_run(args.integration_id, args.wait))


if __name__ == "__main__":
    main()
