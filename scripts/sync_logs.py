from __future__ import annotations

import argparse
import asyncio
import json

from rostersync.core.logging import configure_logging
from rostersync.persistence.db import SessionLocal
from rostersync.persistence.repos import sync_logs as sync_logs_repo


async def _run(integration_id: str, limit: int, offset: int) -> None:
    # Print recent sync history for incident triage.
    async with SessionLocal() as session:
        logs = await sync_logs_repo.list_sync_logs(session, integration_id, offset=offset, limit=limit)
        total = await sync_logs_repo.count_sync_logs(session, integration_id)
    print(f"total={total}")
    for log in logs:
        print(
            json.dumps(
                {
                    "id": log.id,
                    "status": log.status,
                    "started_at": log.started_at.isoformat() if log.started_at else None,
                    "duration_ms": log.duration_ms,
                    "people_added": log.people_added,
                    "people_updated": log.people_updated,
                    "people_removed": log.people_removed,
                    "groups_added": log.groups_added,
                    "groups_updated": log.groups_updated,
                    "groups_skipped": log.groups_skipped,
                    "error_message": log.error_message,
                    "metadata": log.metadata_json,
                },
                sort_keys=True,
            )
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Show recent roster sync logs")
    parser.add_argument("integration_id")
    parser.add_argument("--limit", type=int, default=20)
    parser.add_argument("--offset", type=int, default=0)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    configure_logging(args.log_level)
    asyncio.run(_run(args.integration_id, args.limit, args.offset))


if __name__ == "__main__":
    main()
