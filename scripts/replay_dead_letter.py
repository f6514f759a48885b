from __future__ import annotations

import argparse
import asyncio

from botledger.core.logging import configure_logging
from botledger.persistence.db import SessionLocal
from botledger.services.webhooks import list_dead_letters, replay_dead_letter


async def _list(limit: int) -> None:
    async with SessionLocal() as session:
        rows = await list_dead_letters(session, limit=limit)
    for row in rows:
        print(
            f"id={row.id} original_job_id={row.original_job_id} event_type={row.event_type} "
            f"retry_count={row.retry_count} replay_count={row.replay_count}"
        )


async def _replay(dead_letter_id: str, max_retries: int | None) -> int:
    async with SessionLocal() as session:
        job = await replay_dead_letter(session, dead_letter_id=dead_letter_id, max_retries=max_retries)
        if job is None:
            print(f"dead_letter_id={dead_letter_id} not found")
            return 1
        await session.commit()
        print(f"job_id={job.id} status={job.status} max_retries={job.max_retries}")
    return 0


def main() -> None:
    # Operator entry point for inspecting and re-enqueueing dead-lettered deliveries.
    parser = argparse.ArgumentParser(description="List or replay dead-lettered webhooks")
    parser.add_argument("dead_letter_id", nargs="?", default=None)
    parser.add_argument("--max-retries", type=int, default=None)
    parser.add_argument("--limit", type=int, default=20)
    args = parser.parse_args()
    configure_logging()
    if args.dead_letter_id is None:
        asyncio.run(_list(args.limit))
        return
    raise SystemExit(asyncio.run(_replay(args.dead_letter_id, args.max_retries)))


if __name__ == "__main__":
    main()
