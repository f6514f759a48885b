from __future__ import annotations

import argparse
import asyncio

from botledger.core.logging import configure_logging
from botledger.persistence.db import SessionLocal
from botledger.services.usage.reconciliation import backfill_all, reconcile_bot


async def _run(bot_id: str | None, limit: int | None, delay_s: float | None) -> None:
    configure_logging()
    if bot_id:
        # Targeted repair for a single bot reported by support.
        async with SessionLocal() as session:
            record = await reconcile_bot(session, bot_id=bot_id)
            await session.commit()
        if record is None:
            print(f"bot_id={bot_id} skipped")
        else:
            print(f"bot_id={bot_id} status={record.status} billable_minutes={record.billable_minutes}")
        return
    result = await backfill_all(SessionLocal, limit=limit, delay_s=delay_s)
    for key, value in result.as_dict().items():
        print(f"{key}={value}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Recompute recording usage from agent history")
    parser.add_argument("--bot-id", default=None)
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--delay", type=float, default=None, help="seconds between agent calls")
    args = parser.parse_args()
    asyncio.run(_run(args.bot_id, args.limit, args.delay))


if __name__ == "__main__":
    main()
