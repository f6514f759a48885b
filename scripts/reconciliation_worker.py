from __future__ import annotations

import asyncio

from botledger.workers.reconciliation_worker import run_worker


async def _main() -> None:
    # Boot the sweep, backfill and monitor jobs in one process so they run without API traffic.
    await run_worker()


if __name__ == "__main__":
    asyncio.run(_main())
