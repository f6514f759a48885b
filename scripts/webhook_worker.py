from __future__ import annotations

import argparse
import asyncio
import logging

from botledger.core.config import get_settings
from botledger.core.logging import configure_logging
from botledger.persistence.db import SessionLocal
from botledger.services.webhooks import process_pending_webhooks

logger = logging.getLogger("botledger.scripts.webhook_worker")


async def _sweep_once(limit: int | None) -> None:
    async with SessionLocal() as session:
        result = await process_pending_webhooks(session, limit=limit)
    if result.claimed or result.recovered:
        logger.info("webhook_sweep %s", " ".join(f"{k}={v}" for k, v in result.as_dict().items()))


async def _main(once: bool, limit: int | None) -> None:
    # Standalone delivery loop for deployments that do not run the reconciliation worker.
    configure_logging()
    interval_s = max(0.5, get_settings().webhook_poll_interval_s)
    while True:
        try:
            await _sweep_once(limit)
        except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in logs.
            logger.exception("webhook sweep failed")
            if once:
                raise
        if once:
            return
        await asyncio.sleep(interval_s)


def main() -> None:
    parser = argparse.ArgumentParser(description="Deliver pending outbound webhooks")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()
    asyncio.run(_main(args.once, args.limit))


if __name__ == "__main__":
    main()
