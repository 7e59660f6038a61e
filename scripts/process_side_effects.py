#!/usr/bin/env python3
"""
Retry due booking side effects (meeting links, payment links, notifications).

Usage:
    python scripts/process_side_effects.py              # one pass
    python scripts/process_side_effects.py --loop       # run until interrupted
    python scripts/process_side_effects.py --limit 20
"""

import argparse
import asyncio
import signal

from app.config import settings
from app.core.firebase import initialize_firebase
from app.database import engine
from app.middleware.logging import configure_logging
from app.services.side_effect_service import dispatcher_session, run_side_effect_worker


async def run_once(limit: int | None) -> None:
    async with dispatcher_session() as dispatcher:
        summary = await dispatcher.process_due(limit=limit)
    print(
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} dead_lettered={summary.dead_lettered}"
    )


async def run_forever(interval: float | None) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await run_side_effect_worker(stop, interval_seconds=interval)


async def main(args: argparse.Namespace) -> None:
    configure_logging()
    initialize_firebase(settings.firebase_credentials_path, settings.firebase_config_json)
    try:
        if args.loop:
            await run_forever(args.interval)
        else:
            await run_once(args.limit)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--loop", action="store_true", help="keep polling until interrupted")
    parser.add_argument("--limit", type=int, default=None, help="rows per pass")
    parser.add_argument("--interval", type=float, default=None, help="seconds between passes")
    asyncio.run(main(parser.parse_args()))
