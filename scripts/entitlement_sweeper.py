from __future__ import annotations

import argparse
import asyncio
import json

from tenantguard.core.logging import configure_logging
from tenantguard.services.maintenance import run_sweep_cycle, run_sweep_loop


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Evict expired entitlement cache and attempt-tracker entries")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and print its result")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between sweeps")
    return parser


async def _main(args: argparse.Namespace) -> None:
    configure_logging()
    if args.once:
        result = await run_sweep_cycle()
        print(json.dumps(result, sort_keys=True))
        return
    await run_sweep_loop(interval_s=args.interval)


if __name__ == "__main__":
    asyncio.run(_main(_build_parser().parse_args()))
