from __future__ import annotations

import argparse
import asyncio

from notifyhub.core.config import get_settings
from notifyhub.core.logging import configure_logging
from notifyhub.services.delivery.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-enqueue due pending delivery tasks once")
    parser.add_argument("--limit", type=int, default=None, help="Max tasks to re-enqueue")
    return parser


async def requeue(limit: int | None) -> None:
    # One-off sweep for operators when workers were down.
    settings = get_settings()
    runtime = await build_runtime(settings)
    try:
        count = await runtime.dispatcher.requeue_due(limit=limit or settings.sweep_batch_size)
    finally:
        await runtime.close()
    print(f"requeued_delivery_tasks={count}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(requeue(_build_parser().parse_args().limit))
