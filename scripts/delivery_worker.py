from __future__ import annotations

import argparse

from arq.worker import run_worker

from notifyhub.core.config import get_settings
from notifyhub.core.logging import configure_logging
from notifyhub.domain.delivery import Channel, Priority, queue_name_for
from notifyhub.workers.delivery_worker import WorkerSettings


def _build_parser() -> argparse.ArgumentParser:
    # One worker process per channel queue so a slow channel never starves another.
    parser = argparse.ArgumentParser(description="Run an arq delivery worker for one channel queue")
    parser.add_argument("--channel", required=True, choices=[channel.value for channel in Channel])
    parser.add_argument(
        "--priority",
        default=Priority.NORMAL.value,
        choices=[priority.value for priority in Priority],
        help="Priority tier to consume",
    )
    parser.add_argument("--max-jobs", type=int, default=10, help="Concurrent jobs for this queue")
    return parser


def main() -> None:
    args = _build_parser().parse_args()
    configure_logging()
    settings = get_settings()
    queue_name = queue_name_for(settings.queue_prefix, Channel(args.channel), Priority(args.priority))
    run_worker(WorkerSettings, queue_name=queue_name, max_jobs=max(1, args.max_jobs))


if __name__ == "__main__":
    main()
