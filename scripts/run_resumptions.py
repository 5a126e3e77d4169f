from __future__ import annotations

import argparse
import time

from snapvault.core.config import get_settings
from snapvault.core.logging import configure_logging
from snapvault.db.init_db import initialize_database
from snapvault.worker.pipeline import run_due_resumptions


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run due backup/restore resumptions")
    parser.add_argument("--limit", type=int, default=10, help="Maximum resumptions claimed per poll")
    parser.add_argument("--loop", action="store_true", help="Keep polling instead of exiting after one pass")
    parser.add_argument("--interval", type=float, default=15.0, help="Seconds between polls with --loop")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    return parser.parse_args()


def run_once(limit: int) -> int:
    results = run_due_resumptions(limit=max(1, limit))
    for job in results:
        print(f"{job.kind.value} {job.id}: status={job.status.value} stage={job.stage.value}")
    return len(results)


def main() -> None:
    args = parse_args()
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)
    initialize_database()

    if not args.loop:
        run_once(args.limit)
        return

    while True:
        if run_once(args.limit) == 0:
            time.sleep(max(1.0, args.interval))


if __name__ == "__main__":
    main()
