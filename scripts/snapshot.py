from __future__ import annotations

import argparse
import time

from snapvault.core.config import get_settings
from snapvault.core.logging import configure_logging
from snapvault.db.init_db import initialize_database
from snapvault.db.session import get_session_factory
from snapvault.jobs.service import JobStateService
from snapvault.jobs.types import JobSnapshot
from snapvault.worker.pipeline import enqueue_backup, enqueue_restore, run_due_resumptions


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start a site backup or restore")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", help="Start a backup")
    backup.add_argument("--entity", action="append", dest="entities", help="File entity to include (repeatable)")
    backup.add_argument("--no-db", action="store_true", help="Leave the database out")
    backup.add_argument("--since", type=float, default=None, help="Only archive files modified after this epoch time")
    backup.add_argument("--wait", action="store_true", help="Drive the job until it finishes")

    restore = subparsers.add_parser("restore", help="Restore a backup set from history")
    restore.add_argument("backup_job_id", help="Job id of the backup set")
    restore.add_argument("--entity", action="append", dest="entities", help="Component to restore (repeatable)")
    restore.add_argument("--new-prefix", default=None, help="Table prefix for the restored tables")
    restore.add_argument("--skip-table", action="append", dest="tables_to_skip", default=[], help="Table to leave alone")
    restore.add_argument("--wait", action="store_true", help="Drive the job until it finishes")

    parser.add_argument("--poll", type=float, default=10.0, help="Seconds between polls with --wait")
    return parser.parse_args()


def drive(job_id: str, poll_seconds: float) -> JobSnapshot:
    jobs = JobStateService(settings=get_settings(), session_factory=get_session_factory())
    while True:
        run_due_resumptions(limit=1)
        job = jobs.get_job(job_id)
        if job.is_terminal:
            return job
        time.sleep(max(1.0, poll_seconds))


def main() -> None:
    args = parse_args()
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)
    initialize_database()

    if args.command == "backup":
        job_id = enqueue_backup(args.entities, include_db=not args.no_db, incremental_since=args.since)
    else:
        job_id = enqueue_restore(
            args.backup_job_id,
            entities=args.entities,
            new_prefix=args.new_prefix,
            tables_to_skip=args.tables_to_skip,
        )
    print(f"job_id={job_id}")

    if not args.wait:
        return
    job = drive(job_id, args.poll)
    print(f"status={job.status.value}")
    if job.last_error:
        print(f"last_error={job.last_error}")
    if job.status.value != "completed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
