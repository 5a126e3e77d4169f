from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from snapvault.core.config import Settings
from snapvault.core.errors import AbortRequested, InvocationYield, OverlappingRunError
from snapvault.db.models import ResumptionStatus, ScheduledResumption
from snapvault.jobs.service import JobStateService
from snapvault.scheduler.events import ProgressEvent
from snapvault.semaphore.service import SemaphoreService

logger = logging.getLogger(__name__)

ALIVE_MARGIN_SECONDS = 30
RESCHEDULE_WINDOW_SECONDS = 45
MIN_RESCHEDULE_SECONDS = 60
DEEP_RESUMPTION = 9
DEEP_RESUMPTION_MIN_INTERVAL = 75
OVERLAP_CAP_SECONDS = 900
EARLY_RESUMPTION_CAP_SECONDS = 720
EARLY_RESUMPTION_AHEAD_SECONDS = 600


def abort_sentinel_path(storage_root: Path, job_id: str) -> Path:
    return storage_root / f"deleteflag-{job_id}.txt"


@dataclass(slots=True)
class ResumptionSnapshot:
    id: int
    job_id: str
    resumption_no: int
    run_at: datetime
    status: ResumptionStatus


class ResumptionQueue:
    """Persisted single-shot continuation triggers keyed by (job, resumption)."""

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _to_snapshot(self, row: ScheduledResumption) -> ResumptionSnapshot:
        return ResumptionSnapshot(
            id=row.id,
            job_id=row.job_id,
            resumption_no=row.resumption_no,
            run_at=self._coerce_utc(row.run_at),
            status=row.status,
        )

    def schedule(self, job_id: str, resumption_no: int, run_at: datetime) -> bool:
        with self._session_factory() as session:
            row = session.scalar(
                select(ScheduledResumption).where(
                    ScheduledResumption.job_id == job_id,
                    ScheduledResumption.resumption_no == resumption_no,
                )
            )
            if row is None:
                session.add(
                    ScheduledResumption(
                        job_id=job_id,
                        resumption_no=resumption_no,
                        run_at=run_at,
                        status=ResumptionStatus.PENDING,
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True

            if row.status in {ResumptionStatus.CLAIMED, ResumptionStatus.DONE}:
                return False
            row.status = ResumptionStatus.PENDING
            row.run_at = run_at
            session.commit()
            return True

    def next_pending(self, job_id: str) -> ResumptionSnapshot | None:
        with self._session_factory() as session:
            row = session.scalar(
                select(ScheduledResumption)
                .where(
                    ScheduledResumption.job_id == job_id,
                    ScheduledResumption.status == ResumptionStatus.PENDING,
                )
                .order_by(ScheduledResumption.run_at.asc(), ScheduledResumption.id.asc())
                .limit(1)
            )
            return None if row is None else self._to_snapshot(row)

    def claim_due(self, limit: int = 10, now: datetime | None = None) -> list[ResumptionSnapshot]:
        effective_now = now or self._now()
        claimed: list[ResumptionSnapshot] = []
        with self._session_factory() as session:
            candidates = list(
                session.scalars(
                    select(ScheduledResumption)
                    .where(
                        ScheduledResumption.status == ResumptionStatus.PENDING,
                        ScheduledResumption.run_at <= effective_now,
                    )
                    .order_by(ScheduledResumption.run_at.asc(), ScheduledResumption.id.asc())
                    .limit(max(1, limit))
                ).all()
            )
            for candidate in candidates:
                result = session.execute(
                    update(ScheduledResumption)
                    .where(
                        ScheduledResumption.id == candidate.id,
                        ScheduledResumption.status == ResumptionStatus.PENDING,
                    )
                    .values(status=ResumptionStatus.CLAIMED, claimed_at=effective_now)
                    .execution_options(synchronize_session=False)
                )
                if int(result.rowcount or 0) == 1:
                    claimed.append(
                        ResumptionSnapshot(
                            id=candidate.id,
                            job_id=candidate.job_id,
                            resumption_no=candidate.resumption_no,
                            run_at=self._coerce_utc(candidate.run_at),
                            status=ResumptionStatus.CLAIMED,
                        )
                    )
            session.commit()
        return claimed

    def mark_done(self, resumption_id: int) -> None:
        with self._session_factory() as session:
            session.execute(
                update(ScheduledResumption)
                .where(ScheduledResumption.id == resumption_id)
                .values(status=ResumptionStatus.DONE)
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def cancel(self, job_id: str) -> int:
        with self._session_factory() as session:
            result = session.execute(
                update(ScheduledResumption)
                .where(
                    ScheduledResumption.job_id == job_id,
                    ScheduledResumption.status == ResumptionStatus.PENDING,
                )
                .values(status=ResumptionStatus.CANCELLED)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount or 0)


class Scheduler:
    """Timing and continuation policy for one invocation of one job.

    Workers never call into this directly; they emit checkpoint events on a
    ProgressChannel and ``on_progress`` reacts. Raising from ``on_progress``
    (abort, overlap, spent budget) unwinds the worker right after a durable
    checkpoint.
    """

    def __init__(
        self,
        settings: Settings,
        jobs: JobStateService,
        queue: ResumptionQueue,
        *,
        job_id: str,
        resumption_no: int,
        semaphore: SemaphoreService | None = None,
        lock_name: str | None = None,
        started_monotonic: float | None = None,
    ):
        self._settings = settings
        self._jobs = jobs
        self._queue = queue
        self._semaphore = semaphore
        self._lock_name = lock_name
        self.job_id = job_id
        self.resumption_no = resumption_no
        self._started = started_monotonic if started_monotonic is not None else time.monotonic()
        self._useful_recorded = False

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    @property
    def storage_root(self) -> Path:
        return self._settings.backup_dir

    def _interval(self) -> int:
        return self._jobs.get_job(self.job_id).resume_interval_seconds

    def record_still_alive(self) -> None:
        elapsed = self.elapsed
        snapshot = self._jobs.record_run_time(self.job_id, self.resumption_no, elapsed)
        interval = snapshot.resume_interval_seconds
        if elapsed + ALIVE_MARGIN_SECONDS > interval:
            new_interval = int(math.ceil(elapsed + ALIVE_MARGIN_SECONDS))
            logger.info(
                "Run time %.1fs is approaching the resumption interval (%ds); increasing it to %ds",
                elapsed,
                interval,
                new_interval,
            )
            self._jobs.set_resume_interval(self.job_id, new_interval)

    def on_progress(self, event: ProgressEvent) -> None:
        self.record_still_alive()
        if self._semaphore is not None and self._lock_name is not None:
            self._semaphore.refresh(self._lock_name)
        if not self._useful_recorded:
            self._jobs.record_useful_checkin(self.job_id, self.resumption_no)
            self._useful_recorded = True

        self.check_abort()

        pending = self._queue.next_pending(self.job_id)
        if self.resumption_no >= DEEP_RESUMPTION and pending is None:
            interval = max(self._interval(), DEEP_RESUMPTION_MIN_INTERVAL)
            logger.info(
                "Resumption %d is still making progress (%s); scheduling another",
                self.resumption_no,
                event.kind.value,
            )
            self._queue.schedule(self.job_id, self.resumption_no + 1, self._now() + timedelta(seconds=interval))
        else:
            self.reschedule_if_needed()

        if self.should_yield():
            logger.info("Invocation budget spent after %.1fs; yielding to the next resumption", self.elapsed)
            raise InvocationYield(f"Yielded at resumption {self.resumption_no}")

    def check_abort(self) -> None:
        sentinel = abort_sentinel_path(self.storage_root, self.job_id)
        if sentinel.exists():
            logger.warning("Abort requested for job %s; halting", self.job_id)
            sentinel.unlink(missing_ok=True)
            raise AbortRequested(f"Job {self.job_id} aborted on request")

    def should_yield(self) -> bool:
        return self.elapsed > self._settings.invocation_budget_seconds

    def reschedule_if_needed(self) -> None:
        pending = self._queue.next_pending(self.job_id)
        if pending is None:
            return
        time_away = (pending.run_at - self._now()).total_seconds()
        if 1 < time_away <= RESCHEDULE_WINDOW_SECONDS:
            logger.info("The scheduled resumption is within %ds; rescheduling", RESCHEDULE_WINDOW_SECONDS)
            self.increase_resume_and_reschedule(RESCHEDULE_WINDOW_SECONDS)

    def reschedule(self, how_far_ahead: float) -> None:
        ahead = max(int(how_far_ahead), MIN_RESCHEDULE_SECONDS)
        next_resumption = self.resumption_no + 1
        self._queue.cancel(self.job_id)
        self._queue.schedule(self.job_id, next_resumption, self._now() + timedelta(seconds=ahead))
        logger.info("Rescheduling resumption %d: %ds from now", next_resumption, ahead)

    def schedule_safety_net(self) -> None:
        ahead = max(self._interval(), 100)
        self._queue.schedule(self.job_id, self.resumption_no + 1, self._now() + timedelta(seconds=ahead))

    def increase_resume_and_reschedule(self, howmuch: int = 120, due_to_overlap: bool = False) -> int:
        base = max(self._interval(), 120 if howmuch == 0 else 300)
        new_interval = base + howmuch
        elapsed = self.elapsed
        if elapsed > new_interval:
            new_interval = int(math.ceil(elapsed)) + RESCHEDULE_WINDOW_SECONDS
        how_far_ahead = min(new_interval, OVERLAP_CAP_SECONDS) if due_to_overlap else new_interval
        if self.resumption_no <= 1 and new_interval > EARLY_RESUMPTION_CAP_SECONDS:
            how_far_ahead = EARLY_RESUMPTION_AHEAD_SECONDS

        if due_to_overlap or self._queue.next_pending(self.job_id) is not None:
            self.reschedule(how_far_ahead)

        self._jobs.set_resume_interval(self.job_id, new_interval)
        logger.info("Increasing resumption interval to %d + %d = %d", base, howmuch, new_interval)
        return new_interval

    def terminate_due_to_activity(self, what: str, detail: str, increase: bool = True) -> None:
        self.record_still_alive()
        logger.warning(
            "Terminate: %s shows activity within the last %ds (%s); another run is likely at work",
            what,
            self._settings.overlap_window_seconds,
            detail,
        )
        self.increase_resume_and_reschedule(120 if increase else 0, due_to_overlap=True)
        raise OverlappingRunError(f"Overlapping activity on {what}")

    def check_overlap(self, path: Path) -> None:
        try:
            stat = path.stat()
        except FileNotFoundError:
            return
        age = time.time() - stat.st_mtime
        if age < self._settings.overlap_window_seconds:
            self.terminate_due_to_activity(path.name, f"modified {age:.1f}s ago, size={stat.st_size / 1024:.1f}KB")

    def clear_scheduled(self) -> int:
        return self._queue.cancel(self.job_id)
