from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from snapvault.core.config import Settings
from snapvault.db.models import LockRecord, LockState
from snapvault.semaphore.types import LockSnapshot

logger = logging.getLogger(__name__)


class SemaphoreService:
    """Persisted named mutex with stale-holder takeover.

    A lock is a single row moved between ``unlocked`` and ``locked`` plus a
    holder counter gated on zero. Both moves are conditional UPDATEs, so the
    database decides the single winner.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _to_snapshot(self, record: LockRecord) -> LockSnapshot:
        return LockSnapshot(
            lock_name=record.lock_name,
            state=record.state,
            holder_count=record.holder_count,
            last_refresh_at=self._coerce_utc(record.last_refresh_at),
        )

    def ensure_exists(self, name: str) -> None:
        with self._session_factory() as session:
            record = session.get(LockRecord, name)
            if record is None:
                session.add(LockRecord(lock_name=name, state=LockState.UNLOCKED, holder_count=0))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                return

            if record.state == LockState.UNLOCKED and record.holder_count != 0:
                logger.warning("Semaphore (%s) was unlocked with %d holders; resetting", name, record.holder_count)
                record.holder_count = 0
                session.commit()
            elif record.state == LockState.LOCKED and record.holder_count == 0 and record.last_refresh_at is None:
                logger.warning("Semaphore (%s) was locked without holders; resetting", name)
                record.state = LockState.UNLOCKED
                session.commit()

    def _break_if_stuck(self, session: Session, name: str, timeout: int) -> bool:
        now = self._now()
        cutoff = now - timedelta(seconds=timeout)
        hard_cutoff = now - timedelta(seconds=self._settings.semaphore_hard_ceiling_seconds)
        result = session.execute(
            update(LockRecord)
            .where(
                LockRecord.lock_name == name,
                (LockRecord.last_refresh_at <= cutoff) | (LockRecord.last_refresh_at <= hard_cutoff),
            )
            .values(last_refresh_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def is_stuck(self, name: str, timeout: int | None = None) -> bool:
        effective_timeout = timeout or self._settings.semaphore_timeout_seconds
        with self._session_factory() as session:
            record = session.get(LockRecord, name)
            if record is None or record.last_refresh_at is None:
                return False
            refreshed = self._coerce_utc(record.last_refresh_at)
            assert refreshed is not None
            age = (self._now() - refreshed).total_seconds()
            return age >= effective_timeout or age >= self._settings.semaphore_hard_ceiling_seconds

    def lock(self, name: str, timeout: int | None = None) -> bool:
        effective_timeout = timeout or self._settings.semaphore_timeout_seconds
        self.ensure_exists(name)

        with self._session_factory() as session:
            # Takes the write lock up front on SQLite; ignored elsewhere.
            session.connection(execution_options={"sqlite_begin": "IMMEDIATE"})
            flipped = session.execute(
                update(LockRecord)
                .where(LockRecord.lock_name == name, LockRecord.state == LockState.UNLOCKED)
                .values(state=LockState.LOCKED)
                .execution_options(synchronize_session=False)
            )
            broken = False
            if int(flipped.rowcount or 0) == 0:
                broken = self._break_if_stuck(session, name, effective_timeout)
                if not broken:
                    session.rollback()
                    logger.info("Failed to gain semaphore lock (%s)", name)
                    return False

            incremented = session.execute(
                update(LockRecord)
                .where(LockRecord.lock_name == name, LockRecord.holder_count == 0)
                .values(holder_count=LockRecord.holder_count + 1)
                .execution_options(synchronize_session=False)
            )
            if int(incremented.rowcount or 0) == 0:
                if not broken:
                    broken = self._break_if_stuck(session, name, effective_timeout)
                if not broken:
                    session.rollback()
                    logger.info("Failed to increment semaphore holders (%s)", name)
                    return False
                session.execute(
                    update(LockRecord)
                    .where(LockRecord.lock_name == name)
                    .values(holder_count=1, state=LockState.LOCKED)
                    .execution_options(synchronize_session=False)
                )
                logger.warning("Semaphore (%s) takeover: previous holder exceeded %ds", name, effective_timeout)

            session.execute(
                update(LockRecord)
                .where(LockRecord.lock_name == name)
                .values(last_refresh_at=self._now())
                .execution_options(synchronize_session=False)
            )
            session.commit()

        logger.info("Semaphore (%s) acquired", name)
        return True

    def refresh(self, name: str) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                update(LockRecord)
                .where(LockRecord.lock_name == name, LockRecord.state == LockState.LOCKED)
                .values(last_refresh_at=self._now())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount or 0) == 1

    def unlock(self, name: str) -> None:
        with self._session_factory() as session:
            session.execute(
                update(LockRecord)
                .where(LockRecord.lock_name == name, LockRecord.holder_count > 0)
                .values(holder_count=LockRecord.holder_count - 1)
                .execution_options(synchronize_session=False)
            )
            released = session.execute(
                update(LockRecord)
                .where(LockRecord.lock_name == name, LockRecord.state == LockState.LOCKED)
                .values(state=LockState.UNLOCKED)
                .execution_options(synchronize_session=False)
            )
            session.commit()

        if int(released.rowcount or 0) == 0:
            logger.warning("Semaphore (%s) was not locked at release time", name)
        else:
            logger.info("Semaphore (%s) unlocked", name)

    def get(self, name: str) -> LockSnapshot | None:
        with self._session_factory() as session:
            record = session.scalar(select(LockRecord).where(LockRecord.lock_name == name))
            if record is None:
                return None
            return self._to_snapshot(record)
