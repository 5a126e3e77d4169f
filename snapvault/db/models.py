from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class JobKind(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class JobStage(str, Enum):
    BEGUN = "begun"
    DB_CREATING = "dbcreating"
    DB_CREATED = "dbcreated"
    FILES_CREATING = "filescreating"
    FILES_CREATED = "filescreated"
    DB_RESTORING = "dbrestoring"
    DB_RESTORED = "dbrestored"
    FILES_RESTORING = "filesrestoring"
    FINISHED = "finished"


class LockState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class ResumptionStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    CANCELLED = "cancelled"


class BackupSetStatus(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    kind: Mapped[JobKind] = mapped_column(
        SAEnum(JobKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )
    stage: Mapped[JobStage] = mapped_column(
        SAEnum(JobStage, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobStage.BEGUN,
    )
    file_base: Mapped[str] = mapped_column(String(255), nullable=False)
    resumption_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resume_interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)

    task_data: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    run_times: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    runs_started: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    useful_checkins: Mapped[list[int]] = mapped_column(JSON(none_as_null=True), nullable=False, default=list)

    last_useful_checkin_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fail_on_resume: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_kind_status", "kind", "status"),
        Index("ix_jobs_created_at", "created_at"),
    )


class LockRecord(Base):
    __tablename__ = "locks"

    lock_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    state: Mapped[LockState] = mapped_column(
        SAEnum(LockState, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=LockState.UNLOCKED,
    )
    holder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_refresh_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ScheduledResumption(Base):
    __tablename__ = "scheduled_resumptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(32), nullable=False)
    resumption_no: Mapped[int] = mapped_column(Integer, nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[ResumptionStatus] = mapped_column(
        SAEnum(ResumptionStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=ResumptionStatus.PENDING,
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("job_id", "resumption_no", name="uq_scheduled_resumptions_job_resumption"),
        Index("ix_scheduled_resumptions_status_run_at", "status", "run_at"),
    )


class BackupSet(Base):
    __tablename__ = "backup_sets"

    job_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    file_base: Mapped[str] = mapped_column(String(255), nullable=False)
    components: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    sizes: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    total_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[BackupSetStatus] = mapped_column(
        SAEnum(BackupSetStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=BackupSetStatus.COMPLETE,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("ix_backup_sets_status_timestamp", "status", "timestamp"),)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
