from __future__ import annotations

import logging

from sqlalchemy import inspect, text

from snapvault.db.migrations import apply_migrations
from snapvault.db.models import Base, BackupSet, Job, LockRecord, ScheduledResumption, SchemaMigration
from snapvault.db.session import get_engine

logger = logging.getLogger(__name__)

STATE_TABLES = (
    Job.__table__,
    LockRecord.__table__,
    ScheduledResumption.__table__,
    BackupSet.__table__,
    SchemaMigration.__table__,
)


def initialize_database() -> list[str]:
    """Create the state tables, bring older schemas up to date and return the tables created."""
    engine = get_engine()
    existing = set(inspect(engine).get_table_names())
    Base.metadata.create_all(bind=engine, tables=list(STATE_TABLES))
    created = [table.name for table in STATE_TABLES if table.name not in existing]
    if created:
        logger.info("Created state tables: %s", ", ".join(created))
    apply_migrations(engine)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
    return created
