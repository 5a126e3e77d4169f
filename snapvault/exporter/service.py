from __future__ import annotations

import gzip
import logging
import os
import socket
from email.utils import formatdate
from pathlib import Path
from typing import Any

from snapvault.core.config import Settings
from snapvault.exporter.dialect import SourceDatabase
from snapvault.exporter.header import DumpMetadata, build_footer, build_header
from snapvault.exporter.table_dumper import TableDumper
from snapvault.exporter.types import TableDumpSegment, TableExportState
from snapvault.jobs.service import JobStateService
from snapvault.scheduler.events import InvocationGuard, ProgressChannel, ProgressEvent, ProgressKind

logger = logging.getLogger(__name__)

EXPORT_TASK_KEY = "export"
EXPORT_ERRORS_KEY = "export_errors"
EMPTY_GZIP_MEMBER_BYTES = 27
COPY_CHUNK_BYTES = 1024 * 1024


def dump_filename(base_name: str) -> str:
    return f"{base_name}-db.gz"


class DatabaseExporter:
    """Resumable dump of the site database into ``<base>-db.gz``.

    Progress lives in the job's task data under ``export``: per-table
    records plus the table order and the stitched flag. Every table call
    ends in a durable checkpoint followed by a progress event.
    """

    def __init__(
        self,
        settings: Settings,
        source: SourceDatabase,
        jobs: JobStateService,
        *,
        channel: ProgressChannel | None = None,
        guard: InvocationGuard | None = None,
    ):
        self._settings = settings
        self._source = source
        self._jobs = jobs
        self._channel = channel
        self._guard = guard

    @property
    def storage_root(self) -> Path:
        return self._settings.backup_dir

    def _load_record(self, job_id: str) -> dict[str, Any]:
        task_data = self._jobs.get_job(job_id).task_data
        record = dict(task_data.get(EXPORT_TASK_KEY) or {})
        record.setdefault("tables", {})
        record.setdefault("stitched", False)
        return record

    def _save_record(self, job_id: str, record: dict[str, Any]) -> None:
        self._jobs.set_task_value(job_id, EXPORT_TASK_KEY, record)
        errors = sum(int(raw.get("errors") or 0) for raw in record["tables"].values())
        self._jobs.set_task_value(job_id, EXPORT_ERRORS_KEY, errors)

    def export(self, job_id: str) -> str:
        job = self._jobs.get_job(job_id)
        base_name = job.file_base
        record = self._load_record(job_id)
        final_path = self.storage_root / dump_filename(base_name)
        if record["stitched"] and final_path.exists():
            return final_path.name

        if "order" not in record:
            selected, skipped = self._source.list_tables(
                self._settings.table_prefix,
                all_tables=self._settings.export_all_tables,
            )
            tables = [name for name, is_view in selected if not is_view]
            views = [name for name, is_view in selected if is_view]
            record["order"] = tables + views
            record["views"] = views
            record["skipped"] = skipped
            for name in skipped:
                logger.info("Skipping table (lacks our prefix %s): %s", self._settings.table_prefix, name)
            self._save_record(job_id, record)

        dumper = TableDumper(self._settings, self._source, base_name, guard=self._guard)
        views = set(record.get("views") or [])
        for table in record["order"]:
            state = TableExportState.from_dict(record["tables"].get(table))
            while not state.done:
                if table in views:
                    state = dumper.dump_view(table, state)
                else:
                    state = dumper.dump(table, state)
                record["tables"][table] = state.to_dict()
                self._save_record(job_id, record)
                kind = ProgressKind.TABLE_DONE if state.done else ProgressKind.TABLE_CHECKPOINT
                self._emit(kind, table, {"cursor": state.cursor, "rows": state.rows, "segments": len(state.segments)})

        filename = self.stitch(job_id, base_name, record)
        record["stitched"] = True
        record["filename"] = filename
        self._save_record(job_id, record)
        self._emit(ProgressKind.DUMP_STITCHED, "db", {"filename": filename})
        return filename

    def _segments(self, record: dict[str, Any]) -> list[TableDumpSegment]:
        segments: list[TableDumpSegment] = []
        for table in record["order"]:
            state = TableExportState.from_dict(record["tables"].get(table))
            for name in state.segments:
                segments.append(TableDumpSegment(table_name=table, cursor=state.cursor, file_path=self.storage_root / name))
        return segments

    def _metadata(self, record: dict[str, Any]) -> DumpMetadata:
        settings = self._settings
        site_root = settings.site_root.as_posix().rstrip("/") + "/" if settings.site_root is not None else ""
        return DumpMetadata(
            version=settings.app_version,
            plugin_slug=settings.plugin_slug,
            site_url=settings.site_url,
            home_url=settings.home_url or settings.site_url,
            content_url=settings.content_url or "",
            uploads_url=settings.uploads_url or "",
            table_prefix=settings.table_prefix,
            abspath=site_root,
            sql_mode=self._source.sql_mode(),
            dialect=self._source.dialect.name,
            generated=formatdate(localtime=True),
            hostname=socket.gethostname(),
            database=self._source.database_name(),
            skipped_tables=list(record.get("skipped") or []),
        )

    def stitch(self, job_id: str, base_name: str, record: dict[str, Any]) -> str:
        final_path = self.storage_root / dump_filename(base_name)
        temp_path = self.storage_root / f"{final_path.name}.tmp"
        if self._guard is not None:
            self._guard.check_overlap(temp_path)

        dialect = self._source.dialect
        segments = self._segments(record)
        with gzip.open(temp_path, "wb") as handle:
            handle.write(build_header(self._metadata(record), dialect).encode("utf-8"))

        with temp_path.open("ab") as output:
            for segment in segments:
                if not segment.file_path.exists():
                    raise FileNotFoundError(f"Dump segment is missing: {segment.file_path.name}")
                if segment.file_path.stat().st_size < EMPTY_GZIP_MEMBER_BYTES:
                    continue
                with segment.file_path.open("rb") as source:
                    while True:
                        chunk = source.read(COPY_CHUNK_BYTES)
                        if not chunk:
                            break
                        output.write(chunk)
            output.write(gzip.compress(build_footer(dialect).encode("utf-8")))
            output.flush()
            os.fsync(output.fileno())

        temp_path.replace(final_path)
        for segment in segments:
            segment.file_path.unlink(missing_ok=True)
        for leftover in self.storage_root.glob(f"{base_name}-db-table-*"):
            leftover.unlink(missing_ok=True)
        logger.info(
            "%s: finished writing out complete database file (%.1f KB, %d segments)",
            final_path.name,
            final_path.stat().st_size / 1024,
            len(segments),
        )
        return final_path.name

    def _emit(self, kind: ProgressKind, entity: str, detail: dict[str, Any]) -> None:
        if self._channel is not None:
            self._channel.emit(ProgressEvent(kind=kind, entity=entity, detail=detail))
