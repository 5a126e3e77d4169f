from __future__ import annotations

import gzip
import logging
import re
import time
from pathlib import Path
from typing import IO, Sequence

from sqlalchemy.exc import OperationalError

from snapvault.core.config import Settings
from snapvault.exporter.dialect import SourceDatabase, backquote
from snapvault.exporter.encoding import encode_row
from snapvault.exporter.types import ColumnInfo, PaginationMode, TableExportState
from snapvault.scheduler.events import InvocationGuard

logger = logging.getLogger(__name__)

FETCH_REDUCTIONS = (500, 250, 200, 100, 50, 20, 5)
SHORT_CALL_SECONDS = 9.0


def rows_on_first_fetch(settings: Settings, table: str, prefix: str) -> int:
    if table == f"{prefix}term_relationships":
        return 100000
    if re.search(r"meta$", table, re.IGNORECASE):
        return 4000
    return settings.export_rows_per_fetch


def table_header(table: str, create_statement: str, is_view: bool, index_statements: Sequence[str] = ()) -> str:
    description = "view" if is_view else "table"
    drop = "DROP VIEW IF EXISTS" if is_view else "DROP TABLE IF EXISTS"
    parts = [
        f"\n# Delete any existing table {backquote(table)}\n\n",
        f"{drop} {backquote(table)};\n",
        f"\n# Table structure of {description} {backquote(table)}\n\n",
        f"{create_statement} ;\n",
    ]
    for statement in index_statements:
        parts.append(f"{statement} ;\n")
    parts.append(f"\n# Data contents of {description} {backquote(table)}\n\n")
    return "".join(parts)


def table_footer(table: str) -> str:
    return f"\n# End of data contents of table {backquote(table)}\n\n"


class TableDumper:
    """Dumps one table per call within a bounded budget, checkpointing into segments."""

    def __init__(
        self,
        settings: Settings,
        source: SourceDatabase,
        base_name: str,
        *,
        guard: InvocationGuard | None = None,
    ):
        self._settings = settings
        self._source = source
        self._base_name = base_name
        self._guard = guard

    @property
    def storage_root(self) -> Path:
        return self._settings.backup_dir

    def temp_path(self, table: str) -> Path:
        return self.storage_root / f"{self._base_name}-db-table-{table}.table.tmp.gz"

    def checkpoint_path(self, table: str, cursor: int | None) -> Path:
        return self.storage_root / f"{self._base_name}-db-table-{table}.table.tmpr{cursor if cursor is not None else 0}.gz"

    def final_path(self, table: str) -> Path:
        return self.storage_root / f"{self._base_name}-db-table-{table}.table.gz"

    def view_path(self, table: str) -> Path:
        return self.storage_root / f"{self._base_name}-db-table-{table}-view.tmp.gz"

    def dump_view(self, table: str, state: TableExportState) -> TableExportState:
        path = self.view_path(table)
        create = self._source.create_statement(table, is_view=True)
        with gzip.open(path, "wb") as handle:
            handle.write(table_header(table, create, True).encode("utf-8"))
        state.is_view = True
        state.segments = [path.name]
        state.done = True
        logger.info("View %s: structure written", table)
        return state

    def dump(self, table: str, state: TableExportState) -> TableExportState:
        settings = self._settings
        state = TableExportState.from_dict(state.to_dict())
        temp = self.temp_path(table)
        if self._guard is not None:
            self._guard.check_overlap(temp)

        columns = self._source.columns(table)
        primary_key = self._source.integer_primary_key(table, columns)
        # Generated columns are computed by the destination.
        stored = [column for column in columns if not column.generated]
        insert_target = backquote(table)
        if len(stored) != len(columns):
            insert_target += " (" + ", ".join(backquote(column.name) for column in stored) + ")"
        if state.mode is None:
            state.mode = PaginationMode.PRIMARY_KEY if primary_key is not None else PaginationMode.OFFSET
        if state.mode is PaginationMode.PRIMARY_KEY and primary_key is None:
            raise RuntimeError(f"Table {table} lost its integer primary key between invocations")

        fetch_rows = rows_on_first_fetch(settings, table, settings.table_prefix)
        call_seconds = settings.export_call_seconds if fetch_rows > 250 else min(settings.export_call_seconds, SHORT_CALL_SECONDS)
        started = time.monotonic()
        bytes_written = 0
        pages = 0
        rows_this_call = 0
        finished = False

        with gzip.open(temp, "wb") as handle:
            if state.cursor is None and not state.segments:
                create = self._source.create_statement(table, is_view=False)
                header = table_header(table, create, False, self._source.index_statements(table))
                handle.write(header.encode("utf-8"))

            while True:
                page, fetch_rows = self._fetch_with_backoff(table, stored, state, fetch_rows, primary_key)
                if not page:
                    finished = True
                    break
                bytes_written += self._write_page(handle, table, insert_target, stored, page, state, primary_key)
                rows_this_call += len(page)
                pages += 1
                if state.mode is PaginationMode.OFFSET:
                    state.cursor = (state.cursor or 0) + len(page)
                if len(page) < fetch_rows:
                    finished = True
                    break
                if (
                    pages >= settings.export_max_pages_per_call
                    or time.monotonic() - started > call_seconds
                    or bytes_written > settings.export_call_max_bytes
                ):
                    break

            if finished:
                handle.write(table_footer(table).encode("utf-8"))

        state.rows += rows_this_call
        if finished:
            target = self.final_path(table)
            state.done = True
        else:
            target = self.checkpoint_path(table, state.cursor)
        temp.replace(target)
        state.segments.append(target.name)
        logger.info(
            "Table %s: %d rows this call (%d total) in %.2fs%s",
            table,
            rows_this_call,
            state.rows,
            time.monotonic() - started,
            "; finished" if finished else f"; checkpoint at {state.cursor}",
        )
        return state

    def _fetch_with_backoff(
        self,
        table: str,
        columns: Sequence[ColumnInfo],
        state: TableExportState,
        fetch_rows: int,
        primary_key: str | None,
    ) -> tuple[list[tuple], int]:
        assert state.mode is not None
        while True:
            try:
                page = self._source.fetch_page(table, columns, state.mode, state.cursor, fetch_rows, primary_key)
                return page, fetch_rows
            except OperationalError as exc:
                smaller = [size for size in FETCH_REDUCTIONS if size < fetch_rows]
                if not smaller:
                    raise
                logger.warning("Table %s: fetch of %d rows failed (%s); retrying with %d", table, fetch_rows, exc.orig, smaller[0])
                fetch_rows = smaller[0]

    def _write_page(
        self,
        handle: IO[bytes],
        table: str,
        insert_target: str,
        columns: Sequence[ColumnInfo],
        page: Sequence[tuple],
        state: TableExportState,
        primary_key: str | None,
    ) -> int:
        settings = self._settings
        dialect = self._source.dialect
        statement_prefix = f" \nINSERT INTO {insert_target} VALUES "
        pk_index = None
        if state.mode is PaginationMode.PRIMARY_KEY and primary_key is not None:
            pk_index = [column.name for column in columns].index(primary_key)

        pending: list[str] = []
        pending_bytes = 0
        written = 0

        def flush() -> int:
            nonlocal pending, pending_bytes
            if not pending:
                return 0
            payload = (statement_prefix + ",\n ".join(pending) + ";").encode("utf-8")
            handle.write(payload)
            pending = []
            pending_bytes = 0
            return len(payload)

        for row in page:
            if pk_index is not None:
                value = row[pk_index]
                if value is not None and (state.cursor is None or int(value) > state.cursor):
                    state.cursor = int(value)
            encoded = encode_row(row, columns, dialect)
            if len(encoded) > settings.max_statement_bytes:
                state.errors += 1
                logger.error(
                    "Table %s: dropping a row of %.1fMB that exceeds the maximum statement size",
                    table,
                    len(encoded) / 1048576,
                )
                continue
            pending.append(encoded)
            pending_bytes += len(encoded) + 3
            if pending_bytes > settings.export_flush_bytes:
                written += flush()

        written += flush()
        return written
