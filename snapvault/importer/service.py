from __future__ import annotations

import gzip
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, TextIO

from sqlalchemy import Connection, Engine, inspect
from sqlalchemy.exc import DBAPIError

from snapvault.core.config import Settings
from snapvault.core.errors import DatabaseConnectionLost, RestoreFatalError
from snapvault.exporter.dialect import backquote
from snapvault.exporter.header import DumpHeaderInfo
from snapvault.importer.classifier import ClassifiedStatement, StatementType, classify
from snapvault.importer.compat import (
    ServerCapabilities,
    detect_capabilities,
    prepare_create_table,
    rewrite_set_names,
    strip_routine_definer,
    strip_trigger_definer,
    strip_view_definer,
)
from snapvault.importer.errors import DuplicateKeyError, classify_db_error
from snapvault.importer.generated import (
    GeneratedColumn,
    corrective_alters,
    insert_targets_generated,
    parse_generated_columns,
    to_insert_if_absent,
)
from snapvault.importer.hooks import DEFAULT_HOOKS, RestoredTableContext, RestoredTableHook
from snapvault.importer.permissions import PROBE_TABLE_PREFIX, PermissionSet, probe_permissions
from snapvault.importer.reader import SqlStatementReader
from snapvault.scheduler.events import ProgressChannel, ProgressEvent, ProgressKind

logger = logging.getLogger(__name__)

PREFIX_DETECTION = re.compile(r"^([a-z0-9]+_)", re.IGNORECASE)
FOREIGN_KEY = re.compile(r"\bFOREIGN\s+KEY\b.*?\bREFERENCES\b", re.IGNORECASE | re.DOTALL)
REFERENCES = re.compile(r"(\bREFERENCES\s+)(`(?:[^`]|``)+`|\"[^\"]+\"|[^\s(]+)", re.IGNORECASE)
CREATE_INDEX = re.compile(
    r"^(\s*CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:IF\s+NOT\s+EXISTS\s+)?)"
    r"(`(?:[^`]|``)+`|\"[^\"]+\"|[^\s(]+)"
    r"(\s+ON\s+)"
    r"(`(?:[^`]|``)+`|\"[^\"]+\"|[^\s(]+)",
    re.IGNORECASE,
)

TableRestoredListener = Callable[[str, str], None]


def _unquote(identifier: str) -> str:
    if len(identifier) >= 2 and identifier[0] == identifier[-1] == "`":
        return identifier[1:-1].replace("``", "`")
    if len(identifier) >= 2 and identifier[0] == identifier[-1] == '"':
        return identifier[1:-1]
    return identifier


def replace_table_name(sql: str, old: str, new: str, count: int = 1) -> str:
    """Replace references to table ``old`` in quoted or bare form."""
    pattern = re.compile(
        r"`" + re.escape(old.replace("`", "``")) + r"`"
        r"|\"" + re.escape(old) + r"\""
        r"|(?<![\w`\"])" + re.escape(old) + r"(?![\w`\"])"
    )
    return pattern.sub(lambda _match: backquote(new), sql, count=count)


def open_dump(path: Path) -> TextIO:
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8", newline="")
    return path.open("r", encoding="utf-8", newline="")


@dataclass(slots=True)
class RestoreOptions:
    new_prefix: str | None = None
    tables_to_skip: list[str] = field(default_factory=list)
    last_processed_table: str | None = None


@dataclass(slots=True)
class RestoreStats:
    lines: int = 0
    statements: int = 0
    inserts: int = 0
    tables_created: int = 0
    errors: int = 0
    skipped_statements: int = 0
    old_prefix: str = ""
    new_prefix: str = ""
    tables_restored: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0


@dataclass
class _TableInProgress:
    source: str
    restoring: str
    final: str
    atomic: bool
    engine: str = "(?)"
    inserts: int = 0
    indexes: list[str] = field(default_factory=list)


class DatabaseImporter:
    """Replays a dump produced by the exporter (or a compatible mysqldump).

    Tables are created under a temporary prefix and swapped into place once
    their rows are loaded, so a failed restore leaves the live tables alone
    for as long as the destination user may rename tables.
    """

    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        *,
        channel: ProgressChannel | None = None,
        hooks: Iterable[RestoredTableHook] = DEFAULT_HOOKS,
        on_table_restored: TableRestoredListener | None = None,
        permissions: PermissionSet | None = None,
        capabilities: ServerCapabilities | None = None,
    ):
        self._settings = settings
        self._engine = engine
        self._channel = channel
        self._hooks = list(hooks)
        self._on_table_restored = on_table_restored
        self._permissions = permissions
        self._capabilities = capabilities
        self._connection: Connection | None = None

    # Connection handling

    def connect(self) -> Connection:
        if self._connection is None:
            connection = self._engine.connect()
            self._connection = connection.execution_options(isolation_level="AUTOCOMMIT", no_parameters=True)
        return self._connection

    def _close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _reconnect(self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
            except DBAPIError as exc:
                logger.debug("Closing a lost connection failed: %s", exc)
            self._connection = None
        self.connect()

    def execute(self, sql: str) -> None:
        attempts = 0
        while True:
            try:
                self.connect().exec_driver_sql(sql)
                return
            except DBAPIError as exc:
                classified = classify_db_error(exc)
                if isinstance(classified, DatabaseConnectionLost):
                    attempts += 1
                    if attempts > self._settings.restore_reconnect_attempts:
                        raise RestoreFatalError(
                            f"Database connection lost and {attempts - 1} reconnection attempts failed"
                        ) from exc
                    logger.warning("Database connection lost (%s); reconnecting (attempt %d)", exc.orig, attempts)
                    time.sleep(min(attempts, 3))
                    self._reconnect()
                    continue
                if classified is not exc:
                    raise classified from exc
                raise

    # Restore

    def drop_stale_temp_tables(self) -> list[str]:
        """Remove half-restored tables left behind by an interrupted run."""
        stale = [name for name in inspect(self._engine).get_table_names() if name.startswith(PROBE_TABLE_PREFIX)]
        for name in stale:
            logger.info("Dropping leftover temporary table %s", name)
            self.execute(f"DROP TABLE IF EXISTS {backquote(name)}")
        self._close()
        return stale

    def restore(self, dump_path: Path, options: RestoreOptions | None = None) -> RestoreStats:
        options = options or RestoreOptions()
        if self._permissions is None:
            self._permissions = probe_permissions(self._engine)
        if self._capabilities is None:
            self._capabilities = detect_capabilities(self._engine, self._settings.restore_max_allowed_packet)
        if self._permissions.drop:
            self.drop_stale_temp_tables()
        run = _ReplayRun(self, dump_path, options)
        try:
            return run.replay()
        finally:
            self._close()


class _ReplayRun:
    """State of one pass over a dump file."""

    def __init__(self, importer: DatabaseImporter, dump_path: Path, options: RestoreOptions):
        assert importer._permissions is not None and importer._capabilities is not None
        self.importer = importer
        self.settings = importer._settings
        self.permissions = importer._permissions
        self.capabilities = importer._capabilities
        self.dump_path = dump_path
        self.options = options
        self.header = DumpHeaderInfo()
        self.stats = RestoreStats()
        self.final_prefix = options.new_prefix or self.settings.table_prefix
        if self.permissions.rename:
            self.import_prefix = f"{PROBE_TABLE_PREFIX}{secrets.randbelow(100000)}_"
        else:
            self.import_prefix = self.final_prefix
        self.old_prefix: str | None = None
        self.current: _TableInProgress | None = None
        self.generated: dict[str, list[GeneratedColumn]] = {}
        self.seen_tables: set[str] = set()
        self.resume_after = options.last_processed_table
        self.resume_point_seen = False
        self.first_statement = True
        self.options_inserts = 0
        self.last_skipped_logged: str | None = None
        self.started = time.monotonic()

    # Names

    def _old_prefix_from_header(self) -> None:
        if self.old_prefix is None and self.header.table_prefix is not None:
            self.old_prefix = self.header.table_prefix
            logger.info("Old table prefix (from header): %s", self.old_prefix)

    def _detect_prefix(self, table: str) -> None:
        if self.old_prefix is not None:
            return
        match = PREFIX_DETECTION.match(table)
        self.old_prefix = match.group(1) if match else ""
        logger.info("Old table prefix (detected from first table): %s", self.old_prefix)

    def target_name(self, source: str, prefix: str) -> str:
        old = self.old_prefix or ""
        if old == "":
            return prefix + source
        if source.startswith(old):
            return prefix + source[len(old) :]
        if self.permissions.rename:
            return prefix + source
        return source

    def _options_table(self) -> str:
        return f"{self.old_prefix or ''}options"

    # Skipping and continuation

    def should_skip(self, table: str) -> bool:
        if table in self.options.tables_to_skip:
            if self.last_skipped_logged != table:
                logger.info("Skipping table %s: user has chosen not to restore this table", table)
                self.last_skipped_logged = table
            return True
        if self.resume_after is None:
            return False
        if table == self.resume_after:
            self.resume_point_seen = True
            if self.last_skipped_logged != table:
                logger.info("Skipping table %s: already restored on a prior run", table)
                self.last_skipped_logged = table
            return True
        if self.resume_point_seen:
            logger.info("Continuing restore from table %s", table)
            self.resume_after = None
            return False
        if self.last_skipped_logged != table:
            logger.info("Skipping table %s: already restored on a prior run; resuming after %s", table, self.resume_after)
            self.last_skipped_logged = table
        return True

    # Error policy

    def record_error(self, statement: ClassifiedStatement, sql: str, exc: BaseException) -> None:
        self.stats.errors += 1
        orig = getattr(exc, "orig", exc)
        logger.error(
            "An error (%d) occurred on %s statement%s: %s",
            self.stats.errors,
            statement.type.value,
            f" ({statement.table})" if statement.table else "",
            orig,
        )
        logger.debug("Failed statement (first 200 chars): %s", sql[:200])
        if self.stats.errors >= self.settings.restore_error_ceiling:
            raise RestoreFatalError(f"Too many database errors ({self.stats.errors}) - aborting restore") from exc

    def run_statement(self, statement: ClassifiedStatement, sql: str) -> bool:
        try:
            self.importer.execute(sql)
        except (DBAPIError, DuplicateKeyError) as exc:
            self.record_error(statement, sql, exc)
            return False
        return True

    # Main loop

    def replay(self) -> RestoreStats:
        logger.info("Restoring database from %s into prefix %s", self.dump_path.name, self.final_prefix)
        with open_dump(self.dump_path) as stream:
            reader = SqlStatementReader(
                stream,
                backslash_escapes=self.capabilities.is_mysql,
                on_comment=lambda line, _line_no: self._on_comment(reader, line),
            )
            for raw in reader:
                statement = classify(raw.text)
                if self.first_statement:
                    self._begin()
                    self.first_statement = False
                self.stats.statements += 1
                self._dispatch(statement)
            self.stats.lines = reader.lines_read

        self._finish_table()
        self.stats.old_prefix = self.old_prefix or ""
        self.stats.new_prefix = self.final_prefix
        self.stats.elapsed_seconds = time.monotonic() - self.started
        logger.info(
            "Database restore finished: %d lines, %d statements, %d inserts, %d tables created, %d errors, %.1fs",
            self.stats.lines,
            self.stats.statements,
            self.stats.inserts,
            self.stats.tables_created,
            self.stats.errors,
            self.stats.elapsed_seconds,
        )
        return self.stats

    def _on_comment(self, reader: SqlStatementReader, line: str) -> None:
        if not self.header.consume(line):
            return
        if line.startswith("# Site info: dialect="):
            reader.backslash_escapes = self.header.dialect in {"mysql", "mariadb"}

    def _begin(self) -> None:
        if self.header.multisite:
            raise RestoreFatalError("This database backup is from a multisite install; it cannot be restored here")
        self._old_prefix_from_header()
        if self.header.site_url:
            logger.info("Backup of: %s", self.header.site_url)
        logger.info("New table prefix: %s", self.final_prefix)

    def _dispatch(self, statement: ClassifiedStatement) -> None:
        kind = statement.type
        if statement.skipped:
            self.stats.skipped_statements += 1
            return
        handler = {
            StatementType.DROP_TABLE: self._drop_table,
            StatementType.CREATE_TABLE: self._create_table,
            StatementType.CREATE_INDEX: self._create_index,
            StatementType.INSERT: self._insert,
            StatementType.ALTER_LOCK: self._alter_lock,
            StatementType.UNLOCK: self._unlock,
            StatementType.SET_NAMES: self._set_names,
            StatementType.CREATE_TRIGGER: self._routine_or_trigger,
            StatementType.DROP_TRIGGER: self._routine_or_trigger,
            StatementType.CREATE_ROUTINE: self._routine_or_trigger,
            StatementType.DROP_ROUTINE: self._routine_or_trigger,
            StatementType.CREATE_VIEW: self._create_view,
            StatementType.DROP_VIEW: self._drop_view,
        }.get(kind, self._other)
        handler(statement)

    # Handlers

    def _drop_table(self, statement: ClassifiedStatement) -> None:
        source = statement.table or ""
        self._detect_prefix(source)
        self.seen_tables.add(source)
        if self.should_skip(source):
            return
        if self.current is not None and self.current.source != source:
            self._finish_table()
        name = self.target_name(source, self.import_prefix)
        if not self.permissions.drop:
            try:
                self.importer.execute(f"DELETE FROM {backquote(name)}")
            except DBAPIError as exc:
                logger.info("Could not empty table %s (%s)", name, getattr(exc, "orig", exc))
            return
        self.run_statement(statement, f"DROP TABLE IF EXISTS {backquote(name)}")

    def _create_table(self, statement: ClassifiedStatement) -> None:
        source = statement.table or ""
        self._detect_prefix(source)
        self.seen_tables.add(source)
        if self.should_skip(source):
            return
        if self.current is not None:
            self._finish_table()

        final = self.target_name(source, self.final_prefix)
        if not self.permissions.create:
            logger.info("Processing table %s: no CREATE permission; rows go into the existing table %s", source, final)
            self.current = _TableInProgress(source=source, restoring=final, final=final, atomic=False)
            return

        atomic = self.permissions.rename
        prefix = self.import_prefix
        if atomic and FOREIGN_KEY.search(statement.text):
            logger.info("Constraints found, will disable atomic restore for current table (%s)", source)
            atomic = False
            prefix = self.final_prefix
        restoring = self.target_name(source, prefix)

        sql, table_engine = prepare_create_table(statement.text, self.capabilities, self.settings.restore_collate)
        sql = replace_table_name(sql, source, restoring)
        sql = REFERENCES.sub(
            lambda match: match.group(1) + backquote(self.target_name(_unquote(match.group(2)), self.final_prefix)),
            sql,
        )
        generated = parse_generated_columns(statement.text)
        if generated:
            self.generated[source] = generated

        if self.permissions.drop:
            names = {restoring} if atomic else {restoring, final}
            for name in sorted(names):
                self.run_statement(statement, f"DROP TABLE IF EXISTS {backquote(name)}")

        description = f" - will restore as: {final}" if final != source else ""
        logger.info("Processing table (%s): %s%s", table_engine, source, description)
        try:
            self.importer.execute(sql)
        except DBAPIError as exc:
            if self.stats.tables_created == 0 and self.permissions.drop:
                raise RestoreFatalError(f"Creating the first table ({source}) failed: {exc.orig}") from exc
            self.record_error(statement, sql, exc)
            if self.permissions.drop:
                self.current = None
            else:
                logger.info("Table %s could not be created; rows go into the existing emptied table", final)
                self.current = _TableInProgress(source=source, restoring=final, final=final, atomic=False)
            return
        self.stats.tables_created += 1
        self.current = _TableInProgress(source=source, restoring=restoring, final=final, atomic=atomic, engine=table_engine)

    def _create_index(self, statement: ClassifiedStatement) -> None:
        source = statement.table or ""
        if self.should_skip(source):
            return
        match = CREATE_INDEX.match(statement.text)
        if match is None:
            self._other(statement)
            return
        index_name = _unquote(match.group(2))
        old = self.old_prefix or ""
        if old and index_name.startswith(old):
            index_name = self.final_prefix + index_name[len(old) :]
        final = self.target_name(source, self.final_prefix)
        sql = (
            match.group(1)
            + backquote(index_name)
            + match.group(3)
            + backquote(final)
            + statement.text[match.end() :]
        )
        if self.current is not None and self.current.source == source:
            self.current.indexes.append(sql)
        else:
            self.run_statement(statement, sql)

    def _insert(self, statement: ClassifiedStatement) -> None:
        source = statement.table or ""
        if self.should_skip(source):
            return
        if self.current is not None and self.current.source == source:
            name = self.current.restoring
        else:
            name = self.target_name(source, self.final_prefix if not self.permissions.rename else self.import_prefix)

        sql = replace_table_name(statement.text, source, name)
        generated = self.generated.get(source)
        if generated and insert_targets_generated(sql, generated):
            sql = to_insert_if_absent(sql, self.capabilities.dialect)

        is_options = source == self._options_table()
        size = len(sql.encode("utf-8"))
        if size > self.capabilities.max_allowed_packet:
            if is_options and self.options_inserts == 0:
                raise RestoreFatalError(
                    f"The first INSERT into {source} ({size} bytes) exceeds max_allowed_packet "
                    f"({self.capabilities.max_allowed_packet})"
                )
            self.stats.errors += 1
            logger.error(
                "An SQL line that is larger than the maximum packet size (%d > %d) was found on table %s; skipping it",
                size,
                self.capabilities.max_allowed_packet,
                source,
            )
            if self.stats.errors >= self.settings.restore_error_ceiling:
                raise RestoreFatalError(f"Too many database errors ({self.stats.errors}) - aborting restore")
            return

        try:
            self.importer.execute(sql)
        except DuplicateKeyError:
            logger.info("Retrying SQL query with the insert-if-absent form (%s)", source)
            retry = to_insert_if_absent(sql, self.capabilities.dialect)
            try:
                self.importer.execute(retry)
            except DBAPIError as exc:
                self._insert_failed(statement, retry, exc, is_options)
                return
            except DuplicateKeyError as exc:
                self._insert_failed(statement, retry, exc, is_options)
                return
        except DBAPIError as exc:
            self._insert_failed(statement, sql, exc, is_options)
            return

        self.stats.inserts += 1
        if is_options:
            self.options_inserts += 1
        if self.current is not None and self.current.source == source:
            self.current.inserts += 1

    def _insert_failed(self, statement: ClassifiedStatement, sql: str, exc: BaseException, is_options: bool) -> None:
        if is_options and self.options_inserts == 0:
            raise RestoreFatalError(f"The first INSERT into the options table failed: {getattr(exc, 'orig', exc)}") from exc
        self.record_error(statement, sql, exc)

    def _alter_lock(self, statement: ClassifiedStatement) -> None:
        source = statement.table or ""
        if self.should_skip(source):
            return
        if not self.capabilities.is_mysql:
            self.stats.skipped_statements += 1
            return
        is_lock = statement.text.lstrip().upper().startswith("LOCK")
        if is_lock and not self.permissions.lock:
            self.stats.skipped_statements += 1
            return
        name = self.current.restoring if self.current is not None and self.current.source == source else self.target_name(source, self.import_prefix)
        self.run_statement(statement, replace_table_name(statement.text, source, name))

    def _unlock(self, statement: ClassifiedStatement) -> None:
        if not self.capabilities.is_mysql or not self.permissions.lock:
            self.stats.skipped_statements += 1
            return
        self.run_statement(statement, statement.text)

    def _set_names(self, statement: ClassifiedStatement) -> None:
        if not self.capabilities.is_mysql:
            self.stats.skipped_statements += 1
            return
        sql, _charset = rewrite_set_names(statement.text, self.capabilities)
        try:
            self.importer.execute(sql)
        except DBAPIError as exc:
            if self.stats.errors == 0:
                raise RestoreFatalError(f"SET NAMES failed: {exc.orig}") from exc
            self.record_error(statement, sql, exc)

    def _rewrite_known_tables(self, sql: str) -> str:
        for source in sorted(self.seen_tables, key=len, reverse=True):
            final = self.target_name(source, self.final_prefix)
            if final != source:
                sql = replace_table_name(sql, source, final, count=0)
        return sql

    def _routine_or_trigger(self, statement: ClassifiedStatement) -> None:
        kind = statement.type
        if kind is StatementType.CREATE_TRIGGER and not self.permissions.triggers:
            logger.warning("Database user lacks permission to create triggers; trigger will not be restored")
            self.stats.skipped_statements += 1
            return
        sql = self._rewrite_known_tables(statement.text)
        if self.capabilities.is_mysql:
            if kind is StatementType.CREATE_ROUTINE:
                sql = strip_routine_definer(sql)
            elif kind is StatementType.CREATE_TRIGGER:
                sql = strip_trigger_definer(sql)
        try:
            self.importer.execute(sql)
        except DBAPIError as exc:
            logger.warning("Failed to restore %s (non-fatal): %s", kind.value.replace("_", " "), exc.orig)

    def _create_view(self, statement: ClassifiedStatement) -> None:
        source = statement.table or ""
        if self.should_skip(source):
            return
        self._finish_table()
        final = self.target_name(source, self.final_prefix)
        sql = replace_table_name(statement.text, source, final)
        sql = self._rewrite_known_tables(sql)
        if self.capabilities.is_mysql:
            sql = strip_view_definer(sql)
        if self.run_statement(statement, sql):
            self._table_done(source, final)

    def _drop_view(self, statement: ClassifiedStatement) -> None:
        source = statement.table or ""
        if self.should_skip(source):
            return
        self._finish_table()
        self.run_statement(statement, f"DROP VIEW IF EXISTS {backquote(self.target_name(source, self.final_prefix))}")

    def _other(self, statement: ClassifiedStatement) -> None:
        self.run_statement(statement, statement.text)

    # Table completion

    def _finish_table(self) -> None:
        table = self.current
        if table is None:
            return
        self.current = None

        generated = self.generated.get(table.source)
        if generated:
            for sql in corrective_alters(table.restoring, generated, self.capabilities):
                try:
                    self.importer.execute(sql)
                except DBAPIError as exc:
                    logger.warning("Could not re-apply generated column definition on %s: %s", table.restoring, exc.orig)

        if table.atomic and table.restoring != table.final:
            logger.info("Atomic restore: dropping original table (%s)", table.final)
            try:
                self.importer.execute(f"DROP TABLE IF EXISTS {backquote(table.final)}")
                logger.info("Atomic restore: renaming new table (%s) to final table name (%s)", table.restoring, table.final)
                self.importer.execute(f"ALTER TABLE {backquote(table.restoring)} RENAME TO {backquote(table.final)}")
            except DBAPIError as exc:
                raise RestoreFatalError(f"Atomic swap of {table.restoring} into {table.final} failed: {exc.orig}") from exc

        for sql in table.indexes:
            statement = ClassifiedStatement(type=StatementType.CREATE_INDEX, text=sql, table=table.final)
            self.run_statement(statement, sql)

        context = RestoredTableContext(
            connection=self.importer.connect(),
            table=table.final,
            old_prefix=self.old_prefix or "",
            new_prefix=self.final_prefix,
        )
        for hook in self.importer._hooks:
            try:
                hook(context)
            except DBAPIError as exc:
                self.record_error(
                    ClassifiedStatement(type=StatementType.OTHER, text="", table=table.final),
                    getattr(hook, "__name__", "hook"),
                    exc,
                )
        self._table_done(table.source, table.final)

    def _table_done(self, source: str, final: str) -> None:
        self.stats.tables_restored.append(final)
        if self.importer._on_table_restored is not None:
            self.importer._on_table_restored(source, final)
        if self.importer._channel is not None:
            self.importer._channel.emit(
                ProgressEvent(kind=ProgressKind.TABLE_RESTORED, entity="db", detail={"table": source, "final": final})
            )
