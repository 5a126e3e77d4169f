from snapvault.exporter.dialect import (
    DialectStrategy,
    MySQLDialect,
    SQLiteDialect,
    SourceDatabase,
    backquote,
    dialect_for,
)
from snapvault.exporter.header import DumpHeaderInfo, DumpMetadata, build_footer, build_header, parse_header_line
from snapvault.exporter.service import DatabaseExporter, dump_filename
from snapvault.exporter.table_dumper import TableDumper
from snapvault.exporter.types import ColumnInfo, ColumnKind, PaginationMode, TableDumpSegment, TableExportState

__all__ = [
    "ColumnInfo",
    "ColumnKind",
    "DatabaseExporter",
    "DialectStrategy",
    "DumpHeaderInfo",
    "DumpMetadata",
    "MySQLDialect",
    "PaginationMode",
    "SQLiteDialect",
    "SourceDatabase",
    "TableDumpSegment",
    "TableDumper",
    "TableExportState",
    "backquote",
    "build_footer",
    "build_header",
    "dialect_for",
    "dump_filename",
    "parse_header_line",
]
