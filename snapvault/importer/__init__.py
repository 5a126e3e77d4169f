from snapvault.importer.classifier import ClassifiedStatement, StatementType, classify
from snapvault.importer.compat import ServerCapabilities, detect_capabilities, prepare_create_table
from snapvault.importer.errors import DuplicateKeyError, classify_db_error
from snapvault.importer.generated import GeneratedColumn, parse_generated_columns
from snapvault.importer.hooks import (
    DEFAULT_HOOKS,
    RestoredTableContext,
    RestoredTableHook,
    options_prefix_fixup,
    upload_path_fixup,
    usermeta_prefix_fixup,
)
from snapvault.importer.permissions import PermissionSet, probe_permissions
from snapvault.importer.reader import RawStatement, SqlStatementReader
from snapvault.importer.service import DatabaseImporter, RestoreOptions, RestoreStats, open_dump

__all__ = [
    "ClassifiedStatement",
    "DEFAULT_HOOKS",
    "DatabaseImporter",
    "DuplicateKeyError",
    "GeneratedColumn",
    "PermissionSet",
    "RawStatement",
    "RestoreOptions",
    "RestoreStats",
    "RestoredTableContext",
    "RestoredTableHook",
    "ServerCapabilities",
    "SqlStatementReader",
    "StatementType",
    "classify",
    "classify_db_error",
    "detect_capabilities",
    "open_dump",
    "options_prefix_fixup",
    "parse_generated_columns",
    "prepare_create_table",
    "probe_permissions",
    "upload_path_fixup",
    "usermeta_prefix_fixup",
]
