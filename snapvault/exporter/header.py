from __future__ import annotations

import re
from dataclasses import dataclass, field

from snapvault.exporter.dialect import DialectStrategy

SEPARATOR = "# " + "-" * 56
TITLE = "# Snapvault database backup"

HEADER_KEYS = (
    "Backup of",
    "Home URL",
    "Content URL",
    "Uploads URL",
    "Table prefix",
    "Filtered table prefix",
    "ABSPATH",
    "Plugin slug",
    "Site info",
    "Generated",
    "Hostname",
    "Database",
    "Skipped tables",
)

_HEADER_LINE = re.compile(r"^# (" + "|".join(re.escape(key) for key in HEADER_KEYS) + r"): ?(.*)$")


@dataclass(slots=True)
class DumpMetadata:
    version: str
    plugin_slug: str
    site_url: str
    home_url: str
    content_url: str
    uploads_url: str
    table_prefix: str
    abspath: str
    sql_mode: str
    dialect: str
    generated: str
    hostname: str
    database: str
    skipped_tables: list[str] = field(default_factory=list)
    multisite: bool = False


@dataclass
class DumpHeaderInfo:
    """What a replay learns from the comment header of a dump."""

    site_url: str | None = None
    home_url: str | None = None
    content_url: str | None = None
    uploads_url: str | None = None
    table_prefix: str | None = None
    abspath: str | None = None
    plugin_slug: str | None = None
    skipped_tables: list[str] = field(default_factory=list)
    site_info: dict[str, str] = field(default_factory=dict)
    site_info_complete: bool = False

    @property
    def multisite(self) -> bool:
        return self.site_info.get("multisite") == "1"

    @property
    def dialect(self) -> str | None:
        return self.site_info.get("dialect")

    def consume(self, line: str) -> bool:
        parsed = parse_header_line(line)
        if parsed is None:
            return False
        key, value = parsed
        if key == "Site info":
            if value == "end":
                self.site_info_complete = True
            elif "=" in value:
                name, _, info_value = value.partition("=")
                self.site_info[name.strip()] = info_value.strip()
            return True
        if key == "Skipped tables":
            self.skipped_tables = [name.strip() for name in value.split(",") if name.strip()]
            return True
        attribute = {
            "Backup of": "site_url",
            "Home URL": "home_url",
            "Content URL": "content_url",
            "Uploads URL": "uploads_url",
            "Table prefix": "table_prefix",
            "ABSPATH": "abspath",
            "Plugin slug": "plugin_slug",
        }.get(key)
        if attribute is not None:
            setattr(self, attribute, value)
        return True


def parse_header_line(line: str) -> tuple[str, str] | None:
    match = _HEADER_LINE.match(line.rstrip("\r\n"))
    if match is None:
        return None
    return match.group(1), match.group(2).strip()


def build_header(meta: DumpMetadata, dialect: DialectStrategy) -> str:
    lines = [
        TITLE,
        f"# Created by Snapvault version {meta.version} ({meta.plugin_slug})",
        f"# Backup of: {meta.site_url}",
        f"# Home URL: {meta.home_url}",
        f"# Content URL: {meta.content_url}",
        f"# Uploads URL: {meta.uploads_url}",
        f"# Table prefix: {meta.table_prefix}",
        f"# Filtered table prefix: {meta.table_prefix}",
        f"# ABSPATH: {meta.abspath}",
        f"# Plugin slug: {meta.plugin_slug}",
        f"# Site info: multisite={1 if meta.multisite else 0}",
        f"# Site info: sql_mode={meta.sql_mode}",
        f"# Site info: dialect={meta.dialect}",
        "# Site info: end",
        f"# Generated: {meta.generated}",
        f"# Hostname: {meta.hostname}",
        f"# Database: `{meta.database}`",
    ]
    if meta.skipped_tables:
        lines.append(f"# Skipped tables: {', '.join(meta.skipped_tables)}")
    lines.append(SEPARATOR)
    lines.extend(dialect.session_header())
    return "\n".join(lines) + "\n\n"


def build_footer(dialect: DialectStrategy) -> str:
    return "\n" + "\n".join(dialect.session_footer()) + "\n"
