from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EXCLUDES: dict[str, str] = {
    "uploads": "backup*,*backups,backwpup*,wp-clone,snapshots,updraft,wp-staging",
    "others": "upgrade,cache,updraft,backup*,*backups,wp-clone,wp-staging,debug.log",
    "plugins": "",
    "themes": "",
}

DEFAULT_STORE_EXTENSIONS = "zip,gz,bz2,xz,7z,rar,jpg,jpeg,png,gif,webp,mp3,mp4,m4a,mov,avi,mkv,webm,pdf,woff,woff2"


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SNAPVAULT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "Snapvault"
    app_version: str = "0.4.0"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    storage_root: Path | None = None
    database_url: str | None = None
    source_database_url: str | None = None

    site_url: str = "http://localhost"
    home_url: str | None = None
    content_url: str | None = None
    uploads_url: str | None = None
    site_root: Path | None = None
    content_root: Path | None = None
    entity_roots: dict[str, list[str]] = Field(default_factory=dict)
    table_prefix: str = "wp_"
    plugin_slug: str = "snapvault"
    export_all_tables: bool = False

    uploads_exclude: str = DEFAULT_EXCLUDES["uploads"]
    others_exclude: str = DEFAULT_EXCLUDES["others"]
    plugins_exclude: str = DEFAULT_EXCLUDES["plugins"]
    themes_exclude: str = DEFAULT_EXCLUDES["themes"]
    store_extensions: str = DEFAULT_STORE_EXTENSIONS

    max_part_bytes: PositiveInt = 400 * 1024 * 1024
    max_zip_batch_bytes: PositiveInt = 22 * 1024 * 1024
    min_zip_batch_bytes: PositiveInt = 5 * 1024 * 1024
    batch_max_files: PositiveInt = 500
    commit_interval_seconds: PositiveFloat = 2.0
    large_file_bytes: PositiveInt = 100 * 1024 * 1024
    warn_file_over_bytes: PositiveInt = 250 * 1024 * 1024
    skip_file_over_bytes: PositiveInt | None = None
    fatal_free_disk_bytes: PositiveInt = 10 * 1024 * 1024
    min_free_disk_bytes: PositiveInt = 50 * 1024 * 1024
    enumeration_cache_threshold_seconds: PositiveFloat = 20.0
    enumeration_cache_freshness_seconds: PositiveInt = 1800
    cache_memory_fraction: PositiveFloat = 0.15
    temp_file_max_age_seconds: PositiveInt = 12 * 3600

    export_rows_per_fetch: PositiveInt = 1000
    export_max_pages_per_call: PositiveInt = 200
    export_call_seconds: PositiveFloat = 15.0
    export_call_max_bytes: PositiveInt = 100 * 1024 * 1024
    export_flush_bytes: PositiveInt = 512 * 1024
    max_statement_bytes: PositiveInt = 16 * 1024 * 1024

    restore_error_ceiling: PositiveInt = 50
    restore_reconnect_attempts: PositiveInt = 3
    restore_collate: str = ""
    restore_max_allowed_packet: PositiveInt | None = None

    semaphore_timeout_seconds: PositiveInt = 600
    semaphore_hard_ceiling_seconds: PositiveInt = 86400
    resume_interval_seconds: PositiveInt = 300
    overlap_window_seconds: PositiveInt = 30
    invocation_budget_seconds: PositiveFloat = 240.0
    job_max_age_seconds: PositiveInt = 2 * 86400
    useless_resumption_limit: PositiveInt = 10

    @field_validator("state_root", "storage_root", "site_root", "content_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path | None:
        if value is None or value == "":
            return None
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)
        if self.storage_root is None:
            self.storage_root = self.state_root / "backups"
        self.storage_root = self.storage_root.resolve(strict=False)
        self.storage_root.mkdir(parents=True, exist_ok=True)

        if self.site_root is not None:
            self.site_root = self.site_root.resolve(strict=False)
        if self.content_root is not None:
            self.content_root = self.content_root.resolve(strict=False)

        self.site_url = self.site_url.rstrip("/")
        if self.home_url is None:
            self.home_url = self.site_url
        if self.content_url is None:
            self.content_url = f"{self.site_url}/wp-content"
        if self.uploads_url is None:
            self.uploads_url = f"{self.content_url}/uploads"

        if not self.table_prefix or not self.table_prefix.replace("_", "").isalnum():
            raise ValueError("table_prefix must be alphanumeric with underscores")

        if self.skip_file_over_bytes is not None and self.skip_file_over_bytes < self.warn_file_over_bytes:
            raise ValueError("skip_file_over_bytes must be greater than or equal to warn_file_over_bytes")

        if self.min_free_disk_bytes < self.fatal_free_disk_bytes:
            raise ValueError("min_free_disk_bytes must be greater than or equal to fatal_free_disk_bytes")

        if self.min_zip_batch_bytes > self.max_zip_batch_bytes:
            raise ValueError("min_zip_batch_bytes must be less than or equal to max_zip_batch_bytes")

        if not 0 < self.cache_memory_fraction <= 1:
            raise ValueError("cache_memory_fraction must be within (0, 1]")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "snapvault.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def effective_source_database_url(self) -> str:
        return self.source_database_url or self.effective_database_url

    @property
    def backup_dir(self) -> Path:
        assert self.storage_root is not None
        return self.storage_root

    def exclusions_for(self, entity: str) -> list[str]:
        raw = {
            "uploads": self.uploads_exclude,
            "others": self.others_exclude,
            "plugins": self.plugins_exclude,
            "themes": self.themes_exclude,
        }.get(entity, "")
        return _split_csv(raw)

    def store_extension_set(self) -> set[str]:
        return {ext.lower().lstrip(".") for ext in _split_csv(self.store_extensions)}

    def resolve_entity_roots(self) -> dict[str, list[Path]]:
        if self.entity_roots:
            return {entity: [Path(root) for root in roots] for entity, roots in self.entity_roots.items()}
        if self.content_root is None:
            return {}
        return {
            "plugins": [self.content_root / "plugins"],
            "themes": [self.content_root / "themes"],
            "uploads": [self.content_root / "uploads"],
            "others": [self.content_root],
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
