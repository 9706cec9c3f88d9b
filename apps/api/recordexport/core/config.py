from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True)

    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str = Field(default="sqlite:///./recordexport.db", alias="DATABASE_URL")

    celery_broker_url: str = Field(default="redis://localhost:6379/0", alias="CELERY_BROKER_URL")
    celery_result_backend: str = Field(default="redis://localhost:6379/1", alias="CELERY_RESULT_BACKEND")

    export_dir: Path = Field(default=Path("tmp/export"), alias="EXPORT_DIR")
    export_page_size: int = Field(default=500, gt=0, alias="EXPORT_PAGE_SIZE")
    fetch_all_page_size: int = Field(default=100, gt=0, alias="FETCH_ALL_PAGE_SIZE")
    export_archive_cutoff_days: int = Field(default=30, ge=0, alias="EXPORT_ARCHIVE_CUTOFF_DAYS")
    export_sweep_interval_seconds: float = Field(default=3600.0, gt=0, alias="EXPORT_SWEEP_INTERVAL_SECONDS")
    export_run_max_retries: int = Field(default=3, ge=0, alias="EXPORT_RUN_MAX_RETRIES")
    archive_kdf_iterations: int = Field(default=390_000, gt=0, alias="ARCHIVE_KDF_ITERATIONS")

    search_backend: str = Field(default="solr", alias="SEARCH_BACKEND")
    solr_url: str = Field(default="http://localhost:8983/solr/records", alias="SOLR_URL")
    solr_timeout_seconds: float = Field(default=30.0, alias="SOLR_TIMEOUT_SECONDS")
    memory_records_path: Path | None = Field(default=None, alias="MEMORY_RECORDS_PATH")

    forms_path: Path = Field(default=Path("forms.json"), alias="FORMS_PATH")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
