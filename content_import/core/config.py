from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./content_import.db"
    debug: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Persistence backends: "memory" keeps everything in process, "sql" uses database_url
    job_store_backend: str = "memory"
    storage_backend: str = "memory"

    # Batch processing
    batch_chunk_size: int = 50
    batch_max_concurrency: int = 3  # Concurrent item commits inside one chunk
    batch_inter_chunk_delay_seconds: float = 0.1
    chunk_timeout_seconds: Optional[float] = 120  # None or 0 disables the per-chunk timeout
    batch_max_errors_before_stop: int = 100

    # Retention
    job_retention_hours: int = 24
    backup_retention_days: int = 7

    # Category mapping
    category_cache_ttl_seconds: int = 300
    default_category_name: str = "Général"

    # Upload limits
    upload_max_file_size_mb: int = 10
    upload_max_rows: int = 1000

    model_config = ConfigDict(env_file=".env", extra="ignore")


settings = Settings()
