import logging

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Redis (job broker and run records)
    redis_url: str = "redis://localhost:6379"

    # MinIO / S3-compatible artifact storage
    minio_endpoint: str = "localhost"
    minio_port: int = 9000
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_use_ssl: bool = False
    minio_bucket: str = "tramoya"
    # Public URLs go through the frontend proxy, which maps /storage/ onto the bucket
    storage_public_prefix: str = "/storage"

    # Browser
    browser_headless: bool = True
    viewport_width: int = 1366
    viewport_height: int = 768

    # Step execution
    step_timeout_ms: int = 30000
    screenshot_dir: str = ""
    record_video: bool = False
    record_trace: bool = False

    # Worker
    worker_concurrency: int = 1
    stats_interval_seconds: float = 300.0

    # Job queue
    job_max_attempts: int = 3
    job_backoff_ms: int = 1000
    queue_block_timeout_seconds: float = 1.0
    job_result_ttl_seconds: int = 86400

    # Run records
    run_ttl_seconds: int = 86400

    # App
    environment: str = "development"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]
    # Run a worker inside the API process (single-process local development)
    embedded_worker: bool = False

    model_config = {"env_file": ["../.env", ".env"], "env_file_encoding": "utf-8"}


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for a tramoya process."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
    )
