from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ingestion.app.constants import FileFormat


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    repository_backend: str = Field("mongo", validation_alias="REPOSITORY_BACKEND")
    database_host: str = Field("localhost", validation_alias="DATABASE_HOST")
    database_port: int = Field(27017, validation_alias="DATABASE_PORT")
    database_user: str = Field("", validation_alias="DATABASE_USER")
    database_password: str = Field("", validation_alias="DATABASE_PASSWORD")
    database_name: str = Field("document_ingestion", validation_alias="DATABASE_NAME")
    jobs_collection: str = Field("processing_jobs", validation_alias="JOBS_COLLECTION")
    documents_collection: str = Field("job_documents", validation_alias="DOCUMENTS_COLLECTION")
    database_connection_timeout_ms: int = Field(5000, validation_alias="DATABASE_CONNECTION_TIMEOUT_MS")

    event_publisher_backend: str = Field("inmemory", validation_alias="EVENT_PUBLISHER_BACKEND")
    broker_host: str = Field("localhost", validation_alias="BROKER_HOST")
    broker_port: int = Field(5672, validation_alias="BROKER_PORT")
    broker_user: str = Field("guest", validation_alias="BROKER_USER")
    broker_password: str = Field("guest", validation_alias="BROKER_PASSWORD")
    events_exchange_name: str = Field("ingestion.events", validation_alias="EVENTS_EXCHANGE_NAME")
    events_queue_name: str = Field("ingestion_events", validation_alias="EVENTS_QUEUE_NAME")
    queue_max_length: int = Field(10_000, validation_alias="QUEUE_MAX_LENGTH")
    publish_timeout_seconds: float = Field(10.0, validation_alias="PUBLISH_TIMEOUT_SECONDS")

    # Backoff for connecting to Mongo / RabbitMQ at startup and on reconnect.
    initial_backoff_seconds: float = Field(1.0, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(30.0, validation_alias="MAX_BACKOFF_SECONDS")
    backoff_multiplier: float = Field(2.0, validation_alias="BACKOFF_MULTIPLIER")
    max_connection_attempts: int = Field(10, validation_alias="MAX_CONNECTION_ATTEMPTS")

    max_file_size_bytes: int = Field(10 * 1024 * 1024, validation_alias="MAX_FILE_SIZE_BYTES")
    max_concurrent_jobs: int = Field(5, validation_alias="MAX_CONCURRENT_JOBS")
    default_timeout_seconds: float = Field(30.0, validation_alias="DEFAULT_TIMEOUT_SECONDS")
    supported_formats: str = Field("pdf,docx,txt", validation_alias="SUPPORTED_FORMATS")
    enable_ocr: bool = Field(False, validation_alias="ENABLE_OCR")
    ocr_languages: str = Field("eng", validation_alias="OCR_LANGUAGES")
    # Extracted text shorter than this sends the job through the fallback chain.
    min_text_length: int = Field(10, validation_alias="MIN_TEXT_LENGTH")
    enable_minimal_fallback: bool = Field(True, validation_alias="ENABLE_MINIMAL_FALLBACK")
    worker_poll_interval_seconds: float = Field(1.0, validation_alias="WORKER_POLL_INTERVAL_SECONDS")

    # Retries after the first attempt. retry_count never exceeds this.
    max_retries: int = Field(3, validation_alias="MAX_RETRIES")
    retry_initial_delay_seconds: float = Field(1.0, validation_alias="RETRY_INITIAL_DELAY_SECONDS")
    retry_max_delay_seconds: float = Field(60.0, validation_alias="RETRY_MAX_DELAY_SECONDS")
    retry_backoff_multiplier: float = Field(2.0, validation_alias="RETRY_BACKOFF_MULTIPLIER")
    retry_jitter_factor: float = Field(0.1, validation_alias="RETRY_JITTER_FACTOR")

    stalled_job_threshold_seconds: float = Field(300.0, validation_alias="STALLED_JOB_THRESHOLD_SECONDS")
    health_check_interval_seconds: float = Field(60.0, validation_alias="HEALTH_CHECK_INTERVAL_SECONDS")
    max_stalled_recoveries: int = Field(3, validation_alias="MAX_STALLED_RECOVERIES")
    completed_retention_seconds: float = Field(86_400.0, validation_alias="COMPLETED_RETENTION_SECONDS")
    failed_retention_seconds: float = Field(604_800.0, validation_alias="FAILED_RETENTION_SECONDS")
    progress_retention_seconds: float = Field(5.0, validation_alias="PROGRESS_RETENTION_SECONDS")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(False, validation_alias="LOG_JSON")

    @property
    def supported_format_list(self) -> list[FileFormat]:
        formats: list[FileFormat] = []
        for raw in self.supported_formats.split(","):
            name = raw.strip().lower()
            if not name:
                continue
            fmt = FileFormat(name)
            if fmt not in formats:
                formats.append(fmt)
        return formats

    @property
    def ocr_language_list(self) -> list[str]:
        return [lang.strip() for lang in self.ocr_languages.split(",") if lang.strip()] or ["eng"]
