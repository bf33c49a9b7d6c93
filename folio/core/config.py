from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./folio.db"
    debug: bool = True
    log_level: str = "INFO"
    import_log_level: str = ""  # Empty means same as log_level

    # Book import pipeline
    import_row_concurrency: int = 8  # Parallel row workers per sheet
    import_job_workers: int = 4  # Import jobs running at the same time
    import_max_request_mb: int = 25
    import_status_poll_seconds: int = 15  # Keep-alive interval for the status stream

    # Export settings
    export_row_limit: int = 100000

    model_config = ConfigDict(env_file=".env", extra="ignore")


settings = Settings()
