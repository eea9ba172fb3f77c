from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./fmssync.db"
    simulated_data_path: str = "./config/fms-simulated-data.json"

    # Adapter retry policy (connect + fetch steps)
    sync_retry_attempts: int = 3
    sync_retry_backoff_seconds: float = 0.5
    # Hard ceiling for the whole fetch step, retries included
    sync_fetch_timeout_seconds: float = 60.0
    rest_request_timeout_seconds: float = 15.0

    auto_sync_check_minutes: int = 5
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
