"""Runtime configuration for the grading engine."""

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./gradebook.db"

    # Normalized grades are reported on a 0..GRADING_SCALE scale
    GRADING_SCALE: float = 20.0

    # Network latency tolerance for supervised deadlines
    GRACE_PERIOD_SECONDS: int = 30

    UPLOAD_MAX_SIZE_KB: int = 10240
    UPLOAD_ALLOWED_EXTENSIONS: List[str] = ["pdf", "png", "jpg", "jpeg", "docx", "txt", "zip"]

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
