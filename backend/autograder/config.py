import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


Quality = Literal["fast", "balanced", "best"]


class Settings(BaseSettings):
    enabled: bool = Field(True, alias="AUTOGRADER_ENABLED")
    database_url: Optional[str] = Field(None, alias="AUTOGRADER_DATABASE_URL")
    database_pool_size: int = Field(10, alias="AUTOGRADER_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="AUTOGRADER_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="AUTOGRADER_DATABASE_ECHO")
    gateway_url: str = Field("https://ai.human-logic.com", alias="AUTOGRADER_GATEWAY_URL")
    gateway_key: Optional[str] = Field(None, alias="AUTOGRADER_GATEWAY_KEY")
    gateway_timeout_seconds: float = Field(30.0, alias="AUTOGRADER_GATEWAY_TIMEOUT_SECONDS")
    default_quality: Quality = Field("balanced", alias="AUTOGRADER_DEFAULT_QUALITY")
    queue_batch_size: int = Field(20, alias="AUTOGRADER_QUEUE_BATCH_SIZE")
    max_retries: int = Field(3, alias="AUTOGRADER_MAX_RETRIES")
    retry_delay_seconds: int = Field(300, alias="AUTOGRADER_RETRY_DELAY_SECONDS")
    claim_timeout_seconds: int = Field(1800, alias="AUTOGRADER_CLAIM_TIMEOUT_SECONDS")
    push_grades_on_draft: bool = Field(False, alias="AUTOGRADER_PUSH_GRADES_ON_DRAFT")
    push_feedback: bool = Field(True, alias="AUTOGRADER_PUSH_FEEDBACK")
    data_retention_months: int = Field(0, alias="AUTOGRADER_DATA_RETENTION_MONTHS")
    batch_rate_limit: int = Field(10, alias="AUTOGRADER_BATCH_RATE_LIMIT")
    batch_rate_window_seconds: int = Field(3600, alias="AUTOGRADER_BATCH_RATE_WINDOW_SECONDS")
    host: str = Field("0.0.0.0", alias="AUTOGRADER_HOST")
    port: int = Field(8000, alias="AUTOGRADER_PORT")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True
        populate_by_name = True


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[arg-type]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid grading configuration: {exc}") from exc
