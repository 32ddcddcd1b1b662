from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")
    sql_echo: bool = Field(False, alias="SQL_ECHO")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    # development renders console logs; anything else renders JSON lines
    environment: Literal["development", "staging", "production"] = Field("development", alias="ENVIRONMENT")

    cors_allow_origins: List[str] = Field(["*"], alias="CORS_ALLOW_ORIGINS")

    # Default cap on concurrently enrolled subjects per student
    max_enrollment_limit: int = Field(6, alias="MAX_ENROLLMENT_LIMIT", gt=0)
    # Attempts of the validate+commit cycle when the store aborts on a conflict
    enrollment_max_attempts: int = Field(3, alias="ENROLLMENT_MAX_ATTEMPTS", ge=1)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


settings = Settings()
