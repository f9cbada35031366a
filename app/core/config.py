from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'purchasing_user'
    POSTGRES_PASSWORD: str = 'purchasing_pass'
    POSTGRES_DB: str = 'purchasing_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432

    # Full SQLAlchemy URL, overrides the POSTGRES_* parts (tests use SQLite)
    DATABASE_URL: Optional[str] = None
    SQL_ECHO: bool = False

    # Concurrency: how many times a unit of work that lost a race is replayed
    CONFLICT_MAX_RETRIES: int = 3

    # Money is exact internally; this only drives presentation rounding
    CURRENCY_DECIMALS: int = 2

    # Document numbering (PO-000001, GRN-000001, ...)
    DOCUMENT_NUMBER_PADDING: int = 6

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: Optional[str] = None

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def log_level(self) -> str:
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.upper()
        return "INFO" if self.ENVIRONMENT == "production" else "DEBUG"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", "SQL_ECHO", mode="before")
    @classmethod
    def parse_bool(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("CONFLICT_MAX_RETRIES")
    @classmethod
    def validate_retries(cls, v):
        if v < 0:
            raise ValueError("CONFLICT_MAX_RETRIES must be >= 0")
        return v

settings = Settings()
