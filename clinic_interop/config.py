# clinic_interop/config.py - Environment configuration for the HL7 messaging pipeline
from dotenv import load_dotenv

load_dotenv()
from typing import Optional
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False
    )

    # Application
    app_name: str = "School Clinic HL7 Interoperability Service"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(default=True, alias="JSON_LOGS")

    # Database
    database_url: str = Field(default="sqlite:///./clinic_interop.db", alias="DATABASE_URL")

    # Malaffi exchange endpoint
    malaffi_api_url: Optional[str] = Field(default=None, alias="MALAFFI_API_URL")
    malaffi_api_key: Optional[str] = Field(default=None, alias="MALAFFI_API_KEY")
    malaffi_test_url: str = Field(default="https://test-hl7.malaffi.ae/receive", alias="MALAFFI_TEST_URL")
    malaffi_production_url: str = Field(default="https://hl7.malaffi.ae/receive", alias="MALAFFI_PRODUCTION_URL")
    hl7_delivery_timeout_seconds: float = Field(default=30.0, alias="HL7_DELIVERY_TIMEOUT_SECONDS")
    hl7_backoff_unit_seconds: float = Field(default=1.0, alias="HL7_BACKOFF_UNIT_SECONDS")

    # Per-school HL7 defaults (used when a school has no configuration row)
    hl7_default_receiving_application: str = Field(default="Rhapsody", alias="HL7_DEFAULT_RECEIVING_APPLICATION")
    hl7_default_receiving_facility: str = Field(default="MALAFFI", alias="HL7_DEFAULT_RECEIVING_FACILITY")
    hl7_default_version: str = Field(default="2.5.1", alias="HL7_DEFAULT_VERSION")
    hl7_default_retry_attempts: int = Field(default=3, alias="HL7_DEFAULT_RETRY_ATTEMPTS")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("hl7_default_retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v):
        if v < 0:
            raise ValueError("HL7_DEFAULT_RETRY_ATTEMPTS must be zero or greater")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def malaffi_url_for(self, environment: str) -> str:
        """Explicit MALAFFI_API_URL wins, otherwise pick the environment default."""
        if self.malaffi_api_url:
            return self.malaffi_api_url
        if environment == "production":
            return self.malaffi_production_url
        return self.malaffi_test_url


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
