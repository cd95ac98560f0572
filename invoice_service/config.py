"""
Configuration management for the Invoice Service
"""

from typing import Any, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application settings
    APP_NAME: str = "Invoice Service"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: Optional[str] = Field(default=None)

    # Database settings
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./invoices.db")
    DATABASE_ECHO: bool = Field(default=False)
    AUTO_CREATE_TABLES: bool = Field(default=True)

    # Security settings
    AUTH_SECRET_KEY: str = Field(default="a_very_secret_key_that_should_be_in_an_env_var")
    AUTH_ALGORITHM: str = Field(default="HS256")

    # Blob storage settings
    STORAGE_BACKEND: str = Field(default="local")
    STORAGE_ROOT: str = Field(default="./storage")
    STORAGE_BASE_URL: str = Field(default="/storage")
    S3_BUCKET_NAME: str = Field(default="invoice-documents")
    S3_ENDPOINT_URL: Optional[str] = Field(default=None)

    # PDF settings
    PDF_DIRECTORY: str = Field(default="invoices")
    PDF_RENDER_TIMEOUT_SECONDS: float = Field(default=30.0)
    COMPANY_NAME: str = Field(default="Your Company")

    # Invoice numbering
    INVOICE_NUMBER_PREFIX: str = Field(default="INV")
    INVOICE_NUMBER_MAX_ATTEMPTS: int = Field(default=3)

    # Pagination
    DEFAULT_PAGE_SIZE: int = Field(default=15)
    MAX_PAGE_SIZE: int = Field(default=100)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: Any) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("STORAGE_BACKEND")
    @classmethod
    def validate_storage_backend(cls, v: Any) -> str:
        if v.lower() not in ("local", "s3"):
            raise ValueError("STORAGE_BACKEND must be 'local' or 's3'")
        return v.lower()

    @field_validator("PDF_RENDER_TIMEOUT_SECONDS")
    @classmethod
    def validate_render_timeout(cls, v: Any) -> float:
        if v <= 0:
            raise ValueError("PDF_RENDER_TIMEOUT_SECONDS must be positive")
        return v

    @field_validator("MAX_PAGE_SIZE")
    @classmethod
    def validate_max_page_size(cls, v: Any) -> int:
        if not 1 <= v <= 100:
            raise ValueError("MAX_PAGE_SIZE must be between 1 and 100")
        return v

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",
    }


# Global settings instance
settings = Settings()
