"""
Configuration management for the Billing Service
"""

from typing import List, Optional, Any
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application settings
    APP_NAME: str = "Billing Service"
    VERSION: str = "1.0.0"
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: Optional[str] = Field(default=None)

    # Server settings
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Security settings
    AUTH_SECRET_KEY: str = Field(default="a_very_secret_key_that_should_be_in_an_env_var")
    AUTH_ALGORITHM: str = Field(default="HS256")
    ALLOWED_ORIGINS: List[str] = Field(default=["http://localhost:5173", "http://localhost:3000"])

    # Database settings
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./billing.db")
    DATABASE_ECHO: bool = Field(default=False)

    # Billing settings
    DEFAULT_PAYMENT_TERMS_DAYS: int = Field(default=30)
    INVOICE_NUMBER_START: int = Field(default=1001)
    DASHBOARD_WINDOWS: List[int] = Field(default=[30, 60, 90])

    # Letterhead printed on invoices and statements
    COMPANY_NAME: str = Field(default="")
    COMPANY_ADDRESS: str = Field(default="")
    COMPANY_EMAIL: str = Field(default="")

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, v: Any) -> list[str]:
        """Split comma-separated strings into lists."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("DASHBOARD_WINDOWS", mode="before")
    @classmethod
    def split_windows(cls, v: Any) -> list[int]:
        if isinstance(v, str):
            return [int(days) for days in v.split(",") if days.strip()]
        return v

    @field_validator("DASHBOARD_WINDOWS")
    @classmethod
    def validate_windows(cls, v: list[int]) -> list[int]:
        if any(days <= 0 for days in v):
            raise ValueError("DASHBOARD_WINDOWS must contain positive day counts")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: Any) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    def company_details(self) -> dict:
        """Letterhead fields as rendered on documents."""
        return {
            "name": self.COMPANY_NAME,
            "address": self.COMPANY_ADDRESS,
            "email": self.COMPANY_EMAIL,
        }

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",
    }


# Global settings instance
settings = Settings()
