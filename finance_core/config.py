"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

from .currency import Currency


class FinanceCoreConfig(BaseSettings):
    """Personal finance core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="FINCORE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage configuration
    database_url: str = Field("sqlite:///finance_core.db", description="sqlite:///path or memory://")

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = Field("json", pattern="^(json|text)$")
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = Field("BRL", description="Currency code for amounts given as plain numbers")
    max_term_months: int = Field(600, ge=1, le=600)
    max_installments: int = Field(36, ge=1, le=36)
    due_soon_days: int = Field(7, ge=0)
    default_payment_method: str = "bank_transfer"

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("default_currency")
    @classmethod
    def known_currency(cls, value: str) -> str:
        code = value.upper()
        if code not in Currency.__members__:
            raise ValueError(f"Unknown currency code: {value}")
        return code


# Global configuration instance
config = FinanceCoreConfig()


def get_config() -> FinanceCoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FinanceCoreConfig:
    """Reload configuration from environment"""
    global config
    config = FinanceCoreConfig()
    return config
