"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerConfig(BaseSettings):
    """Account ledger service configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///ledger.db"  # memory://, sqlite:///path, postgresql://...
    database_pool_size: int = 5
    store_timeout_seconds: float = 5.0  # Lock wait / statement timeout per store call

    # Business rules configuration
    default_currency: str = "USD"
    enforce_active_status: bool = True  # Deposits/withdrawals only on active accounts

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Security configuration
    auth_enabled: bool = False
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
