"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Loan math never reads configuration; only logging, event publication and the
currency assumed by create_loan do.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Core lending configuration"""

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Domain events
    enable_events: bool = True

    # Currency assumed for amounts passed without one
    default_currency: str = "USD"

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
