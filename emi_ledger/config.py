"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class EmiLedgerConfig(BaseSettings):
    """EMI ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///emi_ledger.db"  # or memory://

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "INR"
    default_collector: str = "data_entry_operator"
    loan_number_prefix: str = "L"
    loan_number_pool_size: int = 15
    partial_payment_weight: str = "0.5"  # paid-count contribution of one Partial record

    # Ledger mirroring
    outbox_max_attempts: int = 5

    class Config:
        env_prefix = "EMI_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = EmiLedgerConfig()


def get_config() -> EmiLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EmiLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = EmiLedgerConfig()
    return config
