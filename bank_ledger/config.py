"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class BankConfig(BaseSettings):
    """Bank ledger service configuration"""

    # Database configuration
    database_url: str = "sqlite:///bank_ledger.db"  # memory:// for in-process storage
    database_pool_size: int = 10

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    cors_origins: List[str] = ["http://localhost:8080"]

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24
    jwt_algorithm: str = "HS256"
    password_min_length: int = 8
    max_failed_logins: int = 5
    lockout_minutes: int = 15

    # Bootstrap admin, created at startup when all three are set
    bootstrap_admin_username: Optional[str] = None
    bootstrap_admin_email: Optional[str] = None
    bootstrap_admin_password: Optional[str] = None

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    currency: str = "USD"
    max_transaction_amount: str = "1000000.00"
    max_conflict_retries: int = 5

    class Config:
        env_prefix = "BANK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankConfig()


def get_config() -> BankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankConfig:
    """Reload configuration from environment"""
    global config
    config = BankConfig()
    return config
