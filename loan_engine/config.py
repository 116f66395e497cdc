"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic_settings import BaseSettings


class LoanEngineConfig(BaseSettings):
    """Loan engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "loan_engine.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "KES"
    allocation_epsilon: str = "0.01"
    allocation_order: List[str] = ["fees", "interest", "principal"]
    loan_number_prefix: str = "LN"
    receipt_number_prefix: str = "RCPT"
    application_number_prefix: str = "APP"
    status_sync_batch_size: int = 5000

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False

    @property
    def epsilon(self) -> Decimal:
        return Decimal(self.allocation_epsilon)


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config
