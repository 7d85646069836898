"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic_settings import BaseSettings


class BackofficeConfig(BaseSettings):
    """Loan back office configuration"""

    # Record store configuration
    record_store_url: str = ""  # Empty = in-memory store
    record_store_api_key: str = ""
    record_store_timeout: float = 10.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    monthly_interest_rate: Decimal = Decimal('0.20')  # 20% of principal per month, simple
    closing_fee_rate: Decimal = Decimal('0.05')  # 5% of principal, once
    allowed_tenures: List[int] = [3, 6]
    settlement_evidence_marker: str = "LOAN SETTLED BY ADMIN"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_BACKOFFICE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BackofficeConfig()


def get_config() -> BackofficeConfig:
    """Get global configuration instance"""
    return config
