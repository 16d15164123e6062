"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class LoanEngineConfig(BaseSettings):
    """Payroll loans engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="PAYROLL_LOANS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Database configuration
    database_url: str = "sqlite:///payroll_loans.db"  # memory:// for InMemoryStorage

    # Money
    default_currency: str = "MAD"

    # Loan products
    default_insurance_rate: Decimal = Decimal("0.809")  # Annual percent
    interest_tax_rate: Decimal = Decimal("0.10")       # Tax on interest
    max_loan_duration_years: int = 50
    suspension_late_months: int = 3                    # Late beyond this -> SUSPENDED
    overpayment_policy: Literal["cap", "reject"] = "cap"

    # Salary advances
    max_advance_installments: int = 24

    # Auditing
    default_actor: str = "system"
    enable_audit_logging: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"


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
