"""
Configuration Management Module

Lending core settings read from LENDING_* environment variables or a .env file.
"""

from decimal import Decimal
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    # Storage
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "lending.db"

    # API server
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # stderr when unset

    # Loan bounds enforced on application, approval and term changes
    min_loan_amount: Decimal = Decimal("1000")
    max_loan_amount: Decimal = Decimal("100000000")
    max_term_months: int = 360

    @field_validator("storage_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in ("sqlite", "memory"):
            raise ValueError(f"storage_backend must be sqlite or memory, got {value!r}")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value not in ("json", "text"):
            raise ValueError(f"log_format must be json or text, got {value!r}")
        return value

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    return config


def reload_config() -> LendingConfig:
    """Re-read the environment and replace the global configuration"""
    global config
    config = LendingConfig()
    return config
