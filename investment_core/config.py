"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based
configuration. Every setting can be overridden with an ``INVEST_``-prefixed
environment variable or a ``.env`` file.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class EngineConfig(BaseSettings):
    """Investment engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///investments.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Payout worker
    payout_interval_seconds: int = 3600
    payout_worker_count: int = 4
    payout_batch_enabled: bool = True

    # Ledger collaborator
    ledger_retry_attempts: int = 3
    ledger_retry_backoff_seconds: float = 0.2

    # Business rules
    default_currency: str = "USD"
    default_early_withdrawal_penalty: str = "5.00"
    lost_interest_forfeit_fraction: str = "0.5"
    pending_approval_alert_threshold: int = 5
    maturity_alert_window_days: int = 30

    # Market assumptions used by analytics and the return calculator
    risk_free_rate: str = "2.00"
    savings_benchmark_rate: str = "1.50"
    inflation_benchmark_rate: str = "2.50"
    stock_market_benchmark_rate: str = "10.00"

    # Notifications
    notification_webhook_url: str = ""  # Empty = webhook sink disabled
    notification_webhook_timeout: float = 5.0

    # Feature flags
    enable_in_app_notifications: bool = True

    class Config:
        env_prefix = "INVEST_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
