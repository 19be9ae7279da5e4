"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Lending core configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///lending.db"  # "memory://" for in-memory storage
    transaction_retries: int = 3
    
    # Business rules configuration
    currency: str = "INR"
    overdue_grace_period_days: int = 30
    sweep_interval_hours: int = 6
    penalty_rate_percent: str = "4"          # One-time penalty on overdue EMIs
    late_fee_daily_rate_percent: str = "0.01"  # Daily late fee on the current EMI
    amount_tolerance: str = "0.01"
    
    # Notification queue configuration
    notification_max_attempts: int = 3
    notification_backoff_seconds: int = 30
    notification_webhook_url: str = ""  # Empty = jobs are only logged
    notification_poll_seconds: int = 30
    notification_timeout: float = 5.0
    company_name: str = "FundifyHub"
    support_url: str = "https://fundifyhub.example/support"
    
    # Payment gateway configuration
    phonepe_merchant_id: str = ""
    phonepe_salt_key: str = ""
    phonepe_salt_index: str = "1"
    phonepe_env: str = "sandbox"  # sandbox or production
    phonepe_mock_mode: bool = False
    gateway_timeout_seconds: float = 10.0
    frontend_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:8090"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
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
