"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Optional


class ApprovalEngineConfig(BaseSettings):
    """Approval workflow engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///approvals.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Workflow rules
    max_tier_level: int = Field(5, ge=1, le=5)  # Tiers run 1..5 at most
    max_resubmits: Optional[int] = None  # None = unlimited
    max_appeals: Optional[int] = None  # None = unlimited
    stale_return_hours: int = 72  # Returned requests older than this are urgent

    # Notification configuration
    enable_notifications: bool = True
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0
    notification_max_retries: int = 3

    class Config:
        env_prefix = "APPROVAL_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ApprovalEngineConfig()


def get_config() -> ApprovalEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ApprovalEngineConfig:
    """Reload configuration from environment"""
    global config
    config = ApprovalEngineConfig()
    return config
