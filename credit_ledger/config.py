"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Credit ledger service configuration"""
    
    # Storage configuration
    storage_type: str = "memory"  # memory, sqlite or postgresql
    database_url: str = "postgresql://postgres@localhost/ledger_db"
    sqlite_path: str = "ledger.db"
    sqlite_busy_timeout: float = 5.0  # seconds to wait for the write lock
    database_pool_min_size: int = 2
    database_pool_size: int = 10
    database_command_timeout: float = 30.0
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 9999
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Seed the pre-provisioned accounts on startup
    seed_accounts: bool = True
    
    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
