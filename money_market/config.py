"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class FundConfig(BaseSettings):
    """Money market fund backend configuration"""

    # Storage configuration
    database_url: str = "sqlite:///money_market.db"
    use_sqlite: bool = True

    # Fund configuration
    annual_interest_rate: str = "8.5"  # Percent, Decimal as string
    accrual_rate_mode: str = "live"  # live or snapshot

    # Token configuration
    token_name: str = "Money Market Token"
    token_symbol: str = "MMKT"
    token_decimals: int = 2
    token_initial_supply: int = 0

    # Multi-signature configuration
    multisig_expiry_hours: int = 24
    # Managers registered at startup, e.g.
    # MMF_INITIAL_MANAGERS='[{"email": "a@fund.test", "full_name": "A", "ledger_account_id": "0.0.101"}]'
    initial_managers: List[Dict[str, str]] = []

    # Ledger gateway configuration
    ledger_gateway_url: str = ""  # Empty = in-memory gateway
    ledger_gateway_timeout: float = 10.0
    ledger_gateway_api_key: str = ""
    treasury_account_id: str = "0.0.treasury"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "MMF_"
        env_file = ".env"
        case_sensitive = False

    @property
    def sqlite_path(self) -> str:
        """Filesystem path portion of a sqlite:/// database URL"""
        prefix = "sqlite:///"
        if self.database_url.startswith(prefix):
            return self.database_url[len(prefix):] or ":memory:"
        return self.database_url


# Global configuration instance
config = FundConfig()


def get_config() -> FundConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FundConfig:
    """Reload configuration from environment"""
    global config
    config = FundConfig()
    return config
