"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables or a local .env file.
"""

import re
from functools import lru_cache
from typing import Any

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Election Coordinator"
    APP_ENV: str = "development"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Network provider (JSON-RPC endpoint)
    RPC_URL: str = "https://alfajores-forno.celo-testnet.org"
    RPC_REQUEST_TIMEOUT_SECONDS: float = 30.0
    # Celo and other PoA chains carry oversized extraData in block headers
    RPC_POA_MIDDLEWARE: bool = True

    # Election contract
    CONTRACT_ADDRESS: str | None = None
    CONTRACT_ABI_PATH: str = "Voting.json"

    # Credential source - never logged
    PRIVATE_KEY: SecretStr | None = None

    # Transaction submission
    TX_GAS_LIMIT: int | None = None  # None lets the node estimate gas
    TX_MAX_ATTEMPTS: int = 3
    TX_BACKOFF_BASE_SECONDS: float = 0.5
    TX_BACKOFF_MAX_SECONDS: float = 8.0

    # Confirmation tracking
    CONFIRMATION_TIMEOUT_SECONDS: float = 120.0
    CONFIRMATION_POLL_INTERVAL_SECONDS: float = 1.0
    PENDING_EXPIRY_SECONDS: float = 900.0

    # Voter key derivation
    VOTER_KEY_SALT: str = "election-coordinator"

    # CORS - stored as comma-separated string to avoid pydantic-settings JSON parsing issues
    CORS_ORIGINS: str = "http://localhost:3000"

    @field_validator("CONTRACT_ADDRESS")
    @classmethod
    def validate_contract_address(cls, v: str | None) -> str | None:
        """Reject anything that is not a 20-byte hex address."""
        if v is not None and not _ADDRESS_PATTERN.match(v):
            raise ValueError("CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v

    @field_validator("TX_MAX_ATTEMPTS")
    @classmethod
    def validate_attempts(cls, v: int, info: Any) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator(
        "CONFIRMATION_TIMEOUT_SECONDS",
        "CONFIRMATION_POLL_INTERVAL_SECONDS",
        "PENDING_EXPIRY_SECONDS",
    )
    @classmethod
    def validate_positive(cls, v: float, info: Any) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        import json

        try:
            return json.loads(self.CORS_ORIGINS)
        except json.JSONDecodeError:
            return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_contract_configured(self) -> bool:
        return self.CONTRACT_ADDRESS is not None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
