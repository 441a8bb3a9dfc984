"""Configuration management for payflow-mcp entry points.

Library classes take explicit parameters; only entry points read settings.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """payflow-mcp settings (environment or .env)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Facilitator (server side)
    cdp_api_key_id: str | None = None
    cdp_api_key_secret: str | None = None
    payflow_facilitator_url: str | None = None
    payflow_x402_version: int = 1
    payflow_network: str = "base"
    payflow_recipient: str | None = None

    # Payer tool server
    private_key: str | None = None
    max_payment_amount_usdc: Decimal | None = None


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
