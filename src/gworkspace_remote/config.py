"""Configuration settings for the Google Workspace MCP gateway.

All settings load from environment variables (or a local ``.env`` file) with
type conversion and validation handled by pydantic-settings.
"""

import logging
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central configuration for the gateway.

    Secrets default to ``None`` so a missing value is detectable; code that
    signs or compares against a secret must treat ``None`` as "deny".
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_default=True,
    )

    # ========================================
    # Server Settings
    # ========================================
    host: str = Field(default="0.0.0.0", description="Server bind address")

    port: int = Field(default=8000, ge=1, le=65535, description="Server port")

    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally reachable base URL used for issuer and redirect URIs",
    )

    log_level: str = Field(default="INFO", description="Root log level")

    # ========================================
    # Gateway Credentials
    # ========================================
    auth_secret: str | None = Field(
        default=None,
        description="Shared secret: HMAC signing key and authorization password",
    )

    mcp_api_keys: str = Field(
        default="",
        description="Comma-separated list of static API keys accepted as bearer tokens",
    )

    # ========================================
    # Token Lifetimes
    # ========================================
    access_token_ttl_seconds: int = Field(default=86400, ge=60)

    refresh_token_ttl_seconds: int = Field(default=90 * 86400, ge=60)

    authorization_code_ttl_seconds: int = Field(default=300, ge=10, le=3600)

    enforce_token_kind: bool = Field(
        default=False,
        description="Reject refresh tokens on the tool surface and access tokens on refresh",
    )

    single_use_codes: bool = Field(
        default=False,
        description="Track redeemed authorization codes in memory and refuse replays",
    )

    # ========================================
    # Rate Limiting
    # ========================================
    rate_limit_requests: int = Field(default=100, ge=1)

    rate_limit_window_seconds: int = Field(default=60, ge=1)

    # ========================================
    # Google OAuth Client
    # ========================================
    google_client_id: str | None = Field(default=None, description="Google OAuth client ID")

    google_client_secret: str | None = Field(
        default=None, description="Google OAuth client secret"
    )

    upstream_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        le=120,
        description="Timeout for every call to Google",
    )

    default_timezone: str = Field(
        default="Europe/Berlin",
        description="Time zone attached to calendar events created without one",
    )

    # ========================================
    # Token Store
    # ========================================
    token_store_path: Path = Field(
        default=Path(".gworkspace-remote") / "tokens.json",
        description="JSON file holding Google tokens keyed by user email",
    )

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    # ========================================
    # Helper Methods
    # ========================================
    def get_api_keys_list(self) -> list[str]:
        """Get static API keys as a list, ignoring blanks."""
        return [k.strip() for k in self.mcp_api_keys.split(",") if k.strip()]

    def has_google_config(self) -> bool:
        """Check if the Google OAuth client is configured."""
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def google_redirect_uri(self) -> str:
        return f"{self.public_base_url}/auth/callback"

    def to_dict(self) -> dict[str, Any]:
        """Export settings as a dictionary without secrets."""
        return {
            "host": self.host,
            "port": self.port,
            "public_base_url": self.public_base_url,
            "log_level": self.log_level,
            "has_auth_secret": bool(self.auth_secret),
            "api_key_count": len(self.get_api_keys_list()),
            "has_google_config": self.has_google_config(),
            "token_store_path": str(self.token_store_path),
            "rate_limit": f"{self.rate_limit_requests}/{self.rate_limit_window_seconds}s",
            "enforce_token_kind": self.enforce_token_kind,
            "single_use_codes": self.single_use_codes,
        }


_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance (singleton pattern)."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
        logger.info("Settings initialized from environment")
        if not _settings_instance.auth_secret:
            logger.warning("AUTH_SECRET is missing. Token issuance and password login are disabled.")
        if not _settings_instance.has_google_config():
            logger.warning(
                "GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET missing. Google account linking is unavailable."
            )
    return _settings_instance


def reset_settings() -> None:
    """Reset settings instance (useful for testing)."""
    global _settings_instance
    _settings_instance = None
