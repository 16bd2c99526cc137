"""Pydantic models for stored Google credentials and OAuth wire payloads."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenStatus(str, Enum):
    """Status of a stored Google credential."""

    VALID = "valid"
    EXPIRED = "expired"
    MISSING = "missing"
    INVALID = "invalid"


class TokenRotation(BaseModel):
    """Values produced by one upstream token refresh.

    ``refresh_token`` and ``scopes`` are ``None`` when Google did not issue
    new ones.
    """

    access_token: str
    token_expiry: datetime | None = None
    refresh_token: str | None = None
    scopes: str | None = None


class WorkspaceTokenRecord(BaseModel):
    """Google tokens persisted for one user, keyed by email."""

    user_email: str
    access_token: str | None = None
    refresh_token: str
    token_expiry: datetime | None = None
    scopes: str | None = None
    updated_at: datetime = Field(default_factory=_utcnow)

    def apply_rotation(self, rotation: TokenRotation) -> "WorkspaceTokenRecord":
        """Return a copy updated with a refresh result.

        The access token and expiry are always replaced. The refresh token and
        scopes are replaced only when the rotation carries new values.
        """
        return self.model_copy(
            update={
                "access_token": rotation.access_token,
                "token_expiry": rotation.token_expiry,
                "refresh_token": rotation.refresh_token or self.refresh_token,
                "scopes": rotation.scopes or self.scopes,
                "updated_at": _utcnow(),
            }
        )

    def is_expired(self, buffer_seconds: int = 60) -> bool:
        """Check whether the stored access token has expired.

        A record without an expiry is treated as expired so the next use
        refreshes it.
        """
        if self.token_expiry is None:
            return True
        expiry = self.token_expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return (expiry - _utcnow()).total_seconds() <= buffer_seconds


# ========================================
# OAuth wire models
# ========================================


class TokenResponse(BaseModel):
    """Token endpoint response."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str | None = None


class ClientRegistrationRequest(BaseModel):
    """Dynamic Client Registration request (RFC 7591)."""

    client_name: str = "MCP Client"
    redirect_uris: list[str] = Field(default_factory=list)


class ClientRegistrationResponse(BaseModel):
    """Dynamic Client Registration response."""

    client_id: str
    client_secret: str
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "client_secret_post"
