"""Authentication for the Google Workspace MCP gateway.

Two independent layers live here:

1. The inbound gate: signed bearer tokens, static API keys, rate limiting and
   the password-gated OAuth authorization-code flow that agents use to obtain
   tokens.
2. The outbound broker: Google OAuth tokens stored per user email and
   refreshed on demand for tool calls.

Quick Start:
    ```python
    from gworkspace_remote.auth import AuthorizationServer
    from gworkspace_remote.config import get_settings

    auth_server = AuthorizationServer.from_settings(get_settings())
    auth_server.verifier.validate("Bearer gws_...")
    ```
"""

from gworkspace_remote.auth.authorization import (
    AuthorizationRequest,
    AuthorizationServer,
    CodeIssued,
    ConsumedCodeLedger,
    OAuthError,
    PasswordRejected,
)
from gworkspace_remote.auth.broker import (
    GOOGLE_WORKSPACE_SCOPES,
    AuthorizedClient,
    CredentialBroker,
    ExchangeResult,
)
from gworkspace_remote.auth.credentials import CredentialKind, CredentialVerifier, TokenKind
from gworkspace_remote.auth.models import TokenRotation, TokenStatus, WorkspaceTokenRecord
from gworkspace_remote.auth.rate_limit import RateLimiter
from gworkspace_remote.auth.signed_tokens import BEARER_TOKEN_PREFIX, SignedTokenCodec
from gworkspace_remote.auth.token_storage import TokenStorage

__all__ = [
    "AuthorizationRequest",
    "AuthorizationServer",
    "AuthorizedClient",
    "BEARER_TOKEN_PREFIX",
    "CodeIssued",
    "ConsumedCodeLedger",
    "CredentialBroker",
    "CredentialKind",
    "CredentialVerifier",
    "ExchangeResult",
    "GOOGLE_WORKSPACE_SCOPES",
    "OAuthError",
    "PasswordRejected",
    "RateLimiter",
    "SignedTokenCodec",
    "TokenKind",
    "TokenRotation",
    "TokenStatus",
    "TokenStorage",
    "WorkspaceTokenRecord",
]
