"""Password-gated OAuth 2.0 authorization-code flow.

The flow moves through three states:

1. AwaitingPassword: the authorize page collects the shared password while
   carrying ``redirect_uri``, ``state`` and ``code_challenge`` as hidden fields.
2. CodeIssued: a correct password mints a signed authorization code and
   redirects back to the client with ``code`` and ``state``.
3. Exchanged: the token endpoint trades the code for an access token and a
   refresh token.

Codes and tokens are self-describing signed values, so nothing is stored.
Without the opt-in ledger a code stays redeemable until it expires.
"""

import hashlib
import logging
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from gworkspace_remote.auth.credentials import CredentialVerifier, TokenKind
from gworkspace_remote.auth.models import (
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    TokenResponse,
)
from gworkspace_remote.auth.signed_tokens import (
    BEARER_TOKEN_PREFIX,
    SignedTokenCodec,
    b64url_encode,
    constant_time_equals,
)
from gworkspace_remote.config import Settings

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/api/oauth/authorize"
TOKEN_PATH = "/api/oauth/token"
REGISTER_PATH = "/api/oauth/register"
MCP_PATH = "/api/mcp"


class OAuthError(Exception):
    """OAuth protocol error rendered as ``{"error": ..., "error_description": ...}``."""

    def __init__(self, error: str, description: str | None = None, status_code: int = 400) -> None:
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(description or error)

    def to_dict(self) -> dict[str, str]:
        result = {"error": self.error}
        if self.description:
            result["error_description"] = self.description
        return result


@dataclass
class AuthorizationRequest:
    """Values carried through the password page unmodified."""

    redirect_uri: str = ""
    state: str = ""
    code_challenge: str = ""

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> "AuthorizationRequest":
        return cls(
            redirect_uri=str(params.get("redirect_uri") or ""),
            state=str(params.get("state") or ""),
            code_challenge=str(params.get("code_challenge") or ""),
        )


@dataclass
class CodeIssued:
    """Successful password check; the client is redirected to ``redirect_url``."""

    redirect_url: str


@dataclass
class PasswordRejected:
    """Failed password check; the prompt is shown again with ``error``."""

    request: AuthorizationRequest
    error: str


def pkce_s256(code_verifier: str) -> str:
    """Compute the S256 PKCE challenge for a verifier."""
    return b64url_encode(hashlib.sha256(code_verifier.encode("ascii", "ignore")).digest())


def set_query_params(url: str, params: Mapping[str, str]) -> str:
    """Set query parameters on ``url``, replacing same-named ones and keeping the rest."""
    parts = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunparse(parts._replace(query=urlencode(query)))


def is_absolute_url(url: str) -> bool:
    parts = urlparse(url)
    return bool(parts.scheme and parts.netloc)


class ConsumedCodeLedger:
    """In-memory record of redeemed authorization codes.

    Entries are kept until the code would have expired anyway.
    """

    def __init__(self) -> None:
        self._consumed: dict[str, float] = {}
        self._lock = threading.Lock()

    def consume(self, code_id: str, expires_at_ms: float, now_ms: float) -> bool:
        """Mark a code as redeemed.

        Returns:
            False if the code had already been redeemed.
        """
        with self._lock:
            for stale in [key for key, exp in self._consumed.items() if exp <= now_ms]:
                del self._consumed[stale]
            if code_id in self._consumed:
                return False
            self._consumed[code_id] = expires_at_ms
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._consumed)


class AuthorizationServer:
    """Authorization-code flow, token endpoint and discovery metadata.

    Attributes:
        issuer: Public base URL advertised in discovery documents.
        token_codec: Codec for bearer tokens (``gws_`` prefix).
        code_codec: Codec for authorization codes (no prefix).
        verifier: Credential verifier shared with the request gate.
    """

    def __init__(
        self,
        issuer: str,
        password: str | None,
        token_codec: SignedTokenCodec,
        code_codec: SignedTokenCodec,
        verifier: CredentialVerifier,
        access_token_ttl: int = 86400,
        refresh_token_ttl: int = 90 * 86400,
        code_ttl: int = 300,
        ledger: ConsumedCodeLedger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.issuer = issuer.rstrip("/")
        self._password = password
        self.token_codec = token_codec
        self.code_codec = code_codec
        self.verifier = verifier
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.code_ttl = code_ttl
        self.ledger = ledger
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, clock: Callable[[], float] = time.time
    ) -> "AuthorizationServer":
        """Build the flow and its codecs from configuration."""
        token_codec = SignedTokenCodec(settings.auth_secret, prefix=BEARER_TOKEN_PREFIX, clock=clock)
        code_codec = SignedTokenCodec(settings.auth_secret, clock=clock)
        verifier = CredentialVerifier(
            token_codec,
            api_keys=settings.get_api_keys_list(),
            enforce_token_kind=settings.enforce_token_kind,
        )
        return cls(
            issuer=settings.public_base_url,
            password=settings.auth_secret,
            token_codec=token_codec,
            code_codec=code_codec,
            verifier=verifier,
            access_token_ttl=settings.access_token_ttl_seconds,
            refresh_token_ttl=settings.refresh_token_ttl_seconds,
            code_ttl=settings.authorization_code_ttl_seconds,
            ledger=ConsumedCodeLedger() if settings.single_use_codes else None,
            clock=clock,
        )

    # ========================================
    # Password challenge
    # ========================================

    def check_password(self, submitted: str | None) -> bool:
        """Compare the trimmed submission against the trimmed shared secret."""
        if not self._password or submitted is None:
            return False
        return constant_time_equals(submitted.strip(), self._password.strip())

    def authorize(self, request: AuthorizationRequest, password: str | None) -> CodeIssued | PasswordRejected:
        """Process a password submission.

        Raises:
            OAuthError: If ``redirect_uri`` is missing or not absolute.
            MissingSecretError: If codes cannot be signed.
        """
        if not is_absolute_url(request.redirect_uri):
            raise OAuthError("invalid_request", "redirect_uri must be an absolute URL")

        if not self.check_password(password):
            logger.info("Authorization password rejected")
            return PasswordRejected(request=request, error="Invalid password. Try again.")

        code = self.code_codec.issue(
            {
                "typ": TokenKind.CODE.value,
                "redirect_uri": request.redirect_uri,
                "code_challenge": request.code_challenge,
            },
            self.code_ttl,
        )
        params = {"code": code}
        if request.state:
            params["state"] = request.state
        logger.info("Authorization code issued")
        return CodeIssued(redirect_url=set_query_params(request.redirect_uri, params))

    # ========================================
    # Token endpoint
    # ========================================

    def _issue_access_token(self) -> str:
        return self.token_codec.issue({"typ": TokenKind.ACCESS.value}, self.access_token_ttl)

    def exchange_code(self, code: str | None, code_verifier: str | None = None) -> TokenResponse:
        """Trade an authorization code for an access/refresh token pair.

        Raises:
            OAuthError: ``invalid_grant`` for an invalid, expired, replayed or
                PKCE-mismatched code.
        """
        claims = self.code_codec.verify(code) if code else None
        if claims is None or claims.get("typ") != TokenKind.CODE.value:
            raise OAuthError("invalid_grant", "Invalid or expired authorization code")

        challenge = claims.get("code_challenge")
        if code_verifier and challenge:
            if not constant_time_equals(pkce_s256(code_verifier), str(challenge)):
                raise OAuthError("invalid_grant", "code_verifier does not match code_challenge")

        if self.ledger is not None:
            now_ms = self._clock() * 1000
            if not self.ledger.consume(str(claims.get("jti")), claims["exp"], now_ms):
                logger.warning("Replayed authorization code rejected")
                raise OAuthError("invalid_grant", "Authorization code already used")

        return TokenResponse(
            access_token=self._issue_access_token(),
            expires_in=self.access_token_ttl,
            refresh_token=self.token_codec.issue(
                {"typ": TokenKind.REFRESH.value}, self.refresh_token_ttl
            ),
        )

    def refresh(self, refresh_token: str | None) -> TokenResponse:
        """Issue a new access token for a valid refresh credential.

        The refresh token itself is not rotated.

        Raises:
            OAuthError: ``invalid_grant`` if the credential is rejected.
        """
        if not self.verifier.validate_token(refresh_token, kind=TokenKind.REFRESH):
            raise OAuthError("invalid_grant", "Invalid or expired refresh token")
        return TokenResponse(access_token=self._issue_access_token(), expires_in=self.access_token_ttl)

    def handle_token_request(self, params: Mapping[str, Any]) -> TokenResponse:
        """Dispatch a token endpoint request on ``grant_type``."""
        grant_type = params.get("grant_type")
        for field in ("code", "code_verifier", "refresh_token"):
            value = params.get(field)
            if value is not None and not isinstance(value, str):
                raise OAuthError("invalid_request", f"{field} must be a string")
        if grant_type == "authorization_code":
            return self.exchange_code(params.get("code"), params.get("code_verifier"))
        if grant_type == "refresh_token":
            return self.refresh(params.get("refresh_token"))
        raise OAuthError("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")

    # ========================================
    # Registration and discovery
    # ========================================

    def register_client(self, body: Mapping[str, Any]) -> ClientRegistrationResponse:
        """Dynamic Client Registration (RFC 7591) without persistence."""
        request = ClientRegistrationRequest.model_validate(dict(body))
        return ClientRegistrationResponse(
            client_id=str(uuid.uuid4()),
            client_secret=str(uuid.uuid4()),
            client_name=request.client_name,
            redirect_uris=request.redirect_uris,
        )

    def get_authorization_server_metadata(self) -> dict[str, Any]:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}{AUTHORIZE_PATH}",
            "token_endpoint": f"{self.issuer}{TOKEN_PATH}",
            "registration_endpoint": f"{self.issuer}{REGISTER_PATH}",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
            "code_challenge_methods_supported": ["S256"],
        }

    def get_protected_resource_metadata(self) -> dict[str, Any]:
        """Protected Resource Metadata (RFC 9728)."""
        return {
            "resource": f"{self.issuer}{MCP_PATH}",
            "authorization_servers": [self.issuer],
            "bearer_methods_supported": ["header"],
        }
