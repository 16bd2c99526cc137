"""Bearer credential verification.

Two credential classes unlock the tool surface:

1. Static API keys configured through ``MCP_API_KEYS``.
2. Self-issued signed bearer tokens minted by the authorization flow.
"""

import logging
import re
from collections.abc import Iterable
from enum import Enum
from typing import Any

from gworkspace_remote.auth.signed_tokens import SignedTokenCodec, constant_time_equals

logger = logging.getLogger(__name__)

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.*)$", re.IGNORECASE | re.DOTALL)


class CredentialKind(str, Enum):
    """Credential class that satisfied a verification."""

    API_KEY = "api_key"
    BEARER_TOKEN = "bearer_token"


class TokenKind(str, Enum):
    """Value of the ``typ`` claim carried by signed tokens."""

    ACCESS = "access"
    REFRESH = "refresh"
    CODE = "code"


def extract_bearer_token(authorization_header: str | None) -> str | None:
    """Return the trimmed token from an ``Authorization`` header value.

    Returns ``None`` when the header is missing, does not use the Bearer
    scheme, or carries an empty token.
    """
    if not authorization_header:
        return None
    match = _BEARER_PATTERN.match(authorization_header)
    if match is None:
        return None
    token = match.group(1).strip()
    return token or None


class CredentialVerifier:
    """Decide whether a presented credential grants access.

    Verification is side-effect free and never raises.
    """

    def __init__(
        self,
        codec: SignedTokenCodec,
        api_keys: Iterable[str] = (),
        enforce_token_kind: bool = False,
    ) -> None:
        """Initialize the verifier.

        Args:
            codec: Codec used to verify self-issued bearer tokens.
            api_keys: Static pre-shared keys accepted verbatim.
            enforce_token_kind: When True, tokens are only accepted in the
                role their ``typ`` claim names.
        """
        self._codec = codec
        self._api_keys = [key for key in api_keys if key]
        self.enforce_token_kind = enforce_token_kind

    def _matches_api_key(self, token: str) -> bool:
        matched = False
        # Every candidate is compared so timing does not reveal the position.
        for key in self._api_keys:
            if constant_time_equals(token, key):
                matched = True
        return matched

    def _kind_allowed(self, claims: dict[str, Any], expected: TokenKind) -> bool:
        token_kind = claims.get("typ")
        if token_kind == TokenKind.CODE.value:
            return False
        if not self.enforce_token_kind:
            return True
        if expected is TokenKind.ACCESS:
            return token_kind in (None, TokenKind.ACCESS.value)
        return token_kind == expected.value

    def identify_token(
        self, token: str | None, expected: TokenKind = TokenKind.ACCESS
    ) -> CredentialKind | None:
        """Classify a bare token, or return ``None`` when it is not accepted."""
        if not isinstance(token, str) or not token:
            return None

        if self._matches_api_key(token):
            return CredentialKind.API_KEY

        claims = self._codec.verify(token)
        if claims is None:
            return None
        if not self._kind_allowed(claims, expected):
            logger.info("Rejected signed token presented in the wrong role (typ=%s)", claims.get("typ"))
            return None
        return CredentialKind.BEARER_TOKEN

    def identify(self, authorization_header: str | None) -> CredentialKind | None:
        """Classify the credential in an ``Authorization`` header."""
        return self.identify_token(extract_bearer_token(authorization_header))

    def validate(self, authorization_header: str | None) -> bool:
        """Return True when the header carries an accepted credential."""
        return self.identify(authorization_header) is not None

    def validate_token(self, token: str | None, kind: TokenKind = TokenKind.ACCESS) -> bool:
        """Return True when a bare token is accepted in the given role."""
        return self.identify_token(token, expected=kind) is not None
