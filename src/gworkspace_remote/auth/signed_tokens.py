"""Stateless HMAC-signed tokens.

A signed token is ``[prefix]<payload>.<mac>`` where ``payload`` is the
base64url-encoded canonical JSON claims and ``mac`` is the base64url-encoded
HMAC-SHA256 of the encoded payload under the shared secret. Nothing is stored
server-side: validity is a pure function of the token, the secret and the
current time.

Example:
    ```python
    codec = SignedTokenCodec(secret="s3cret", prefix=BEARER_TOKEN_PREFIX)
    token = codec.issue({"typ": "access"}, ttl_seconds=3600)
    claims = codec.verify(token)  # dict, or None when invalid
    ```
"""

import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from gworkspace_remote.exceptions import MissingSecretError

logger = logging.getLogger(__name__)

# Marks self-issued bearer tokens; authorization codes carry no prefix.
BEARER_TOKEN_PREFIX = "gws_"


def b64url_encode(data: bytes) -> str:
    """Encode bytes as unpadded base64url."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    """Decode unpadded base64url."""
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def constant_time_equals(left: str, right: str) -> bool:
    """Compare two strings without leaking where (or whether) lengths differ.

    Both sides are reduced to fixed-size SHA-256 digests first so the
    comparison always runs over 32 bytes.
    """
    left_digest = hashlib.sha256(left.encode("utf-8")).digest()
    right_digest = hashlib.sha256(right.encode("utf-8")).digest()
    return hmac.compare_digest(left_digest, right_digest)


def mask_secret(value: str | None, keep: int = 4) -> str | None:
    """Shorten a secret for logs and diagnostics, keeping only its ends."""
    if not isinstance(value, str):
        return value
    if len(value) <= keep * 2:
        return value[:keep] + "…" if value else value
    return f"{value[:keep]}…{value[-keep:]}"


class SignedTokenCodec:
    """Issue and verify compact HMAC-SHA256 signed tokens.

    Attributes:
        prefix: Fixed string prepended to issued tokens to mark their class.
    """

    def __init__(
        self,
        secret: str | None,
        prefix: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the codec.

        Args:
            secret: Shared signing secret. ``None`` or empty disables issuance
                and makes every verification fail.
            prefix: Token class marker added on issue and stripped on verify.
            clock: Returns the current time in seconds since the epoch.
        """
        self._secret = secret or ""
        self.prefix = prefix
        self._clock = clock

    @property
    def can_issue(self) -> bool:
        return bool(self._secret)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _sign(self, encoded_payload: str) -> str:
        mac = hmac.new(
            self._secret.encode("utf-8"),
            encoded_payload.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return b64url_encode(mac)

    def issue(self, payload: Mapping[str, Any], ttl_seconds: float) -> str:
        """Create a signed token carrying ``payload``.

        ``iat`` and ``exp`` (milliseconds since the epoch) and a random ``jti``
        are added to the claims.

        Args:
            payload: JSON-serializable claims.
            ttl_seconds: Lifetime of the token.

        Returns:
            The encoded token string.

        Raises:
            MissingSecretError: If no signing secret is configured.
        """
        if not self._secret:
            raise MissingSecretError("AUTH_SECRET is not configured; cannot issue tokens")

        now_ms = self._now_ms()
        claims = dict(payload)
        claims["iat"] = now_ms
        claims["exp"] = now_ms + int(ttl_seconds * 1000)
        claims["jti"] = str(uuid.uuid4())

        canonical = json.dumps(claims, sort_keys=True, separators=(",", ":"))
        encoded = b64url_encode(canonical.encode("utf-8"))
        return f"{self.prefix}{encoded}.{self._sign(encoded)}"

    def verify(self, token: str) -> dict[str, Any] | None:
        """Verify a token and return its claims.

        Returns ``None`` when the secret is unset, the separator is missing,
        the MAC does not match, the payload is not a JSON object, or ``exp``
        is not a number in the future. Never raises.
        """
        if not self._secret or not isinstance(token, str):
            return None

        raw = token[len(self.prefix) :] if self.prefix and token.startswith(self.prefix) else token
        encoded, separator, signature = raw.rpartition(".")
        if not separator or not encoded:
            return None

        if not constant_time_equals(signature, self._sign(encoded)):
            return None

        try:
            claims = json.loads(b64url_decode(encoded))
        except (ValueError, UnicodeDecodeError):
            return None

        if not isinstance(claims, dict):
            return None

        expires_at = claims.get("exp")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return None
        if expires_at <= self._now_ms():
            return None

        return claims
