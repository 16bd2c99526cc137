"""Request gate for the protected API surface.

Every request under ``/api/`` (except the OAuth endpoints) is rate limited
per client identity and then must present an accepted bearer credential.
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gworkspace_remote.auth.credentials import CredentialVerifier
from gworkspace_remote.auth.rate_limit import RateLimiter
from gworkspace_remote.auth.signed_tokens import mask_secret

logger = logging.getLogger(__name__)

BYPASS_PREFIXES = ("/api/oauth/", "/auth/", "/.well-known")
BYPASS_PATHS = ("/", "/favicon.ico")
PROTECTED_PREFIX = "/api/"

AUTH_REALM = "Google Workspace MCP"


def is_protected_path(path: str) -> bool:
    """Return True when ``path`` requires a credential."""
    if path in BYPASS_PATHS:
        return False
    if any(path.startswith(prefix) for prefix in BYPASS_PREFIXES):
        return False
    return path.startswith(PROTECTED_PREFIX)


def client_identity(request: Request) -> str:
    """Best-effort client address from proxy headers.

    Uses the first ``X-Forwarded-For`` entry, then ``X-Real-IP``, else
    ``"unknown"``.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return "unknown"


class RequestGateMiddleware(BaseHTTPMiddleware):
    """Rate limit, then authenticate, every protected request.

    Rejections:
    1. 429 ``rate_limit_exceeded`` with ``Retry-After``.
    2. 401 ``unauthorized`` with ``WWW-Authenticate: Bearer``.
    """

    def __init__(
        self,
        app,
        rate_limiter: RateLimiter,
        verifier: CredentialVerifier,
        issuer: str,
    ):
        """
        Initialize middleware.

        Args:
            app: ASGI application
            rate_limiter: Per-identity request counter
            verifier: Bearer credential verifier
            issuer: Public base URL used for the resource metadata link
        """
        super().__init__(app)
        self.rate_limiter = rate_limiter
        self.verifier = verifier
        self.issuer = issuer.rstrip("/")

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not is_protected_path(path):
            return await call_next(request)

        identity = client_identity(request)
        if not self.rate_limiter.allow(identity):
            logger.warning("Rate limit exceeded for %s on %s", identity, path)
            return self._rate_limited_response()

        authorization = request.headers.get("authorization")
        credential_kind = self.verifier.identify(authorization)
        if credential_kind is None:
            logger.info("Unauthorized request from %s to %s", identity, path)
            logger.debug("Rejected Authorization header: %s", mask_secret(authorization))
            return self._unauthorized_response()

        request.state.auth_type = credential_kind.value
        return await call_next(request)

    def _rate_limited_response(self) -> JSONResponse:
        return JSONResponse(
            {"error": "rate_limit_exceeded", "message": "Too many requests."},
            status_code=429,
            headers={"Retry-After": str(int(self.rate_limiter.window_seconds))},
        )

    def _unauthorized_response(self) -> JSONResponse:
        """Create 401 Unauthorized response with WWW-Authenticate header."""
        resource_metadata_url = f"{self.issuer}/.well-known/oauth-protected-resource"
        return JSONResponse(
            {"error": "unauthorized", "message": "Valid Bearer token required."},
            status_code=401,
            headers={
                "WWW-Authenticate": (
                    f'Bearer realm="{AUTH_REALM}", resource_metadata="{resource_metadata_url}"'
                )
            },
        )
