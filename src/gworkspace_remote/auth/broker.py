"""Google credential broker.

Links Google accounts through the web OAuth flow, persists the resulting
tokens per user email, and hands tool code an authorized client that
refreshes transparently. Every refresh is reported back to the broker, which
decides what to persist.

Upstream calls are blocking in google-auth, so they run in the default
executor bounded by ``UPSTREAM_TIMEOUT_SECONDS``.
"""

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from gworkspace_remote.auth.models import TokenRotation, WorkspaceTokenRecord
from gworkspace_remote.auth.token_storage import TokenStorage
from gworkspace_remote.config import Settings
from gworkspace_remote.exceptions import (
    NotAuthorizedError,
    TokenStoreError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamTimeoutError,
)

logger = logging.getLogger(__name__)

# Google Workspace OAuth scopes
GOOGLE_WORKSPACE_SCOPES = [
    "https://mail.google.com/",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/userinfo.email",
    "openid",
]

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

LOGIN_PATH = "/auth/login"

RotationSink = Callable[[TokenRotation], None]


def _to_naive_utc(value: datetime | None) -> datetime | None:
    """google-auth compares expiry against naive UTC datetimes."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_aware_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _scope_string(credentials: Credentials) -> str | None:
    scopes = getattr(credentials, "granted_scopes", None) or credentials.scopes
    if not scopes:
        return None
    return " ".join(scopes)


@dataclass
class ExchangeResult:
    """Outcome of linking a Google account."""

    email: str
    record: WorkspaceTokenRecord


class AuthorizedClient:
    """Handle to a user's Google credentials.

    Attributes:
        user_email: Account the credentials belong to.
        credentials: google-auth credentials primed from the stored record.
    """

    def __init__(
        self,
        user_email: str,
        credentials: Credentials,
        rotation_sink: RotationSink,
        timeout: float,
    ) -> None:
        self.user_email = user_email
        self.credentials = credentials
        self._rotation_sink = rotation_sink
        self._timeout = timeout

    async def access_token(self) -> str:
        """Return a usable access token, refreshing it first if needed.

        Raises:
            UpstreamTimeoutError: If Google does not answer in time.
            UpstreamAuthError: If Google rejects the refresh token.
            TokenStoreError: If the refreshed token cannot be persisted.
        """
        if not self.credentials.valid:
            await self.refresh()
        return self.credentials.token

    async def refresh(self) -> None:
        """Refresh the access token and report the rotation."""
        previous_refresh_token = self.credentials.refresh_token
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, self.credentials.refresh, Request()),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(
                f"Google token refresh for {self.user_email} timed out after {self._timeout}s"
            ) from e
        except RefreshError as e:
            raise UpstreamAuthError(
                f"Google rejected the stored refresh token for {self.user_email}: {e}"
            ) from e

        new_refresh_token = self.credentials.refresh_token
        self._rotation_sink(
            TokenRotation(
                access_token=self.credentials.token,
                token_expiry=_to_aware_utc(self.credentials.expiry),
                refresh_token=(
                    new_refresh_token if new_refresh_token != previous_refresh_token else None
                ),
                scopes=_scope_string(self.credentials),
            )
        )
        logger.info("Refreshed Google access token for %s", self.user_email)


class CredentialBroker:
    """Issue, persist and refresh Google credentials per user email.

    Example:
        ```python
        broker = CredentialBroker(settings, TokenStorage(settings.token_store_path))
        url = broker.auth_url(state="xyz")
        result = await broker.exchange(code)
        client = broker.client_for(result.email)
        token = await client.access_token()
        ```
    """

    def __init__(self, settings: Settings, storage: TokenStorage) -> None:
        self.settings = settings
        self.storage = storage
        self._http_client: httpx.AsyncClient | None = None
        # Google may grant a subset or superset of the requested scopes.
        os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

    @property
    def login_url(self) -> str:
        return f"{self.settings.public_base_url}{LOGIN_PATH}"

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.upstream_timeout_seconds, connect=10.0),
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client used for userinfo lookups."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _create_flow(self) -> Flow:
        if not self.settings.has_google_config():
            raise UpstreamError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are not configured")

        client_config = {
            "web": {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [self.settings.google_redirect_uri],
            }
        }
        return Flow.from_client_config(
            client_config,
            scopes=GOOGLE_WORKSPACE_SCOPES,
            redirect_uri=self.settings.google_redirect_uri,
            autogenerate_code_verifier=False,
        )

    def auth_url(self, state: str | None = None) -> str:
        """Build the Google consent URL for offline access.

        Raises:
            UpstreamError: If the Google OAuth client is not configured.
        """
        flow = self._create_flow()
        kwargs = {"access_type": "offline", "prompt": "consent"}
        if state:
            kwargs["state"] = state
        url, _ = flow.authorization_url(**kwargs)
        return url

    async def _run_upstream(self, func, *args, description: str):
        loop = asyncio.get_running_loop()
        timeout = self.settings.upstream_timeout_seconds
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, func, *args), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(f"{description} timed out after {timeout}s") from e

    async def _fetch_email(self, access_token: str) -> str:
        client = await self._get_http_client()
        try:
            response = await client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Google userinfo lookup timed out") from e
        except httpx.HTTPStatusError as e:
            raise UpstreamAuthError(f"Google userinfo lookup failed: {e}") from e
        except httpx.RequestError as e:
            raise UpstreamError(f"Google userinfo lookup failed: {e}", retryable=True) from e

        try:
            email = response.json().get("email")
        except (ValueError, AttributeError) as e:
            raise UpstreamError("Google userinfo response was not a JSON object", retryable=True) from e
        if not email:
            raise UpstreamAuthError("Google userinfo response did not include an email")
        return email

    async def exchange(self, code: str) -> ExchangeResult:
        """Trade a Google authorization code for tokens and store them.

        Raises:
            UpstreamAuthError: If Google rejects the code or omits a refresh token.
            UpstreamTimeoutError: If Google does not answer in time.
            TokenStoreError: If the record cannot be persisted.
        """
        flow = self._create_flow()
        try:
            await self._run_upstream(
                lambda: flow.fetch_token(code=code), description="Google code exchange"
            )
        except UpstreamTimeoutError:
            raise
        except Exception as e:
            raise UpstreamAuthError(f"Google rejected the authorization code: {e}") from e

        credentials = flow.credentials
        if not credentials.refresh_token:
            raise UpstreamAuthError(
                "Google did not return a refresh token. Revoke access and authorize again."
            )

        email = await self._fetch_email(credentials.token)
        record = WorkspaceTokenRecord(
            user_email=email,
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            token_expiry=_to_aware_utc(credentials.expiry),
            scopes=_scope_string(credentials),
        )
        self.storage.upsert(record)
        logger.info("Linked Google account %s", email)
        return ExchangeResult(email=email, record=record)

    def client_for(self, user_email: str) -> AuthorizedClient:
        """Return an authorized client for ``user_email``.

        Raises:
            NotAuthorizedError: If no tokens are stored for the user.
            TokenStoreError: If the token store cannot be read.
        """
        record = self.storage.get(user_email)
        if record is None:
            raise NotAuthorizedError(user_email, self.login_url)

        credentials = Credentials(  # nosec B106 - token_uri is public Google OAuth endpoint
            token=record.access_token,
            refresh_token=record.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=record.scopes.split() if record.scopes else None,
            expiry=_to_naive_utc(record.token_expiry),
        )
        return AuthorizedClient(
            user_email=record.user_email,
            credentials=credentials,
            rotation_sink=lambda rotation: self.persist_rotation(record.user_email, rotation),
            timeout=self.settings.upstream_timeout_seconds,
        )

    def persist_rotation(self, user_email: str, rotation: TokenRotation) -> WorkspaceTokenRecord:
        """Apply a refresh result to the stored record.

        Raises:
            TokenStoreError: If the record cannot be loaded or written.
        """
        record = self.storage.get(user_email)
        if record is None:
            raise TokenStoreError(f"Token record for {user_email} disappeared during refresh")
        updated = record.apply_rotation(rotation)
        self.storage.upsert(updated)
        return updated

    def forget(self, user_email: str) -> bool:
        """Delete the stored record for ``user_email``."""
        removed = self.storage.delete(user_email)
        if removed:
            logger.info("Removed Google tokens for %s", user_email)
        return removed
